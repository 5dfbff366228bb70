"""
Shared fixtures for entitlement tests.

Two store flavours are available: the SQLAlchemy store on a file-backed
SQLite database in ``tmp_path`` and an in-memory store that yields to the
event loop between reads and writes (used to exercise per-target locking).
"""

import asyncio
import os
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
import pytest_asyncio

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("OBSERVABILITY__LOG_FORMAT", "text")

from dotmac.entitlements.audit.models import AuditRecordCreate  # noqa: E402
from dotmac.entitlements.audit.service import AuditLog  # noqa: E402
from dotmac.entitlements.db import (  # noqa: E402
    create_all_tables_async,
    create_engine_for_url,
    create_session_factory,
)
from dotmac.entitlements.exceptions import ConcurrentUpdateError, EntityNotFoundError  # noqa: E402
from dotmac.entitlements.modules.graph import ModuleGraph  # noqa: E402
from dotmac.entitlements.modules.models import (  # noqa: E402
    Action,
    ActionMap,
    ModuleDefinition,
)
from dotmac.entitlements.permissions.models import (  # noqa: E402
    Organization,
    Role,
    SubscriptionPlan,
    User,
)
from dotmac.entitlements.service import EntitlementsService  # noqa: E402
from dotmac.entitlements.storage.sqlalchemy_store import SQLAlchemyPermissionStore  # noqa: E402

V, E, M, D = Action.VIEW, Action.EDIT, Action.MANAGE, Action.DISABLE


# ==========================================
# Catalogue
# ==========================================


def build_modules() -> list[ModuleDefinition]:
    return [
        ModuleDefinition(id="dashboard", name="Dashboard", available_actions={V}, is_core=True, order=0),
        ModuleDefinition(id="crm", name="CRM", category="Sales", available_actions={V, E, M, D}, order=1),
        ModuleDefinition(
            id="billing",
            name="Billing",
            category="Finance",
            available_actions={V, E, M},
            dependencies={"crm"},
            order=2,
        ),
        ModuleDefinition(
            id="reports", name="Reports", available_actions={V, E}, dependencies={"crm"}, order=3
        ),
        ModuleDefinition(
            id="integrations",
            name="Integrations",
            available_actions={V, M},
            dependencies={"reports"},
            order=4,
        ),
        ModuleDefinition(id="users", name="Users", available_actions={V, E, M, D}, order=5),
    ]


def build_plans() -> list[SubscriptionPlan]:
    return [
        SubscriptionPlan(
            id="pro",
            name="Pro",
            modules={
                "dashboard": {V},
                "crm": {V, E, M},
                "billing": {V, E, M},
                "reports": {V, E},
                "users": {V, E, M},
            },
            max_users=50,
        ),
        SubscriptionPlan(id="basic", name="Basic", modules={"dashboard": {V}, "crm": {V}}, max_users=5),
    ]


def build_organizations() -> list[Organization]:
    return [
        Organization(id="acme", name="Acme", subscription_plan_id="pro"),
        Organization(id="globex", name="Globex", subscription_plan_id="basic"),
    ]


def build_roles() -> list[Role]:
    return [
        Role(
            id="acme-manager",
            organization_id="acme",
            name="Manager",
            permissions={"dashboard": {V}, "crm": {V, E}, "reports": {V}},
        ),
        Role(
            id="acme-admin",
            organization_id="acme",
            name="Administrator",
            permissions={
                "dashboard": {V},
                "crm": {V, E, M, D},
                "billing": {V, E},
                "reports": {V, E},
                "users": {V, E, M},
            },
        ),
        Role(id="acme-viewer", organization_id="acme", name="Viewer", permissions={"dashboard": {V}}),
        Role(
            id="globex-manager",
            organization_id="globex",
            name="Manager",
            permissions={"dashboard": {V}, "crm": {V, E}},
        ),
    ]


def build_users() -> list[User]:
    return [
        User(id="alice", organization_id="acme", role_id="acme-manager"),
        User(id="bob", organization_id="acme", role_id="acme-admin"),
        User(id="carol", organization_id="globex", role_id="globex-manager"),
        User(id="dave", organization_id="acme", role_id="acme-manager", is_active=False),
    ]


async def seed_catalogue(store) -> None:
    for module in build_modules():
        await store.save_module(module)
    for plan in build_plans():
        await store.save_plan(plan)
    for organization in build_organizations():
        await store.save_organization(organization)
    for role in build_roles():
        await store.save_role(role)
    for user in build_users():
        await store.save_user(user)


# ==========================================
# In-memory store
# ==========================================


class InMemoryPermissionStore:
    """Dict-backed PermissionStore that yields between every read and write."""

    def __init__(self) -> None:
        self.modules: dict[str, ModuleDefinition] = {}
        self.plans: dict[str, SubscriptionPlan] = {}
        self.organizations: dict[str, Organization] = {}
        self.roles: dict[str, Role] = {}
        self.users: dict[str, User] = {}
        self.writes: list[tuple[str, str]] = []
        self.audit_records: list[AuditRecordCreate] = []

    def _audit(self, audit: AuditRecordCreate | None) -> str | None:
        if audit is None:
            return None
        self.audit_records.append(audit)
        return str(uuid4())

    async def list_modules(self) -> list[ModuleDefinition]:
        await asyncio.sleep(0)
        return sorted(self.modules.values(), key=lambda m: (m.order, m.id))

    async def save_module(
        self, module: ModuleDefinition, *, audit: AuditRecordCreate | None = None
    ) -> str | None:
        self.modules[module.id] = module
        return self._audit(audit)

    async def delete_module(self, module_id: str, *, audit: AuditRecordCreate | None = None) -> bool:
        deleted = self.modules.pop(module_id, None) is not None
        if deleted:
            self._audit(audit)
        return deleted

    async def get_user(self, user_id: str) -> User | None:
        await asyncio.sleep(0)
        return self.users.get(user_id)

    async def get_organization(self, organization_id: str) -> Organization | None:
        await asyncio.sleep(0)
        return self.organizations.get(organization_id)

    async def get_role(self, role_id: str) -> Role | None:
        await asyncio.sleep(0)
        role = self.roles.get(role_id)
        return role.model_copy(deep=True) if role else None

    async def get_plan(self, plan_id: str) -> SubscriptionPlan | None:
        await asyncio.sleep(0)
        plan = self.plans.get(plan_id)
        return plan.model_copy(deep=True) if plan else None

    async def list_roles_for_plan(self, plan_id: str) -> list[Role]:
        org_ids = {
            o.id
            for o in self.organizations.values()
            if o.subscription_plan_id == plan_id and o.is_active
        }
        return sorted(
            (r for r in self.roles.values() if r.organization_id in org_ids), key=lambda r: r.id
        )

    async def list_organization_ids_for_plan(self, plan_id: str) -> list[str]:
        return sorted(o.id for o in self.organizations.values() if o.subscription_plan_id == plan_id)

    async def save_plan(self, plan: SubscriptionPlan) -> None:
        existing = self.plans.get(plan.id)
        version = existing.version + 1 if existing else 0
        self.plans[plan.id] = plan.model_copy(update={"version": version})

    async def save_organization(self, organization: Organization) -> None:
        self.organizations[organization.id] = organization

    async def save_role(self, role: Role) -> None:
        existing = self.roles.get(role.id)
        version = existing.version + 1 if existing else 0
        self.roles[role.id] = role.model_copy(update={"version": version})

    async def save_user(self, user: User) -> None:
        self.users[user.id] = user

    async def _write(
        self,
        entity_type: str,
        records: dict,
        target_id: str,
        field: str,
        action_map: ActionMap,
        expected_version: int | None,
        audit: AuditRecordCreate | None,
        unrecognized: dict[str, list[str]] | None,
    ) -> str | None:
        await asyncio.sleep(0)
        current = records.get(target_id)
        if current is None:
            raise EntityNotFoundError(entity_type, target_id)
        if expected_version is not None and current.version != expected_version:
            raise ConcurrentUpdateError(entity_type, target_id, expected_version)
        records[target_id] = current.model_copy(
            update={
                field: action_map,
                "unrecognized_actions": dict(unrecognized or {}),
                "version": current.version + 1,
            }
        )
        self.writes.append((entity_type, target_id))
        return self._audit(audit)

    async def update_role_permissions(
        self,
        role_id: str,
        permissions: ActionMap,
        *,
        expected_version: int | None = None,
        audit: AuditRecordCreate | None = None,
        unrecognized: dict[str, list[str]] | None = None,
    ) -> str | None:
        return await self._write(
            "role", self.roles, role_id, "permissions", permissions, expected_version, audit, unrecognized
        )

    async def update_plan_modules(
        self,
        plan_id: str,
        modules: ActionMap,
        *,
        expected_version: int | None = None,
        audit: AuditRecordCreate | None = None,
        unrecognized: dict[str, list[str]] | None = None,
    ) -> str | None:
        return await self._write(
            "subscription", self.plans, plan_id, "modules", modules, expected_version, audit, unrecognized
        )


# ==========================================
# Fixtures
# ==========================================


@pytest.fixture
def modules() -> list[ModuleDefinition]:
    return build_modules()


@pytest.fixture
def graph(modules) -> ModuleGraph:
    return ModuleGraph(modules)


@pytest.fixture
def clock():
    """Deterministic clock advancing one second per call."""
    state = {"now": datetime(2026, 1, 1, 9, 0, tzinfo=UTC)}

    def _now() -> datetime:
        state["now"] += timedelta(seconds=1)
        return state["now"]

    return _now


@pytest_asyncio.fixture
async def async_engine(tmp_path):
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'entitlements.db'}")
    await create_all_tables_async(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return create_session_factory(async_engine)


@pytest.fixture
def store(session_factory) -> SQLAlchemyPermissionStore:
    return SQLAlchemyPermissionStore(session_factory)


@pytest.fixture
def audit_log(session_factory) -> AuditLog:
    return AuditLog(session_factory, batch_size=3)


@pytest_asyncio.fixture
async def seeded_store(store):
    await seed_catalogue(store)
    return store


@pytest_asyncio.fixture
async def memory_store():
    store = InMemoryPermissionStore()
    await seed_catalogue(store)
    return store


@pytest.fixture
def service(seeded_store, audit_log, clock) -> EntitlementsService:
    return EntitlementsService(seeded_store, audit_log, clock=clock)


@pytest.fixture
def catalogue_seeder():
    """Coroutine function seeding the standard catalogue into a store."""
    return seed_catalogue
