#!/usr/bin/env python
"""
CLI management commands for DotMac Entitlements.
"""

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass
from typing import TypeVar

import click

from dotmac.entitlements.audit.models import AuditFilter, AuditRecord, EntityType
from dotmac.entitlements.db import create_all_tables_async, dispose_engine
from dotmac.entitlements.exceptions import EntitlementsError
from dotmac.entitlements.modules.models import Action, sort_actions
from dotmac.entitlements.service import EntitlementsService, create_entitlements_service

T = TypeVar("T")


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    service_factory: Callable[[], Awaitable[EntitlementsService]]
    init_db: Callable[[], Awaitable[None]]
    shutdown: Callable[[], Awaitable[None]]


async def _default_service() -> EntitlementsService:
    return create_entitlements_service()


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        service_factory=_default_service,
        init_db=create_all_tables_async,
        shutdown=dispose_engine,
    )


def _run(deps: CLIDependencies, operation: Callable[[EntitlementsService], Awaitable[T]]) -> T:
    """Run ``operation`` against a fresh service and release the engine afterwards."""

    async def _main() -> T:
        try:
            service = await deps.service_factory()
            return await operation(service)
        finally:
            await deps.shutdown()

    try:
        return asyncio.run(_main())
    except EntitlementsError as e:
        raise click.ClickException(str(e)) from e


@click.group()
def cli() -> None:
    """DotMac Entitlements CLI."""
    pass


@cli.command("init-db")
def init_db() -> None:
    """Create the entitlement tables."""
    deps = _get_cli_dependencies()
    click.echo("Initializing database...")

    async def _init() -> None:
        try:
            await deps.init_db()
        finally:
            await deps.shutdown()

    try:
        asyncio.run(_init())
    except EntitlementsError as e:
        raise click.ClickException(str(e)) from e
    click.echo("Database initialized successfully!")


@cli.command("validate-modules")
def validate_modules() -> None:
    """Report cycles and undefined dependencies in the module graph."""
    deps = _get_cli_dependencies()
    conflicts = _run(deps, lambda service: service.validate_module_graph())
    if not conflicts:
        click.echo("Module graph is valid")
        return

    for conflict in conflicts:
        click.echo(f"[{conflict.type.value}] {conflict.description}")
    raise SystemExit(1)


@cli.command()
@click.argument("user_id")
@click.option("--module", "module_id", default=None, help="Check a single module")
@click.option(
    "--action",
    type=click.Choice([a.value for a in Action]),
    default=None,
    help="Check a single action (requires --module)",
)
def resolve(user_id: str, module_id: str | None, action: str | None) -> None:
    """Show a user's effective permissions."""
    if (module_id is None) != (action is None):
        raise click.UsageError("--module and --action must be given together")

    deps = _get_cli_dependencies()

    if module_id is not None and action is not None:
        check = _run(deps, lambda service: service.check_permission(user_id, module_id, action))
        verdict = "GRANTED" if check.granted else "DENIED"
        click.echo(f"{verdict} {module_id}:{action} for {user_id}")
        if check.reason:
            click.echo(f"  {check.reason}")
        return

    result = _run(deps, lambda service: service.resolve_effective_permissions(user_id))
    if not result.permissions:
        click.echo(f"No permissions for {user_id}")

    modules: list[str] = []
    for permission in result.permissions:
        if permission.module_id not in modules:
            modules.append(permission.module_id)

    for module in modules:
        granted = sort_actions(result.granted_actions(module))
        restricted = [
            f"{p.action.value} (restricted by {p.restricted_by.value})"
            for p in result.permissions
            if p.module_id == module and not p.granted
        ]
        line = f"{module}: {', '.join(a.value for a in granted) or '-'}"
        if restricted:
            line += f"  [{'; '.join(restricted)}]"
        click.echo(line)

    for conflict in result.conflicts:
        click.echo(f"[{conflict.type.value}] {conflict.description}")


@cli.command("audit-log")
@click.option(
    "--entity-type",
    type=click.Choice([e.value for e in EntityType]),
    default=None,
    help="Filter by entity type",
)
@click.option("--entity-id", default=None, help="Filter by entity ID")
@click.option("--performed-by", default=None, help="Filter by actor")
@click.option("--limit", default=20, show_default=True, type=click.IntRange(min=1))
def audit_log(
    entity_type: str | None, entity_id: str | None, performed_by: str | None, limit: int
) -> None:
    """Print audit records, newest first."""
    deps = _get_cli_dependencies()
    filters = AuditFilter(
        entity_type=EntityType(entity_type) if entity_type else None,
        entity_id=entity_id,
        performed_by=performed_by,
    )

    async def _fetch(service: EntitlementsService) -> list[AuditRecord]:
        records: list[AuditRecord] = []
        async with aclosing(service.query_audit_log(filters)) as stream:
            async for record in stream:
                records.append(record)
                if len(records) >= limit:
                    break
        return records

    records = _run(deps, _fetch)
    if not records:
        click.echo("No audit records found")
        return

    for record in records:
        line = (
            f"{record.timestamp.isoformat()} {record.performed_by} "
            f"{record.operation.value} {record.entity_type.value}:{record.entity_id}"
        )
        if record.reason:
            line += f" ({record.reason})"
        click.echo(line)


if __name__ == "__main__":
    cli()
