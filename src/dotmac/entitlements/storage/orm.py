"""
SQLAlchemy tables for modules, plans, organizations, roles and users.

Action maps are JSON columns (``{"crm": ["view", "edit"]}``) so a target's
whole map is replaced by a single UPDATE. Plans and roles carry a
``version`` that every action map write checks and increments.
"""

from typing import Any

from sqlalchemy import JSON, Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from dotmac.entitlements.db import Base, TimestampMixin


class ModuleRecord(Base, TimestampMixin):
    """Module definition row."""

    __tablename__ = "entitlement_modules"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    category: Mapped[str] = mapped_column(String(100), default="General", nullable=False)
    available_actions: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    dependencies: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    is_core: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class SubscriptionPlanRecord(Base, TimestampMixin):
    """Subscription plan ceiling row."""

    __tablename__ = "entitlement_subscription_plans"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    modules: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    max_users: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class OrganizationRecord(Base, TimestampMixin):
    """Organization row owning a plan reference."""

    __tablename__ = "entitlement_organizations"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    subscription_plan_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class RoleRecord(Base, TimestampMixin):
    """Role grant row."""

    __tablename__ = "entitlement_roles"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    permissions: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class UserRecord(Base, TimestampMixin):
    """User row; exactly one organization and one role."""

    __tablename__ = "entitlement_users"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(100), nullable=False)
    role_id: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index("ix_entitlement_users_organization", "organization_id"),
        Index("ix_entitlement_users_role", "role_id"),
    )
