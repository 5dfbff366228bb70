"""Data store interface and its SQLAlchemy implementation."""

from .base import PermissionStore
from .sqlalchemy_store import SQLAlchemyPermissionStore

__all__ = ["PermissionStore", "SQLAlchemyPermissionStore"]
