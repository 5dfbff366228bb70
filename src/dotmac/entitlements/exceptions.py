"""Exceptions raised by the entitlement engine.

Permission conflicts are not exceptions; they are returned as data
next to the results they describe.
"""


class EntitlementsError(Exception):
    """Base exception for the entitlement engine."""


class ValidationError(EntitlementsError):
    """Caller input is malformed (unknown module, unknown action, bad target)."""


class ConfigurationError(EntitlementsError):
    """Settings cannot be turned into a working component (e.g. a bad database URL)."""


class StorageError(EntitlementsError):
    """The data store is unreachable or rejected a read or write."""


class EntityNotFoundError(EntitlementsError):
    """Entity not found in the data store."""

    def __init__(self, entity_type: str, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} '{entity_id}' not found")


class ConcurrentUpdateError(EntitlementsError):
    """A target changed between read and write; the write was not applied."""

    def __init__(self, entity_type: str, entity_id: str, expected_version: int) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        super().__init__(
            f"{entity_type} '{entity_id}' changed since version {expected_version} was read"
        )


__all__ = [
    "EntitlementsError",
    "ValidationError",
    "ConfigurationError",
    "StorageError",
    "EntityNotFoundError",
    "ConcurrentUpdateError",
]
