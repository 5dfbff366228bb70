"""
Effective-permission cache using cachetools.

Entries are keyed by user id and indexed by organization and role so that
plan changes (organization-wide) and role changes (role holders only) can
drop exactly the affected entries. Every invalidation bumps a generation
counter; a write carrying an older generation is discarded, so a resolution
that raced with a mutation can never repopulate the cache with stale grants.
"""

import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

from cachetools import TTLCache

from dotmac.entitlements.logging import get_logger
from dotmac.entitlements.permissions.models import ResolutionResult

logger = get_logger(__name__)


class EffectivePermissionCache:
    """In-process TTL cache of resolved permission sets."""

    def __init__(
        self,
        max_entries: int = 10_000,
        ttl_seconds: int = 300,
        *,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: TTLCache[str, ResolutionResult] = TTLCache(
            maxsize=max_entries, ttl=ttl_seconds, timer=timer
        )
        # user id -> (organization id, role id) of the cached entry
        self._owners: dict[str, tuple[str, str]] = {}
        self._by_org: dict[str, set[str]] = {}
        self._by_role: dict[str, set[str]] = {}
        self._lock = threading.RLock()
        self._generation = 0
        self._hits = 0
        self._misses = 0

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, user_id: str) -> ResolutionResult | None:
        with self._lock:
            result = self._entries.get(user_id)
            if result is None:
                self._misses += 1
                self._forget(user_id)
                return None
            self._hits += 1
            return result

    def put(
        self,
        user_id: str,
        organization_id: str,
        role_id: str,
        result: ResolutionResult,
        *,
        generation: int | None = None,
    ) -> bool:
        """Store ``result``; returns False when an invalidation happened since ``generation``."""
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            self._forget(user_id)
            self._entries[user_id] = result
            self._owners[user_id] = (organization_id, role_id)
            self._by_org.setdefault(organization_id, set()).add(user_id)
            self._by_role.setdefault(role_id, set()).add(user_id)
            if len(self._owners) > self._entries.maxsize:
                self._prune()
            return True

    def _forget(self, user_id: str) -> None:
        """Remove ``user_id`` from the indexes (the entry itself is left alone)."""
        owner = self._owners.pop(user_id, None)
        if owner is None:
            return
        organization_id, role_id = owner
        for index, key in ((self._by_org, organization_id), (self._by_role, role_id)):
            members = index.get(key)
            if members is None:
                continue
            members.discard(user_id)
            if not members:
                del index[key]

    def _prune(self) -> None:
        """Drop index entries whose cache entry expired or was evicted."""
        self._entries.expire()
        for user_id in [u for u in self._owners if u not in self._entries]:
            self._forget(user_id)

    def _drop(self, user_ids: Iterable[str]) -> int:
        dropped = 0
        for user_id in list(user_ids):
            self._forget(user_id)
            if self._entries.pop(user_id, None) is not None:
                dropped += 1
        return dropped

    def invalidate_user(self, user_id: str) -> int:
        with self._lock:
            self._generation += 1
            return self._drop([user_id])

    def invalidate_organization(self, organization_id: str) -> int:
        """Drop every cached user of an organization (plan changes)."""
        with self._lock:
            self._generation += 1
            dropped = self._drop(self._by_org.get(organization_id, ()))
        logger.debug("Invalidated organization cache", organization_id=organization_id, dropped=dropped)
        return dropped

    def invalidate_role(self, role_id: str) -> int:
        """Drop every cached holder of a role (role-only changes)."""
        with self._lock:
            self._generation += 1
            dropped = self._drop(self._by_role.get(role_id, ()))
        logger.debug("Invalidated role cache", role_id=role_id, dropped=dropped)
        return dropped

    def clear(self) -> None:
        """Drop everything (module graph changes)."""
        with self._lock:
            self._generation += 1
            self._entries.clear()
            self._owners.clear()
            self._by_org.clear()
            self._by_role.clear()
            self._hits = 0
            self._misses = 0
        logger.debug("Cleared effective permission cache")

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            self._prune()
            return {
                "size": len(self._entries),
                "indexed_users": len(self._owners),
                "hits": self._hits,
                "misses": self._misses,
                "generation": self._generation,
            }
