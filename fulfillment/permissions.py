"""
Permission resolution: per-actor overrides first, then the actor's role permissions (TTL cached).
Any failure while resolving denies the permission.
"""
import logging
import time
from collections.abc import Callable

from fulfillment.metrics import role_cache_lookups_total
from fulfillment.models import ROLES, USERS, Actor, Role
from fulfillment.store import EntityStore

logger = logging.getLogger(__name__)


class RoleCache:
    """Role id -> permission set, each entry valid for ttl_seconds from when it was fetched."""

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[frozenset[str], float]] = {}

    def get(self, role_id: str) -> frozenset[str] | None:
        entry = self._entries.get(role_id)
        if entry is None:
            return None
        permissions, fetched_at = entry
        if self._clock() - fetched_at >= self.ttl_seconds:
            del self._entries[role_id]
            return None
        return permissions

    def put(self, role_id: str, permissions) -> frozenset[str]:
        frozen = frozenset(permissions)
        self._entries[role_id] = (frozen, self._clock())
        return frozen

    def invalidate(self, role_id: str | None = None) -> None:
        if role_id is None:
            self._entries.clear()
        else:
            self._entries.pop(role_id, None)


class PermissionResolver:
    def __init__(self, store: EntityStore, cache: RoleCache):
        self._store = store
        self._cache = cache

    async def role_permissions(self, role_id: str) -> frozenset[str] | None:
        cached = self._cache.get(role_id)
        if cached is not None:
            role_cache_lookups_total.labels(result="hit").inc()
            return cached
        role_cache_lookups_total.labels(result="miss").inc()
        doc = await self._store.get(ROLES, role_id)
        if doc is None:
            logger.warning("Role document not found: %s", role_id)
            return None
        role = Role.model_validate(doc)
        return self._cache.put(role_id, role.permissions)

    async def has_permission(self, actor_id: str | None, claimed_role: str | None, permission_id: str) -> bool:
        if not actor_id:
            return False
        try:
            doc = await self._store.get(USERS, actor_id)
            if doc is None:
                logger.warning("Permission check failed: user %s not found (permission=%s)", actor_id, permission_id)
                return False
            actor = Actor.model_validate(doc)
            if not actor.is_active:
                return False

            role = actor.role
            if claimed_role and claimed_role != role:
                logger.warning(
                    "Claimed role %r mismatches stored role %r for user %s. Using stored role.",
                    claimed_role,
                    role,
                    actor_id,
                )

            if permission_id in actor.permissions:
                return True
            if not role:
                return False

            permissions = await self.role_permissions(role)
            if permissions is None:
                logger.warning("No permissions for role %r; denying %s to user %s", role, permission_id, actor_id)
                return False
            return permission_id in permissions
        except Exception:
            logger.exception("Permission check errored for user %s, permission %s; denying", actor_id, permission_id)
            return False
