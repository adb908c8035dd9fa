"""Access decisions from direct and group permissions."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, NamedTuple

from sqlalchemy import select

from models import (
    ADMIN_ROLE,
    GLOBAL_SYSTEM_ID,
    GroupPermission,
    Permission,
    Role,
    UserGroup,
    utcnow,
)

CACHE_PREFIX = "permissions:user:"


class PermissionRow(NamedTuple):
    system_id: str
    role: str
    expiry: datetime | None
    source: str

    def active(self, now: datetime) -> bool:
        return self.expiry is None or self.expiry > now


class PermissionResolver:
    """Decide whether a user holds a role on a system.

    The rows a user holds (directly or through any group) may be cached for
    ``ttl`` seconds, but expiry is compared with ``clock()`` on every call,
    so a permission stops counting the moment it expires even when its row
    is still cached.
    """

    def __init__(self, session, cache=None, clock: Callable[[], datetime] = utcnow, ttl: int = 30):
        self.session = session
        self.cache = cache
        self.clock = clock
        self.ttl = ttl

    def resolve(self, user_id: int, system_id: str, required_role: str = "read") -> bool:
        roles = self.effective_roles(user_id, system_id)
        return required_role in roles or ADMIN_ROLE in roles

    def resolve_any(self, user_id: int, system_id: str, roles: Iterable[str]) -> bool:
        held = self.effective_roles(user_id, system_id)
        if ADMIN_ROLE in held:
            return True
        return any(role in held for role in roles)

    def effective_roles(self, user_id: int, system_id: str) -> set[str]:
        now = self.clock()
        return {
            row.role
            for row in self.rows_for(user_id)
            if row.system_id in (system_id, GLOBAL_SYSTEM_ID) and row.active(now)
        }

    def effective_systems(self, user_id: int) -> dict[str, set[str]]:
        now = self.clock()
        systems: dict[str, set[str]] = {}
        for row in self.rows_for(user_id):
            if row.active(now):
                systems.setdefault(row.system_id, set()).add(row.role)
        return systems

    def rows_for(self, user_id: int) -> list[PermissionRow]:
        if self.cache is None:
            return self._load_rows(user_id)
        raw = self.cache.get_or_set(
            f"{CACHE_PREFIX}{user_id}:rows",
            lambda: [self._dump(row) for row in self._load_rows(user_id)],
            self.ttl,
        )
        return [self._load(item) for item in raw]

    def invalidate(self, user_id: int | None = None) -> None:
        if self.cache is None:
            return
        if user_id is None:
            self.cache.invalidate(CACHE_PREFIX)
        else:
            self.cache.invalidate(f"{CACHE_PREFIX}{user_id}:")

    def _load_rows(self, user_id: int) -> list[PermissionRow]:
        direct = self.session.execute(
            select(Permission.system_id, Role.name, Permission.expiry)
            .join(Role, Role.id == Permission.role_id)
            .where(Permission.user_id == user_id)
        ).all()
        via_groups = self.session.execute(
            select(GroupPermission.system_id, Role.name, GroupPermission.expiry)
            .join(Role, Role.id == GroupPermission.role_id)
            .join(UserGroup, UserGroup.group_id == GroupPermission.group_id)
            .where(UserGroup.user_id == user_id)
        ).all()
        rows = [PermissionRow(s, r, e, "direct") for s, r, e in direct]
        rows.extend(PermissionRow(s, r, e, "group") for s, r, e in via_groups)
        return rows

    @staticmethod
    def _dump(row: PermissionRow) -> list:
        expiry = row.expiry.isoformat() if row.expiry else None
        return [row.system_id, row.role, expiry, row.source]

    @staticmethod
    def _load(item) -> PermissionRow:
        system_id, role, expiry, source = item
        return PermissionRow(
            system_id,
            role,
            datetime.fromisoformat(expiry) if expiry else None,
            source,
        )
