"""Granting and revoking direct and group permissions."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from audit import record_audit
from errors import AlreadyGranted, InvalidExpiry, NotFound
from models import Group, GroupPermission, Permission, Role, User


def parse_expiry(value) -> datetime | None:
    """Return ``value`` as a naive UTC datetime.

    Accepts ``None``, empty strings, datetimes and ISO-8601 strings with a
    ``Z`` suffix or an explicit offset.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidExpiry(f"Invalid expiry date: {value}") from None
    else:
        raise InvalidExpiry(f"Invalid expiry date: {value!r}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def serialize_permission(perm) -> dict:
    data = {
        "id": perm.id,
        "systemId": perm.system_id,
        "roleId": perm.role_id,
        "role": perm.role.name if perm.role else None,
        "expiry": perm.expiry.isoformat() if perm.expiry else None,
        "createdBy": perm.created_by,
        "createdAt": perm.created_at.isoformat() if perm.created_at else None,
    }
    if isinstance(perm, Permission):
        data["userId"] = perm.user_id
    else:
        data["groupId"] = perm.group_id
    return data


class PermissionGrantManager:
    def __init__(self, session, resolver=None):
        self.session = session
        self.resolver = resolver

    # -- users ------------------------------------------------------------
    def grant_user_permission(self, user_id, system_id, role_id, expiry=None, granted_by=None) -> Permission:
        expiry_at = parse_expiry(expiry)
        if self.session.get(User, user_id) is None:
            raise NotFound("User not found")
        self._require_role(role_id)
        existing = (
            self.session.query(Permission)
            .filter_by(user_id=user_id, system_id=system_id, role_id=role_id)
            .first()
        )
        if existing is not None:
            raise AlreadyGranted()

        perm = Permission(
            user_id=user_id,
            system_id=system_id,
            role_id=role_id,
            expiry=expiry_at,
            created_by=None if granted_by is None else str(granted_by),
        )
        self.session.add(perm)
        self._commit_grant(
            "GRANTED",
            perm,
            user_id=user_id,
            performed_by=granted_by,
        )
        self._invalidate(user_id)
        return perm

    def revoke_user_permission(self, user_id, permission_id, revoked_by=None) -> None:
        perm = self.session.get(Permission, permission_id)
        if perm is None or perm.user_id != user_id:
            raise NotFound("Permission not found")
        details = {"revokedPermission": serialize_permission(perm)}
        self.session.delete(perm)
        record_audit(
            self.session,
            "REVOKED",
            user_id=user_id,
            system_id=perm.system_id,
            role_id=perm.role_id,
            performed_by=revoked_by,
            details=details,
        )
        self.session.commit()
        self._invalidate(user_id)

    def list_user_permissions(self, user_id) -> list[Permission]:
        if self.session.get(User, user_id) is None:
            raise NotFound("User not found")
        return (
            self.session.query(Permission)
            .filter_by(user_id=user_id)
            .order_by(Permission.system_id, Permission.id)
            .all()
        )

    # -- groups -----------------------------------------------------------
    def grant_group_permission(self, group_id, system_id, role_id, expiry=None, granted_by=None) -> GroupPermission:
        expiry_at = parse_expiry(expiry)
        if self.session.get(Group, group_id) is None:
            raise NotFound("Group not found")
        self._require_role(role_id)
        existing = (
            self.session.query(GroupPermission)
            .filter_by(group_id=group_id, system_id=system_id, role_id=role_id)
            .first()
        )
        if existing is not None:
            raise AlreadyGranted()

        perm = GroupPermission(
            group_id=group_id,
            system_id=system_id,
            role_id=role_id,
            expiry=expiry_at,
            created_by=None if granted_by is None else str(granted_by),
        )
        self.session.add(perm)
        self._commit_grant(
            "GROUP_PERMISSION_GRANTED",
            perm,
            performed_by=granted_by,
            extra={"groupId": group_id},
        )
        self._invalidate()
        return perm

    def revoke_group_permission(self, group_id, permission_id, revoked_by=None) -> None:
        perm = self.session.get(GroupPermission, permission_id)
        if perm is None or perm.group_id != group_id:
            raise NotFound("Permission not found")
        details = {"groupId": group_id, "revokedPermission": serialize_permission(perm)}
        self.session.delete(perm)
        record_audit(
            self.session,
            "GROUP_PERMISSION_REVOKED",
            system_id=perm.system_id,
            role_id=perm.role_id,
            performed_by=revoked_by,
            details=details,
        )
        self.session.commit()
        self._invalidate()

    def list_group_permissions(self, group_id) -> list[GroupPermission]:
        if self.session.get(Group, group_id) is None:
            raise NotFound("Group not found")
        return (
            self.session.query(GroupPermission)
            .filter_by(group_id=group_id)
            .order_by(GroupPermission.system_id, GroupPermission.id)
            .all()
        )

    # -- helpers ----------------------------------------------------------
    def _require_role(self, role_id) -> Role:
        role = self.session.get(Role, role_id)
        if role is None:
            raise NotFound("Role not found")
        return role

    def _commit_grant(self, action, perm, *, user_id=None, performed_by=None, extra=None):
        try:
            self.session.flush()
            details = {"newPermission": serialize_permission(perm)}
            if extra:
                details.update(extra)
            record_audit(
                self.session,
                action,
                user_id=user_id,
                system_id=perm.system_id,
                role_id=perm.role_id,
                performed_by=performed_by,
                details=details,
            )
            self.session.commit()
        except IntegrityError:
            # a concurrent grant of the same triple won the race
            self.session.rollback()
            raise AlreadyGranted() from None

    def _invalidate(self, user_id=None) -> None:
        if self.resolver is not None:
            self.resolver.invalidate(user_id)
