from datetime import timedelta

from conftest import grant, make_user

import models
from caching import TTLCache
from groups import GroupMembershipManager
from permissions import PermissionResolver


def test_direct_permission_without_expiry_allows(db, roles):
    u1 = make_user(db, "u1")
    grant(db, u1, "policies", roles["write"])

    resolver = PermissionResolver(db)
    assert resolver.resolve(u1.id, "policies", "write") is True
    assert resolver.resolve(u1.id, "policies", "delete") is False
    assert resolver.resolve(u1.id, "forms", "write") is False


def test_expired_permission_denies(db, roles):
    u1 = make_user(db, "u1")
    grant(db, u1, "policies", roles["write"], expiry=models.utcnow() - timedelta(seconds=1))

    assert PermissionResolver(db).resolve(u1.id, "policies", "write") is False


def test_permission_expires_without_revoke(db, roles):
    u1 = make_user(db, "u1")
    now = models.utcnow()
    grant(db, u1, "policies", roles["write"], expiry=now + timedelta(hours=1))
    clock = {"now": now}
    resolver = PermissionResolver(db, cache=TTLCache(), clock=lambda: clock["now"])

    assert resolver.resolve(u1.id, "policies", "write") is True
    clock["now"] = now + timedelta(hours=1)
    # the cached row is reused but its expiry is checked again
    assert resolver.resolve(u1.id, "policies", "write") is False


def test_group_permission_applies_to_members(db, roles):
    u1 = make_user(db, "u1")
    u2 = make_user(db, "u2")
    u3 = make_user(db, "u3")
    qa = GroupMembershipManager(db).create_group("QA", initial_user_ids=[u1.id, u2.id])
    db.add(models.GroupPermission(group_id=qa.id, system_id="forms", role_id=roles["read"].id))
    db.commit()

    resolver = PermissionResolver(db)
    assert resolver.resolve(u1.id, "forms", "read") is True
    assert resolver.resolve(u2.id, "forms", "read") is True
    assert resolver.resolve(u3.id, "forms", "read") is False


def test_expired_group_permission_is_ignored(db, roles):
    u1 = make_user(db, "u1")
    qa = GroupMembershipManager(db).create_group("QA", initial_user_ids=[u1.id])
    db.add(
        models.GroupPermission(
            group_id=qa.id,
            system_id="forms",
            role_id=roles["read"].id,
            expiry=models.utcnow() - timedelta(minutes=5),
        )
    )
    db.commit()

    assert PermissionResolver(db).resolve(u1.id, "forms", "read") is False


def test_admin_role_overrides_on_its_system(db, roles):
    u1 = make_user(db, "u1")
    grant(db, u1, "registers", roles["Admin"])

    resolver = PermissionResolver(db)
    assert resolver.resolve(u1.id, "registers", "delete") is True
    assert resolver.resolve(u1.id, "manuals", "read") is False


def test_wildcard_system_applies_everywhere(db, roles):
    u1 = make_user(db, "u1")
    grant(db, u1, models.GLOBAL_SYSTEM_ID, roles["read"])

    resolver = PermissionResolver(db)
    assert resolver.resolve(u1.id, "coshh", "read") is True
    assert resolver.resolve(u1.id, "coshh", "write") is False


def test_user_without_rows_is_denied(db, roles):
    u1 = make_user(db, "u1")
    resolver = PermissionResolver(db)
    assert resolver.resolve(u1.id, "policies", "read") is False
    assert resolver.effective_systems(u1.id) == {}


def test_effective_systems_merges_direct_and_group(db, roles):
    u1 = make_user(db, "u1")
    grant(db, u1, "policies", roles["write"])
    qa = GroupMembershipManager(db).create_group("QA", initial_user_ids=[u1.id])
    db.add(models.GroupPermission(group_id=qa.id, system_id="policies", role_id=roles["read"].id))
    db.commit()

    assert PermissionResolver(db).effective_systems(u1.id) == {"policies": {"read", "write"}}


def test_invalidate_drops_cached_rows(db, roles):
    u1 = make_user(db, "u1")
    cache = TTLCache()
    resolver = PermissionResolver(db, cache=cache)
    assert resolver.resolve(u1.id, "policies", "read") is False

    grant(db, u1, "policies", roles["read"])
    assert resolver.resolve(u1.id, "policies", "read") is False

    resolver.invalidate(u1.id)
    assert resolver.resolve(u1.id, "policies", "read") is True
