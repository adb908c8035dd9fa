from datetime import timedelta

import pytest
from conftest import make_user
from redis.exceptions import ConnectionError as RedisConnectionError

import models
from auth import encode_token
from notifications import send_email


def _invite(client, admin_headers, **overrides):
    body = {"name": "Jane Doe", "email": "jane@example.com", "systemId": "policies"}
    body.update(overrides)
    resp = client.post("/api/users/invite", json=body, headers=admin_headers)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["invite"]


def _token(db, invite_id):
    db.expire_all()
    return db.get(models.Invite, invite_id).token


def test_invite_enqueues_email(client, db, admin_headers, queue):
    invite = _invite(client, admin_headers)

    assert invite["status"] == "PENDING"
    queue.enqueue.assert_called_once()
    args, kwargs = queue.enqueue.call_args
    assert args[0] is send_email
    assert args[1] == "jane@example.com"
    assert "accept-invite?token=" in args[3]
    assert kwargs["retry"].max == 3


def test_accept_creates_user_with_default_role(client, db, admin_headers, roles, queue):
    invite = _invite(client, admin_headers)
    token = _token(db, invite["id"])

    resp = client.get(f"/api/accept-invite?token={token}")
    assert resp.status_code == 200
    user = resp.get_json()["user"]
    assert user["username"] == "jane"
    assert user["status"] == "ACTIVE"

    db.expire_all()
    stored = db.get(models.Invite, invite["id"])
    assert stored.status == models.InviteStatus.ACCEPTED
    assert stored.user_id == user["id"]
    perm = db.query(models.Permission).filter_by(user_id=user["id"]).one()
    assert (perm.system_id, perm.role.name, perm.created_by) == ("policies", "read", models.SYSTEM_ACTOR)
    assert queue.enqueue.call_count == 2


def test_accept_uses_invited_role_and_unique_username(client, db, admin_headers, roles):
    make_user(db, "jane", email="jane@other.org")
    invite = _invite(client, admin_headers, roleId=roles["write"].id)

    resp = client.get(f"/api/accept-invite?token={_token(db, invite['id'])}")
    user = resp.get_json()["user"]
    assert user["username"] == "jane1"
    db.expire_all()
    perm = db.query(models.Permission).filter_by(user_id=user["id"]).one()
    assert perm.role.name == "write"


def test_accept_twice_returns_existing_user(client, db, admin_headers, roles):
    invite = _invite(client, admin_headers)
    token = _token(db, invite["id"])

    first = client.get(f"/api/accept-invite?token={token}").get_json()["user"]
    again = client.get(f"/api/accept-invite?token={token}")
    assert again.status_code == 200
    assert again.get_json()["user"]["id"] == first["id"]
    assert db.query(models.User).filter_by(email="jane@example.com").count() == 1


def test_expired_invite_is_marked(client, db, admin_headers):
    invite = _invite(client, admin_headers)
    token = _token(db, invite["id"])
    stored = db.get(models.Invite, invite["id"])
    stored.expires_at = models.utcnow() - timedelta(minutes=1)
    db.commit()

    resp = client.get(f"/api/accept-invite?token={token}")
    assert resp.status_code == 400
    db.expire_all()
    assert db.get(models.Invite, invite["id"]).status == models.InviteStatus.EXPIRED


def test_cancelled_invite_is_rejected(client, db, admin_headers):
    invite = _invite(client, admin_headers)
    token = _token(db, invite["id"])
    stored = db.get(models.Invite, invite["id"])
    stored.status = models.InviteStatus.CANCELLED
    db.commit()

    assert client.get(f"/api/accept-invite?token={token}").status_code == 400


def test_inactive_user_is_reactivated(client, db, admin_headers, queue):
    existing = make_user(db, "jane", email="jane@example.com", status=models.UserStatus.INACTIVE, name="Old Name")
    invite = _invite(client, admin_headers)

    resp = client.get(f"/api/accept-invite?token={_token(db, invite['id'])}")
    assert resp.get_json()["user"]["id"] == existing.id
    db.expire_all()
    assert db.get(models.User, existing.id).status == models.UserStatus.ACTIVE
    assert db.get(models.User, existing.id).name == "Jane Doe"
    assert queue.enqueue.call_count == 2


def test_active_user_cannot_be_invited(client, db, admin_headers):
    make_user(db, "jane", email="jane@example.com")
    resp = client.post(
        "/api/users/invite",
        json={"name": "Jane", "email": "jane@example.com", "systemId": "policies"},
        headers=admin_headers,
    )
    assert resp.status_code == 409


@pytest.mark.parametrize("query", ["", "?token=garbage"])
def test_bad_tokens_are_400(client, query):
    assert client.get(f"/api/accept-invite{query}").status_code == 400


def test_session_token_is_not_an_invite(app, client, db, admin):
    with app.app_context():
        token = encode_token({"sub": str(admin.id)}, timedelta(hours=1))
    assert client.get(f"/api/accept-invite?token={token}").status_code == 400


def test_email_failure_does_not_undo_acceptance(client, db, admin_headers, roles, queue):
    invite = _invite(client, admin_headers)
    token = _token(db, invite["id"])
    queue.enqueue.side_effect = RedisConnectionError("down")

    resp = client.get(f"/api/accept-invite?token={token}")
    assert resp.status_code == 200
    db.expire_all()
    assert db.get(models.Invite, invite["id"]).status == models.InviteStatus.ACCEPTED
