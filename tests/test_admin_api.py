from conftest import auth_headers, grant, make_user

import models


def test_admin_routes_require_manage_users(app, client, db, roles):
    user = make_user(db, "plain")
    grant(db, user, "policies", roles["Admin"])
    headers = auth_headers(app, user)

    assert client.get("/api/groups", headers=headers).status_code == 403
    assert client.get("/api/groups").status_code == 401


def test_global_admin_passes_admin_routes(app, client, db, roles):
    root = make_user(db, "root")
    grant(db, root, models.GLOBAL_SYSTEM_ID, roles["Admin"])
    assert client.get("/api/roles", headers=auth_headers(app, root)).status_code == 200


def test_group_lifecycle(client, db, admin_headers):
    u1 = make_user(db, "u1")
    u2 = make_user(db, "u2")

    resp = client.post("/api/groups", json={"name": "QA", "userIds": [u1.id]}, headers=admin_headers)
    assert resp.status_code == 201
    group_id = resp.get_json()["id"]

    dup = client.post("/api/groups", json={"name": "QA"}, headers=admin_headers)
    assert dup.status_code == 409

    resp = client.post(f"/api/groups/{group_id}/users", json={"userId": u2.id}, headers=admin_headers)
    assert resp.status_code == 201
    again = client.post(f"/api/groups/{group_id}/users", json={"userId": u2.id}, headers=admin_headers)
    assert again.status_code == 409
    missing = client.post("/api/groups/999/users", json={"userId": u2.id}, headers=admin_headers)
    assert missing.status_code == 404

    members = client.get(f"/api/groups/{group_id}/users", headers=admin_headers).get_json()
    assert {m["username"] for m in members} == {"u1", "u2"}

    resp = client.delete(f"/api/groups/{group_id}/users/{u1.id}", headers=admin_headers)
    assert resp.status_code == 200
    groups = client.get("/api/groups", headers=admin_headers).get_json()
    assert groups[0]["memberCount"] == 1

    assert client.put(f"/api/groups/{group_id}", json={"name": "Quality"}, headers=admin_headers).status_code == 200
    assert client.delete(f"/api/groups/{group_id}", headers=admin_headers).status_code == 200
    assert client.get("/api/groups", headers=admin_headers).get_json() == []


def test_user_permission_endpoints(app, client, db, roles, admin_headers):
    user = make_user(db, "u1")
    url = f"/api/permissions/users/{user.id}"
    body = {"systemId": "policies", "roleId": roles["write"].id, "expiry": "2099-01-01T00:00:00Z"}

    resp = client.post(url, json=body, headers=admin_headers)
    assert resp.status_code == 201
    perm = resp.get_json()
    assert perm["expiry"] == "2099-01-01T00:00:00"
    assert client.post(url, json=body, headers=admin_headers).status_code == 409

    bad = dict(body, systemId="forms", expiry="soon")
    resp = client.post(url, json=bad, headers=admin_headers)
    assert resp.status_code == 400
    assert resp.get_json()["error"].startswith("Invalid expiry")

    user_headers = auth_headers(app, user)
    assert client.get("/api/policies", headers=user_headers).status_code == 403
    assert client.post("/api/policies", json={}, headers=user_headers).status_code == 400

    listed = client.get(url, headers=admin_headers).get_json()
    assert [p["role"] for p in listed] == ["write"]

    assert client.delete(f"{url}/{perm['id']}", headers=admin_headers).status_code == 200
    assert client.delete(f"{url}/{perm['id']}", headers=admin_headers).status_code == 404
    assert client.post("/api/policies", json={}, headers=user_headers).status_code == 403


def test_group_permission_endpoints(client, db, roles, admin_headers):
    group = client.post("/api/groups", json={"name": "QA"}, headers=admin_headers).get_json()
    url = f"/api/permissions/groups/{group['id']}"

    resp = client.post(url, json={"systemId": "forms", "roleId": roles["read"].id}, headers=admin_headers)
    assert resp.status_code == 201
    perm_id = resp.get_json()["id"]
    assert resp.get_json()["groupId"] == group["id"]
    assert client.get(url, headers=admin_headers).get_json()[0]["systemId"] == "forms"
    assert client.delete(f"{url}/{perm_id}", headers=admin_headers).status_code == 200


def test_role_endpoints(client, db, roles, admin_headers):
    resp = client.post("/api/roles", json={"name": "auditor", "description": "Reads audits"}, headers=admin_headers)
    assert resp.status_code == 201
    role_id = resp.get_json()["id"]
    assert client.post("/api/roles", json={"name": "auditor"}, headers=admin_headers).status_code == 409
    assert client.put(f"/api/roles/{role_id}", json={"name": "read"}, headers=admin_headers).status_code == 409

    in_use = client.delete(f"/api/roles/{roles['manage_users'].id}", headers=admin_headers)
    assert in_use.status_code == 409
    assert client.delete(f"/api/roles/{role_id}", headers=admin_headers).status_code == 200


def test_user_status_changes(client, db, admin_headers):
    user = make_user(db, "u1")

    resp = client.put(f"/api/users/{user.id}/status", json={"status": "SUSPENDED"}, headers=admin_headers)
    assert resp.get_json()["status"] == "SUSPENDED"
    assert client.put(
        f"/api/users/{user.id}/status", json={"status": "DELETED"}, headers=admin_headers
    ).status_code == 400

    client.post(f"/api/users/{user.id}/deactivate", headers=admin_headers)
    inactive = client.get("/api/users?status=inactive", headers=admin_headers).get_json()
    assert [u["username"] for u in inactive] == ["u1"]

    resp = client.post(f"/api/users/{user.id}/reactivate", headers=admin_headers)
    assert resp.get_json()["status"] == "ACTIVE"
    db.expire_all()
    changes = db.query(models.PermissionAudit).filter_by(action="USER_STATUS_CHANGED").count()
    assert changes == 3
