from datetime import timedelta

import pytest
from conftest import make_user

import models
from audit import export_csv, export_pdf, query_audit, record_audit


def test_audit_rows_are_immutable(db):
    entry = record_audit(db, "GRANTED", user_id=1, system_id="forms", performed_by=2)
    db.commit()

    entry.action = "REVOKED"
    with pytest.raises(models.AuditImmutableError):
        db.commit()
    db.rollback()

    db.delete(db.get(models.PermissionAudit, entry.id))
    with pytest.raises(models.AuditImmutableError):
        db.commit()
    db.rollback()

    assert db.get(models.PermissionAudit, entry.id).action == "GRANTED"


def test_record_audit_joins_caller_transaction(db):
    record_audit(db, "CREATE_GROUP", details={"name": "QA"})
    db.rollback()
    assert db.query(models.PermissionAudit).count() == 0


def test_query_filters_and_paginates(db):
    for i in range(5):
        record_audit(db, "GRANTED", user_id=1, system_id="forms", performed_by=9)
    record_audit(db, "REVOKED", user_id=2, system_id="policies", performed_by=9)
    db.commit()

    result = query_audit(db, {"action": "GRANTED"}, page=2, page_size=2)
    assert len(result["logs"]) == 2
    assert result["pagination"] == {"total": 5, "page": 2, "pageSize": 2, "totalPages": 3}

    by_user = query_audit(db, {"user_id": 2})
    assert [row.action for row in by_user["logs"]] == ["REVOKED"]

    future = models.utcnow() + timedelta(days=1)
    assert query_audit(db, {"start_date": future})["pagination"]["total"] == 0


def test_exports(db):
    record_audit(db, "ADD_USER_TO_GROUP", user_id=3, performed_by=1)
    db.commit()
    rows = query_audit(db)["logs"]

    text = export_csv(rows)
    assert text.splitlines()[0] == "timestamp,action,user_id,system_id,role_id,performed_by"
    assert "ADD_USER_TO_GROUP" in text
    assert export_pdf(rows).startswith(b"%PDF")


def test_audit_endpoint(client, db, admin, admin_headers):
    target = make_user(db, "target")
    client.post(
        "/api/groups",
        json={"name": "QA", "userIds": [target.id]},
        headers=admin_headers,
    )

    resp = client.get("/api/permissions/audit?action=CREATE_GROUP&pageSize=10", headers=admin_headers)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["pagination"]["total"] == 1
    log = body["logs"][0]
    assert log["performedBy"] == str(admin.id)
    assert log["label"] == "Group created"

    export = client.get("/api/permissions/audit/export?format=csv", headers=admin_headers)
    assert export.mimetype == "text/csv"
    assert client.get("/api/permissions/audit/export?format=xml", headers=admin_headers).status_code == 400
