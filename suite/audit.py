from __future__ import annotations

import csv
import io
import math
from datetime import datetime
from typing import Mapping, Dict

from fpdf import FPDF
from sqlalchemy import func, select

from models import PermissionAudit

# Display labels for permission audit actions, used by exports.
AUDIT_DISPLAY: Mapping[str, Dict[str, str]] = {
    "GRANTED": {"label": "Permission granted"},
    "REVOKED": {"label": "Permission revoked"},
    "GROUP_PERMISSION_GRANTED": {"label": "Group permission granted"},
    "GROUP_PERMISSION_REVOKED": {"label": "Group permission revoked"},
    "CREATE_GROUP": {"label": "Group created"},
    "UPDATE_GROUP": {"label": "Group updated"},
    "DELETE_GROUP": {"label": "Group deleted"},
    "ADD_USER_TO_GROUP": {"label": "User added to group"},
    "REMOVE_USER_FROM_GROUP": {"label": "User removed from group"},
    "CREATE_ROLE": {"label": "Role created"},
    "UPDATE_ROLE": {"label": "Role updated"},
    "DELETE_ROLE": {"label": "Role deleted"},
    "USER_STATUS_CHANGED": {"label": "User status changed"},
    "USER_INVITED": {"label": "User invited"},
    "INVITE_ACCEPTED": {"label": "Invite accepted"},
}


def action_label(action: str) -> str:
    return AUDIT_DISPLAY.get(action, {}).get("label", action)


def record_audit(
    session,
    action: str,
    *,
    user_id=None,
    system_id=None,
    role_id=None,
    performed_by=None,
    details=None,
) -> PermissionAudit:
    """Add an audit entry to the caller's transaction.

    The entry is flushed but not committed, so it lands or disappears
    together with the change it describes.
    """
    entry = PermissionAudit(
        action=action,
        user_id=user_id,
        system_id=system_id,
        role_id=role_id,
        performed_by=None if performed_by is None else str(performed_by),
        details=details,
    )
    session.add(entry)
    session.flush()
    return entry


def query_audit(session, filters: Mapping | None = None, page: int = 1, page_size: int = 50) -> dict:
    filters = filters or {}
    stmt = select(PermissionAudit)
    if filters.get("user_id") is not None:
        stmt = stmt.where(PermissionAudit.user_id == filters["user_id"])
    if filters.get("action"):
        stmt = stmt.where(PermissionAudit.action == filters["action"])
    if filters.get("system_id"):
        stmt = stmt.where(PermissionAudit.system_id == filters["system_id"])
    if filters.get("role_id") is not None:
        stmt = stmt.where(PermissionAudit.role_id == filters["role_id"])
    if filters.get("performed_by"):
        stmt = stmt.where(PermissionAudit.performed_by == str(filters["performed_by"]))
    if filters.get("start_date"):
        stmt = stmt.where(PermissionAudit.created_at >= filters["start_date"])
    if filters.get("end_date"):
        stmt = stmt.where(PermissionAudit.created_at <= filters["end_date"])

    total = session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    page = max(page, 1)
    rows = (
        session.execute(
            stmt.order_by(PermissionAudit.created_at.desc(), PermissionAudit.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        .scalars()
        .all()
    )
    return {
        "logs": rows,
        "pagination": {
            "total": total,
            "page": page,
            "pageSize": page_size,
            "totalPages": math.ceil(total / page_size) if page_size else 0,
        },
    }


def serialize_audit(entry: PermissionAudit) -> dict:
    return {
        "id": entry.id,
        "action": entry.action,
        "label": action_label(entry.action),
        "userId": entry.user_id,
        "systemId": entry.system_id,
        "roleId": entry.role_id,
        "performedBy": entry.performed_by,
        "details": entry.details,
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
    }


def export_csv(rows) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(["timestamp", "action", "user_id", "system_id", "role_id", "performed_by"])
    for row in rows:
        writer.writerow([
            _fmt(row.created_at),
            row.action,
            row.user_id,
            row.system_id,
            row.role_id,
            row.performed_by,
        ])
    return output.getvalue()


def export_pdf(rows) -> bytes:
    pdf = FPDF()
    pdf.add_page()
    pdf.set_font("Helvetica", size=10)
    pdf.cell(0, 10, "Permission audit log", new_x="LMARGIN", new_y="NEXT")
    for row in rows:
        line = (
            f"{_fmt(row.created_at)} | {action_label(row.action)} | user:{row.user_id} "
            f"| system:{row.system_id} | role:{row.role_id} | by:{row.performed_by}"
        )
        pdf.cell(0, 8, line, new_x="LMARGIN", new_y="NEXT")
    return bytes(pdf.output())


def _fmt(value: datetime | None) -> str:
    return value.isoformat() if value else ""
