"""Generic repository for every categorised, versioned, approvable document kind."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import func, not_, select, update

from errors import Forbidden, NotFound, ValidationFailed
from models import (
    Certificate,
    CertificateCategory,
    Coshh,
    CoshhCategory,
    DocumentReview,
    DocumentVersion,
    Form,
    FormCategory,
    Manual,
    ManualCategory,
    Policy,
    PolicyCategory,
    Procedure,
    ProcedureCategory,
    Register,
    RegisterCategory,
    RiskAssessment,
    RiskAssessmentCategory,
    utcnow,
)

logger = logging.getLogger(__name__)


class DocumentKind(str, Enum):
    """Document modules; each value doubles as the permission system id."""

    POLICIES = "policies"
    MANUALS = "manuals"
    PROCEDURES = "procedures"
    FORMS = "forms"
    CERTIFICATES = "certificates"
    REGISTERS = "registers"
    COSHH = "coshh"
    RISK_ASSESSMENTS = "risk-assessments"


DOCUMENT_MODELS = {
    DocumentKind.POLICIES: (Policy, PolicyCategory),
    DocumentKind.MANUALS: (Manual, ManualCategory),
    DocumentKind.PROCEDURES: (Procedure, ProcedureCategory),
    DocumentKind.FORMS: (Form, FormCategory),
    DocumentKind.CERTIFICATES: (Certificate, CertificateCategory),
    DocumentKind.REGISTERS: (Register, RegisterCategory),
    DocumentKind.COSHH: (Coshh, CoshhCategory),
    DocumentKind.RISK_ASSESSMENTS: (RiskAssessment, RiskAssessmentCategory),
}

EDITABLE_FIELDS = (
    "title",
    "version",
    "issue_date",
    "location",
    "category_id",
    "content",
    "file_key",
    "highlighted",
    "approved",
    "archived",
)

# bulk action -> column values it sets
FLAG_ACTIONS = {
    "archive": {"archived": True},
    "unarchive": {"archived": False},
    "approve": {"approved": True},
    "unapprove": {"approved": False},
    "highlight": {"highlighted": True},
    "unhighlight": {"highlighted": False},
}


def _iso(value):
    return value.isoformat() if value else None


def _naive_utc(data: dict) -> dict:
    """Store datetimes as naive UTC like every other timestamp column."""
    clean = {}
    for key, value in data.items():
        if isinstance(value, datetime) and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        clean[key] = value
    return clean


def serialize_category(category) -> dict:
    return {
        "id": category.id,
        "title": category.title,
        "order": category.order,
        "archived": category.archived,
    }


def serialize_document(doc) -> dict:
    return {
        "id": doc.id,
        "title": doc.title,
        "version": doc.version,
        "issueDate": _iso(doc.issue_date),
        "location": doc.location,
        "content": doc.content,
        "fileKey": doc.file_key,
        "order": doc.order,
        "archived": doc.archived,
        "highlighted": doc.highlighted,
        "approved": doc.approved,
        "categoryId": doc.category_id,
        "category": serialize_category(doc.category) if doc.category else None,
        "createdById": doc.created_by_id,
        "updatedById": doc.updated_by_id,
        "createdAt": _iso(doc.created_at),
        "updatedAt": _iso(doc.updated_at),
    }


def serialize_version(version: DocumentVersion) -> dict:
    return {
        "id": version.id,
        "recordId": version.record_id,
        "version": version.version,
        "notes": version.notes,
        "fileKey": version.file_key,
        "createdById": version.created_by_id,
        "createdAt": _iso(version.created_at),
    }


def serialize_review(review: DocumentReview) -> dict:
    return {
        "id": review.id,
        "recordId": review.record_id,
        "reviewerId": review.reviewer_id,
        "details": review.details,
        "reviewDate": _iso(review.review_date),
        "nextReviewDate": _iso(review.next_review_date),
        "createdAt": _iso(review.created_at),
    }


class DocumentRepository:
    def __init__(self, session, kind: DocumentKind):
        self.session = session
        self.kind = DocumentKind(kind)
        self.model, self.category_model = DOCUMENT_MODELS[self.kind]

    # -- reads --------------------------------------------------------------
    def list(self, archived: bool | None = False, category_id: int | None = None):
        model, category = self.model, self.category_model
        stmt = select(model).join(category, category.id == model.category_id)
        if archived is not None:
            stmt = stmt.where(model.archived == archived)
        if category_id is not None:
            stmt = stmt.where(model.category_id == category_id)
        stmt = stmt.order_by(category.order, model.order, model.title)
        return self.session.execute(stmt).scalars().all()

    def get(self, record_id: int):
        doc = self.session.get(self.model, record_id)
        if doc is None:
            raise NotFound(f"{self._label} not found")
        return doc

    # -- writes -------------------------------------------------------------
    def create(self, data: dict, user_id=None):
        data = _naive_utc(data)
        self._require_category(data["category_id"])
        doc = self.model(**{k: v for k, v in data.items() if k in EDITABLE_FIELDS})
        doc.order = self._next_order(data["category_id"])
        doc.created_by_id = user_id
        doc.updated_by_id = user_id
        self.session.add(doc)
        self.session.commit()
        logger.info("Created %s %s", self.kind.value, doc.id)
        return doc

    def update(self, record_id: int, data: dict, user_id=None):
        data = _naive_utc(data)
        doc = self.get(record_id)
        if data.get("category_id") is not None and data["category_id"] != doc.category_id:
            self._require_category(data["category_id"])
        for key, value in data.items():
            if key in EDITABLE_FIELDS and value is not None:
                setattr(doc, key, value)
        doc.updated_by_id = user_id
        self.session.commit()
        return doc

    def set_flags(self, record_id: int, action: str, user_id=None):
        doc = self.get(record_id)
        for key, value in FLAG_ACTIONS[action].items():
            setattr(doc, key, value)
        doc.updated_by_id = user_id
        self.session.commit()
        return doc

    def bulk_action(self, ids, action: str, data: dict | None = None, user_id=None) -> int:
        if action == "update":
            values = _naive_utc({k: v for k, v in (data or {}).items() if k in EDITABLE_FIELDS and v is not None})
            if not values:
                raise ValidationFailed("Update data is required")
            if "category_id" in values:
                self._require_category(values["category_id"])
        elif action in FLAG_ACTIONS:
            values = dict(FLAG_ACTIONS[action])
        else:
            raise ValidationFailed("Invalid action")
        values["updated_by_id"] = user_id
        values["updated_at"] = utcnow()
        result = self.session.execute(
            update(self.model)
            .where(self.model.id.in_(ids))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount

    def delete(self, record_id: int, user_id=None):
        """Soft delete: the record is archived, never removed."""
        doc = self.get(record_id)
        doc.archived = True
        doc.updated_by_id = user_id
        self.session.commit()
        return doc

    def bulk_delete(self, ids, permanent: bool = False, user_id=None, is_admin: bool = False) -> int:
        if not permanent:
            return self.bulk_action(ids, "archive", user_id=user_id)
        if not is_admin:
            raise Forbidden("Permanent deletion requires Admin")
        self.session.query(DocumentVersion).filter(
            DocumentVersion.kind == self.kind.value, DocumentVersion.record_id.in_(ids)
        ).delete(synchronize_session=False)
        self.session.query(DocumentReview).filter(
            DocumentReview.kind == self.kind.value, DocumentReview.record_id.in_(ids)
        ).delete(synchronize_session=False)
        count = (
            self.session.query(self.model)
            .filter(self.model.id.in_(ids))
            .delete(synchronize_session=False)
        )
        self.session.commit()
        logger.info("Permanently deleted %s %s records", count, self.kind.value)
        return count

    def reorder(self, record_id: int, direction: str) -> bool:
        """Swap ``order`` with the neighbouring record.

        The neighbour is the closest record above (``up``) or below
        (``down``) in the same category with the same archived state. Both
        rows change in one transaction; returns False when there is no
        neighbour.
        """
        if direction not in ("up", "down"):
            raise ValidationFailed("Direction must be 'up' or 'down'")
        doc = self.get(record_id)
        model = self.model
        stmt = select(model).where(
            model.category_id == doc.category_id,
            model.archived == doc.archived,
            model.id != doc.id,
        )
        if direction == "up":
            stmt = stmt.where(model.order < doc.order).order_by(model.order.desc())
        else:
            stmt = stmt.where(model.order > doc.order).order_by(model.order.asc())
        neighbour = self.session.execute(stmt.limit(1)).scalars().first()
        if neighbour is None:
            return False
        doc.order, neighbour.order = neighbour.order, doc.order
        self.session.commit()
        return True

    def toggle_highlight(self, record_id: int, user_id=None):
        model = self.model
        result = self.session.execute(
            update(model)
            .where(model.id == record_id)
            .values(highlighted=not_(model.highlighted), updated_by_id=user_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.session.rollback()
            raise NotFound(f"{self._label} not found")
        self.session.commit()
        doc = self.session.get(model, record_id)
        self.session.refresh(doc)
        return doc

    def reorder_category(self, category_id: int) -> int:
        """Renumber the live records of a category 1..n in current order."""
        self._require_category(category_id)
        docs = self._live_in_category(category_id)
        for index, doc in enumerate(docs, start=1):
            doc.order = index
        self.session.commit()
        return len(docs)

    def move_to_category(self, category_id: int, new_category_id: int) -> int:
        self._require_category(category_id)
        self._require_category(new_category_id)
        start = self._next_order(new_category_id)
        docs = self._live_in_category(category_id)
        for offset, doc in enumerate(docs):
            doc.category_id = new_category_id
            doc.order = start + offset
        self.session.commit()
        return len(docs)

    # -- categories ---------------------------------------------------------
    def list_categories(self, archived: bool = False):
        category = self.category_model
        return (
            self.session.query(category)
            .filter(category.archived == archived)
            .order_by(category.order, category.title)
            .all()
        )

    def create_category(self, title: str):
        category = self.category_model
        highest = self.session.query(func.max(category.order)).scalar()
        row = category(title=title, order=(highest or 0) + 1)
        self.session.add(row)
        self.session.commit()
        return row

    # -- versions and reviews -------------------------------------------------
    def list_versions(self, record_id: int):
        self.get(record_id)
        return (
            self.session.query(DocumentVersion)
            .filter_by(kind=self.kind.value, record_id=record_id)
            .order_by(DocumentVersion.created_at.desc(), DocumentVersion.id.desc())
            .all()
        )

    def add_version(self, record_id: int, version: str, notes=None, file_key=None, user_id=None):
        doc = self.get(record_id)
        row = DocumentVersion(
            kind=self.kind.value,
            record_id=record_id,
            version=version,
            notes=notes,
            file_key=file_key,
            created_by_id=user_id,
        )
        self.session.add(row)
        doc.version = version
        if file_key:
            doc.file_key = file_key
        doc.updated_by_id = user_id
        self.session.commit()
        return row

    def list_reviews(self, record_id: int):
        self.get(record_id)
        return (
            self.session.query(DocumentReview)
            .filter_by(kind=self.kind.value, record_id=record_id)
            .order_by(DocumentReview.review_date.desc(), DocumentReview.id.desc())
            .all()
        )

    def add_review(self, record_id: int, details=None, review_date=None, next_review_date=None, user_id=None):
        self.get(record_id)
        dates = _naive_utc({"review_date": review_date or utcnow(), "next_review_date": next_review_date})
        row = DocumentReview(
            kind=self.kind.value,
            record_id=record_id,
            reviewer_id=user_id,
            details=details,
            **dates,
        )
        self.session.add(row)
        self.session.commit()
        return row

    # -- helpers ------------------------------------------------------------
    @property
    def _label(self) -> str:
        return self.model.__name__

    def _require_category(self, category_id):
        row = self.session.get(self.category_model, category_id)
        if row is None:
            raise NotFound("Category not found")
        return row

    def _next_order(self, category_id) -> int:
        highest = (
            self.session.query(func.max(self.model.order))
            .filter(self.model.category_id == category_id)
            .scalar()
        )
        return (highest or 0) + 1

    def _live_in_category(self, category_id):
        return (
            self.session.query(self.model)
            .filter(self.model.category_id == category_id, self.model.archived == False)
            .order_by(self.model.order)
            .all()
        )
