from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Text,
    ForeignKey,
    DateTime,
    JSON,
    Enum,
    UniqueConstraint,
    Boolean,
    event,
)
from sqlalchemy.orm import (
    declarative_base,
    declared_attr,
    relationship,
    sessionmaker,
)

Base = declarative_base()

# Permissions granted on this system id apply to every system.
GLOBAL_SYSTEM_ID = "*"
# Holding this role on a system satisfies any role requirement there.
ADMIN_ROLE = "Admin"
SYSTEM_ACTOR = "SYSTEM"


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserStatus(PyEnum):
    ACTIVE = "ACTIVE"
    INVITED = "INVITED"
    SUSPENDED = "SUSPENDED"
    INACTIVE = "INACTIVE"


class InviteStatus(PyEnum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


DEFAULT_ROLES = {
    "read": "View documents and records",
    "write": "Create and edit documents and records",
    "delete": "Archive or delete documents and records",
    "approve": "Approve documents and records",
    "manage_users": "Manage users, groups and permissions",
    ADMIN_ROLE: "Full access to the system",
}


class Database:
    """Engine and session factory for one database URL.

    Built by the application factory and handed to services, so nothing in
    the project holds a module level engine.
    """

    def __init__(self, url: str, echo: bool = False):
        connect_args = {}
        if url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.url = url
        self.engine = create_engine(url, echo=echo, connect_args=connect_args)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def session(self):
        return self.SessionLocal()

    def create_all(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    username = Column(String, unique=True, nullable=False)
    email = Column(String, unique=True, nullable=False)
    name = Column(String)
    password_hash = Column(String)
    status = Column(
        Enum(UserStatus, name="user_status"),
        default=UserStatus.ACTIVE,
        nullable=False,
    )
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    permissions = relationship("Permission", back_populates="user", foreign_keys="Permission.user_id")
    memberships = relationship("UserGroup", back_populates="user", foreign_keys="UserGroup.user_id")

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE


class Role(Base):
    __tablename__ = "roles"
    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    description = Column(Text)
    system_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Permission(Base):
    __tablename__ = "permissions"
    __table_args__ = (
        UniqueConstraint("user_id", "system_id", "role_id", name="uq_permission_user_system_role"),
    )
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    system_id = Column(String, nullable=False, index=True)
    role_id = Column(Integer, ForeignKey("roles.id"), nullable=False)
    expiry = Column(DateTime, nullable=True)
    created_by = Column(String)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship(User, back_populates="permissions", foreign_keys=[user_id])
    role = relationship(Role)


class Group(Base):
    __tablename__ = "groups"
    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    description = Column(Text)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    members = relationship("UserGroup", back_populates="group")
    permissions = relationship("GroupPermission", back_populates="group")


class UserGroup(Base):
    __tablename__ = "user_groups"
    __table_args__ = (UniqueConstraint("user_id", "group_id", name="uq_user_group"),)
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    group_id = Column(Integer, ForeignKey("groups.id"), nullable=False, index=True)
    added_by = Column(String)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship(User, back_populates="memberships", foreign_keys=[user_id])
    group = relationship(Group, back_populates="members")


class GroupPermission(Base):
    __tablename__ = "group_permissions"
    __table_args__ = (
        UniqueConstraint("group_id", "system_id", "role_id", name="uq_group_permission"),
    )
    id = Column(Integer, primary_key=True)
    group_id = Column(Integer, ForeignKey("groups.id"), nullable=False, index=True)
    system_id = Column(String, nullable=False, index=True)
    role_id = Column(Integer, ForeignKey("roles.id"), nullable=False)
    expiry = Column(DateTime, nullable=True)
    created_by = Column(String)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    group = relationship(Group, back_populates="permissions")
    role = relationship(Role)


class PermissionAudit(Base):
    __tablename__ = "permission_audits"
    id = Column(Integer, primary_key=True)
    action = Column(String, nullable=False, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    system_id = Column(String, nullable=True)
    role_id = Column(Integer, nullable=True)
    performed_by = Column(String)
    details = Column(JSON)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class AuditImmutableError(RuntimeError):
    pass


@event.listens_for(PermissionAudit, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditImmutableError("permission audit entries are append-only")


@event.listens_for(PermissionAudit, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditImmutableError("permission audit entries are append-only")


class Invite(Base):
    __tablename__ = "invites"
    id = Column(Integer, primary_key=True)
    email = Column(String, nullable=False, index=True)
    name = Column(String)
    system_id = Column(String, nullable=False)
    role_id = Column(Integer, ForeignKey("roles.id"), nullable=True)
    invited_by = Column(String)
    token = Column(Text)
    status = Column(
        Enum(InviteStatus, name="invite_status"),
        default=InviteStatus.PENDING,
        nullable=False,
    )
    expires_at = Column(DateTime, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    role = relationship(Role)
    user = relationship(User)


# ---------------------------------------------------------------------------
# Document modules
# ---------------------------------------------------------------------------


class CategoryMixin:
    id = Column(Integer, primary_key=True)
    title = Column(String, nullable=False)
    order = Column(Integer, default=0, nullable=False)
    archived = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class DocumentMixin:
    """Columns shared by every versioned, categorised, approvable document."""

    __category_table__ = None

    id = Column(Integer, primary_key=True)
    title = Column(String, nullable=False, index=True)
    version = Column(String, nullable=False)
    issue_date = Column(DateTime, nullable=False)
    location = Column(String, nullable=False)
    content = Column(Text)
    file_key = Column(String)
    order = Column(Integer, default=0, nullable=False)
    archived = Column(Boolean, default=False, nullable=False, index=True)
    highlighted = Column(Boolean, default=False, nullable=False)
    approved = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @declared_attr
    def category_id(cls):
        return Column(Integer, ForeignKey(f"{cls.__category_table__}.id"), nullable=False, index=True)

    @declared_attr
    def created_by_id(cls):
        return Column(Integer, ForeignKey("users.id"), nullable=True)

    @declared_attr
    def updated_by_id(cls):
        return Column(Integer, ForeignKey("users.id"), nullable=True)


def _document_models(table: str, class_prefix: str):
    category = type(
        f"{class_prefix}Category",
        (CategoryMixin, Base),
        {"__tablename__": f"{table}_categories"},
    )
    document = type(
        class_prefix,
        (DocumentMixin, Base),
        {
            "__tablename__": table,
            "__category_table__": f"{table}_categories",
            "category": relationship(category),
        },
    )
    return document, category


Policy, PolicyCategory = _document_models("policies", "Policy")
Manual, ManualCategory = _document_models("manuals", "Manual")
Procedure, ProcedureCategory = _document_models("procedures", "Procedure")
Form, FormCategory = _document_models("forms", "Form")
Certificate, CertificateCategory = _document_models("certificates", "Certificate")
Register, RegisterCategory = _document_models("registers", "Register")
Coshh, CoshhCategory = _document_models("coshh", "Coshh")
RiskAssessment, RiskAssessmentCategory = _document_models("risk_assessments", "RiskAssessment")


class DocumentVersion(Base):
    __tablename__ = "document_versions"
    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False, index=True)
    record_id = Column(Integer, nullable=False, index=True)
    version = Column(String, nullable=False)
    notes = Column(Text)
    file_key = Column(String)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class DocumentReview(Base):
    __tablename__ = "document_reviews"
    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False, index=True)
    record_id = Column(Integer, nullable=False, index=True)
    reviewer_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    details = Column(Text)
    review_date = Column(DateTime, default=utcnow, nullable=False)
    next_review_date = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
