"""Request body schemas.

Bodies arrive with camelCase keys; snake_case is accepted as well.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from flask import request
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from models import UserStatus


class BaseSchema(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
        use_enum_values=True,
        extra="ignore",
    )

    def serializable_dict(self, *, exclude_none: bool = True, by_alias: bool = True, **kwargs: Any) -> dict[str, Any]:
        return self.model_dump(exclude_none=exclude_none, by_alias=by_alias, **kwargs)


def parse_body(schema: type[BaseSchema]):
    """Validate the JSON body of the current request against ``schema``.

    A missing or non-object body is validated as ``{}`` so required fields
    are reported the same way as any other validation failure.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    return schema.model_validate(data)


# -- auth ---------------------------------------------------------------------

class LoginRequest(BaseSchema):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    remember_me: bool = False


class PasswordReset(BaseSchema):
    token: str = Field(min_length=1)
    password: str = Field(min_length=8)


# -- administration -------------------------------------------------------------

class GroupCreate(BaseSchema):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    user_ids: list[int] = Field(default_factory=list)


class GroupUpdate(BaseSchema):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None


class MemberAdd(BaseSchema):
    user_id: int


class PermissionGrant(BaseSchema):
    system_id: str = Field(min_length=1)
    role_id: int
    # parsed by the grant manager so a bad value surfaces as InvalidExpiry
    expiry: Optional[str] = None

    @field_validator("expiry", mode="before")
    @classmethod
    def _expiry_to_text(cls, value):
        if isinstance(value, datetime):
            return value.isoformat()
        return value


class RoleCreate(BaseSchema):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    system_id: Optional[str] = None


class RoleUpdate(BaseSchema):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    system_id: Optional[str] = None


class UserStatusUpdate(BaseSchema):
    status: UserStatus


class InviteCreate(BaseSchema):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    system_id: str = Field(min_length=1)
    role_id: Optional[int] = None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        local, sep, domain = value.strip().partition("@")
        if not sep or not local or "." not in domain:
            raise ValueError("Invalid email address")
        return value.strip().lower()


class AuditQuery(BaseSchema):
    user_id: Optional[int] = None
    action: Optional[str] = None
    system_id: Optional[str] = None
    role_id: Optional[int] = None
    performed_by: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=50, ge=1, le=500)


# -- documents --------------------------------------------------------------------

class DocumentCreate(BaseSchema):
    title: str = Field(min_length=1)
    version: str = Field(min_length=1)
    issue_date: datetime
    location: str = Field(min_length=1)
    category_id: int
    content: Optional[str] = None
    file_key: Optional[str] = None
    highlighted: bool = False
    approved: bool = False


class DocumentUpdate(BaseSchema):
    title: Optional[str] = Field(default=None, min_length=1)
    version: Optional[str] = None
    issue_date: Optional[datetime] = None
    location: Optional[str] = None
    category_id: Optional[int] = None
    content: Optional[str] = None
    file_key: Optional[str] = None
    highlighted: Optional[bool] = None
    approved: Optional[bool] = None
    archived: Optional[bool] = None


class BulkAction(BaseSchema):
    ids: list[int] = Field(min_length=1)
    action: Literal["archive", "unarchive", "approve", "unapprove", "highlight", "unhighlight", "update"]
    data: Optional[DocumentUpdate] = None


class BulkDelete(BaseSchema):
    ids: list[int] = Field(min_length=1)
    permanent: bool = False


class CategoryAction(BaseSchema):
    action: Literal["reorder-category", "move-to-category"]
    category_id: int
    new_category_id: Optional[int] = None


class RecordAction(BaseSchema):
    action: Literal["reorder", "toggle-highlight", "approve", "unapprove", "archive", "unarchive"]
    direction: Optional[Literal["up", "down"]] = None


class CategoryCreate(BaseSchema):
    title: str = Field(min_length=1)


class VersionCreate(BaseSchema):
    version: str = Field(min_length=1)
    notes: Optional[str] = None
    file_key: Optional[str] = None


class ReviewCreate(BaseSchema):
    details: Optional[str] = None
    review_date: Optional[datetime] = None
    next_review_date: Optional[datetime] = None
