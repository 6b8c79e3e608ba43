from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from leadflow.crm.models import ActionType


_PHONE_INPUT_RE = re.compile(r"^\+?\d*$")


def _blank_to_none(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            key: (None if key != "name" and isinstance(value, str) and not value.strip() else value)
            for key, value in data.items()
        }
    return data


def _split_tags(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [tag.strip() for tag in value.split(",") if tag.strip()]
    return value


class AddressInput(BaseModel):
    address_line: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    zip_code: str | None = None


class LeadFields(BaseModel):
    company: str | None = None
    position: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    country_code: str | None = None
    website: str | None = None
    address: AddressInput | None = None
    status: str | None = None
    source: str | None = None
    product: str | None = None
    tags: list[str] | None = None
    currency: str | None = None
    value: Decimal | None = None
    assigned_to_id: UUID | None = None
    public: bool | None = None
    contacted_today: bool | None = None
    follow_up_date: date | None = None
    default_language: str | None = None
    description: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_blanks(cls, data: Any) -> Any:
        return _blank_to_none(data)

    @field_validator("phone")
    @classmethod
    def _phone_digits_only(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if not _PHONE_INPUT_RE.match(value):
            raise ValueError("Phone number must contain only digits")
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _parse_tags(cls, value: Any) -> Any:
        return _split_tags(value)

    @field_validator("country_code")
    @classmethod
    def _strip_plus(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip().lstrip("+")
        if not cleaned.isdigit():
            raise ValueError("Country code must contain only digits")
        return cleaned


def _strip_name(value: str | None) -> str | None:
    if value is None:
        return None
    if not value.strip():
        raise ValueError("Name is required")
    return value.strip()


class LeadCreate(LeadFields):
    name: Annotated[str, AfterValidator(_strip_name)] = Field(min_length=1)


class LeadUpdate(LeadFields):
    name: Annotated[str | None, AfterValidator(_strip_name)] = Field(default=None, min_length=1)


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    serial_number: int
    name: str
    company: str | None
    position: str | None
    email: str | None
    phone: str | None
    country_code: str
    website: str | None
    address: dict[str, Any] | None
    status: str
    source: str | None
    product: str | None
    tags: list[str] = Field(default_factory=list)
    currency: str
    value: Decimal | None
    assigned_to_id: UUID | None
    created_by_id: UUID | None
    updated_by_id: UUID | None
    public: bool
    contacted_today: bool
    follow_up_date: date | None
    last_contact_at: datetime | None
    default_language: str | None
    description: str | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    starred: bool = False
    notes_count: int = 0
    actions_count: int = 0


class LeadListFilters(BaseModel):
    trash: bool = False
    assigned_to_id: UUID | None = None
    status: str | None = None
    source: str | None = None
    search: str | None = None
    tag: str | None = None
    created_by_role: str | None = None
    min_value: Decimal | None = None
    max_value: Decimal | None = None
    starred: bool = False
    overdue: bool = False
    page: int = Field(default=1, ge=1)
    sort: str = "created_at"
    direction: Literal["asc", "desc"] = "desc"


class LeadListResponse(BaseModel):
    items: list[LeadRead]
    total: int
    page: int
    page_size: int
    pages: int


class StatusUpdate(BaseModel):
    status: str = Field(min_length=1)


class TransferRequest(BaseModel):
    assigned_to_id: UUID


class NoteCreate(BaseModel):
    message: str = Field(min_length=1)

    @field_validator("message")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Note cannot be empty")
        return value.strip()


class ActionCreate(BaseModel):
    type: ActionType
    description: str = Field(min_length=1)
    outcome: str | None = None
    scheduled_at: datetime | None = None
    completed_at: datetime | None = None


class BulkStatusRequest(BaseModel):
    lead_ids: list[UUID] = Field(min_length=1)
    status: str = Field(min_length=1)


class BulkAssignRequest(BaseModel):
    lead_ids: list[UUID] = Field(min_length=1)
    user_id: UUID


class BulkDeleteRequest(BaseModel):
    lead_ids: list[UUID] = Field(min_length=1)


class TimelineEntry(BaseModel):
    kind: Literal["note", "action", "audit"]
    id: str
    type: str
    message: str
    author_name: str
    created_at: datetime
    meta: dict[str, Any] | None = None
    outcome: str | None = None


class DuplicateCheck(BaseModel):
    exists: bool
    lead_name: str | None = None
    lead_id: UUID | None = None


class DuplicateMatch(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    serial_number: int
    name: str
    email: str | None
    phone: str | None
    status: str


class LeadSearchHit(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    serial_number: int
    name: str
    company: str | None
    phone: str | None
    status: str


class LeadStats(BaseModel):
    total: int
    by_status: dict[str, int]


class KanbanColumn(BaseModel):
    status: str
    label: str
    leads: list[LeadRead]


class VocabularyItem(BaseModel):
    key: str = Field(min_length=1)
    label: str = Field(min_length=1)
    color: str | None = None


class LeadSettingsRead(BaseModel):
    statuses: list[VocabularyItem]
    sources: list[VocabularyItem]
    products: list[VocabularyItem]
    custom_roles: dict[str, list[str]] = Field(default_factory=dict)


class LeadSettingsUpdate(BaseModel):
    statuses: list[VocabularyItem] | None = Field(default=None, min_length=1)
    sources: list[VocabularyItem] | None = None
    products: list[VocabularyItem] | None = None
    custom_roles: dict[str, list[str]] | None = None


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str
    role: str
    active: bool


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    title: str
    message: str
    lead_id: UUID | None
    read: bool
    created_at: datetime


class AuditRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: str
    entity_type: str
    entity_id: str
    details: str
    user_id: UUID | None
    user_name: str
    correlation_id: str | None
    created_at: datetime


class AuditListResponse(BaseModel):
    items: list[AuditRead]
    total: int
    page: int
    pages: int


class NoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    message: str
    author_id: UUID | None
    author_role: str | None
    meta: dict[str, Any] | None
    created_at: datetime


class ActionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    description: str
    outcome: str | None
    author_id: UUID | None
    scheduled_at: datetime | None
    completed_at: datetime | None
    created_at: datetime


class LeadDetails(BaseModel):
    lead: LeadRead
    assigned_to_name: str | None = None
    created_by_name: str | None = None
    notes: list[NoteRead] = Field(default_factory=list)
    actions: list[ActionRead] = Field(default_factory=list)
