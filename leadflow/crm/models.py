from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Table,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from leadflow.core.database import Base, utcnow


class NoteType(StrEnum):
    COMMENT = "COMMENT"
    SYSTEM = "SYSTEM"
    STATUS_CHANGE = "STATUS_CHANGE"
    PHONE_UPDATE = "PHONE_UPDATE"


class ActionType(StrEnum):
    CALL = "CALL"
    MEETING = "MEETING"
    EMAIL = "EMAIL"
    FOLLOW_UP = "FOLLOW_UP"
    WHATSAPP = "WHATSAPP"
    OTHER = "OTHER"


lead_stars = Table(
    "lead_stars",
    Base.metadata,
    Column("lead_id", Uuid(as_uuid=True), ForeignKey("leads.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", Uuid(as_uuid=True), primary_key=True),
)


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    serial_number: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    company: Mapped[str | None] = mapped_column(Text, nullable=True)
    position: Mapped[str | None] = mapped_column(Text, nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    # national significant number, digits only
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    country_code: Mapped[str] = mapped_column(String(8), nullable=False, default="971", server_default="971")
    website: Mapped[str | None] = mapped_column(Text, nullable=True)
    address: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(64), nullable=False, default="interesting", server_default="interesting")
    source: Mapped[str | None] = mapped_column(String(64), nullable=True)
    product: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="AED", server_default="AED")
    value: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    assigned_to_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    created_by_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    updated_by_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    contacted_today: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    follow_up_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_contact_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    default_language: Mapped[str | None] = mapped_column(String(16), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class LeadNote(Base):
    __tablename__ = "lead_notes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("leads.id", ondelete="CASCADE"),
        nullable=False,
    )
    author_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    author_role: Mapped[str | None] = mapped_column(String(64), nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default=NoteType.COMMENT.value)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    meta: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class LeadAction(Base):
    __tablename__ = "lead_actions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("leads.id", ondelete="CASCADE"),
        nullable=False,
    )
    author_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    outcome: Mapped[str | None] = mapped_column(Text, nullable=True)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class LeadSettings(Base):
    __tablename__ = "lead_settings"

    id: Mapped[int] = mapped_column(primary_key=True)
    statuses: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    sources: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    products: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    custom_roles: Mapped[dict[str, list[str]]] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class Counter(Base):
    __tablename__ = "counters"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


Index(
    "uq_leads_phone_active",
    Lead.country_code,
    Lead.phone,
    unique=True,
    postgresql_where=Lead.deleted_at.is_(None),
    sqlite_where=Lead.deleted_at.is_(None),
)
Index("ix_leads_status", Lead.status)
Index("ix_leads_assigned_to_id", Lead.assigned_to_id)
Index("ix_leads_deleted_at", Lead.deleted_at)
Index("ix_leads_email", Lead.email)
Index("ix_lead_notes_lead_id_created_at", LeadNote.lead_id, LeadNote.created_at)
Index("ix_lead_actions_lead_id_created_at", LeadAction.lead_id, LeadAction.created_at)
