from __future__ import annotations

import math
import re
import uuid
from datetime import date
from typing import Any

from sqlalchemy import String, and_, cast, func, or_, select
from sqlalchemy.orm import Session

from leadflow.core.config import get_settings
from leadflow.crm.errors import NotFoundError
from leadflow.crm.models import Lead, LeadAction, LeadNote, lead_stars
from leadflow.crm.operations import parse_payload
from leadflow.crm.phone import normalize_phone
from leadflow.crm.repositories import LeadRepository, SettingsRepository
from leadflow.crm.schemas import (
    ActionRead,
    KanbanColumn,
    LeadDetails,
    LeadListFilters,
    LeadListResponse,
    LeadSearchHit,
    LeadStats,
    NoteRead,
)
from leadflow.crm.service import require_loaded
from leadflow.models.user import User
from leadflow.platform.security import Operation, Principal, authorize

MIN_SEARCH_LENGTH = 2
MIN_SERIAL_DIGITS = 3
_PHONE_TERM = re.compile(r"^\+?[\d\s().-]+$")

SORT_COLUMNS = {
    "name": Lead.name,
    "value": Lead.value,
    "status": Lead.status,
    "created_at": Lead.created_at,
    "follow_up_date": Lead.follow_up_date,
    "serial_number": Lead.serial_number,
}


def _like(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _text_conditions(term: str) -> list[Any]:
    pattern = _like(term)
    conditions: list[Any] = [
        Lead.name.ilike(pattern, escape="\\"),
        Lead.company.ilike(pattern, escape="\\"),
        Lead.email.ilike(pattern, escape="\\"),
        Lead.phone.ilike(pattern, escape="\\"),
    ]
    if _PHONE_TERM.match(term):
        # stored phones are national numbers; match typed input the same way
        normalized = normalize_phone(term, get_settings().default_country_code)
        if normalized.number:
            phone_match = Lead.phone.like(_like(normalized.number), escape="\\")
            if term.startswith("+"):
                phone_match = and_(Lead.country_code == normalized.country_code, phone_match)
            conditions.append(phone_match)
    return conditions


class LeadQueryService:
    def __init__(
        self,
        repository: LeadRepository | None = None,
        settings_repository: SettingsRepository | None = None,
    ) -> None:
        self.repository = repository or LeadRepository()
        self.settings_repository = settings_repository or SettingsRepository()

    def get_leads(
        self,
        session: Session,
        principal: Principal | None,
        filters: LeadListFilters | dict[str, Any] | None = None,
    ) -> LeadListResponse:
        actor = require_loaded(principal, Operation.VIEW)
        params = parse_payload(LeadListFilters, filters or {})
        page_size = get_settings().leads_page_size

        stmt = select(Lead)
        stmt = stmt.where(Lead.deleted_at.is_not(None) if params.trash else Lead.deleted_at.is_(None))
        scoped = authorize(actor, Operation.VIEW).assigned_only
        stmt = self.repository.apply_scope_query(stmt, actor)
        if params.assigned_to_id is not None and not scoped:
            stmt = stmt.where(Lead.assigned_to_id == params.assigned_to_id)
        if params.status:
            stmt = stmt.where(Lead.status == params.status)
        if params.source:
            stmt = stmt.where(Lead.source == params.source)
        if params.search:
            stmt = stmt.where(or_(*_text_conditions(params.search.strip())))
        if params.tag:
            stmt = stmt.where(cast(Lead.tags, String).like(_like(f'"{params.tag}"'), escape="\\"))
        if params.created_by_role:
            stmt = stmt.where(Lead.created_by_id.in_(select(User.id).where(User.role == params.created_by_role)))
        if params.min_value is not None:
            stmt = stmt.where(Lead.value >= params.min_value)
        if params.max_value is not None:
            stmt = stmt.where(Lead.value <= params.max_value)
        if params.starred:
            stmt = stmt.where(Lead.id.in_(select(lead_stars.c.lead_id).where(lead_stars.c.user_id == actor.user_id)))
        if params.overdue:
            stmt = stmt.where(Lead.follow_up_date.is_not(None), Lead.follow_up_date <= date.today())

        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0

        column = SORT_COLUMNS.get(params.sort, Lead.created_at)
        ordering = column.asc() if params.direction == "asc" else column.desc()
        rows = session.scalars(
            stmt.order_by(ordering, Lead.serial_number.desc())
            .offset((params.page - 1) * page_size)
            .limit(page_size)
        ).all()

        return LeadListResponse(
            items=self.repository.to_read_many(session, actor, list(rows)),
            total=total,
            page=params.page,
            page_size=page_size,
            pages=max(1, math.ceil(total / page_size)),
        )

    def get_lead_details(self, session: Session, principal: Principal | None, lead_id: uuid.UUID) -> LeadDetails:
        actor = require_loaded(principal, Operation.VIEW)
        lead = self.repository.get(session, lead_id, include_deleted=True)
        if not authorize(actor, Operation.VIEW, lead).allowed:
            raise NotFoundError()

        names = dict(
            session.execute(
                select(User.id, User.name).where(User.id.in_([lead.assigned_to_id, lead.created_by_id]))
            ).all()
        )
        notes = session.scalars(
            select(LeadNote).where(LeadNote.lead_id == lead.id).order_by(LeadNote.created_at.desc())
        ).all()
        actions = session.scalars(
            select(LeadAction).where(LeadAction.lead_id == lead.id).order_by(LeadAction.created_at.desc())
        ).all()
        return LeadDetails(
            lead=self.repository.to_read(session, actor, lead),
            assigned_to_name=names.get(lead.assigned_to_id),
            created_by_name=names.get(lead.created_by_id),
            notes=[NoteRead.model_validate(note) for note in notes],
            actions=[ActionRead.model_validate(action) for action in actions],
        )

    def search_leads(self, session: Session, principal: Principal | None, query: str) -> list[LeadSearchHit]:
        if principal is None or not query or len(query.strip()) < MIN_SEARCH_LENGTH:
            return []
        term = query.strip()
        conditions = _text_conditions(term)
        serial = re.sub(r"\D", "", term.lstrip("#"))
        if len(serial) >= MIN_SERIAL_DIGITS and serial == term.lstrip("#"):
            conditions.append(Lead.serial_number == int(serial))

        stmt = self.repository.apply_scope_query(
            select(Lead).where(Lead.deleted_at.is_(None), or_(*conditions)),
            principal,
        )
        rows = session.scalars(stmt.order_by(Lead.updated_at.desc()).limit(get_settings().search_result_limit)).all()
        return [LeadSearchHit.model_validate(row) for row in rows]

    def get_leads_stats(self, session: Session, principal: Principal | None) -> LeadStats:
        actor = require_loaded(principal, Operation.VIEW)
        stmt = self.repository.apply_scope_query(
            select(Lead.status, func.count(Lead.id)).where(Lead.deleted_at.is_(None)),
            actor,
        ).group_by(Lead.status)
        by_status = {status: count for status, count in session.execute(stmt)}
        return LeadStats(total=sum(by_status.values()), by_status=by_status)

    def get_leads_by_status(self, session: Session, principal: Principal | None) -> list[KanbanColumn]:
        actor = require_loaded(principal, Operation.VIEW)
        stmt = self.repository.apply_scope_query(select(Lead).where(Lead.deleted_at.is_(None)), actor)
        leads = self.repository.to_read_many(
            session, actor, list(session.scalars(stmt.order_by(Lead.created_at.desc())).all())
        )

        vocabulary = self.settings_repository.load(session)
        columns = {item.key: KanbanColumn(status=item.key, label=item.label, leads=[]) for item in vocabulary.statuses}
        for lead in leads:
            column = columns.setdefault(lead.status, KanbanColumn(status=lead.status, label=lead.status, leads=[]))
            column.leads.append(lead)
        return list(columns.values())
