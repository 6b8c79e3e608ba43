from __future__ import annotations

import uuid
from collections.abc import Iterable
from typing import Any

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from leadflow.crm.errors import NotFoundError
from leadflow.crm.models import Counter, Lead, LeadAction, LeadNote, LeadSettings, lead_stars
from leadflow.crm.schemas import LeadRead, LeadSettingsRead, VocabularyItem
from leadflow.platform.security import Operation, Principal, authorize

LEAD_COUNTER = "lead"
SERIAL_SEED = 1000

DEFAULT_STATUSES = [
    {"key": "interesting", "label": "Interesting", "color": "blue"},
    {"key": "not_interested", "label": "Not Interested", "color": "red"},
    {"key": "no_answer", "label": "No Answer", "color": "orange"},
    {"key": "registered", "label": "Registered", "color": "green"},
    {"key": "price_is_high", "label": "Price is High", "color": "yellow"},
    {"key": "medium_50", "label": "Medium 50%", "color": "purple"},
    {"key": "close_number", "label": "Close Number", "color": "indigo"},
    {"key": "block", "label": "Block", "color": "black"},
    {"key": "follow_up", "label": "Follow Up", "color": "cyan"},
    {"key": "customer", "label": "Customer", "color": "emerald"},
    {"key": "lost_lead", "label": "Lost Lead", "color": "slate"},
]
DEFAULT_SOURCES = [
    {"key": "instagram", "label": "Instagram"},
    {"key": "facebook", "label": "Facebook"},
    {"key": "google", "label": "Google Ads"},
    {"key": "referral", "label": "Referral"},
    {"key": "website", "label": "Website"},
]
DEFAULT_PRODUCTS = [
    {"key": "real_estate_basic", "label": "Real Estate Basic"},
    {"key": "real_estate_premium", "label": "Real Estate Premium"},
    {"key": "consulting", "label": "Consulting"},
]


class SettingsRepository:
    def get_row(self, session: Session) -> LeadSettings | None:
        return session.scalar(select(LeadSettings).order_by(LeadSettings.id).limit(1))

    def load(self, session: Session) -> LeadSettingsRead:
        row = self.get_row(session)
        if row is None:
            return LeadSettingsRead(
                statuses=[VocabularyItem(**item) for item in DEFAULT_STATUSES],
                sources=[VocabularyItem(**item) for item in DEFAULT_SOURCES],
                products=[VocabularyItem(**item) for item in DEFAULT_PRODUCTS],
            )
        return LeadSettingsRead(
            statuses=[VocabularyItem(**item) for item in (row.statuses or DEFAULT_STATUSES)],
            sources=[VocabularyItem(**item) for item in (row.sources or [])],
            products=[VocabularyItem(**item) for item in (row.products or [])],
            custom_roles=row.custom_roles or {},
        )


class LeadRepository:
    def apply_scope_query(self, query: Select[Any], principal: Principal) -> Select[Any]:
        if authorize(principal, Operation.VIEW).assigned_only:
            return query.where(Lead.assigned_to_id == principal.user_id)
        return query

    def get(self, session: Session, lead_id: uuid.UUID, *, include_deleted: bool = False) -> Lead:
        stmt = select(Lead).where(Lead.id == lead_id)
        if not include_deleted:
            stmt = stmt.where(Lead.deleted_at.is_(None))
        lead = session.scalar(stmt)
        if lead is None:
            raise NotFoundError()
        return lead

    def next_serial_number(self, session: Session) -> int:
        counter = session.scalar(select(Counter).where(Counter.id == LEAD_COUNTER).with_for_update())
        if counter is None:
            counter = Counter(id=LEAD_COUNTER, seq=SERIAL_SEED)
            session.add(counter)
        counter.seq += 1
        session.flush()
        return counter.seq

    def is_starred(self, session: Session, lead_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        return (
            session.scalar(
                select(func.count())
                .select_from(lead_stars)
                .where(lead_stars.c.lead_id == lead_id, lead_stars.c.user_id == user_id)
            )
            or 0
        ) > 0

    def starred_ids(self, session: Session, user_id: uuid.UUID, lead_ids: Iterable[uuid.UUID]) -> set[uuid.UUID]:
        ids = list(lead_ids)
        if not ids:
            return set()
        rows = session.execute(
            select(lead_stars.c.lead_id).where(lead_stars.c.user_id == user_id, lead_stars.c.lead_id.in_(ids))
        )
        return {row[0] for row in rows}

    def child_counts(self, session: Session, lead_ids: Iterable[uuid.UUID]) -> tuple[dict[uuid.UUID, int], dict[uuid.UUID, int]]:
        ids = list(lead_ids)
        if not ids:
            return {}, {}
        notes = session.execute(
            select(LeadNote.lead_id, func.count(LeadNote.id)).where(LeadNote.lead_id.in_(ids)).group_by(LeadNote.lead_id)
        )
        actions = session.execute(
            select(LeadAction.lead_id, func.count(LeadAction.id))
            .where(LeadAction.lead_id.in_(ids))
            .group_by(LeadAction.lead_id)
        )
        return {row[0]: row[1] for row in notes}, {row[0]: row[1] for row in actions}

    def to_read_many(self, session: Session, principal: Principal, leads: list[Lead]) -> list[LeadRead]:
        ids = [lead.id for lead in leads]
        starred = self.starred_ids(session, principal.user_id, ids)
        note_counts, action_counts = self.child_counts(session, ids)
        return [
            LeadRead.model_validate(lead).model_copy(
                update={
                    "starred": lead.id in starred,
                    "notes_count": note_counts.get(lead.id, 0),
                    "actions_count": action_counts.get(lead.id, 0),
                }
            )
            for lead in leads
        ]

    def to_read(self, session: Session, principal: Principal, lead: Lead) -> LeadRead:
        return self.to_read_many(session, principal, [lead])[0]
