from __future__ import annotations

import heapq
import uuid
from collections.abc import Iterator
from datetime import datetime, timezone

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from leadflow.crm.models import LeadAction, LeadNote
from leadflow.crm.repositories import LeadRepository
from leadflow.crm.schemas import TimelineEntry
from leadflow.crm.service import require_loaded
from leadflow.models.audit import AuditLog
from leadflow.models.user import User
from leadflow.platform.security import Operation, Principal, authorize
from leadflow.services.audit import LEAD_ENTITY


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes for timezone-aware columns
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class TimelineRecorder:
    """Read-side merge of notes, actions and audit entries for one lead."""

    def __init__(self, repository: LeadRepository | None = None) -> None:
        self.repository = repository or LeadRepository()

    def _notes(self, session: Session, lead_id: uuid.UUID) -> Iterator[TimelineEntry]:
        rows = session.execute(
            select(LeadNote, User.name)
            .outerjoin(User, User.id == LeadNote.author_id)
            .where(LeadNote.lead_id == lead_id)
            .order_by(LeadNote.created_at.desc())
        )
        for note, author_name in rows:
            yield TimelineEntry(
                kind="note",
                id=str(note.id),
                type=note.type,
                message=note.message,
                author_name=author_name or note.author_role or "System",
                created_at=_aware(note.created_at),
                meta=note.meta,
            )

    def _actions(self, session: Session, lead_id: uuid.UUID) -> Iterator[TimelineEntry]:
        rows = session.execute(
            select(LeadAction, User.name)
            .outerjoin(User, User.id == LeadAction.author_id)
            .where(LeadAction.lead_id == lead_id)
            .order_by(LeadAction.created_at.desc())
        )
        for action, author_name in rows:
            yield TimelineEntry(
                kind="action",
                id=str(action.id),
                type=action.type,
                message=action.description,
                outcome=action.outcome,
                author_name=author_name or "Unknown",
                created_at=_aware(action.created_at),
            )

    def _audits(self, session: Session, lead_id: uuid.UUID) -> Iterator[TimelineEntry]:
        # bulk entries carry comma-joined ids
        key = str(lead_id)
        rows = session.scalars(
            select(AuditLog)
            .where(
                AuditLog.entity_type == LEAD_ENTITY,
                or_(AuditLog.entity_id == key, AuditLog.entity_id.contains(key)),
            )
            .order_by(AuditLog.created_at.desc())
        )
        for entry in rows:
            yield TimelineEntry(
                kind="audit",
                id=str(entry.id),
                type=entry.action,
                message=entry.details,
                author_name=entry.user_name or "System",
                created_at=_aware(entry.created_at),
            )

    def get_lead_timeline(self, session: Session, principal: Principal | None, lead_id: uuid.UUID) -> list[TimelineEntry]:
        actor = require_loaded(principal, Operation.VIEW)
        lead = self.repository.get(session, lead_id, include_deleted=True)
        if not authorize(actor, Operation.VIEW, lead).allowed:
            return []

        return list(
            heapq.merge(
                self._notes(session, lead.id),
                self._actions(session, lead.id),
                self._audits(session, lead.id),
                key=lambda entry: entry.created_at,
                reverse=True,
            )
        )
