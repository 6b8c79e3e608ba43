from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from leadflow.core.database import utcnow
from leadflow.crm.errors import InvalidFieldsError
from leadflow.crm.models import Lead, LeadNote, NoteType
from leadflow.crm.operations import ActionResult, lead_operation, parse_payload
from leadflow.crm.repositories import SettingsRepository
from leadflow.crm.schemas import BulkAssignRequest, BulkDeleteRequest, BulkStatusRequest
from leadflow.crm.service import INACTIVE_TARGET, active_user, ensure_status, require_loaded
from leadflow.models.audit import AuditAction
from leadflow.models.notification import NotificationType
from leadflow.platform.security import Operation, Principal, authorize
from leadflow.services.audit import LEAD_ENTITY, build_audit_entry
from leadflow.services.notifications import NotificationDispatcher, NotificationJob, notification_dispatcher

logger = logging.getLogger(__name__)


def _unique(ids: Sequence[uuid.UUID]) -> list[uuid.UUID]:
    return list(dict.fromkeys(ids))


def _join_ids(ids: Sequence[uuid.UUID]) -> str:
    return ",".join(str(lead_id) for lead_id in ids)


class BulkExecutor:
    """Multi-lead mutations.

    Each call makes one authorization decision, one multi-row UPDATE and one
    aggregated audit entry, all committed in a single transaction.
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher | None = None,
        settings_repository: SettingsRepository | None = None,
    ) -> None:
        self.dispatcher = dispatcher or notification_dispatcher
        self.settings_repository = settings_repository or SettingsRepository()

    @lead_operation("bulk_update_status", "Failed to update leads")
    def bulk_update_status(
        self,
        session: Session,
        principal: Principal | None,
        lead_ids: Sequence[uuid.UUID],
        status: str,
    ) -> ActionResult:
        actor = require_loaded(principal, Operation.BULK_UPDATE_STATUS)
        scoped = authorize(actor, Operation.BULK_UPDATE_STATUS).assigned_only
        dto = parse_payload(BulkStatusRequest, {"lead_ids": list(lead_ids), "status": status})
        ensure_status(dto.status, self.settings_repository.load(session))

        stmt = select(Lead.id, Lead.status).where(Lead.id.in_(_unique(dto.lead_ids)), Lead.deleted_at.is_(None))
        if scoped:
            stmt = stmt.where(Lead.assigned_to_id == actor.user_id)
        previous = {row.id: row.status for row in session.execute(stmt)}
        targets = [lead_id for lead_id, current in previous.items() if current != dto.status]

        count = 0
        if targets:
            result = session.execute(
                update(Lead)
                .where(Lead.id.in_(targets))
                .values(status=dto.status, updated_by_id=actor.user_id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount
            session.add_all(
                LeadNote(
                    lead_id=lead_id,
                    author_id=actor.user_id,
                    author_role=actor.role_name,
                    type=NoteType.STATUS_CHANGE.value,
                    message=f"Status changed from {previous[lead_id]} to {dto.status}",
                    meta={"from_status": previous[lead_id], "to_status": dto.status},
                )
                for lead_id in targets
            )

        session.add(
            build_audit_entry(
                actor,
                AuditAction.BULK_UPDATE,
                LEAD_ENTITY,
                _join_ids(targets),
                f"Bulk status change to {dto.status} ({count} leads)",
            )
        )
        session.commit()
        logger.info(
            "bulk status change",
            extra={"operation": "bulk_update_status", "lead_ids": [str(lead_id) for lead_id in targets]},
        )
        return ActionResult.ok(f"{count} leads updated", count=count)

    @lead_operation("bulk_assign", "Failed to assign leads")
    def bulk_assign(
        self,
        session: Session,
        principal: Principal | None,
        lead_ids: Sequence[uuid.UUID],
        user_id: uuid.UUID,
    ) -> ActionResult:
        actor = require_loaded(principal, Operation.BULK_ASSIGN)
        dto = parse_payload(BulkAssignRequest, {"lead_ids": list(lead_ids), "user_id": user_id})

        target = active_user(session, dto.user_id)
        if target is None:
            raise InvalidFieldsError({"user_id": [INACTIVE_TARGET]}, message=INACTIVE_TARGET)

        targets = list(
            session.scalars(
                select(Lead.id).where(Lead.id.in_(_unique(dto.lead_ids)), Lead.deleted_at.is_(None))
            ).all()
        )
        count = 0
        if targets:
            result = session.execute(
                update(Lead)
                .where(Lead.id.in_(targets))
                .values(assigned_to_id=target.id, updated_by_id=actor.user_id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount

        session.add(
            build_audit_entry(
                actor,
                AuditAction.BULK_UPDATE,
                LEAD_ENTITY,
                _join_ids(targets),
                f"Bulk assigned {count} leads to {target.name}",
            )
        )
        session.commit()

        if count:
            self.dispatcher.dispatch(
                NotificationJob(
                    type=NotificationType.LEAD_ASSIGNED,
                    title="Leads Assigned to You",
                    message=f"{actor.display_name} assigned {count} leads to you.",
                    user_ids=(target.id,),
                    correlation_id=actor.correlation_id,
                )
            )
        return ActionResult.ok(f"{count} leads assigned", count=count)

    @lead_operation("bulk_soft_delete", "Failed to delete leads")
    def bulk_soft_delete(self, session: Session, principal: Principal | None, lead_ids: Sequence[uuid.UUID]) -> ActionResult:
        actor = require_loaded(principal, Operation.BULK_SOFT_DELETE)
        dto = parse_payload(BulkDeleteRequest, {"lead_ids": list(lead_ids)})

        targets = list(
            session.scalars(
                select(Lead.id).where(Lead.id.in_(_unique(dto.lead_ids)), Lead.deleted_at.is_(None))
            ).all()
        )
        count = 0
        if targets:
            result = session.execute(
                update(Lead)
                .where(Lead.id.in_(targets))
                .values(deleted_at=utcnow(), updated_by_id=actor.user_id)
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount

        session.add(
            build_audit_entry(
                actor,
                AuditAction.BULK_DELETE,
                LEAD_ENTITY,
                _join_ids(targets),
                f"Bulk soft deleted {count} leads",
            )
        )
        session.commit()
        return ActionResult.ok(f"{count} leads moved to recycle bin", count=count)
