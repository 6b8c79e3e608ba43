from __future__ import annotations

import logging
import math

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadflow.context import get_correlation_id
from leadflow.core.config import get_settings
from leadflow.crm.schemas import AuditListResponse, AuditRead
from leadflow.metrics import observe_audit_write_failure
from leadflow.models.audit import AuditAction, AuditLog
from leadflow.platform.security import Operation, Principal, require

logger = logging.getLogger(__name__)

LEAD_ENTITY = "lead"


def build_audit_entry(
    principal: Principal,
    action: AuditAction,
    entity_type: str,
    entity_id: str,
    details: str,
) -> AuditLog:
    return AuditLog(
        action=action.value,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
        user_id=principal.user_id,
        user_name=principal.display_name,
        correlation_id=principal.correlation_id or get_correlation_id(),
    )


def write_audit_log(
    db: Session,
    principal: Principal,
    action: AuditAction,
    entity_type: str,
    entity_id: str,
    details: str,
) -> AuditLog | None:
    """Append an audit entry after the primary mutation has committed.

    Failures are logged and counted, never raised: the caller's outcome is
    already decided by the time this runs.
    """

    event = build_audit_entry(principal, action, entity_type, entity_id, details)
    try:
        db.add(event)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        observe_audit_write_failure(action.value)
        logger.exception(
            "audit write failed",
            extra={"audit_action": action.value, "lead_id": entity_id, "error": str(exc)},
        )
        return None
    db.refresh(event)
    return event


def list_audit_logs(
    db: Session,
    principal: Principal | None,
    *,
    page: int = 1,
    entity_type: str | None = None,
    action: str | None = None,
    search: str | None = None,
) -> AuditListResponse:
    """Newest-first page of the audit trail; ADMIN only."""

    require(principal, Operation.READ_AUDIT)
    page_size = get_settings().audit_page_size
    page = max(page, 1)

    stmt = select(AuditLog)
    if entity_type:
        stmt = stmt.where(AuditLog.entity_type == entity_type)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if search:
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(or_(AuditLog.user_name.ilike(pattern), AuditLog.details.ilike(pattern)))

    total = db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = db.scalars(
        stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset((page - 1) * page_size).limit(page_size)
    ).all()
    return AuditListResponse(
        items=[AuditRead.model_validate(row) for row in rows],
        total=total,
        page=page,
        pages=max(1, math.ceil(total / page_size)),
    )
