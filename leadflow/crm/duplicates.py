from __future__ import annotations

import logging
import uuid

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from leadflow.core.config import get_settings
from leadflow.crm.errors import DuplicateError
from leadflow.crm.models import Lead
from leadflow.crm.phone import MIN_MEANINGFUL_DIGITS, normalize_phone
from leadflow.crm.schemas import DuplicateCheck, DuplicateMatch
from leadflow.metrics import observe_duplicate_rejection
from leadflow.platform.security import Principal

logger = logging.getLogger(__name__)

MAX_DUPLICATE_MATCHES = 5


def _active_leads(exclude_id: uuid.UUID | None):
    stmt = select(Lead).where(Lead.deleted_at.is_(None))
    if exclude_id is not None:
        stmt = stmt.where(Lead.id != exclude_id)
    return stmt


def _same_phone(country_code: str, phone: str):
    # a phone is identified by calling code plus national number
    return and_(Lead.country_code == country_code, Lead.phone == phone)


def find_lead_by_phone(
    session: Session,
    country_code: str,
    phone: str,
    exclude_id: uuid.UUID | None = None,
) -> Lead | None:
    return session.scalar(_active_leads(exclude_id).where(_same_phone(country_code, phone)).limit(1))


class DuplicateDetector:
    """Phone/email collision checks against non-deleted leads."""

    def find_duplicate_phone(
        self,
        session: Session,
        principal: Principal | None,
        raw_phone: str | None,
        exclude_id: uuid.UUID | None = None,
        country_code: str | None = None,
    ) -> DuplicateCheck:
        if principal is None:
            return DuplicateCheck(exists=False)
        normalized = normalize_phone(raw_phone, country_code or get_settings().default_country_code)
        if len(normalized.number) < MIN_MEANINGFUL_DIGITS:
            return DuplicateCheck(exists=False)

        existing = find_lead_by_phone(session, normalized.country_code, normalized.number, exclude_id)
        if existing is None:
            return DuplicateCheck(exists=False)
        return DuplicateCheck(exists=True, lead_name=existing.name, lead_id=existing.id)

    def find_duplicate_leads(
        self,
        session: Session,
        principal: Principal | None,
        email: str | None = None,
        phone: str | None = None,
        exclude_id: uuid.UUID | None = None,
        country_code: str | None = None,
    ) -> list[DuplicateMatch]:
        if principal is None:
            return []

        conditions = []
        if email and email.strip():
            conditions.append(Lead.email == email.strip().lower())
        if phone:
            normalized = normalize_phone(phone, country_code or get_settings().default_country_code)
            if len(normalized.number) >= MIN_MEANINGFUL_DIGITS:
                conditions.append(_same_phone(normalized.country_code, normalized.number))
        if not conditions:
            return []

        rows = session.scalars(
            _active_leads(exclude_id).where(or_(*conditions)).order_by(Lead.created_at.desc()).limit(MAX_DUPLICATE_MATCHES)
        ).all()
        return [DuplicateMatch.model_validate(row) for row in rows]

    def ensure_unique_phone(
        self,
        session: Session,
        phone: str | None,
        country_code: str | None = None,
        exclude_id: uuid.UUID | None = None,
        source: str = "create",
    ) -> None:
        """Authoritative re-check run inside create/update before any write.

        ``phone`` is the already normalized national number.
        """

        if not phone:
            return
        country_code = country_code or get_settings().default_country_code
        existing = find_lead_by_phone(session, country_code, phone, exclude_id)
        if existing is None:
            return
        observe_duplicate_rejection(source)
        logger.info(
            "duplicate phone rejected",
            extra={"operation": source, "lead_id": str(existing.id)},
        )
        raise DuplicateError(existing.name, existing.id)
