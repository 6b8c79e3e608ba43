from __future__ import annotations

import csv
import io
import logging
import uuid
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from leadflow.core.config import Settings, get_settings
from leadflow.crm.duplicates import find_lead_by_phone
from leadflow.crm.errors import InvalidFieldsError
from leadflow.crm.models import Lead, LeadNote, NoteType
from leadflow.crm.operations import ActionResult, field_errors, lead_operation
from leadflow.crm.phone import normalize_phone
from leadflow.crm.repositories import LeadRepository, SettingsRepository
from leadflow.crm.schemas import LeadCreate
from leadflow.crm.service import SYSTEM_ROLE, require_loaded
from leadflow.metrics import observe_duplicate_rejection
from leadflow.models.audit import AuditAction
from leadflow.models.user import User
from leadflow.platform.security import Operation, Principal
from leadflow.services.audit import LEAD_ENTITY, build_audit_entry

logger = logging.getLogger(__name__)

IMPORT_SOURCE = "import"
IMPORT_NOTE = "Imported via CSV"
INVALID_FILE = "Invalid CSV file"

# spreadsheet exports use camelCase headers
_COLUMN_ALIASES = {
    "assignedToEmail": "assigned_to_email",
    "zipCode": "zip_code",
    "defaultLanguage": "default_language",
    "countryCode": "country_code",
}
_TRUTHY = {"1", "true", "yes", "y"}


def _column(header: str) -> str:
    name = header.strip()
    return _COLUMN_ALIASES.get(name, name)


def _parse_bool(raw: str | None) -> bool:
    if raw is None:
        return False
    return raw.strip().lower() in _TRUTHY


def _clean_row(raw_row: dict[str | None, Any]) -> dict[str, str | None]:
    row: dict[str, str | None] = {}
    for key, value in raw_row.items():
        # cells past the header row land under a None key
        if key is None:
            continue
        row[_column(key)] = value.strip() if isinstance(value, str) else None
    return row


def _open_reader(content: bytes | str) -> csv.DictReader:
    if isinstance(content, bytes):
        try:
            content = content.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise InvalidFieldsError({"file": ["File must be UTF-8 encoded"]}, message=INVALID_FILE) from exc

    reader = csv.DictReader(io.StringIO(content))
    headers = {_column(header) for header in reader.fieldnames or () if header}
    if not headers:
        raise InvalidFieldsError({"file": ["CSV file is empty"]}, message=INVALID_FILE)
    if "name" not in headers:
        raise InvalidFieldsError({"file": ["CSV header must include a name column"]}, message=INVALID_FILE)
    return reader


def _lead_payload(row: dict[str, str | None], settings: Settings) -> dict[str, Any]:
    return {
        "name": row.get("name"),
        "company": row.get("company"),
        "position": row.get("position"),
        "email": row.get("email"),
        "phone": row.get("phone"),
        "country_code": row.get("country_code"),
        "website": row.get("website"),
        "status": row.get("status"),
        "source": row.get("source") or IMPORT_SOURCE,
        "product": row.get("product"),
        "tags": row.get("tags"),
        "address": {
            "address_line": row.get("address") or None,
            "city": row.get("city") or None,
            "state": row.get("state") or None,
            "zip_code": row.get("zip_code") or None,
            "country": row.get("country") or settings.default_country,
        },
        "default_language": row.get("default_language"),
        "public": _parse_bool(row.get("public")),
    }


def _first_error(exc: ValidationError) -> str:
    field, messages = next(iter(field_errors(exc).items()))
    return f"{field}: {messages[0]}"


class LeadImporter:
    """Bulk lead creation from an uploaded CSV file.

    Rows go through the same schema, status vocabulary and duplicate phone
    checks as a single create. A row that fails any of them is skipped and
    reported; the rest are inserted in one transaction with one audit entry.
    """

    def __init__(
        self,
        repository: LeadRepository | None = None,
        settings_repository: SettingsRepository | None = None,
    ) -> None:
        self.repository = repository or LeadRepository()
        self.settings_repository = settings_repository or SettingsRepository()

    @lead_operation("import_leads", "Import failed due to server error.")
    def import_leads(self, session: Session, principal: Principal | None, content: bytes | str) -> ActionResult:
        actor = require_loaded(principal, Operation.IMPORT)
        reader = _open_reader(content)
        settings = get_settings()

        vocabulary = self.settings_repository.load(session)
        known_statuses = [item.key for item in vocabulary.statuses]
        assignees = {
            email.lower(): user_id
            for user_id, email in session.execute(select(User.id, User.email).where(User.active.is_(True)))
        }

        imported: list[uuid.UUID] = []
        skipped: list[dict[str, Any]] = []
        seen_phones: set[tuple[str, str]] = set()

        # header is line 1
        for row_number, raw_row in enumerate(reader, start=2):
            row = _clean_row(raw_row)
            if not row.get("name"):
                skipped.append({"row": row_number, "reason": "Name is required"})
                continue

            try:
                dto = LeadCreate.model_validate(_lead_payload(row, settings))
            except ValidationError as exc:
                skipped.append({"row": row_number, "reason": _first_error(exc)})
                continue

            status = dto.status or known_statuses[0]
            if status not in known_statuses:
                skipped.append({"row": row_number, "reason": f"Unknown status: {status}"})
                continue

            country_code = dto.country_code or settings.default_country_code
            phone = None
            if dto.phone:
                normalized = normalize_phone(dto.phone, country_code)
                phone, country_code = normalized.number or None, normalized.country_code
            if phone:
                if (country_code, phone) in seen_phones:
                    observe_duplicate_rejection("import")
                    skipped.append({"row": row_number, "reason": "Duplicate phone number earlier in file"})
                    continue
                existing = find_lead_by_phone(session, country_code, phone)
                if existing is not None:
                    observe_duplicate_rejection("import")
                    skipped.append(
                        {"row": row_number, "reason": f"Lead with this phone number already exists ({existing.name})."}
                    )
                    continue
                seen_phones.add((country_code, phone))

            assignee_email = row.get("assigned_to_email")
            lead = Lead(
                id=uuid.uuid4(),
                serial_number=self.repository.next_serial_number(session),
                name=dto.name,
                company=dto.company,
                position=dto.position,
                email=dto.email.lower() if dto.email else None,
                phone=phone,
                country_code=country_code,
                website=dto.website,
                address=dto.address.model_dump() if dto.address else None,
                status=status,
                source=dto.source,
                product=dto.product,
                tags=dto.tags or [],
                currency=settings.default_currency,
                assigned_to_id=assignees.get(assignee_email.lower()) if assignee_email else None,
                created_by_id=actor.user_id,
                updated_by_id=actor.user_id,
                public=bool(dto.public),
                contacted_today=False,
                default_language=dto.default_language or "System Default",
            )
            session.add(lead)
            session.add(LeadNote(lead_id=lead.id, type=NoteType.SYSTEM.value, message=IMPORT_NOTE, author_role=SYSTEM_ROLE))
            imported.append(lead.id)

        session.add(
            build_audit_entry(
                actor,
                AuditAction.CREATE,
                LEAD_ENTITY,
                ",".join(str(lead_id) for lead_id in imported),
                f"Imported {len(imported)} leads via CSV ({len(skipped)} skipped)",
            )
        )
        session.commit()
        logger.info(
            "leads imported",
            extra={"operation": "import_leads", "lead_ids": [str(lead_id) for lead_id in imported]},
        )
        return ActionResult.ok(
            f"Imported {len(imported)} leads. Skipped {len(skipped)}.",
            imported_count=len(imported),
            skipped_count=len(skipped),
            skipped_rows=skipped,
        )
