from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadflow.core.config import get_settings
from leadflow.core.database import utcnow
from leadflow.crm.duplicates import DuplicateDetector, find_lead_by_phone
from leadflow.crm.errors import DuplicateError, InvalidFieldsError, NotFoundError
from leadflow.crm.models import Lead, LeadAction, LeadNote, NoteType, lead_stars
from leadflow.crm.operations import ActionResult, lead_operation, parse_payload
from leadflow.crm.phone import normalize_phone
from leadflow.crm.repositories import LeadRepository, SettingsRepository
from leadflow.crm.schemas import (
    ActionCreate,
    LeadCreate,
    LeadSettingsRead,
    LeadUpdate,
    NoteCreate,
    StatusUpdate,
    TransferRequest,
)
from leadflow.metrics import observe_duplicate_rejection
from leadflow.models.audit import AuditAction
from leadflow.models.notification import NotificationType
from leadflow.models.user import User
from leadflow.platform.security import Operation, Principal, require
from leadflow.platform.security.policies import ASSIGNMENT_FIELD, UNAUTHORIZED
from leadflow.platform.security.errors import AuthorizationError
from leadflow.services.audit import LEAD_ENTITY, write_audit_log
from leadflow.services.notifications import NotificationDispatcher, NotificationJob, notification_dispatcher

logger = logging.getLogger(__name__)

SYSTEM_ROLE = "SYSTEM"
INACTIVE_TARGET = "Target user not found or is deactivated"

# (label, attribute) pairs reported in the UPDATE audit diff
TRACKED_FIELDS = (
    ("Name", "name"),
    ("Company", "company"),
    ("Email", "email"),
    ("Phone", "phone"),
    ("Status", "status"),
    ("Source", "source"),
    ("Product", "product"),
    ("Value", "value"),
    ("Website", "website"),
)

_PLAIN_FIELDS = (
    "name",
    "company",
    "position",
    "website",
    "source",
    "product",
    "currency",
    "value",
    "public",
    "contacted_today",
    "follow_up_date",
    "default_language",
    "description",
)


def _display(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    return str(value).strip()


def describe_changes(lead: Lead, updates: dict[str, Any]) -> list[str]:
    changes: list[str] = []
    for label, attr in TRACKED_FIELDS:
        if attr not in updates:
            continue
        old, new = _display(getattr(lead, attr)), _display(updates[attr])
        if old != new:
            changes.append(f"{label}: {old or '(empty)'} → {new or '(empty)'}")
    return changes


def require_loaded(principal: Principal | None, operation: Operation) -> Principal:
    """Check the caller's standing before the lead is loaded."""

    if principal is None:
        raise AuthorizationError(UNAUTHORIZED)
    require(principal, operation)
    return principal


def ensure_status(status: str, vocabulary: LeadSettingsRead) -> None:
    if status not in {item.key for item in vocabulary.statuses}:
        raise InvalidFieldsError({"status": [f"Unknown status: {status}"]})


def active_user(session: Session, user_id: uuid.UUID) -> User | None:
    return session.scalar(select(User).where(User.id == user_id, User.active.is_(True)))


def user_name(session: Session, user_id: uuid.UUID | None) -> str:
    if user_id is None:
        return "Unassigned"
    return session.scalar(select(User.name).where(User.id == user_id)) or str(user_id)


class LeadService:
    def __init__(
        self,
        dispatcher: NotificationDispatcher | None = None,
        repository: LeadRepository | None = None,
        settings_repository: SettingsRepository | None = None,
        duplicates: DuplicateDetector | None = None,
    ) -> None:
        self.dispatcher = dispatcher or notification_dispatcher
        self.repository = repository or LeadRepository()
        self.settings_repository = settings_repository or SettingsRepository()
        self.duplicates = duplicates or DuplicateDetector()

    def _notify(
        self,
        principal: Principal,
        notification_type: NotificationType,
        title: str,
        message: str,
        lead: Lead,
        user_ids: tuple[uuid.UUID | None, ...] = (),
        include_admins: bool = False,
    ) -> None:
        recipients = tuple(user_id for user_id in user_ids if user_id is not None)
        if not recipients and not include_admins:
            return
        self.dispatcher.dispatch(
            NotificationJob(
                type=notification_type,
                title=title,
                message=message,
                user_ids=recipients,
                include_admins=include_admins,
                lead_id=lead.id,
                correlation_id=principal.correlation_id,
            )
        )

    def _flush_guarding_phone(self, session: Session, lead: Lead, source: str) -> None:
        # the partial unique index on active phones rejects a collision that
        # landed after the pre-check; rollback expires lead, so read the key first
        phone, country_code, lead_id = lead.phone, lead.country_code, lead.id
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            existing = find_lead_by_phone(session, country_code, phone, exclude_id=lead_id) if phone else None
            if existing is None:
                raise
            observe_duplicate_rejection(source)
            raise DuplicateError(existing.name, existing.id) from None

    def _normalize_phone(self, raw: str | None, country_code: str) -> tuple[str | None, str]:
        if raw is None:
            return None, country_code
        normalized = normalize_phone(raw, country_code)
        return (normalized.number or None), normalized.country_code

    @lead_operation("create_lead", "Database Error: Failed to create lead.")
    def create_lead(self, session: Session, principal: Principal | None, payload: LeadCreate | dict[str, Any]) -> ActionResult:
        actor = require_loaded(principal, Operation.CREATE)
        dto = parse_payload(LeadCreate, payload)
        settings = get_settings()

        vocabulary = self.settings_repository.load(session)
        status = dto.status or vocabulary.statuses[0].key
        ensure_status(status, vocabulary)

        phone, country_code = self._normalize_phone(dto.phone, dto.country_code or settings.default_country_code)
        self.duplicates.ensure_unique_phone(session, phone, country_code, source="create")

        if dto.assigned_to_id is not None and active_user(session, dto.assigned_to_id) is None:
            raise InvalidFieldsError({"assigned_to_id": [INACTIVE_TARGET]})

        address = dto.address.model_dump() if dto.address else {}
        address["country"] = address.get("country") or settings.default_country

        lead = Lead(
            id=uuid.uuid4(),
            serial_number=self.repository.next_serial_number(session),
            name=dto.name.strip(),
            company=dto.company,
            position=dto.position,
            email=dto.email.lower() if dto.email else None,
            phone=phone,
            country_code=country_code,
            website=dto.website,
            address=address,
            status=status,
            source=dto.source,
            product=dto.product,
            tags=dto.tags or [],
            currency=dto.currency or settings.default_currency,
            value=dto.value,
            assigned_to_id=dto.assigned_to_id,
            created_by_id=actor.user_id,
            updated_by_id=actor.user_id,
            public=bool(dto.public),
            contacted_today=bool(dto.contacted_today),
            follow_up_date=dto.follow_up_date,
            default_language=dto.default_language or "System Default",
            description=dto.description,
        )
        session.add(lead)
        self._flush_guarding_phone(session, lead, "create")

        session.add(LeadNote(lead_id=lead.id, type=NoteType.SYSTEM.value, message="Lead created", author_role=SYSTEM_ROLE))
        if lead.assigned_to_id is not None:
            session.add(
                LeadNote(
                    lead_id=lead.id,
                    author_id=actor.user_id,
                    author_role=actor.role_name,
                    type=NoteType.SYSTEM.value,
                    message=f"Lead assigned by {actor.display_name}",
                )
            )
        session.commit()

        write_audit_log(session, actor, AuditAction.CREATE, LEAD_ENTITY, str(lead.id), f"Created lead: {lead.name}")
        phone_suffix = f" ({lead.phone})" if lead.phone else ""
        self._notify(
            actor,
            NotificationType.NEW_LEAD,
            "New Lead Created",
            f'{actor.display_name} created a new lead: "{lead.name}"{phone_suffix}.',
            lead,
            user_ids=(lead.assigned_to_id,),
            include_admins=True,
        )
        logger.info("lead created", extra={"operation": "create_lead", "lead_id": str(lead.id), "user_id": str(actor.user_id)})
        return ActionResult.ok("Lead created successfully", lead_id=str(lead.id), serial_number=lead.serial_number)

    @lead_operation("update_lead", "Failed to update lead")
    def update_lead(
        self,
        session: Session,
        principal: Principal | None,
        lead_id: uuid.UUID,
        payload: LeadUpdate | dict[str, Any],
    ) -> ActionResult:
        actor = require_loaded(principal, Operation.UPDATE)
        lead = self.repository.get(session, lead_id)
        decision = require(actor, Operation.UPDATE, lead)
        dto = parse_payload(LeadUpdate, payload)
        provided = dto.model_fields_set

        if "name" in provided and dto.name is None:
            raise InvalidFieldsError({"name": ["Name is required"]})

        updates: dict[str, Any] = {field: getattr(dto, field) for field in _PLAIN_FIELDS if field in provided}
        if "name" in updates:
            updates["name"] = updates["name"].strip()
        if "email" in provided:
            updates["email"] = dto.email.lower() if dto.email else None
        if "tags" in provided:
            updates["tags"] = dto.tags or []
        if "address" in provided:
            updates["address"] = dto.address.model_dump() if dto.address else None

        if "status" in provided and dto.status is not None:
            ensure_status(dto.status, self.settings_repository.load(session))
            updates["status"] = dto.status

        if "phone" in provided or "country_code" in provided:
            country_code = dto.country_code or lead.country_code
            raw_phone = dto.phone if "phone" in provided else lead.phone
            phone, country_code = self._normalize_phone(raw_phone, country_code)
            updates["phone"] = phone
            updates["country_code"] = country_code
            if (phone, country_code) != (lead.phone, lead.country_code):
                self.duplicates.ensure_unique_phone(session, phone, country_code, exclude_id=lead.id, source="update")

        previous_assignee = lead.assigned_to_id
        if "assigned_to_id" in provided and decision.can_write(ASSIGNMENT_FIELD):
            if dto.assigned_to_id is not None and active_user(session, dto.assigned_to_id) is None:
                raise InvalidFieldsError({"assigned_to_id": [INACTIVE_TARGET]})
            updates["assigned_to_id"] = dto.assigned_to_id

        changes = describe_changes(lead, updates)
        previous_phone, previous_status = lead.phone, lead.status

        for field, value in updates.items():
            setattr(lead, field, value)
        lead.updated_by_id = actor.user_id

        if lead.phone != previous_phone:
            session.add(
                LeadNote(
                    lead_id=lead.id,
                    author_id=actor.user_id,
                    author_role=actor.role_name,
                    type=NoteType.PHONE_UPDATE.value,
                    message=f"Phone changed from {previous_phone or '(empty)'} to {lead.phone or '(empty)'}",
                    meta={"old_phone": previous_phone, "new_phone": lead.phone},
                )
            )
        if lead.status != previous_status:
            session.add(self._status_note(actor, lead.id, previous_status, lead.status))
        assignment_changed = lead.assigned_to_id != previous_assignee
        if assignment_changed and lead.assigned_to_id is not None:
            session.add(
                LeadNote(
                    lead_id=lead.id,
                    author_id=actor.user_id,
                    author_role=actor.role_name,
                    type=NoteType.SYSTEM.value,
                    message=f"Lead assigned by {actor.display_name}",
                )
            )

        self._flush_guarding_phone(session, lead, "update")
        session.commit()

        details = " | ".join(changes) if changes else f"Updated lead: {lead.name}"
        write_audit_log(session, actor, AuditAction.UPDATE, LEAD_ENTITY, str(lead.id), details)
        if assignment_changed:
            self._notify(
                actor,
                NotificationType.LEAD_ASSIGNED,
                "Lead Assigned to You",
                f'{actor.display_name} assigned "{lead.name}" to you.',
                lead,
                user_ids=(lead.assigned_to_id,),
            )
        logger.info("lead updated", extra={"operation": "update_lead", "lead_id": str(lead.id), "user_id": str(actor.user_id)})
        return ActionResult.ok("Lead updated successfully")

    def _status_note(self, actor: Principal, lead_id: uuid.UUID, from_status: str, to_status: str) -> LeadNote:
        return LeadNote(
            lead_id=lead_id,
            author_id=actor.user_id,
            author_role=actor.role_name,
            type=NoteType.STATUS_CHANGE.value,
            message=f"Status changed from {from_status} to {to_status}",
            meta={"from_status": from_status, "to_status": to_status},
        )

    @lead_operation("update_lead_status", "Error updating status")
    def update_lead_status(self, session: Session, principal: Principal | None, lead_id: uuid.UUID, status: str) -> ActionResult:
        actor = require_loaded(principal, Operation.UPDATE_STATUS)
        lead = self.repository.get(session, lead_id)
        require(actor, Operation.UPDATE_STATUS, lead)
        status = parse_payload(StatusUpdate, {"status": status}).status
        ensure_status(status, self.settings_repository.load(session))

        old_status = lead.status
        if old_status == status:
            return ActionResult.ok("Status unchanged")

        lead.status = status
        lead.updated_by_id = actor.user_id
        session.add(self._status_note(actor, lead.id, old_status, status))
        session.commit()

        write_audit_log(
            session,
            actor,
            AuditAction.UPDATE,
            LEAD_ENTITY,
            str(lead.id),
            f"Status changed from {old_status} to {status}",
        )
        self._notify(
            actor,
            NotificationType.STATUS_CHANGED,
            "Lead Status Changed",
            f'"{lead.name}" status changed from {old_status} → {status}.',
            lead,
            user_ids=(lead.assigned_to_id,),
        )
        return ActionResult.ok("Status updated")

    @lead_operation("transfer_lead", "Failed to transfer lead")
    def transfer_lead(
        self,
        session: Session,
        principal: Principal | None,
        lead_id: uuid.UUID,
        to_user_id: uuid.UUID,
    ) -> ActionResult:
        actor = require_loaded(principal, Operation.TRANSFER)
        lead = self.repository.get(session, lead_id)
        require(actor, Operation.TRANSFER, lead)
        dto = parse_payload(TransferRequest, {"assigned_to_id": to_user_id})

        target = active_user(session, dto.assigned_to_id)
        if target is None:
            raise InvalidFieldsError({"assigned_to_id": [INACTIVE_TARGET]}, message=INACTIVE_TARGET)

        previous = user_name(session, lead.assigned_to_id)
        lead.assigned_to_id = target.id
        lead.updated_by_id = actor.user_id
        session.add(
            LeadNote(
                lead_id=lead.id,
                author_id=actor.user_id,
                author_role=SYSTEM_ROLE,
                type=NoteType.SYSTEM.value,
                message=f"Lead transferred from {previous} to {target.name}",
            )
        )
        session.commit()

        write_audit_log(
            session,
            actor,
            AuditAction.TRANSFER,
            LEAD_ENTITY,
            str(lead.id),
            f"Transferred lead from {previous} to {target.name}",
        )
        self._notify(
            actor,
            NotificationType.LEAD_ASSIGNED,
            "Lead Assigned to You",
            f'{actor.display_name} assigned "{lead.name}" to you.',
            lead,
            user_ids=(target.id,),
        )
        return ActionResult.ok("Lead transferred successfully")

    @lead_operation("delete_lead", "Failed to delete lead")
    def delete_lead(self, session: Session, principal: Principal | None, lead_id: uuid.UUID) -> ActionResult:
        actor = require_loaded(principal, Operation.SOFT_DELETE)
        lead = self.repository.get(session, lead_id)
        lead.deleted_at = utcnow()
        lead.updated_by_id = actor.user_id
        session.commit()

        write_audit_log(session, actor, AuditAction.DELETE, LEAD_ENTITY, str(lead.id), f"Soft deleted lead: {lead.name}")
        self._notify(
            actor,
            NotificationType.LEAD_DELETED,
            "Lead Moved to Recycle Bin",
            f'{actor.display_name} moved "{lead.name}" to the recycle bin.',
            lead,
            user_ids=(lead.assigned_to_id,),
        )
        return ActionResult.ok("Lead moved to recycle bin")

    @lead_operation("restore_lead", "Failed to restore lead")
    def restore_lead(self, session: Session, principal: Principal | None, lead_id: uuid.UUID) -> ActionResult:
        actor = require_loaded(principal, Operation.RESTORE)
        lead = self.repository.get(session, lead_id, include_deleted=True)
        if lead.deleted_at is None:
            raise NotFoundError("Lead is not in the recycle bin")

        self.duplicates.ensure_unique_phone(session, lead.phone, lead.country_code, exclude_id=lead.id, source="restore")
        lead.deleted_at = None
        lead.updated_by_id = actor.user_id
        self._flush_guarding_phone(session, lead, "restore")
        session.commit()

        write_audit_log(session, actor, AuditAction.RESTORE, LEAD_ENTITY, str(lead.id), "Lead restored from recycle bin")
        self._notify(
            actor,
            NotificationType.LEAD_RESTORED,
            "Lead Restored",
            f'{actor.display_name} restored "{lead.name}" from the recycle bin.',
            lead,
            user_ids=(lead.assigned_to_id,),
        )
        return ActionResult.ok("Lead restored")

    @lead_operation("permanent_delete_lead", "Failed to permanently delete lead")
    def permanent_delete_lead(self, session: Session, principal: Principal | None, lead_id: uuid.UUID) -> ActionResult:
        actor = require_loaded(principal, Operation.PERMANENT_DELETE)
        lead = self.repository.get(session, lead_id, include_deleted=True)
        lead_name = lead.name

        session.execute(delete(LeadNote).where(LeadNote.lead_id == lead.id))
        session.execute(delete(LeadAction).where(LeadAction.lead_id == lead.id))
        session.execute(delete(lead_stars).where(lead_stars.c.lead_id == lead.id))
        session.delete(lead)
        session.commit()

        write_audit_log(
            session,
            actor,
            AuditAction.DELETE,
            LEAD_ENTITY,
            str(lead_id),
            f"Lead permanently deleted: {lead_name}",
        )
        return ActionResult.ok("Lead permanently deleted")

    @lead_operation("toggle_star_lead", "Failed to toggle star")
    def toggle_star_lead(self, session: Session, principal: Principal | None, lead_id: uuid.UUID) -> ActionResult:
        actor = require_loaded(principal, Operation.STAR)
        lead = self.repository.get(session, lead_id)

        starred = self.repository.is_starred(session, lead.id, actor.user_id)
        if starred:
            session.execute(
                delete(lead_stars).where(lead_stars.c.lead_id == lead.id, lead_stars.c.user_id == actor.user_id)
            )
        else:
            session.execute(insert(lead_stars).values(lead_id=lead.id, user_id=actor.user_id))
        session.commit()
        return ActionResult.ok("Unstarred" if starred else "Starred", starred=not starred)

    @lead_operation("add_note", "Failed to add note")
    def add_note(
        self,
        session: Session,
        principal: Principal | None,
        lead_id: uuid.UUID,
        payload: NoteCreate | dict[str, Any] | str,
    ) -> ActionResult:
        actor = require_loaded(principal, Operation.ADD_NOTE)
        lead = self.repository.get(session, lead_id)
        require(actor, Operation.ADD_NOTE, lead)
        dto = parse_payload(NoteCreate, {"message": payload} if isinstance(payload, str) else payload)

        note = LeadNote(
            lead_id=lead.id,
            author_id=actor.user_id,
            author_role=actor.role_name,
            type=NoteType.COMMENT.value,
            message=dto.message,
        )
        session.add(note)
        session.commit()
        return ActionResult.ok("Note added", note_id=str(note.id))

    @lead_operation("add_lead_action", "Failed to add action")
    def add_lead_action(
        self,
        session: Session,
        principal: Principal | None,
        lead_id: uuid.UUID,
        payload: ActionCreate | dict[str, Any],
    ) -> ActionResult:
        actor = require_loaded(principal, Operation.ADD_ACTION)
        lead = self.repository.get(session, lead_id)
        require(actor, Operation.ADD_ACTION, lead)
        dto = parse_payload(ActionCreate, payload)

        action = LeadAction(
            lead_id=lead.id,
            author_id=actor.user_id,
            type=dto.type.value,
            description=dto.description,
            outcome=dto.outcome,
            scheduled_at=dto.scheduled_at,
            completed_at=dto.completed_at,
        )
        session.add(action)
        session.add(
            LeadNote(
                lead_id=lead.id,
                author_id=actor.user_id,
                author_role=actor.role_name,
                type=NoteType.SYSTEM.value,
                message=f"Action: {dto.type.value} - {dto.description}",
            )
        )
        lead.last_contact_at = utcnow()
        lead.contacted_today = True
        lead.updated_by_id = actor.user_id
        session.commit()
        return ActionResult.ok("Action added successfully", action_id=str(action.id))
