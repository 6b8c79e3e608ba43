from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Body, Depends, File, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from leadflow.context import get_correlation_id
from leadflow.core.auth import get_current_principal
from leadflow.core.database import get_db
from leadflow.crm.bulk import BulkExecutor
from leadflow.crm.duplicates import DuplicateDetector
from leadflow.crm.errors import LeadOperationError
from leadflow.crm.imports import LeadImporter
from leadflow.crm.operations import ActionResult
from leadflow.crm.queries import LeadQueryService
from leadflow.crm.schemas import (
    AuditListResponse,
    DuplicateCheck,
    DuplicateMatch,
    KanbanColumn,
    LeadDetails,
    LeadListResponse,
    LeadSearchHit,
    LeadSettingsRead,
    LeadStats,
    NotificationRead,
    TimelineEntry,
    UserRead,
)
from leadflow.crm.service import LeadService
from leadflow.crm.settings import LeadSettingsService
from leadflow.crm.timeline import TimelineRecorder
from leadflow.platform.security import AuthorizationError, Principal
from leadflow.services.audit import list_audit_logs
from leadflow.services.notifications import NotificationInbox

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
notifications_router = APIRouter(prefix="/api/crm/notifications", tags=["crm.notifications"])
audit_router = APIRouter(prefix="/api/crm/audit-logs", tags=["crm.audit"])
settings_router = APIRouter(prefix="/api/crm/settings", tags=["crm.settings"])
users_router = APIRouter(prefix="/api/crm/users", tags=["crm.users"])

lead_service = LeadService()
bulk_executor = BulkExecutor()
lead_importer = LeadImporter()
query_service = LeadQueryService()
timeline_recorder = TimelineRecorder()
duplicate_detector = DuplicateDetector()
settings_service = LeadSettingsService()
notification_inbox = NotificationInbox()

_STATUS_BY_CODE = {
    "unauthorized": status.HTTP_403_FORBIDDEN,
    "not_found": status.HTTP_404_NOT_FOUND,
    "invalid_fields": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "duplicate": status.HTTP_409_CONFLICT,
    "database_error": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _read_failure(
    request: Request,
    principal: Principal | None,
    exc: Exception,
    code: str,
) -> JSONResponse:
    if isinstance(exc, AuthorizationError):
        status_code = status.HTTP_401_UNAUTHORIZED if principal is None else status.HTTP_403_FORBIDDEN
        return error_response(request, status_code=status_code, code=code, message=exc.reason)
    if isinstance(exc, LeadOperationError):
        return error_response(
            request,
            status_code=exc.status_code,
            code=code,
            message=exc.message,
            details=exc.extra() or None,
        )
    return error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        code=code,
        message="Internal server error",
    )


def action_response(result: ActionResult, principal: Principal | None, success_status: int = status.HTTP_200_OK) -> JSONResponse:
    if result.success:
        return JSONResponse(status_code=success_status, content=result.to_payload())
    status_code = _STATUS_BY_CODE.get(result.error or "", status.HTTP_400_BAD_REQUEST)
    if result.error == "unauthorized" and principal is None:
        status_code = status.HTTP_401_UNAUTHORIZED
    return JSONResponse(status_code=status_code, content=result.to_payload())


@leads_router.get("/leads", response_model=LeadListResponse)
def list_leads(
    request: Request,
    trash: bool = Query(default=False),
    assigned_to_id: uuid.UUID | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    source: str | None = Query(default=None),
    search: str | None = Query(default=None),
    tag: str | None = Query(default=None),
    created_by_role: str | None = Query(default=None),
    min_value: Decimal | None = Query(default=None),
    max_value: Decimal | None = Query(default=None),
    starred: bool = Query(default=False),
    overdue: bool = Query(default=False),
    page: int = Query(default=1, ge=1),
    sort: str = Query(default="created_at"),
    direction: str = Query(default="desc", alias="dir"),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> LeadListResponse | JSONResponse:
    try:
        return query_service.get_leads(
            db,
            principal,
            {
                "trash": trash,
                "assigned_to_id": assigned_to_id,
                "status": status_filter,
                "source": source,
                "search": search,
                "tag": tag,
                "created_by_role": created_by_role,
                "min_value": min_value,
                "max_value": max_value,
                "starred": starred,
                "overdue": overdue,
                "page": page,
                "sort": sort,
                "direction": "asc" if direction == "asc" else "desc",
            },
        )
    except (AuthorizationError, LeadOperationError) as exc:
        return _read_failure(request, principal, exc, "crm_lead_list_failed")


@leads_router.post("/leads", status_code=status.HTTP_201_CREATED)
def create_lead(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> JSONResponse:
    result = lead_service.create_lead(db, principal, payload)
    return action_response(result, principal, success_status=status.HTTP_201_CREATED)


@leads_router.get("/leads/search", response_model=list[LeadSearchHit])
def search_leads(
    q: str = Query(default=""),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> list[LeadSearchHit]:
    return query_service.search_leads(db, principal, q)


@leads_router.get("/leads/stats", response_model=LeadStats)
def get_leads_stats(
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> LeadStats | JSONResponse:
    try:
        return query_service.get_leads_stats(db, principal)
    except (AuthorizationError, LeadOperationError) as exc:
        return _read_failure(request, principal, exc, "crm_lead_stats_failed")


@leads_router.get("/leads/kanban", response_model=list[KanbanColumn])
def get_leads_by_status(
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> list[KanbanColumn] | JSONResponse:
    try:
        return query_service.get_leads_by_status(db, principal)
    except (AuthorizationError, LeadOperationError) as exc:
        return _read_failure(request, principal, exc, "crm_lead_kanban_failed")


@leads_router.get("/leads/duplicates/phone", response_model=DuplicateCheck)
def check_duplicate_phone(
    phone: str = Query(default=""),
    exclude_id: uuid.UUID | None = Query(default=None),
    country_code: str | None = Query(default=None),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> DuplicateCheck:
    return duplicate_detector.find_duplicate_phone(db, principal, phone, exclude_id, country_code)


@leads_router.get("/leads/duplicates", response_model=list[DuplicateMatch])
def check_duplicate_lead(
    email: str | None = Query(default=None),
    phone: str | None = Query(default=None),
    exclude_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> list[DuplicateMatch]:
    return duplicate_detector.find_duplicate_leads(db, principal, email, phone, exclude_id)


@leads_router.post("/leads/bulk/status")
def bulk_update_status(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> JSONResponse:
    result = bulk_executor.bulk_update_status(db, principal, payload.get("lead_ids") or [], payload.get("status"))
    return action_response(result, principal)


@leads_router.post("/leads/bulk/assign")
def bulk_assign(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> JSONResponse:
    result = bulk_executor.bulk_assign(db, principal, payload.get("lead_ids") or [], payload.get("user_id"))
    return action_response(result, principal)


@leads_router.post("/leads/bulk/delete")
def bulk_soft_delete(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> JSONResponse:
    result = bulk_executor.bulk_soft_delete(db, principal, payload.get("lead_ids") or [])
    return action_response(result, principal)


@leads_router.post("/leads/import")
def import_leads_csv(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> JSONResponse:
    result = lead_importer.import_leads(db, principal, file.file.read())
    return action_response(result, principal)


@leads_router.get("/leads/{lead_id}", response_model=LeadDetails)
def get_lead_details(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> LeadDetails | JSONResponse:
    try:
        return query_service.get_lead_details(db, principal, lead_id)
    except (AuthorizationError, LeadOperationError) as exc:
        return _read_failure(request, principal, exc, "crm_lead_get_failed")


@leads_router.patch("/leads/{lead_id}")
def update_lead(
    lead_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> JSONResponse:
    return action_response(lead_service.update_lead(db, principal, lead_id, payload), principal)


@leads_router.post("/leads/{lead_id}/status")
def update_lead_status(
    lead_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> JSONResponse:
    return action_response(lead_service.update_lead_status(db, principal, lead_id, payload.get("status")), principal)


@leads_router.post("/leads/{lead_id}/transfer")
def transfer_lead(
    lead_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> JSONResponse:
    result = lead_service.transfer_lead(db, principal, lead_id, payload.get("assigned_to_id"))
    return action_response(result, principal)


@leads_router.delete("/leads/{lead_id}")
def delete_lead(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> JSONResponse:
    return action_response(lead_service.delete_lead(db, principal, lead_id), principal)


@leads_router.post("/leads/{lead_id}/restore")
def restore_lead(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> JSONResponse:
    return action_response(lead_service.restore_lead(db, principal, lead_id), principal)


@leads_router.delete("/leads/{lead_id}/permanent")
def permanent_delete_lead(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> JSONResponse:
    return action_response(lead_service.permanent_delete_lead(db, principal, lead_id), principal)


@leads_router.post("/leads/{lead_id}/star")
def toggle_star_lead(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> JSONResponse:
    return action_response(lead_service.toggle_star_lead(db, principal, lead_id), principal)


@leads_router.post("/leads/{lead_id}/notes", status_code=status.HTTP_201_CREATED)
def add_note(
    lead_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> JSONResponse:
    result = lead_service.add_note(db, principal, lead_id, payload)
    return action_response(result, principal, success_status=status.HTTP_201_CREATED)


@leads_router.post("/leads/{lead_id}/actions", status_code=status.HTTP_201_CREATED)
def add_lead_action(
    lead_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> JSONResponse:
    result = lead_service.add_lead_action(db, principal, lead_id, payload)
    return action_response(result, principal, success_status=status.HTTP_201_CREATED)


@leads_router.get("/leads/{lead_id}/timeline", response_model=list[TimelineEntry])
def get_lead_timeline(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> list[TimelineEntry] | JSONResponse:
    try:
        return timeline_recorder.get_lead_timeline(db, principal, lead_id)
    except (AuthorizationError, LeadOperationError) as exc:
        return _read_failure(request, principal, exc, "crm_lead_timeline_failed")


@notifications_router.get("", response_model=list[NotificationRead])
def list_notifications(
    unread_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> list[NotificationRead]:
    rows = notification_inbox.list_notifications(db, principal, unread_only=unread_only)
    return [NotificationRead.model_validate(row) for row in rows]


@notifications_router.get("/unread-count")
def unread_notification_count(
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> dict[str, int]:
    return {"count": notification_inbox.unread_count(db, principal)}


@notifications_router.post("/read-all")
def mark_all_notifications_read(
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> dict[str, int]:
    return {"count": notification_inbox.mark_all_read(db, principal)}


@notifications_router.post("/{notification_id}/read", response_model=None)
def mark_notification_read(
    request: Request,
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> dict[str, bool] | JSONResponse:
    if not notification_inbox.mark_read(db, principal, notification_id):
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="crm_notification_not_found",
            message="Notification not found",
        )
    return {"success": True}


@audit_router.get("", response_model=AuditListResponse)
def get_audit_logs(
    request: Request,
    page: int = Query(default=1, ge=1),
    entity_type: str | None = Query(default=None),
    action: str | None = Query(default=None),
    search: str | None = Query(default=None),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> AuditListResponse | JSONResponse:
    try:
        return list_audit_logs(db, principal, page=page, entity_type=entity_type, action=action, search=search)
    except AuthorizationError as exc:
        return _read_failure(request, principal, exc, "crm_audit_list_failed")


@settings_router.get("/leads", response_model=LeadSettingsRead)
def get_lead_settings(
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> LeadSettingsRead | JSONResponse:
    try:
        return settings_service.get_lead_settings(db, principal)
    except AuthorizationError as exc:
        return _read_failure(request, principal, exc, "crm_settings_get_failed")


@settings_router.put("/leads")
def update_lead_settings(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> JSONResponse:
    return action_response(settings_service.update_lead_settings(db, principal, payload), principal)


@users_router.get("/assignable", response_model=list[UserRead])
def list_assignable_users(
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> list[UserRead] | JSONResponse:
    try:
        return settings_service.list_assignable_users(db, principal)
    except AuthorizationError as exc:
        return _read_failure(request, principal, exc, "crm_users_list_failed")
