from __future__ import annotations

import uuid
from collections.abc import Generator
from contextlib import contextmanager
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.config import get_settings
from leadflow.core.database import Base
from leadflow.crm.bulk import BulkExecutor
from leadflow.crm.service import LeadService
from leadflow.crm.timeline import TimelineRecorder
from leadflow.models.audit import AuditAction
from leadflow.models.user import User
from leadflow.platform.security import AuthorizationError, Principal, role_from_name
from leadflow.services.audit import LEAD_ENTITY, list_audit_logs, write_audit_log
from leadflow.services.notifications import NotificationDispatcher


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def principals(db_session: Session) -> dict[str, Principal]:
    users = {
        "admin": User(name="Ada Admin", email="ada@example.com", role="ADMIN"),
        "sales": User(name="Sam Sales", email="sam@example.com", role="SALES"),
        "sales2": User(name="Sara Sales", email="sara@example.com", role="SALES"),
    }
    db_session.add_all(users.values())
    db_session.commit()
    return {
        key: Principal(user_id=user.id, role=role_from_name(user.role), name=user.name, correlation_id=f"corr-{key}")
        for key, user in users.items()
    }


@pytest.fixture()
def dispatcher(db_session: Session) -> NotificationDispatcher:
    @contextmanager
    def session_scope():
        yield db_session

    return NotificationDispatcher(mode="sync", session_scope=session_scope)


@pytest.fixture()
def service(dispatcher: NotificationDispatcher) -> LeadService:
    return LeadService(dispatcher=dispatcher)


def _create(service: LeadService, session: Session, principal: Principal, assignee: uuid.UUID | None = None) -> uuid.UUID:
    payload = {"name": f"Lead {uuid.uuid4().hex[:6]}"}
    if assignee is not None:
        payload["assigned_to_id"] = str(assignee)
    result = service.create_lead(session, principal, payload)
    assert result.success
    return uuid.UUID(result.lead_id)


def test_timeline_merges_notes_actions_and_audit_newest_first(
    db_session: Session, service: LeadService, principals: dict[str, Principal]
) -> None:
    admin = principals["admin"]
    lead_id = _create(service, db_session, admin)
    service.add_note(db_session, admin, lead_id, "First contact")
    service.add_lead_action(db_session, admin, lead_id, {"type": "EMAIL", "description": "Sent brochure"})
    service.update_lead_status(db_session, admin, lead_id, "follow_up")

    timeline = TimelineRecorder().get_lead_timeline(db_session, admin, lead_id)

    assert {entry.kind for entry in timeline} == {"note", "action", "audit"}
    assert [entry.created_at for entry in timeline] == sorted((entry.created_at for entry in timeline), reverse=True)
    assert timeline[0].kind == "audit"
    assert timeline[0].message == "Status changed from interesting to follow_up"
    assert timeline[-1].message == "Lead created"

    action = next(entry for entry in timeline if entry.kind == "action")
    assert action.message == "Sent brochure"
    assert action.author_name == "Ada Admin"
    system_note = next(entry for entry in timeline if entry.message == "Lead created")
    assert system_note.author_name == "SYSTEM"


def test_timeline_includes_bulk_audit_entries(
    db_session: Session, service: LeadService, dispatcher: NotificationDispatcher, principals: dict[str, Principal]
) -> None:
    admin = principals["admin"]
    first = _create(service, db_session, admin)
    second = _create(service, db_session, admin)

    BulkExecutor(dispatcher=dispatcher).bulk_update_status(db_session, admin, [first, second], "customer")

    for lead_id in (first, second):
        timeline = TimelineRecorder().get_lead_timeline(db_session, admin, lead_id)
        assert any(entry.kind == "audit" and entry.type == AuditAction.BULK_UPDATE.value for entry in timeline)


def test_timeline_hidden_from_unassigned_sales(
    db_session: Session, service: LeadService, principals: dict[str, Principal]
) -> None:
    lead_id = _create(service, db_session, principals["admin"], assignee=principals["sales"].user_id)

    assert TimelineRecorder().get_lead_timeline(db_session, principals["sales2"], lead_id) == []
    assert TimelineRecorder().get_lead_timeline(db_session, principals["sales"], lead_id)
    with pytest.raises(AuthorizationError):
        TimelineRecorder().get_lead_timeline(db_session, None, lead_id)


def test_audit_listing_is_admin_only_and_newest_first(
    db_session: Session, service: LeadService, principals: dict[str, Principal]
) -> None:
    admin = principals["admin"]
    first = _create(service, db_session, admin)
    service.update_lead(db_session, admin, first, {"company": "Globex"})

    page = list_audit_logs(db_session, admin)
    assert page.total == 2
    assert page.pages == 1
    assert [item.action for item in page.items] == [AuditAction.UPDATE.value, AuditAction.CREATE.value]
    assert page.items[0].correlation_id == "corr-admin"
    assert page.items[0].user_name == "Ada Admin"

    assert list_audit_logs(db_session, admin, action=AuditAction.CREATE.value).total == 1
    assert list_audit_logs(db_session, admin, search="globex").total == 1
    assert list_audit_logs(db_session, admin, entity_type="user").total == 0

    with pytest.raises(AuthorizationError):
        list_audit_logs(db_session, principals["sales"])


def test_audit_listing_paginates(
    db_session: Session, service: LeadService, principals: dict[str, Principal], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("AUDIT_PAGE_SIZE", "2")
    get_settings.cache_clear()
    try:
        for _ in range(3):
            _create(service, db_session, principals["admin"])
        second_page = list_audit_logs(db_session, principals["admin"], page=2)
    finally:
        get_settings.cache_clear()

    assert second_page.total == 3
    assert second_page.pages == 2
    assert len(second_page.items) == 1


def test_audit_write_failure_is_swallowed(principals: dict[str, Principal]) -> None:
    session = MagicMock()
    session.commit.side_effect = OperationalError("INSERT INTO audit_logs", {}, Exception("database is locked"))

    entry = write_audit_log(session, principals["admin"], AuditAction.UPDATE, LEAD_ENTITY, str(uuid.uuid4()), "details")

    assert entry is None
    session.rollback.assert_called_once()
