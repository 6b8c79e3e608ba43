from __future__ import annotations

import threading
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from unittest.mock import MagicMock

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.database import Base
from leadflow.crm.service import LeadService
from leadflow.models.notification import Notification, NotificationType
from leadflow.models.user import User
from leadflow.platform.security import Principal, role_from_name
from leadflow.services import notifications
from leadflow.services.notifications import NotificationDispatcher, NotificationInbox, NotificationJob


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
def users(db_session: Session) -> dict[str, User]:
    seeded = {
        "admin": User(name="Ada Admin", email="ada@example.com", role="ADMIN"),
        "admin2": User(name="Abe Admin", email="abe@example.com", role="ADMIN"),
        "retired_admin": User(name="Old Admin", email="old@example.com", role="ADMIN", active=False),
        "marketing": User(name="Mo Marketing", email="mo@example.com", role="MARKETING"),
        "sales": User(name="Sam Sales", email="sam@example.com", role="SALES"),
    }
    db_session.add_all(seeded.values())
    db_session.commit()
    return seeded


@pytest.fixture()
def principals(users: dict[str, User]) -> dict[str, Principal]:
    return {
        key: Principal(user_id=user.id, role=role_from_name(user.role), name=user.name)
        for key, user in users.items()
    }


@pytest.fixture()
def session_scope(db_session: Session):
    @contextmanager
    def scope():
        yield db_session

    return scope


def _sample(name: str, labels: dict[str, str] | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


def _job(user_id: uuid.UUID) -> NotificationJob:
    return NotificationJob(
        type=NotificationType.LEAD_ASSIGNED,
        title="Lead Assigned to You",
        message="Someone assigned a lead to you.",
        user_ids=(user_id,),
    )


def test_new_lead_notifies_active_admins_and_assignee(
    db_session: Session, session_scope, principals: dict[str, Principal], users: dict[str, User]
) -> None:
    service = LeadService(dispatcher=NotificationDispatcher(mode="sync", session_scope=session_scope))
    result = service.create_lead(
        db_session,
        principals["marketing"],
        {"name": "Acme", "phone": "501234567", "assigned_to_id": str(users["sales"].id)},
    )
    assert result.success

    rows = db_session.scalars(select(Notification).where(Notification.type == NotificationType.NEW_LEAD.value)).all()
    assert {row.user_id for row in rows} == {users["admin"].id, users["admin2"].id, users["sales"].id}
    assert all(row.lead_id == uuid.UUID(result.lead_id) for row in rows)
    assert rows[0].message == 'Mo Marketing created a new lead: "Acme" (501234567).'


def test_status_change_notifies_assignee(
    db_session: Session, session_scope, principals: dict[str, Principal], users: dict[str, User]
) -> None:
    service = LeadService(dispatcher=NotificationDispatcher(mode="sync", session_scope=session_scope))
    lead_id = uuid.UUID(
        service.create_lead(db_session, principals["admin"], {"name": "Acme", "assigned_to_id": str(users["sales"].id)}).lead_id
    )

    service.update_lead_status(db_session, principals["admin"], lead_id, "customer")

    inbox = NotificationInbox().list_notifications(db_session, principals["sales"])
    assert inbox[0].type == NotificationType.STATUS_CHANGED.value
    assert inbox[0].message == '"Acme" status changed from interesting → customer.'


def test_inbox_read_state_is_per_user(
    db_session: Session, session_scope, principals: dict[str, Principal], users: dict[str, User]
) -> None:
    dispatcher = NotificationDispatcher(mode="sync", session_scope=session_scope)
    for _ in range(3):
        dispatcher.dispatch(_job(users["sales"].id))
    dispatcher.dispatch(_job(users["admin"].id))
    inbox = NotificationInbox()
    sales = principals["sales"]

    assert inbox.unread_count(db_session, sales) == 3
    first = inbox.list_notifications(db_session, sales)[0]
    assert inbox.mark_read(db_session, sales, first.id)
    assert inbox.unread_count(db_session, sales) == 2
    assert len(inbox.list_notifications(db_session, sales, unread_only=True)) == 2

    admins_note = inbox.list_notifications(db_session, principals["admin"])[0]
    assert not inbox.mark_read(db_session, sales, admins_note.id)

    assert inbox.mark_all_read(db_session, sales) == 2
    assert inbox.unread_count(db_session, sales) == 0
    assert inbox.unread_count(db_session, principals["admin"]) == 1
    assert inbox.list_notifications(db_session, None) == []


def test_sync_dispatch_failure_is_swallowed(users: dict[str, User]) -> None:
    @contextmanager
    def broken_scope():
        raise RuntimeError("store unavailable")
        yield  # pragma: no cover

    before = _sample("notification_dispatch_total", {"notification_type": "lead_assigned", "outcome": "failed"})
    NotificationDispatcher(mode="sync", session_scope=broken_scope).dispatch(_job(users["sales"].id))
    after = _sample("notification_dispatch_total", {"notification_type": "lead_assigned", "outcome": "failed"})
    assert after == before + 1


def test_thread_dispatch_drops_jobs_when_queue_is_full() -> None:
    started = threading.Event()
    release = threading.Event()
    delivered: list[NotificationJob] = []

    @contextmanager
    def blocking_scope():
        started.set()
        release.wait(5)
        session = MagicMock()
        session.add.side_effect = lambda row: delivered.append(row)
        yield session

    dispatcher = NotificationDispatcher(mode="thread", queue_size=1, session_scope=blocking_scope)
    before = _sample("notification_queue_dropped_total")
    try:
        dispatcher.dispatch(_job(uuid.uuid4()))
        assert started.wait(5)
        dispatcher.dispatch(_job(uuid.uuid4()))
        dispatcher.dispatch(_job(uuid.uuid4()))
        assert _sample("notification_queue_dropped_total") == before + 1
    finally:
        release.set()
        dispatcher.wait_idle()
        dispatcher.stop()

    assert len(delivered) == 2


def test_celery_dispatch_enqueues_serialized_job(monkeypatch: pytest.MonkeyPatch) -> None:
    sent: list[dict] = []
    monkeypatch.setattr(notifications.deliver_notification_task, "delay", lambda payload: sent.append(payload))
    lead_id = uuid.uuid4()
    job = NotificationJob(
        type=NotificationType.LEAD_RESTORED,
        title="Lead Restored",
        message="restored",
        user_ids=(uuid.uuid4(),),
        include_admins=True,
        lead_id=lead_id,
        correlation_id="corr-celery",
    )

    NotificationDispatcher(mode="celery").dispatch(job)

    assert len(sent) == 1
    assert sent[0]["type"] == "lead_restored"
    assert sent[0]["lead_id"] == str(lead_id)
    assert NotificationJob.from_payload(sent[0]) == job
