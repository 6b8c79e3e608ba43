from __future__ import annotations

import uuid
from collections.abc import Generator
from contextlib import contextmanager

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.database import Base
from leadflow.crm.bulk import BulkExecutor
from leadflow.crm.models import Lead, LeadNote, NoteType
from leadflow.crm.queries import LeadQueryService
from leadflow.crm.service import LeadService
from leadflow.models.audit import AuditAction, AuditLog
from leadflow.models.notification import Notification
from leadflow.models.user import User
from leadflow.platform.security import Principal, role_from_name
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
def users(db_session: Session) -> dict[str, User]:
    seeded = {
        "admin": User(name="Ada Admin", email="ada@example.com", role="ADMIN"),
        "marketing": User(name="Mo Marketing", email="mo@example.com", role="MARKETING"),
        "sales": User(name="Sam Sales", email="sam@example.com", role="SALES"),
        "inactive": User(name="Ivan Inactive", email="ivan@example.com", role="SALES", active=False),
    }
    db_session.add_all(seeded.values())
    db_session.commit()
    return seeded


@pytest.fixture()
def principals(users: dict[str, User]) -> dict[str, Principal]:
    return {
        key: Principal(user_id=user.id, role=role_from_name(user.role), name=user.name, correlation_id="corr-bulk")
        for key, user in users.items()
    }


@pytest.fixture()
def dispatcher(db_session: Session) -> NotificationDispatcher:
    @contextmanager
    def session_scope():
        yield db_session

    return NotificationDispatcher(mode="sync", session_scope=session_scope)


@pytest.fixture()
def executor(dispatcher: NotificationDispatcher) -> BulkExecutor:
    return BulkExecutor(dispatcher=dispatcher)


@pytest.fixture()
def leads(
    db_session: Session, dispatcher: NotificationDispatcher, principals: dict[str, Principal], users: dict[str, User]
) -> list[uuid.UUID]:
    service = LeadService(dispatcher=dispatcher)
    created = []
    for index, assignee in enumerate((users["sales"].id, None, None)):
        payload = {"name": f"Lead {index}", "phone": f"50123450{index}"}
        if assignee is not None:
            payload["assigned_to_id"] = str(assignee)
        result = service.create_lead(db_session, principals["admin"], payload)
        assert result.success
        created.append(uuid.UUID(result.lead_id))
    return created


def _audits(session: Session, action: AuditAction) -> list[AuditLog]:
    return list(session.scalars(select(AuditLog).where(AuditLog.action == action.value)).all())


def test_bulk_soft_delete_moves_all_to_trash_with_one_audit(
    db_session: Session, executor: BulkExecutor, principals: dict[str, Principal], leads: list[uuid.UUID]
) -> None:
    result = executor.bulk_soft_delete(db_session, principals["admin"], leads)
    assert result.success
    assert result.count == 3
    assert result.message == "3 leads moved to recycle bin"

    db_session.expire_all()
    assert all(db_session.get(Lead, lead_id).deleted_at is not None for lead_id in leads)

    audits = _audits(db_session, AuditAction.BULK_DELETE)
    assert len(audits) == 1
    assert set(audits[0].entity_id.split(",")) == {str(lead_id) for lead_id in leads}

    queries = LeadQueryService()
    assert queries.get_leads(db_session, principals["admin"], {"trash": True}).total == 3
    assert queries.get_leads(db_session, principals["admin"], {}).total == 0


def test_bulk_soft_delete_is_admin_only(
    db_session: Session, executor: BulkExecutor, principals: dict[str, Principal], leads: list[uuid.UUID]
) -> None:
    for key in ("marketing", "sales"):
        result = executor.bulk_soft_delete(db_session, principals[key], leads)
        assert result.error == "unauthorized"
    assert db_session.scalar(select(func.count(Lead.id)).where(Lead.deleted_at.is_not(None))) == 0
    assert _audits(db_session, AuditAction.BULK_DELETE) == []


def test_bulk_assign_to_inactive_or_unknown_user_modifies_nothing(
    db_session: Session,
    executor: BulkExecutor,
    principals: dict[str, Principal],
    users: dict[str, User],
    leads: list[uuid.UUID],
) -> None:
    for target in (users["inactive"].id, uuid.uuid4()):
        result = executor.bulk_assign(db_session, principals["admin"], leads, target)
        assert not result.success
        assert result.message == "Target user not found or is deactivated"

    db_session.expire_all()
    assert [db_session.get(Lead, lead_id).assigned_to_id for lead_id in leads] == [users["sales"].id, None, None]
    assert _audits(db_session, AuditAction.BULK_UPDATE) == []


def test_marketing_bulk_assign_notifies_target(
    db_session: Session,
    executor: BulkExecutor,
    principals: dict[str, Principal],
    users: dict[str, User],
    leads: list[uuid.UUID],
) -> None:
    result = executor.bulk_assign(db_session, principals["marketing"], leads[1:], users["sales"].id)
    assert result.success
    assert result.count == 2

    db_session.expire_all()
    assert all(db_session.get(Lead, lead_id).assigned_to_id == users["sales"].id for lead_id in leads)
    audit = _audits(db_session, AuditAction.BULK_UPDATE)[0]
    assert audit.details == "Bulk assigned 2 leads to Sam Sales"

    inbox = db_session.scalars(
        select(Notification).where(Notification.user_id == users["sales"].id, Notification.title == "Leads Assigned to You")
    ).all()
    assert len(inbox) == 1
    assert inbox[0].message == "Mo Marketing assigned 2 leads to you."


def test_sales_cannot_bulk_assign(
    db_session: Session,
    executor: BulkExecutor,
    principals: dict[str, Principal],
    users: dict[str, User],
    leads: list[uuid.UUID],
) -> None:
    result = executor.bulk_assign(db_session, principals["sales"], leads, users["sales"].id)
    assert result.error == "unauthorized"


def test_sales_bulk_status_touches_only_assigned_leads(
    db_session: Session, executor: BulkExecutor, principals: dict[str, Principal], leads: list[uuid.UUID]
) -> None:
    result = executor.bulk_update_status(db_session, principals["sales"], leads, "customer")
    assert result.success
    assert result.count == 1

    db_session.expire_all()
    assert [db_session.get(Lead, lead_id).status for lead_id in leads] == ["customer", "interesting", "interesting"]

    notes = db_session.scalars(select(LeadNote).where(LeadNote.type == NoteType.STATUS_CHANGE.value)).all()
    assert [note.lead_id for note in notes] == [leads[0]]
    assert notes[0].meta == {"from_status": "interesting", "to_status": "customer"}

    audits = _audits(db_session, AuditAction.BULK_UPDATE)
    assert len(audits) == 1
    assert audits[0].entity_id == str(leads[0])


def test_bulk_status_skips_leads_already_in_status(
    db_session: Session, executor: BulkExecutor, principals: dict[str, Principal], leads: list[uuid.UUID]
) -> None:
    result = executor.bulk_update_status(db_session, principals["admin"], leads, "interesting")
    assert result.success
    assert result.count == 0
    assert len(_audits(db_session, AuditAction.BULK_UPDATE)) == 1


def test_bulk_guards_reject_bad_input(
    db_session: Session, executor: BulkExecutor, principals: dict[str, Principal], leads: list[uuid.UUID]
) -> None:
    assert executor.bulk_update_status(db_session, principals["admin"], [], "customer").error == "invalid_fields"
    assert executor.bulk_update_status(db_session, principals["admin"], leads, "bogus").error == "invalid_fields"
    assert executor.bulk_update_status(db_session, principals["marketing"], leads, "customer").error == "unauthorized"
    assert executor.bulk_soft_delete(db_session, principals["admin"], []).error == "invalid_fields"
