from __future__ import annotations

import logging
import queue
import threading
import uuid
from collections.abc import Callable
from contextlib import AbstractContextManager, contextmanager
from dataclasses import asdict, dataclass, replace
from typing import Any, Iterator

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from leadflow.context import correlation_scope, get_correlation_id
from leadflow.core.celery_app import celery_app
from leadflow.core.config import get_settings
from leadflow.core.database import SessionLocal
from leadflow.metrics import observe_notification_dispatch, observe_notification_dropped
from leadflow.models.notification import Notification, NotificationType
from leadflow.models.user import User
from leadflow.platform.security import BuiltinRole, Principal

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractContextManager[Session]]

INBOX_LIMIT = 30


@dataclass(frozen=True, slots=True)
class NotificationJob:
    type: NotificationType
    title: str
    message: str
    user_ids: tuple[uuid.UUID, ...] = ()
    include_admins: bool = False
    lead_id: uuid.UUID | None = None
    correlation_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.type.value
        payload["user_ids"] = [str(user_id) for user_id in self.user_ids]
        payload["lead_id"] = str(self.lead_id) if self.lead_id else None
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> NotificationJob:
        lead_id = payload.get("lead_id")
        return cls(
            type=NotificationType(payload["type"]),
            title=payload["title"],
            message=payload["message"],
            user_ids=tuple(uuid.UUID(value) for value in payload.get("user_ids", [])),
            include_admins=bool(payload.get("include_admins")),
            lead_id=uuid.UUID(lead_id) if lead_id else None,
            correlation_id=payload.get("correlation_id"),
        )


def resolve_recipients(session: Session, job: NotificationJob) -> list[uuid.UUID]:
    recipients = {user_id for user_id in job.user_ids if user_id is not None}
    if job.include_admins:
        recipients.update(
            session.scalars(
                select(User.id).where(User.role == BuiltinRole.ADMIN.value, User.active.is_(True))
            ).all()
        )
    return sorted(recipients, key=str)


def deliver(session: Session, job: NotificationJob) -> int:
    recipients = resolve_recipients(session, job)
    for user_id in recipients:
        session.add(
            Notification(
                user_id=user_id,
                type=job.type.value,
                title=job.title,
                message=job.message,
                lead_id=job.lead_id,
            )
        )
    session.commit()
    return len(recipients)


@contextmanager
def default_session_scope() -> Iterator[Session]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


class NotificationDispatcher:
    """Fire-and-forget delivery of in-app notifications.

    ``thread`` mode hands jobs to a bounded queue drained by one daemon worker;
    a full queue drops the job. ``sync`` delivers inline and ``celery`` hands
    the job to the broker. In every mode ``dispatch`` never raises.
    """

    def __init__(
        self,
        mode: str | None = None,
        queue_size: int | None = None,
        session_scope: SessionScope | None = None,
    ) -> None:
        self._mode = mode
        self._queue: queue.Queue[NotificationJob | None] = queue.Queue(
            maxsize=queue_size if queue_size is not None else get_settings().notification_queue_size
        )
        self._worker: threading.Thread | None = None
        self._lock = threading.Lock()
        self.session_scope: SessionScope = session_scope or default_session_scope

    @property
    def mode(self) -> str:
        return (self._mode or get_settings().notification_dispatch_mode).lower()

    def start(self) -> None:
        if self.mode != "thread":
            return
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(target=self._drain, name="notification-dispatcher", daemon=True)
            self._worker.start()

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            worker = self._worker
            self._worker = None
        if worker is None:
            return
        self._queue.put(None)
        worker.join(timeout)

    def wait_idle(self) -> None:
        self._queue.join()

    def dispatch(self, job: NotificationJob) -> None:
        if job.correlation_id is None:
            job = replace(job, correlation_id=get_correlation_id())
        try:
            mode = self.mode
            if mode == "sync":
                self._run(job)
            elif mode == "celery":
                deliver_notification_task.delay(job.to_payload())
                observe_notification_dispatch(job.type.value, "queued")
            else:
                self.start()
                self._queue.put_nowait(job)
        except queue.Full:
            observe_notification_dropped()
            logger.warning(
                "notification queue full; dropping job",
                extra={"notification_type": job.type.value, "lead_id": str(job.lead_id) if job.lead_id else None},
            )
        except Exception as exc:
            observe_notification_dispatch(job.type.value, "failed")
            logger.exception(
                "notification dispatch failed",
                extra={"notification_type": job.type.value, "error": str(exc)},
            )

    def _drain(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is None:
                    return
                self._run(job)
            finally:
                self._queue.task_done()

    def _run(self, job: NotificationJob) -> None:
        with correlation_scope(job.correlation_id):
            try:
                with self.session_scope() as session:
                    delivered = deliver(session, job)
                observe_notification_dispatch(job.type.value, "delivered")
                logger.info(
                    "notification delivered",
                    extra={
                        "notification_type": job.type.value,
                        "recipients": delivered,
                        "lead_id": str(job.lead_id) if job.lead_id else None,
                    },
                )
            except Exception as exc:
                observe_notification_dispatch(job.type.value, "failed")
                logger.exception(
                    "notification delivery failed",
                    extra={"notification_type": job.type.value, "error": str(exc)},
                )


notification_dispatcher = NotificationDispatcher()


@celery_app.task(name="leadflow.tasks.deliver_notification")
def deliver_notification_task(payload: dict[str, Any]) -> int:
    job = NotificationJob.from_payload(payload)
    with correlation_scope(job.correlation_id), default_session_scope() as session:
        return deliver(session, job)


class NotificationInbox:
    """Per-user reads and read-state changes on delivered notifications."""

    def list_notifications(self, session: Session, principal: Principal | None, unread_only: bool = False) -> list[Notification]:
        if principal is None:
            return []
        stmt = select(Notification).where(Notification.user_id == principal.user_id)
        if unread_only:
            stmt = stmt.where(Notification.read.is_(False))
        return list(session.scalars(stmt.order_by(Notification.created_at.desc()).limit(INBOX_LIMIT)).all())

    def unread_count(self, session: Session, principal: Principal | None) -> int:
        if principal is None:
            return 0
        return session.scalar(
            select(func.count(Notification.id)).where(
                Notification.user_id == principal.user_id,
                Notification.read.is_(False),
            )
        ) or 0

    def mark_read(self, session: Session, principal: Principal | None, notification_id: uuid.UUID) -> bool:
        if principal is None:
            return False
        result = session.execute(
            update(Notification)
            .where(Notification.id == notification_id, Notification.user_id == principal.user_id)
            .values(read=True)
        )
        session.commit()
        return result.rowcount > 0

    def mark_all_read(self, session: Session, principal: Principal | None) -> int:
        if principal is None:
            return 0
        result = session.execute(
            update(Notification)
            .where(Notification.user_id == principal.user_id, Notification.read.is_(False))
            .values(read=True)
        )
        session.commit()
        return result.rowcount
