from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.auth import get_current_principal
from leadflow.core.config import get_settings
from leadflow.core.database import Base, get_db
from leadflow.main import app
from leadflow.models.user import User
from leadflow.platform.security import Principal, role_from_name


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


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("NOTIFICATION_DISPATCH_MODE", "sync")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str | None], None]], None, None]:
    admin = User(name="Ada Admin", email="ada@example.com", role="ADMIN")
    sales = User(name="Sam Sales", email="sam@example.com", role="SALES")
    db_session.add_all([admin, sales])
    db_session.commit()
    principals = {
        user.role: Principal(user_id=user.id, role=role_from_name(user.role), name=user.name) for user in (admin, sales)
    }
    state: dict[str, Principal | None] = {"current": principals["ADMIN"]}

    def set_actor(role: str | None) -> None:
        state["current"] = principals[role] if role else None

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_principal] = lambda: state["current"]

    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_lead_metrics(client) -> None:
    test_client, _ = client
    assert test_client.get("/health").status_code == 200
    assert test_client.post("/api/crm/leads", json={"name": "Metrics Lead", "phone": "501112222"}).status_code == 201
    assert test_client.post("/api/crm/leads", json={"name": "Clone", "phone": "0501112222"}).status_code == 409

    metrics = test_client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "lead_operations_total" in body
    assert "lead_duplicate_rejections_total" in body
    assert 'path="/health"' in body
    assert 'operation="create_lead",outcome="success"' in body
    assert 'operation="create_lead",outcome="duplicate"' in body


def test_metrics_endpoint_requires_admin(client) -> None:
    test_client, set_actor = client
    set_actor("SALES")
    assert test_client.get("/metrics").status_code == 403
    set_actor(None)
    assert test_client.get("/metrics").status_code == 403


def test_metrics_endpoint_hidden_when_disabled(client, monkeypatch: pytest.MonkeyPatch) -> None:
    test_client, _ = client
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()
    assert test_client.get("/metrics").status_code == 404
