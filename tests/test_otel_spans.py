from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.auth import get_current_principal
from leadflow.core.config import get_settings
from leadflow.core.database import Base, get_db
from leadflow.main import app
from leadflow.models.user import User
from leadflow.otel import setup_inmemory_otel
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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("NOTIFICATION_DISPATCH_MODE", "sync")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel()
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    marketer = User(name="Mo Marketing", email="mo@example.com", role="MARKETING")
    db_session.add(marketer)
    db_session.commit()

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_principal(request: Request) -> Principal:
        return Principal(
            user_id=marketer.id,
            role=role_from_name(marketer.role),
            name=marketer.name,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_principal] = override_get_current_principal
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_lead_operation_span_records_outcome(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    created = client.post("/api/crm/leads", json={"name": "Span Lead"}, headers={"X-Correlation-Id": "otel-op-1"})
    assert created.status_code == 201
    lead_id = created.json()["lead_id"]

    denied = client.post(f"/api/crm/leads/{lead_id}/notes", json={"message": "hi"}, headers={"X-Correlation-Id": "otel-op-2"})
    assert denied.status_code == 403

    spans = {span.name: span for span in span_exporter.get_finished_spans() if span.name.startswith("leads.")}
    create_span = spans["leads.create_lead"]
    assert create_span.attributes.get("outcome") == "success"
    assert create_span.attributes.get("role") == "MARKETING"
    assert create_span.attributes.get("correlation_id") == "otel-op-1"

    note_span = spans["leads.add_note"]
    assert note_span.attributes.get("outcome") == "unauthorized"
    assert note_span.attributes.get("correlation_id") == "otel-op-2"
