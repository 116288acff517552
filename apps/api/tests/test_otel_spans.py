from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import httpx
import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.automation.engine import AutomationEngine
from app.automation.outbound import InlineDispatcher, OutboundTransports, SmtpMailSender, WebhookSender, WhatsAppSender
from app.automation.schemas import DealCreatedEvent
from app.core.config import Settings, get_settings
from app.core.database import Base
from app.crm.models import CRMAutomation, CRMDeal, CRMPipeline, CRMPipelineStage
from app.otel import setup_inmemory_otel, setup_otel


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def engine() -> AutomationEngine:
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    transports = OutboundTransports(
        webhook=WebhookSender(client),
        whatsapp=WhatsAppSender(client),
        mail=SmtpMailSender(timeout=1.0),
        dispatcher=InlineDispatcher(),
    )
    return AutomationEngine(transports)


@pytest.fixture()
def seeded(db_session: Session) -> dict[str, Any]:
    tenant_id = uuid.uuid4()
    pipeline = CRMPipeline(tenant_id=tenant_id, name="Sales")
    db_session.add(pipeline)
    db_session.flush()
    stage = CRMPipelineStage(tenant_id=tenant_id, pipeline_id=pipeline.id, name="Open", position=1)
    db_session.add(stage)
    db_session.flush()
    deal = CRMDeal(tenant_id=tenant_id, name="Traced", value=Decimal("5"), status="OPEN", stage_id=stage.id, custom_fields={})
    automation = CRMAutomation(
        tenant_id=tenant_id,
        name="Trace me",
        trigger_type="DEAL_CREATED",
        trigger_config={},
        steps=[
            {"type": "ACTION", "actionType": "ADD_NOTE", "actionConfig": {"noteContent": "hello"}},
            {"type": "ACTION", "actionType": "WAIT", "actionConfig": {"waitDuration": 2, "waitUnit": "HOURS"}},
            {"type": "ACTION", "actionType": "ADD_NOTE", "actionConfig": {"noteContent": "later"}},
        ],
    )
    db_session.add_all([deal, automation])
    db_session.commit()
    return {"tenant_id": tenant_id, "deal_id": deal.id, "automation_id": automation.id}


def test_automation_run_spans_nest_actions(
    engine: AutomationEngine,
    db_session: Session,
    seeded: dict[str, Any],
    span_exporter: InMemorySpanExporter,
) -> None:
    engine.on_event(db_session, DealCreatedEvent(), seeded["tenant_id"], deal_id=seeded["deal_id"])

    spans = span_exporter.get_finished_spans()
    by_name: dict[str, list[Any]] = {}
    for span in spans:
        by_name.setdefault(span.name, []).append(span)

    assert set(by_name) >= {"automation.on_event", "automation.run", "automation.action"}

    event_span = by_name["automation.on_event"][0]
    assert event_span.attributes["event_type"] == "DEAL_CREATED"
    assert event_span.attributes["matched"] == 1

    run_span = by_name["automation.run"][0]
    assert run_span.attributes["automation_id"] == str(seeded["automation_id"])
    assert run_span.attributes["origin"] == "trigger"
    assert run_span.attributes["signal"] == "SUSPEND"
    assert run_span.parent is not None
    assert run_span.parent.span_id == event_span.context.span_id

    action_spans = by_name["automation.action"]
    assert [span.attributes["action_type"] for span in action_spans] == ["ADD_NOTE", "WAIT"]
    assert all(span.parent is not None and span.parent.span_id == run_span.context.span_id for span in action_spans)


def test_sweep_span_counts_due_continuations(
    engine: AutomationEngine,
    db_session: Session,
    seeded: dict[str, Any],
    span_exporter: InMemorySpanExporter,
) -> None:
    engine.on_event(db_session, DealCreatedEvent(), seeded["tenant_id"], deal_id=seeded["deal_id"])
    span_exporter.clear()

    engine.sweep_due_continuations(db_session, now=datetime.now(timezone.utc) + timedelta(hours=3))

    sweep_spans = [span for span in span_exporter.get_finished_spans() if span.name == "automation.sweep"]
    assert len(sweep_spans) == 1
    assert sweep_spans[0].attributes["count"] == 1
    resumed_runs = [span for span in span_exporter.get_finished_spans() if span.name == "automation.run"]
    assert [span.attributes["origin"] for span in resumed_runs] == ["time"]


def test_setup_otel_follows_settings(span_exporter: InMemorySpanExporter) -> None:
    assert setup_otel("worker", Settings(otel_enabled=False)) is None

    provider = setup_otel("worker", Settings(otel_enabled=True))

    assert provider is not None
    assert setup_otel("worker", Settings(otel_enabled=True)) is provider
