from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import logging as app_logging
from app.automation.engine import AutomationEngine
from app.automation.outbound import InlineDispatcher, OutboundTransports, SmtpMailSender, WebhookSender, WhatsAppSender
from app.automation.schemas import DealCreatedEvent
from app.context import reset_automation_depth, reset_correlation_id, set_automation_depth, set_correlation_id
from app.core.config import get_settings
from app.core.database import Base
from app.crm.models import CRMAutomation, CRMDeal, CRMPipeline, CRMPipelineStage
from app.logging import JsonLogFormatter, LogContextFilter, configure_logging


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
def restore_root_logger() -> Generator[None, None, None]:
    root_logger = logging.getLogger()
    handlers = list(root_logger.handlers)
    filters = list(root_logger.filters)
    level = root_logger.level
    factory = logging.getLogRecordFactory()
    yield
    root_logger.handlers[:] = handlers
    root_logger.filters[:] = filters
    root_logger.setLevel(level)
    logging.setLogRecordFactory(factory)
    if hasattr(root_logger, "_dealflow_configured"):
        delattr(root_logger, "_dealflow_configured")


def _format(record: logging.LogRecord) -> dict:
    LogContextFilter().filter(record)
    return json.loads(JsonLogFormatter().format(record))


def test_json_formatter_carries_context_and_known_fields() -> None:
    correlation_token = set_correlation_id("abc-123")
    depth_token = set_automation_depth(2)
    try:
        record = logging.makeLogRecord(
            {
                "name": "app.automation.engine",
                "levelno": logging.INFO,
                "levelname": "INFO",
                "msg": "automation_run_finished",
                "deal_id": "deal-1",
                "automation_id": "automation-1",
                "error": "x" * 600,
                "password": "do-not-log",
            }
        )
        payload = _format(record)
    finally:
        reset_automation_depth(depth_token)
        reset_correlation_id(correlation_token)

    assert payload["msg"] == "automation_run_finished"
    assert payload["logger"] == "app.automation.engine"
    assert payload["correlation_id"] == "abc-123"
    assert payload["automation_depth"] == 2
    assert payload["fields"]["deal_id"] == "deal-1"
    assert payload["fields"]["automation_id"] == "automation-1"
    assert len(payload["fields"]["error"]) == 500
    assert "password" not in payload["fields"]


def test_json_formatter_omits_depth_outside_automation() -> None:
    record = logging.makeLogRecord({"name": "app.lifecycle", "levelname": "INFO", "msg": "system_event"})

    payload = _format(record)

    assert payload["correlation_id"] is None
    assert "automation_depth" not in payload


@pytest.mark.usefixtures("restore_root_logger")
def test_configure_logging_stamps_context_on_every_record(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    get_settings.cache_clear()
    configure_logging()
    configure_logging()

    root_logger = logging.getLogger()
    json_handlers = [handler for handler in root_logger.handlers if isinstance(handler.formatter, JsonLogFormatter)]
    assert len(json_handlers) == 1
    assert root_logger.level == logging.DEBUG
    assert logging.getLogRecordFactory() is app_logging._record_factory

    token = set_correlation_id("corr-9")
    try:
        record = logging.getLogger("app.automation.engine").makeRecord(
            "app.automation.engine", logging.INFO, __file__, 1, "automation_sweep_finished", (), None
        )
    finally:
        reset_correlation_id(token)
    assert record.correlation_id == "corr-9"
    assert record.automation_depth is None


def test_engine_logs_include_deal_and_correlation(
    engine: AutomationEngine,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    caplog.handler.addFilter(LogContextFilter())
    tenant_id = uuid.uuid4()
    pipeline = CRMPipeline(tenant_id=tenant_id, name="Sales")
    db_session.add(pipeline)
    db_session.flush()
    stage = CRMPipelineStage(tenant_id=tenant_id, pipeline_id=pipeline.id, name="Open", position=1)
    db_session.add(stage)
    db_session.flush()
    deal = CRMDeal(tenant_id=tenant_id, name="Logged", value=Decimal("1"), status="OPEN", stage_id=stage.id, custom_fields={})
    automation = CRMAutomation(
        tenant_id=tenant_id,
        name="Log me",
        trigger_type="DEAL_CREATED",
        trigger_config={},
        steps=[{"type": "ACTION", "actionType": "ADD_NOTE", "actionConfig": {"noteContent": "logged"}}],
    )
    db_session.add_all([deal, automation])
    db_session.commit()

    token = set_correlation_id("abc-123")
    try:
        engine.on_event(db_session, DealCreatedEvent(), tenant_id, deal_id=deal.id)
    finally:
        reset_correlation_id(token)

    finished = [
        record
        for record in caplog.records
        if record.name == "app.automation.engine" and record.getMessage() == "automation_run_finished"
    ]
    assert len(finished) == 1
    payload = _format(finished[0])
    assert payload["correlation_id"] == "abc-123"
    assert payload["fields"]["deal_id"] == str(deal.id)
    assert payload["fields"]["automation_id"] == str(automation.id)
    assert payload["fields"]["status"] == "CONTINUE"
