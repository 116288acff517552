from __future__ import annotations

import json
import logging
import smtplib
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import httpx
import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit
from app.automation.actions import ActionExecutor, parse_offset_days
from app.automation.context import ExecutionContext, ExecutionSignal
from app.automation.outbound import (
    InlineDispatcher,
    OutboundTransports,
    SmtpConfig,
    WebhookSender,
    WhatsAppSender,
)
from app.automation.schemas import ActionStep
from app.automation.store import SqlAlchemyAutomationStore
from app.core.config import get_settings
from app.core.database import Base
from app.crm.models import (
    CRMAutomationContinuation,
    CRMCalendarNote,
    CRMContact,
    CRMDeal,
    CRMEmailTemplate,
    CRMPipeline,
    CRMPipelineStage,
    CRMTask,
    CRMTenant,
)


class RecordingMailSender:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[dict[str, Any]] = []

    def send(self, config: SmtpConfig, *, to: str, subject: str, html: str) -> None:
        if self.fail:
            raise smtplib.SMTPException("relay refused")
        self.sent.append({"host": config.host, "to": to, "subject": subject, "html": html})


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
    audit.audit_entries.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()


@pytest.fixture()
def requests_seen() -> list[httpx.Request]:
    return []


@pytest.fixture()
def mail() -> RecordingMailSender:
    return RecordingMailSender()


@pytest.fixture()
def executor(requests_seen: list[httpx.Request], mail: RecordingMailSender) -> ActionExecutor:
    def handler(request: httpx.Request) -> httpx.Response:
        requests_seen.append(request)
        if request.url.host == "broken.example.com":
            return httpx.Response(500)
        return httpx.Response(200, json={"ok": True})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    transports = OutboundTransports(
        webhook=WebhookSender(client),
        whatsapp=WhatsAppSender(client),
        mail=mail,
        dispatcher=InlineDispatcher(),
    )
    return ActionExecutor(transports)


@pytest.fixture()
def seeded(db_session: Session) -> dict[str, Any]:
    tenant = CRMTenant(
        name="Acme",
        smtp_config={"host": "smtp.example.com", "port": 587, "secure": False, "user": "sales@acme.com", "pass": "pw"},
        whatsapp_instance_name="acme-main",
        whatsapp_api_url="wa.example.com/",
        whatsapp_api_key="wa-key",
    )
    db_session.add(tenant)
    db_session.flush()
    pipeline = CRMPipeline(tenant_id=tenant.id, name="Sales")
    db_session.add(pipeline)
    db_session.flush()
    open_stage = CRMPipelineStage(tenant_id=tenant.id, pipeline_id=pipeline.id, name="Open", position=1)
    won_stage = CRMPipelineStage(tenant_id=tenant.id, pipeline_id=pipeline.id, name="Won", position=2)
    contact = CRMContact(
        tenant_id=tenant.id,
        name="Ana",
        email="ana@example.com",
        phones=["+55 (11) 99999-0000"],
        custom_fields={},
    )
    template = CRMEmailTemplate(
        tenant_id=tenant.id,
        name="Welcome",
        subject="Hello {{contact.name}}",
        body="<p>{{deal.name}}</p>",
    )
    db_session.add_all([open_stage, won_stage, contact, template])
    db_session.flush()
    deal = CRMDeal(
        tenant_id=tenant.id,
        name="Big Deal",
        value=Decimal("1500.00"),
        status="OPEN",
        stage_id=open_stage.id,
        contact_id=contact.id,
        custom_fields={},
    )
    db_session.add(deal)
    db_session.commit()
    return {
        "tenant": tenant,
        "pipeline": pipeline,
        "open_stage": open_stage,
        "won_stage": won_stage,
        "contact": contact,
        "template": template,
        "deal": deal,
    }


def _context(seeded: dict[str, Any], event_type: str = "DEAL_CREATED") -> ExecutionContext:
    return ExecutionContext(
        tenant_id=seeded["tenant"].id,
        event_type=event_type,
        deal=seeded["deal"],
        contact=seeded["contact"],
    )


def _run(
    executor: ActionExecutor,
    db_session: Session,
    context: ExecutionContext,
    action_type: str,
    config: dict[str, Any],
    remaining: list[ActionStep] | None = None,
) -> ExecutionSignal:
    return executor.execute(
        SqlAlchemyAutomationStore(db_session),
        ActionStep(action_type=action_type, action_config=config),
        context,
        remaining_steps=remaining or [],
        automation_id=uuid.uuid4(),
    )


def _today():
    return datetime.now(timezone.utc).date()


def test_parse_offset_days_uses_leading_integer() -> None:
    assert parse_offset_days("3 days") == 3
    assert parse_offset_days(5) == 5
    assert parse_offset_days("-2") == -2
    assert parse_offset_days("") is None
    assert parse_offset_days(0) is None
    assert parse_offset_days("soon") is None


def test_add_note_records_note_and_history(executor: ActionExecutor, db_session: Session, seeded: dict[str, Any]) -> None:
    context = _context(seeded)
    signal = _run(executor, db_session, context, "ADD_NOTE", {"noteContent": "Call {{contact.name}}"})

    deal = seeded["deal"]
    assert signal is ExecutionSignal.CONTINUE
    assert [note.content for note in deal.notes] == ["Call Ana"]
    assert deal.history[-1].action == "Note Added via Automation"
    assert deal.history[-1].details_json == {"content": "Call Ana"}
    assert context.mutated_deal_ids == {deal.id}


def test_update_status_and_move_stage(executor: ActionExecutor, db_session: Session, seeded: dict[str, Any]) -> None:
    context = _context(seeded)
    _run(executor, db_session, context, "UPDATE_DEAL_STATUS", {"status": "WON"})
    _run(executor, db_session, context, "MOVE_DEAL_TO_STAGE", {"stageId": str(seeded["won_stage"].id)})

    deal = seeded["deal"]
    assert deal.status == "WON"
    assert deal.stage_id == seeded["won_stage"].id
    assert [entry.action for entry in deal.history] == [
        "Status Updated via Automation",
        "Stage Changed via Automation",
    ]
    assert deal.history[0].details_json == {"from": "OPEN", "to": "WON"}
    assert deal.history[1].details_json == {"from": "Open", "to": "Won"}


def test_move_to_unknown_stage_is_skipped(executor: ActionExecutor, db_session: Session, seeded: dict[str, Any]) -> None:
    context = _context(seeded)
    signal = _run(executor, db_session, context, "MOVE_DEAL_TO_STAGE", {"stageId": str(uuid.uuid4())})

    assert signal is ExecutionSignal.CONTINUE
    assert seeded["deal"].stage_id == seeded["open_stage"].id
    assert context.mutated_deal_ids == set()


def test_create_deal_copies_value_marker(executor: ActionExecutor, db_session: Session, seeded: dict[str, Any]) -> None:
    context = _context(seeded)
    _run(
        executor,
        db_session,
        context,
        "CREATE_DEAL",
        {
            "pipelineId": str(seeded["pipeline"].id),
            "stageId": str(seeded["won_stage"].id),
            "dealName": "Upsell for {{contact.name}}",
            "dealValue": "{{deal.value}}",
        },
    )

    created = db_session.scalar(select(CRMDeal).where(CRMDeal.name == "Upsell for Ana"))
    assert created is not None
    assert created.value == Decimal("1500")
    assert created.stage_id == seeded["won_stage"].id
    assert created.contact_id == seeded["contact"].id
    assert created.observation == "Created by automation"
    assert [entry.action for entry in created.history] == ["Deal Created via Automation"]


def test_create_deal_requires_contact(executor: ActionExecutor, db_session: Session, seeded: dict[str, Any]) -> None:
    seeded["deal"].contact_id = None
    db_session.commit()
    context = _context(seeded)
    _run(
        executor,
        db_session,
        context,
        "CREATE_DEAL",
        {
            "pipelineId": str(seeded["pipeline"].id),
            "stageId": str(seeded["won_stage"].id),
            "dealName": "Orphan",
            "dealValue": 10,
        },
    )

    assert db_session.scalar(select(CRMDeal).where(CRMDeal.name == "Orphan")) is None


def test_create_deal_rejects_stage_from_other_pipeline(
    executor: ActionExecutor,
    db_session: Session,
    seeded: dict[str, Any],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    other_pipeline = CRMPipeline(tenant_id=seeded["tenant"].id, name="Renewals")
    db_session.add(other_pipeline)
    db_session.commit()
    context = _context(seeded)
    signal = _run(
        executor,
        db_session,
        context,
        "CREATE_DEAL",
        {
            "pipelineId": str(other_pipeline.id),
            "stageId": str(seeded["won_stage"].id),
            "dealName": "Misfiled",
            "dealValue": 10,
        },
    )

    assert signal is ExecutionSignal.CONTINUE
    assert db_session.scalar(select(CRMDeal).where(CRMDeal.name == "Misfiled")) is None
    assert any(
        record.getMessage() == "automation_action_skipped" and getattr(record, "reason", None) == "stage_not_in_pipeline"
        for record in caplog.records
    )


def test_create_task_and_calendar_note_offsets(
    executor: ActionExecutor,
    db_session: Session,
    seeded: dict[str, Any],
) -> None:
    context = _context(seeded)
    _run(executor, db_session, context, "CREATE_TASK", {"taskTitle": "Follow {{deal.name}}", "taskDueDateOffsetDays": "3 days"})
    _run(executor, db_session, context, "CREATE_TASK", {"taskTitle": "No due date", "taskDueDateOffsetDays": ""})
    _run(executor, db_session, context, "CREATE_CALENDAR_NOTE", {"noteTitle": "Skipped", "noteDateOffsetDays": 0})
    _run(
        executor,
        db_session,
        context,
        "CREATE_CALENDAR_NOTE",
        {"noteTitle": "Review {{deal.name}}", "noteDateOffsetDays": "2", "calendarNoteContent": "for {{contact.name}}"},
    )

    tasks = {task.title: task for task in db_session.scalars(select(CRMTask)).all()}
    assert tasks["Follow Big Deal"].due_date == _today() + timedelta(days=3)
    assert tasks["Follow Big Deal"].deal_id == seeded["deal"].id
    assert tasks["Follow Big Deal"].contact_id == seeded["contact"].id
    assert tasks["No due date"].due_date is None

    notes = db_session.scalars(select(CRMCalendarNote)).all()
    assert [(note.title, note.content, note.note_date) for note in notes] == [
        ("Review Big Deal", "for Ana", _today() + timedelta(days=2))
    ]


def test_webhook_posts_trigger_and_context(
    executor: ActionExecutor,
    db_session: Session,
    seeded: dict[str, Any],
    requests_seen: list[httpx.Request],
) -> None:
    context = _context(seeded, event_type="DEAL_STAGE_CHANGED")
    signal = _run(executor, db_session, context, "SEND_WEBHOOK", {"webhookUrl": "https://hooks.example.com/{{deal.id}}"})

    assert signal is ExecutionSignal.CONTINUE
    assert len(requests_seen) == 1
    request = requests_seen[0]
    assert str(request.url) == f"https://hooks.example.com/{seeded['deal'].id}"
    body = json.loads(request.content)
    assert body["triggerEvent"] == "DEAL_STAGE_CHANGED"
    assert body["context"]["id"] == str(seeded["deal"].id)
    assert body["context"]["value"] == 1500


def test_webhook_failure_is_logged_and_run_continues(
    executor: ActionExecutor,
    db_session: Session,
    seeded: dict[str, Any],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    context = _context(seeded)
    signal = _run(executor, db_session, context, "SEND_WEBHOOK", {"webhookUrl": "https://broken.example.com/hook"})

    assert signal is ExecutionSignal.CONTINUE
    assert any(
        record.getMessage() == "automation_outbound_failed" and getattr(record, "channel", None) == "webhook"
        for record in caplog.records
    )


def test_whatsapp_uses_tenant_instance(
    executor: ActionExecutor,
    db_session: Session,
    seeded: dict[str, Any],
    requests_seen: list[httpx.Request],
) -> None:
    context = _context(seeded)
    _run(
        executor,
        db_session,
        context,
        "SEND_WHATSAPP",
        {"whatsappNumber": "{{contact.phone}}", "whatsappText": "Hi {{contact.name}}"},
    )

    assert len(requests_seen) == 1
    request = requests_seen[0]
    assert str(request.url) == "https://wa.example.com/message/sendText/acme-main"
    assert request.headers["apikey"] == "wa-key"
    assert json.loads(request.content) == {"number": "5511999990000", "text": "Hi Ana"}


def test_whatsapp_without_tenant_config_is_skipped(
    executor: ActionExecutor,
    db_session: Session,
    seeded: dict[str, Any],
    requests_seen: list[httpx.Request],
) -> None:
    seeded["tenant"].whatsapp_api_key = None
    db_session.commit()
    _run(executor, db_session, _context(seeded), "SEND_WHATSAPP", {"whatsappNumber": "123", "whatsappText": "Hi"})

    assert requests_seen == []


def test_email_success_records_history(
    executor: ActionExecutor,
    db_session: Session,
    seeded: dict[str, Any],
    mail: RecordingMailSender,
) -> None:
    _run(executor, db_session, _context(seeded), "SEND_EMAIL", {"templateId": str(seeded["template"].id)})

    assert mail.sent == [
        {"host": "smtp.example.com", "to": "ana@example.com", "subject": "Hello Ana", "html": "<p>Big Deal</p>"}
    ]
    history = seeded["deal"].history
    assert history[-1].action == "Email Sent via Automation"
    assert history[-1].details_json == {"to": "ana@example.com", "subject": "Hello Ana"}


def test_email_failure_records_no_history(
    executor: ActionExecutor,
    db_session: Session,
    seeded: dict[str, Any],
    mail: RecordingMailSender,
    caplog: pytest.LogCaptureFixture,
) -> None:
    mail.fail = True
    caplog.set_level(logging.INFO)
    signal = _run(executor, db_session, _context(seeded), "SEND_EMAIL", {"templateId": str(seeded["template"].id)})

    assert signal is ExecutionSignal.CONTINUE
    assert seeded["deal"].history == []
    assert any(record.getMessage() == "automation_outbound_failed" for record in caplog.records)


def test_email_without_recipient_is_skipped(
    executor: ActionExecutor,
    db_session: Session,
    seeded: dict[str, Any],
    mail: RecordingMailSender,
) -> None:
    seeded["contact"].email = None
    db_session.commit()
    _run(executor, db_session, _context(seeded), "SEND_EMAIL", {"templateId": str(seeded["template"].id)})

    assert mail.sent == []


def test_wait_suspends_only_with_remaining_steps(
    executor: ActionExecutor,
    db_session: Session,
    seeded: dict[str, Any],
) -> None:
    context = _context(seeded)
    nothing_left = _run(executor, db_session, context, "WAIT", {"waitDuration": 2, "waitUnit": "HOURS"})
    assert nothing_left is ExecutionSignal.CONTINUE
    assert db_session.scalars(select(CRMAutomationContinuation)).all() == []

    before = datetime.now(timezone.utc).replace(tzinfo=None)
    follow_up = ActionStep(action_type="ADD_NOTE", action_config={"noteContent": "later"})
    signal = _run(
        executor,
        db_session,
        context,
        "WAIT",
        {"waitDuration": 2, "waitUnit": "HOURS"},
        remaining=[follow_up],
    )

    assert signal is ExecutionSignal.SUSPEND
    continuation = db_session.scalar(select(CRMAutomationContinuation))
    assert continuation is not None
    assert continuation.deal_id == seeded["deal"].id
    assert continuation.condition_json is None
    assert continuation.remaining_steps[0]["actionType"] == "ADD_NOTE"
    execute_at = continuation.execute_at.replace(tzinfo=None)
    assert before + timedelta(hours=2) - timedelta(seconds=5) <= execute_at <= before + timedelta(hours=2, seconds=5)
    assert audit.entries_for("crm.automation_continuation", "automation.suspended")


def test_wait_with_non_positive_duration_continues(
    executor: ActionExecutor,
    db_session: Session,
    seeded: dict[str, Any],
) -> None:
    follow_up = ActionStep(action_type="ADD_NOTE", action_config={"noteContent": "now"})
    signal = _run(executor, db_session, _context(seeded), "WAIT", {"waitDuration": 0}, remaining=[follow_up])

    assert signal is ExecutionSignal.CONTINUE
    assert db_session.scalars(select(CRMAutomationContinuation)).all() == []


def test_unknown_action_type_is_ignored(executor: ActionExecutor, db_session: Session, seeded: dict[str, Any]) -> None:
    signal = _run(executor, db_session, _context(seeded), "LAUNCH_ROCKET", {})
    assert signal is ExecutionSignal.CONTINUE
