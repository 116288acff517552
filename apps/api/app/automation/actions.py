from __future__ import annotations

import logging
import math
import re
import uuid
from collections.abc import Callable
from datetime import date, timedelta
from decimal import Decimal
from functools import partial
from typing import Any

from pydantic import ValidationError

from app.automation.conditions import to_number
from app.automation.context import ExecutionContext, ExecutionSignal
from app.automation.continuations import ContinuationStore
from app.automation.outbound import OutboundTransports, SmtpConfig, WhatsAppConfig, deliver, digits_only
from app.automation.placeholders import PlaceholderResolver
from app.automation.schemas import (
    ActionStep,
    ConditionCriterion,
    ConditionStep,
    TimeCriterion,
    validate_condition,
)
from app.automation.store import AutomationStore
from app.crm.models import DEAL_STATUS_OPEN, CRMDeal, utcnow
from app.crm.schemas import DealRead, TaskRead
from app.metrics import observe_automation_action

logger = logging.getLogger("app.automation.actions")

_DEAL_VALUE_MARKER_RE = re.compile(r"\{\{\s*deal\.value\s*\}\}", re.IGNORECASE)
_LEADING_INT_RE = re.compile(r"^\s*[+-]?\d+")

_WAIT_UNITS = {
    "MINUTES": lambda amount: timedelta(minutes=amount),
    "HOURS": lambda amount: timedelta(hours=amount),
    "DAYS": lambda amount: timedelta(days=amount),
}

APPLIED = "applied"
SKIPPED = "skipped"
FAILED = "failed"

ActionHandler = Callable[[AutomationStore, dict[str, Any], ExecutionContext], str]


def as_uuid(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    if value in (None, ""):
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def parse_offset_days(value: Any) -> int | None:
    """Leading-integer parse of a day offset; empty, zero and garbage give None."""
    if value in (None, "", 0) or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if math.isnan(value) else int(value)
    if isinstance(value, str):
        match = _LEADING_INT_RE.match(value)
        if match:
            return int(match.group(0))
    return None


class ActionExecutor:
    def __init__(
        self,
        transports: OutboundTransports,
        resolver: PlaceholderResolver | None = None,
        continuations: ContinuationStore | None = None,
    ):
        self.transports = transports
        self.resolver = resolver or PlaceholderResolver()
        self.continuations = continuations or ContinuationStore()
        self._handlers: dict[str, ActionHandler] = {
            "CREATE_DEAL": self._create_deal,
            "ADD_NOTE": self._add_note,
            "UPDATE_DEAL_STATUS": self._update_deal_status,
            "MOVE_DEAL_TO_STAGE": self._move_deal_to_stage,
            "SEND_WEBHOOK": self._send_webhook,
            "SEND_WHATSAPP": self._send_whatsapp,
            "SEND_EMAIL": self._send_email,
            "CREATE_TASK": self._create_task,
            "CREATE_CALENDAR_NOTE": self._create_calendar_note,
        }

    def execute(
        self,
        store: AutomationStore,
        step: ActionStep,
        context: ExecutionContext,
        *,
        remaining_steps: list[ActionStep | ConditionStep],
        automation_id: uuid.UUID,
    ) -> ExecutionSignal:
        action_type = step.action_type
        config = step.action_config if isinstance(step.action_config, dict) else {}

        if action_type == "WAIT":
            outcome = self._wait(store, config, context, remaining_steps, automation_id)
            observe_automation_action(action_type, outcome)
            return ExecutionSignal.SUSPEND if outcome == APPLIED else ExecutionSignal.CONTINUE

        handler = self._handlers.get(action_type)
        if handler is None:
            logger.warning("automation_action_unknown", extra={**context.log_fields(), "action_type": action_type})
            observe_automation_action(action_type, SKIPPED)
            return ExecutionSignal.CONTINUE

        outcome = handler(store, config, context)
        observe_automation_action(action_type, outcome)
        if outcome == APPLIED:
            logger.info("automation_action_applied", extra={**context.log_fields(), "action_type": action_type})
        return ExecutionSignal.CONTINUE

    def _skip(self, action_type: str, reason: str, context: ExecutionContext) -> str:
        logger.info(
            "automation_action_skipped",
            extra={**context.log_fields(), "action_type": action_type, "reason": reason},
        )
        return SKIPPED

    def _resolve(self, store: AutomationStore, template: Any, context: ExecutionContext) -> Any:
        return self.resolver.resolve(store, template, context)

    def _locked_deal(self, store: AutomationStore, context: ExecutionContext) -> CRMDeal | None:
        if context.deal is None:
            return None
        deal = store.get_deal(context.tenant_id, context.deal.id, for_update=True)
        if deal is not None:
            context.deal = deal
        return deal

    def _create_deal(self, store: AutomationStore, config: dict[str, Any], context: ExecutionContext) -> str:
        pipeline_id = as_uuid(config.get("pipelineId"))
        stage_id = as_uuid(config.get("stageId"))
        deal_name = config.get("dealName")
        deal_value = config.get("dealValue")
        if pipeline_id is None or stage_id is None or not deal_name or deal_value is None:
            return self._skip("CREATE_DEAL", "missing_config", context)

        contact_id = context.deal.contact_id if context.deal is not None else None
        if contact_id is None:
            return self._skip("CREATE_DEAL", "missing_contact", context)

        stage = store.get_stage(context.tenant_id, stage_id)
        if stage is None:
            return self._skip("CREATE_DEAL", "stage_not_found", context)
        if stage.pipeline_id != pipeline_id:
            return self._skip("CREATE_DEAL", "stage_not_in_pipeline", context)

        if isinstance(deal_value, str) and _DEAL_VALUE_MARKER_RE.search(deal_value):
            value = context.deal.value if context.deal is not None and context.deal.value else Decimal("0")
        else:
            number = to_number(deal_value)
            value = Decimal("0") if math.isnan(number) or math.isinf(number) else Decimal(str(number))

        deal = store.create_deal(
            context.tenant_id,
            name=str(self._resolve(store, deal_name, context)),
            value=value,
            stage_id=stage.id,
            contact_id=contact_id,
            status=DEAL_STATUS_OPEN,
            observation="Created by automation",
        )
        store.append_deal_history(deal, "Deal Created via Automation")
        return APPLIED

    def _add_note(self, store: AutomationStore, config: dict[str, Any], context: ExecutionContext) -> str:
        content = config.get("noteContent")
        if not content or context.deal is None:
            return self._skip("ADD_NOTE", "missing_config", context)
        deal = self._locked_deal(store, context)
        if deal is None:
            return self._skip("ADD_NOTE", "deal_not_found", context)

        resolved = str(self._resolve(store, content, context))
        store.add_deal_note(deal, resolved)
        store.append_deal_history(deal, "Note Added via Automation", {"content": resolved})
        context.mutated_deal_ids.add(deal.id)
        return APPLIED

    def _update_deal_status(self, store: AutomationStore, config: dict[str, Any], context: ExecutionContext) -> str:
        new_status = config.get("status")
        if not new_status or context.deal is None:
            return self._skip("UPDATE_DEAL_STATUS", "missing_config", context)
        deal = self._locked_deal(store, context)
        if deal is None:
            return self._skip("UPDATE_DEAL_STATUS", "deal_not_found", context)

        previous = deal.status
        store.update_deal(deal, {"status": str(new_status)})
        store.append_deal_history(deal, "Status Updated via Automation", {"from": previous, "to": str(new_status)})
        context.mutated_deal_ids.add(deal.id)
        return APPLIED

    def _move_deal_to_stage(self, store: AutomationStore, config: dict[str, Any], context: ExecutionContext) -> str:
        stage_id = as_uuid(config.get("stageId"))
        if stage_id is None or context.deal is None:
            return self._skip("MOVE_DEAL_TO_STAGE", "missing_config", context)
        new_stage = store.get_stage(context.tenant_id, stage_id)
        if new_stage is None:
            return self._skip("MOVE_DEAL_TO_STAGE", "stage_not_found", context)
        deal = self._locked_deal(store, context)
        if deal is None:
            return self._skip("MOVE_DEAL_TO_STAGE", "deal_not_found", context)

        old_stage = store.get_stage(context.tenant_id, deal.stage_id)
        store.update_deal(deal, {"stage_id": new_stage.id})
        store.append_deal_history(
            deal,
            "Stage Changed via Automation",
            {"from": old_stage.name if old_stage is not None else "N/A", "to": new_stage.name},
        )
        context.mutated_deal_ids.add(deal.id)
        return APPLIED

    def _wait(
        self,
        store: AutomationStore,
        config: dict[str, Any],
        context: ExecutionContext,
        remaining_steps: list[ActionStep | ConditionStep],
        automation_id: uuid.UUID,
    ) -> str:
        if context.deal is None:
            return self._skip("WAIT", "missing_deal", context)
        if not remaining_steps:
            return self._skip("WAIT", "nothing_to_resume", context)

        criterion: TimeCriterion | ConditionCriterion
        if config.get("waitMode") == "CONDITION":
            raw_condition = config.get("waitCondition")
            if not isinstance(raw_condition, dict):
                return self._skip("WAIT", "missing_condition", context)
            try:
                criterion = ConditionCriterion(condition=validate_condition(raw_condition))
            except (ValidationError, ValueError):
                return self._skip("WAIT", "invalid_condition", context)
        else:
            amount = to_number(config.get("waitDuration") or config.get("waitDays") or 0)
            if math.isnan(amount) or amount <= 0:
                return self._skip("WAIT", "non_positive_duration", context)
            unit = str(config.get("waitUnit") or "DAYS").upper()
            to_delta = _WAIT_UNITS.get(unit, _WAIT_UNITS["DAYS"])
            criterion = TimeCriterion(execute_at=utcnow() + to_delta(amount))

        self.continuations.suspend(
            store,
            context,
            automation_id=automation_id,
            remaining_steps=remaining_steps,
            criterion=criterion,
        )
        return APPLIED

    def _send_webhook(self, store: AutomationStore, config: dict[str, Any], context: ExecutionContext) -> str:
        url = config.get("webhookUrl")
        if not url:
            return self._skip("SEND_WEBHOOK", "missing_config", context)

        resolved_url = str(self._resolve(store, url, context))
        payload: dict[str, Any] | None = None
        if context.deal is not None:
            payload = DealRead.model_validate(context.deal).model_dump(mode="json")
        elif context.task is not None:
            payload = TaskRead.model_validate(context.task).model_dump(mode="json")
        body = {"triggerEvent": context.event_type, "context": payload}

        self.transports.dispatcher.submit(
            "webhook",
            partial(self.transports.webhook.post_json, resolved_url, body),
            context.log_fields(),
        )
        return APPLIED

    def _send_whatsapp(self, store: AutomationStore, config: dict[str, Any], context: ExecutionContext) -> str:
        number_template = config.get("whatsappNumber")
        text_template = config.get("whatsappText")
        whatsapp = WhatsAppConfig.from_tenant(store.get_tenant(context.tenant_id))
        if not number_template or not text_template or whatsapp is None:
            return self._skip("SEND_WHATSAPP", "missing_config", context)

        number = digits_only(str(self._resolve(store, number_template, context)))
        if not number:
            return self._skip("SEND_WHATSAPP", "empty_number", context)
        text = str(self._resolve(store, text_template, context))

        sent = deliver(
            "whatsapp",
            partial(self.transports.whatsapp.send_text, whatsapp, number=number, text=text),
            context.log_fields(),
        )
        return APPLIED if sent else FAILED

    def _send_email(self, store: AutomationStore, config: dict[str, Any], context: ExecutionContext) -> str:
        template_id = as_uuid(config.get("templateId"))
        if template_id is None or context.deal is None:
            return self._skip("SEND_EMAIL", "missing_config", context)
        template = store.get_email_template(context.tenant_id, template_id)
        if template is None:
            return self._skip("SEND_EMAIL", "template_not_found", context)
        contact = context.contact
        if contact is None or not contact.email:
            return self._skip("SEND_EMAIL", "missing_recipient", context)
        smtp = SmtpConfig.from_tenant(store.get_tenant(context.tenant_id))
        if smtp is None:
            return self._skip("SEND_EMAIL", "missing_smtp_config", context)

        subject = str(self._resolve(store, template.subject, context))
        body = str(self._resolve(store, template.body, context))
        recipient = contact.email
        sent = deliver(
            "email",
            partial(self.transports.mail.send, smtp, to=recipient, subject=subject, html=body),
            context.log_fields(),
        )
        if not sent:
            return FAILED

        deal = self._locked_deal(store, context)
        if deal is not None:
            store.append_deal_history(deal, "Email Sent via Automation", {"to": recipient, "subject": subject})
        return APPLIED

    def _create_task(self, store: AutomationStore, config: dict[str, Any], context: ExecutionContext) -> str:
        title = config.get("taskTitle")
        if not title or context.deal is None:
            return self._skip("CREATE_TASK", "missing_config", context)

        offset = parse_offset_days(config.get("taskDueDateOffsetDays"))
        due_date = self._today() + timedelta(days=offset) if offset is not None else None
        store.create_task(
            context.tenant_id,
            title=str(self._resolve(store, title, context)),
            due_date=due_date,
            deal_id=context.deal.id,
            contact_id=context.deal.contact_id,
        )
        return APPLIED

    def _create_calendar_note(self, store: AutomationStore, config: dict[str, Any], context: ExecutionContext) -> str:
        title = config.get("noteTitle")
        offset = parse_offset_days(config.get("noteDateOffsetDays"))
        if not title or offset is None:
            return self._skip("CREATE_CALENDAR_NOTE", "missing_config", context)

        store.create_calendar_note(
            context.tenant_id,
            title=str(self._resolve(store, title, context)),
            note_date=self._today() + timedelta(days=offset),
            content=str(self._resolve(store, config.get("calendarNoteContent") or "", context)),
        )
        return APPLIED

    def _today(self) -> date:
        return utcnow().date()
