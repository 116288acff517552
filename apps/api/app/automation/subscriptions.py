from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.automation.engine import AutomationEngine, get_automation_engine
from app.automation.schemas import domain_event_adapter
from app.context import reset_automation_depth, reset_correlation_id, set_automation_depth, set_correlation_id
from app.core.database import session_scope
from app.core.events import InProcessEventBus, InternalEvent, event_bus

logger = logging.getLogger("app.automation.subscriptions")

DEAL_UPDATED_EVENT = "crm.deal.updated"

# bus event name -> automation trigger type
TRIGGER_EVENT_TYPES = {
    "crm.deal.created": "DEAL_CREATED",
    "crm.deal.stage_changed": "DEAL_STAGE_CHANGED",
    "crm.deal.status_updated": "DEAL_STATUS_UPDATED",
    "crm.deal.entered_pipeline": "DEAL_ENTERED_PIPELINE",
    "crm.deal.note_added": "NOTE_ADDED_TO_DEAL",
    "crm.task.created": "TASK_CREATED",
    "crm.task.completed": "TASK_COMPLETED",
}

_EVENT_PAYLOAD_KEYS = ["old_stage_id", "new_stage_id", "new_status", "pipeline_id"]


def _parse_uuid(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, str) and value:
        try:
            return uuid.UUID(value)
        except ValueError:
            return None
    return None


def _envelope_depth(envelope: dict[str, Any]) -> int | None:
    meta = envelope.get("meta")
    if not isinstance(meta, dict):
        return None
    depth = meta.get("automation_depth")
    if isinstance(depth, bool) or not isinstance(depth, int):
        return None
    return depth


class AutomationEventSubscriber:
    """Bus handler turning CRM envelopes into engine calls, one session per event."""

    def __init__(
        self,
        engine: AutomationEngine | None = None,
        session_factory: Callable[[], Session] | None = None,
    ):
        self._engine = engine
        self.session_factory = session_factory

    @property
    def engine(self) -> AutomationEngine:
        if self._engine is None:
            self._engine = get_automation_engine()
        return self._engine

    def __call__(self, event: InternalEvent) -> None:
        if not isinstance(event.payload, dict):
            return
        envelope: dict[str, Any] = event.payload
        tenant_id = _parse_uuid(envelope.get("tenant_id"))
        if tenant_id is None:
            logger.warning("automation_event_ignored", extra={"event_type": event.name, "reason": "missing_tenant"})
            return

        correlation_id = envelope.get("correlation_id") if isinstance(envelope.get("correlation_id"), str) else None
        correlation_token = set_correlation_id(correlation_id) if correlation_id else None
        depth = _envelope_depth(envelope)
        depth_token = set_automation_depth(depth) if depth is not None else None
        try:
            self._dispatch(event.name, tenant_id, envelope)
        except Exception as exc:
            logger.exception(
                "automation_event_handling_failed",
                extra={"event_type": event.name, "tenant_id": str(tenant_id), "error": str(exc)[:500]},
            )
        finally:
            if depth_token is not None:
                reset_automation_depth(depth_token)
            if correlation_token is not None:
                reset_correlation_id(correlation_token)

    def _dispatch(self, event_name: str, tenant_id: uuid.UUID, envelope: dict[str, Any]) -> None:
        payload = envelope.get("payload")
        if not isinstance(payload, dict):
            payload = {}
        deal_id = _parse_uuid(payload.get("deal_id"))
        task_id = _parse_uuid(payload.get("task_id"))

        if event_name == DEAL_UPDATED_EVENT:
            if deal_id is None:
                return
            with session_scope(self.session_factory) as session:
                self.engine.on_deal_mutated(session, deal_id, tenant_id)
            return

        trigger_type = TRIGGER_EVENT_TYPES.get(event_name)
        if trigger_type is None:
            return
        data = {"type": trigger_type}
        data.update({key: payload[key] for key in _EVENT_PAYLOAD_KEYS if payload.get(key) is not None})
        try:
            domain_event = domain_event_adapter.validate_python(data)
        except ValidationError as exc:
            logger.warning(
                "automation_event_ignored",
                extra={"event_type": event_name, "reason": "invalid_payload", "error": str(exc)[:500]},
            )
            return

        with session_scope(self.session_factory) as session:
            self.engine.on_event(session, domain_event, tenant_id, deal_id=deal_id, task_id=task_id)


def register_automation_subscriptions(
    bus: InProcessEventBus = event_bus,
    *,
    engine: AutomationEngine | None = None,
    session_factory: Callable[[], Session] | None = None,
) -> AutomationEventSubscriber:
    subscriber = AutomationEventSubscriber(engine=engine, session_factory=session_factory)
    for event_name in [*TRIGGER_EVENT_TYPES, DEAL_UPDATED_EVENT]:
        bus.subscribe(event_name, subscriber)
    return subscriber


def unregister_automation_subscriptions(
    subscriber: AutomationEventSubscriber,
    bus: InProcessEventBus = event_bus,
) -> None:
    for event_name in [*TRIGGER_EVENT_TYPES, DEAL_UPDATED_EVENT]:
        bus.unsubscribe(event_name, subscriber)
