from __future__ import annotations

import uuid
from typing import Any

from app.automation.schemas import TRIGGER_CONFIG_KEYS, DomainEvent
from app.automation.store import AutomationStore
from app.crm.models import CRMAutomation

# trigger config key -> attribute of the event it is compared with
_EVENT_ATTRIBUTES = {
    "stageId": "new_stage_id",
    "status": "new_status",
    "pipelineId": "pipeline_id",
}


def _comparable(value: Any) -> str:
    if isinstance(value, uuid.UUID):
        return str(value)
    text = str(value).strip()
    try:
        return str(uuid.UUID(text))
    except ValueError:
        return text


class TriggerMatcher:
    def match(self, store: AutomationStore, event: DomainEvent, tenant_id: uuid.UUID) -> list[CRMAutomation]:
        return [automation for automation in store.list_automations(tenant_id) if self.matches(automation, event)]

    def matches(self, automation: CRMAutomation, event: DomainEvent) -> bool:
        if automation.trigger_type != event.type:
            return False
        config_key = TRIGGER_CONFIG_KEYS.get(event.type)
        if config_key is None:
            return True
        config = automation.trigger_config
        if not isinstance(config, dict):
            return False
        expected = config.get(config_key)
        if expected in (None, ""):
            return False
        actual = getattr(event, _EVENT_ATTRIBUTES[config_key])
        return _comparable(expected) == _comparable(actual)
