from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from app import audit
from app.automation.schemas import (
    AutomationCreate,
    AutomationRead,
    AutomationUpdate,
    ContinuationRead,
    TRIGGER_CONFIG_KEYS,
    validate_trigger,
)
from app.automation.store import SqlAlchemyAutomationStore
from app.crm.models import CRMAutomation, CRMAutomationContinuation, utcnow


class AutomationNotFoundError(LookupError):
    def __init__(self, automation_id: uuid.UUID) -> None:
        super().__init__(f"automation not found: {automation_id}")
        self.automation_id = automation_id


class AutomationValidationError(ValueError):
    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class AutomationService:
    def list_automations(self, session: Session, tenant_id: uuid.UUID) -> list[AutomationRead]:
        rows = SqlAlchemyAutomationStore(session).list_automations(tenant_id)
        return [self._to_read(row) for row in rows]

    def get_automation(self, session: Session, tenant_id: uuid.UUID, automation_id: uuid.UUID) -> AutomationRead:
        return self._to_read(self._load(session, tenant_id, automation_id))

    def create_automation(
        self,
        session: Session,
        tenant_id: uuid.UUID,
        dto: AutomationCreate,
        actor_user_id: str = audit.SYSTEM_ACTOR,
    ) -> AutomationRead:
        self._check_trigger_references(session, tenant_id, dto.trigger_type, dto.trigger_config)
        automation = CRMAutomation(
            tenant_id=tenant_id,
            name=dto.name.strip(),
            trigger_type=dto.trigger_type,
            trigger_config=dto.trigger_config,
            steps=dto.steps,
        )
        session.add(automation)
        session.flush()

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="crm.automation",
            entity_id=str(automation.id),
            action="automation.created",
            before=None,
            after=self._to_read(automation).model_dump(mode="json"),
            tenant_id=str(tenant_id),
        )
        session.commit()
        session.refresh(automation)
        return self._to_read(automation)

    def update_automation(
        self,
        session: Session,
        tenant_id: uuid.UUID,
        automation_id: uuid.UUID,
        dto: AutomationUpdate,
        actor_user_id: str = audit.SYSTEM_ACTOR,
    ) -> AutomationRead:
        automation = self._load(session, tenant_id, automation_id)
        before = self._to_read(automation).model_dump(mode="json")

        payload = dto.model_dump(exclude_unset=True)
        trigger_type = payload.get("trigger_type") or automation.trigger_type
        trigger_config = payload.get("trigger_config")
        if trigger_config is None:
            trigger_config = automation.trigger_config or {}
        if "trigger_type" in payload or "trigger_config" in payload:
            try:
                validate_trigger(trigger_type, trigger_config)
            except ValueError as exc:
                raise AutomationValidationError(str(exc)) from exc
            self._check_trigger_references(session, tenant_id, trigger_type, trigger_config)

        for key in ["name", "trigger_type", "trigger_config", "steps"]:
            if key in payload and payload[key] is not None:
                setattr(automation, key, payload[key].strip() if key == "name" else payload[key])
        automation.updated_at = utcnow()
        session.add(automation)
        session.flush()

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="crm.automation",
            entity_id=str(automation.id),
            action="automation.updated",
            before=before,
            after=self._to_read(automation).model_dump(mode="json"),
            tenant_id=str(tenant_id),
        )
        session.commit()
        session.refresh(automation)
        return self._to_read(automation)

    def delete_automation(
        self,
        session: Session,
        tenant_id: uuid.UUID,
        automation_id: uuid.UUID,
        actor_user_id: str = audit.SYSTEM_ACTOR,
    ) -> None:
        automation = self._load(session, tenant_id, automation_id)
        before = self._to_read(automation).model_dump(mode="json")
        dropped = len(automation.continuations)

        session.delete(automation)
        session.flush()

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="crm.automation",
            entity_id=str(automation_id),
            action="automation.deleted",
            before=before,
            after={"continuations_deleted": dropped},
            tenant_id=str(tenant_id),
        )
        session.commit()

    def list_continuations(
        self,
        session: Session,
        tenant_id: uuid.UUID,
        automation_id: uuid.UUID,
    ) -> list[ContinuationRead]:
        self._load(session, tenant_id, automation_id)
        rows = session.scalars(
            select(CRMAutomationContinuation)
            .where(
                and_(
                    CRMAutomationContinuation.tenant_id == tenant_id,
                    CRMAutomationContinuation.automation_id == automation_id,
                )
            )
            .order_by(CRMAutomationContinuation.created_at.asc())
        ).all()
        return [ContinuationRead.model_validate(row) for row in rows]

    def _check_trigger_references(
        self,
        session: Session,
        tenant_id: uuid.UUID,
        trigger_type: str,
        trigger_config: dict[str, Any],
    ) -> None:
        config_key = TRIGGER_CONFIG_KEYS.get(trigger_type)
        if config_key not in {"stageId", "pipelineId"}:
            return
        try:
            reference = uuid.UUID(str(trigger_config.get(config_key)))
        except ValueError as exc:
            raise AutomationValidationError(f"triggerConfig.{config_key} must be a UUID") from exc

        store = SqlAlchemyAutomationStore(session)
        if config_key == "stageId":
            found = store.get_stage(tenant_id, reference) is not None
        else:
            found = store.get_pipeline(tenant_id, reference) is not None
        if not found:
            raise AutomationValidationError(f"triggerConfig.{config_key} does not exist in this tenant")

    def _load(self, session: Session, tenant_id: uuid.UUID, automation_id: uuid.UUID) -> CRMAutomation:
        automation = session.scalar(
            select(CRMAutomation).where(and_(CRMAutomation.id == automation_id, CRMAutomation.tenant_id == tenant_id))
        )
        if automation is None:
            raise AutomationNotFoundError(automation_id)
        return automation

    def _to_read(self, automation: CRMAutomation) -> AutomationRead:
        return AutomationRead.model_validate(automation)
