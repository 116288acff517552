from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy import and_, delete, select
from sqlalchemy.orm import Session

from app.crm.models import (
    CUSTOM_FIELD_ENTITY_CONTACT,
    CUSTOM_FIELD_ENTITY_DEAL,
    DEAL_STATUS_OPEN,
    CRMAutomation,
    CRMAutomationContinuation,
    CRMCalendarNote,
    CRMContact,
    CRMCustomFieldDefinition,
    CRMDeal,
    CRMDealHistory,
    CRMDealNote,
    CRMEmailTemplate,
    CRMPipeline,
    CRMPipelineStage,
    CRMTask,
    CRMTenant,
    utcnow,
)


class AutomationStore(Protocol):
    def get_deal(self, tenant_id: uuid.UUID, deal_id: uuid.UUID, *, for_update: bool = False) -> CRMDeal | None: ...

    def update_deal(self, deal: CRMDeal, changes: dict[str, Any]) -> CRMDeal: ...

    def create_deal(
        self,
        tenant_id: uuid.UUID,
        *,
        name: str,
        value: Decimal,
        stage_id: uuid.UUID,
        contact_id: uuid.UUID | None,
        status: str = DEAL_STATUS_OPEN,
        observation: str | None = None,
    ) -> CRMDeal: ...

    def add_deal_note(self, deal: CRMDeal, content: str) -> CRMDealNote: ...

    def append_deal_history(self, deal: CRMDeal, action: str, details: dict[str, Any] | None = None) -> CRMDealHistory: ...

    def get_stage(self, tenant_id: uuid.UUID, stage_id: uuid.UUID) -> CRMPipelineStage | None: ...

    def get_pipeline(self, tenant_id: uuid.UUID, pipeline_id: uuid.UUID) -> CRMPipeline | None: ...

    def get_contact(self, tenant_id: uuid.UUID, contact_id: uuid.UUID) -> CRMContact | None: ...

    def get_task(self, tenant_id: uuid.UUID, task_id: uuid.UUID) -> CRMTask | None: ...

    def get_tenant(self, tenant_id: uuid.UUID) -> CRMTenant | None: ...

    def get_email_template(self, tenant_id: uuid.UUID, template_id: uuid.UUID) -> CRMEmailTemplate | None: ...

    def get_custom_field_definitions(self, tenant_id: uuid.UUID) -> list[CRMCustomFieldDefinition]: ...

    def get_contact_custom_field_definitions(self, tenant_id: uuid.UUID) -> list[CRMCustomFieldDefinition]: ...

    def create_task(
        self,
        tenant_id: uuid.UUID,
        *,
        title: str,
        due_date: date | None,
        deal_id: uuid.UUID | None,
        contact_id: uuid.UUID | None,
    ) -> CRMTask: ...

    def create_calendar_note(
        self,
        tenant_id: uuid.UUID,
        *,
        title: str,
        note_date: date,
        content: str | None,
    ) -> CRMCalendarNote: ...

    def list_automations(self, tenant_id: uuid.UUID) -> list[CRMAutomation]: ...

    def save_continuation(
        self,
        tenant_id: uuid.UUID,
        *,
        deal_id: uuid.UUID,
        automation_id: uuid.UUID,
        remaining_steps: list[dict[str, Any]],
        execute_at: datetime | None,
        condition: dict[str, Any] | None,
    ) -> CRMAutomationContinuation: ...

    def list_continuations_for_deal(self, tenant_id: uuid.UUID, deal_id: uuid.UUID) -> list[CRMAutomationContinuation]: ...

    def list_due_continuations(self, now: datetime) -> list[CRMAutomationContinuation]: ...

    def delete_continuation(self, continuation_id: uuid.UUID) -> bool: ...


class SqlAlchemyAutomationStore:
    """AutomationStore over the CRM tables; flushes but never commits."""

    _deal_mutable_fields = {"name", "value", "status", "stage_id", "contact_id", "custom_fields", "observation", "due_date"}

    def __init__(self, session: Session):
        self.session = session

    def get_deal(self, tenant_id: uuid.UUID, deal_id: uuid.UUID, *, for_update: bool = False) -> CRMDeal | None:
        stmt = select(CRMDeal).where(and_(CRMDeal.id == deal_id, CRMDeal.tenant_id == tenant_id))
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.scalar(stmt)

    def update_deal(self, deal: CRMDeal, changes: dict[str, Any]) -> CRMDeal:
        for key, value in changes.items():
            if key not in self._deal_mutable_fields:
                raise ValueError(f"field not allowed: {key}")
            setattr(deal, key, value)
        deal.updated_at = utcnow()
        self.session.add(deal)
        self.session.flush()
        return deal

    def create_deal(
        self,
        tenant_id: uuid.UUID,
        *,
        name: str,
        value: Decimal,
        stage_id: uuid.UUID,
        contact_id: uuid.UUID | None,
        status: str = DEAL_STATUS_OPEN,
        observation: str | None = None,
    ) -> CRMDeal:
        deal = CRMDeal(
            tenant_id=tenant_id,
            name=name,
            value=value,
            stage_id=stage_id,
            contact_id=contact_id,
            status=status,
            observation=observation,
            custom_fields={},
        )
        self.session.add(deal)
        self.session.flush()
        return deal

    def add_deal_note(self, deal: CRMDeal, content: str) -> CRMDealNote:
        note = CRMDealNote(content=content)
        deal.notes.append(note)
        self.session.flush()
        return note

    def append_deal_history(self, deal: CRMDeal, action: str, details: dict[str, Any] | None = None) -> CRMDealHistory:
        entry = CRMDealHistory(action=action, details_json=details)
        deal.history.append(entry)
        self.session.flush()
        return entry

    def get_stage(self, tenant_id: uuid.UUID, stage_id: uuid.UUID) -> CRMPipelineStage | None:
        return self.session.scalar(
            select(CRMPipelineStage).where(
                and_(CRMPipelineStage.id == stage_id, CRMPipelineStage.tenant_id == tenant_id)
            )
        )

    def get_pipeline(self, tenant_id: uuid.UUID, pipeline_id: uuid.UUID) -> CRMPipeline | None:
        return self.session.scalar(
            select(CRMPipeline).where(and_(CRMPipeline.id == pipeline_id, CRMPipeline.tenant_id == tenant_id))
        )

    def get_contact(self, tenant_id: uuid.UUID, contact_id: uuid.UUID) -> CRMContact | None:
        return self.session.scalar(
            select(CRMContact).where(and_(CRMContact.id == contact_id, CRMContact.tenant_id == tenant_id))
        )

    def get_task(self, tenant_id: uuid.UUID, task_id: uuid.UUID) -> CRMTask | None:
        return self.session.scalar(select(CRMTask).where(and_(CRMTask.id == task_id, CRMTask.tenant_id == tenant_id)))

    def get_tenant(self, tenant_id: uuid.UUID) -> CRMTenant | None:
        return self.session.get(CRMTenant, tenant_id)

    def get_email_template(self, tenant_id: uuid.UUID, template_id: uuid.UUID) -> CRMEmailTemplate | None:
        return self.session.scalar(
            select(CRMEmailTemplate).where(
                and_(CRMEmailTemplate.id == template_id, CRMEmailTemplate.tenant_id == tenant_id)
            )
        )

    def get_custom_field_definitions(self, tenant_id: uuid.UUID) -> list[CRMCustomFieldDefinition]:
        return self._custom_field_definitions(tenant_id, CUSTOM_FIELD_ENTITY_DEAL)

    def get_contact_custom_field_definitions(self, tenant_id: uuid.UUID) -> list[CRMCustomFieldDefinition]:
        return self._custom_field_definitions(tenant_id, CUSTOM_FIELD_ENTITY_CONTACT)

    def create_task(
        self,
        tenant_id: uuid.UUID,
        *,
        title: str,
        due_date: date | None,
        deal_id: uuid.UUID | None,
        contact_id: uuid.UUID | None,
    ) -> CRMTask:
        task = CRMTask(
            tenant_id=tenant_id,
            title=title,
            is_completed=False,
            due_date=due_date,
            deal_id=deal_id,
            contact_id=contact_id,
        )
        self.session.add(task)
        self.session.flush()
        return task

    def create_calendar_note(
        self,
        tenant_id: uuid.UUID,
        *,
        title: str,
        note_date: date,
        content: str | None,
    ) -> CRMCalendarNote:
        note = CRMCalendarNote(tenant_id=tenant_id, title=title, note_date=note_date, content=content)
        self.session.add(note)
        self.session.flush()
        return note

    def list_automations(self, tenant_id: uuid.UUID) -> list[CRMAutomation]:
        return list(
            self.session.scalars(
                select(CRMAutomation)
                .where(CRMAutomation.tenant_id == tenant_id)
                .order_by(CRMAutomation.created_at.asc(), CRMAutomation.id.asc())
            ).all()
        )

    def save_continuation(
        self,
        tenant_id: uuid.UUID,
        *,
        deal_id: uuid.UUID,
        automation_id: uuid.UUID,
        remaining_steps: list[dict[str, Any]],
        execute_at: datetime | None,
        condition: dict[str, Any] | None,
    ) -> CRMAutomationContinuation:
        continuation = CRMAutomationContinuation(
            tenant_id=tenant_id,
            deal_id=deal_id,
            automation_id=automation_id,
            remaining_steps=remaining_steps,
            execute_at=execute_at,
            condition_json=condition,
        )
        self.session.add(continuation)
        self.session.flush()
        return continuation

    def list_continuations_for_deal(self, tenant_id: uuid.UUID, deal_id: uuid.UUID) -> list[CRMAutomationContinuation]:
        return list(
            self.session.scalars(
                select(CRMAutomationContinuation)
                .where(
                    and_(
                        CRMAutomationContinuation.tenant_id == tenant_id,
                        CRMAutomationContinuation.deal_id == deal_id,
                    )
                )
                .order_by(CRMAutomationContinuation.created_at.asc())
            ).all()
        )

    def list_due_continuations(self, now: datetime) -> list[CRMAutomationContinuation]:
        return list(
            self.session.scalars(
                select(CRMAutomationContinuation)
                .where(
                    and_(
                        CRMAutomationContinuation.execute_at.is_not(None),
                        CRMAutomationContinuation.execute_at <= now,
                    )
                )
                .order_by(CRMAutomationContinuation.execute_at.asc())
            ).all()
        )

    def delete_continuation(self, continuation_id: uuid.UUID) -> bool:
        result = self.session.execute(
            delete(CRMAutomationContinuation).where(CRMAutomationContinuation.id == continuation_id)
        )
        return result.rowcount == 1

    def _custom_field_definitions(self, tenant_id: uuid.UUID, entity_type: str) -> list[CRMCustomFieldDefinition]:
        return list(
            self.session.scalars(
                select(CRMCustomFieldDefinition)
                .where(
                    and_(
                        CRMCustomFieldDefinition.tenant_id == tenant_id,
                        CRMCustomFieldDefinition.entity_type == entity_type,
                    )
                )
                .order_by(CRMCustomFieldDefinition.created_at.asc())
            ).all()
        )
