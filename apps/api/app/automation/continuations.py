from __future__ import annotations

import logging
import uuid
from datetime import datetime

from pydantic import ValidationError

from app import audit
from app.automation.context import ExecutionContext
from app.automation.schemas import (
    ActionStep,
    Condition,
    ConditionCriterion,
    ConditionStep,
    ContinuationRead,
    TimeCriterion,
    dump_steps,
    parse_steps,
)
from app.automation.store import AutomationStore
from app.crm.models import CRMAutomationContinuation
from app.metrics import observe_continuation

logger = logging.getLogger("app.automation.continuations")


def criterion_of(continuation: CRMAutomationContinuation | ContinuationRead) -> TimeCriterion | ConditionCriterion | None:
    if continuation.condition_json:
        try:
            return ConditionCriterion(condition=Condition.model_validate(continuation.condition_json))
        except ValidationError:
            return None
    if continuation.execute_at is not None:
        return TimeCriterion(execute_at=continuation.execute_at)
    return None


class ContinuationStore:
    """Suspended runs: written when a WAIT fires, claimed exactly once on resume."""

    def suspend(
        self,
        store: AutomationStore,
        context: ExecutionContext,
        *,
        automation_id: uuid.UUID,
        remaining_steps: list[ActionStep | ConditionStep],
        criterion: TimeCriterion | ConditionCriterion,
    ) -> CRMAutomationContinuation:
        if context.deal is None:
            raise ValueError("a continuation needs a deal in context")
        if isinstance(criterion, TimeCriterion):
            execute_at, condition = criterion.execute_at, None
        else:
            execute_at, condition = None, criterion.condition.model_dump(by_alias=True, mode="json")

        continuation = store.save_continuation(
            context.tenant_id,
            deal_id=context.deal.id,
            automation_id=automation_id,
            remaining_steps=dump_steps(remaining_steps),
            execute_at=execute_at,
            condition=condition,
        )
        observe_continuation(criterion.kind.lower(), "created")
        audit.record(
            actor_user_id=audit.SYSTEM_ACTOR,
            entity_type="crm.automation_continuation",
            entity_id=str(continuation.id),
            action="automation.suspended",
            before=None,
            after={
                "automation_id": str(automation_id),
                "deal_id": str(context.deal.id),
                "kind": criterion.kind,
                "execute_at": execute_at.isoformat() if execute_at is not None else None,
                "remaining_steps": len(remaining_steps),
            },
            tenant_id=str(context.tenant_id),
        )
        logger.info(
            "automation_suspended",
            extra={
                **context.log_fields(),
                "automation_id": str(automation_id),
                "continuation_id": str(continuation.id),
                "reason": criterion.kind,
            },
        )
        return continuation

    def open_condition_waits(
        self,
        store: AutomationStore,
        tenant_id: uuid.UUID,
        deal_id: uuid.UUID,
    ) -> list[tuple[ContinuationRead, Condition]]:
        waits: list[tuple[ContinuationRead, Condition]] = []
        for row in store.list_continuations_for_deal(tenant_id, deal_id):
            criterion = criterion_of(row)
            if isinstance(criterion, ConditionCriterion):
                waits.append((ContinuationRead.model_validate(row), criterion.condition))
        return waits

    def due(self, store: AutomationStore, now: datetime) -> list[ContinuationRead]:
        return [ContinuationRead.model_validate(row) for row in store.list_due_continuations(now)]

    def claim(self, store: AutomationStore, continuation: ContinuationRead, kind: str) -> bool:
        continuation_id = continuation.id
        before = {"automation_id": str(continuation.automation_id), "deal_id": str(continuation.deal_id)}
        tenant_id = str(continuation.tenant_id)
        claimed = store.delete_continuation(continuation_id)
        if not claimed:
            observe_continuation(kind, "lost_claim")
            logger.info("automation_continuation_already_claimed", extra={"continuation_id": str(continuation_id)})
            return False
        observe_continuation(kind, "resumed")
        audit.record(
            actor_user_id=audit.SYSTEM_ACTOR,
            entity_type="crm.automation_continuation",
            entity_id=str(continuation_id),
            action="automation.resumed",
            before=before,
            after=None,
            tenant_id=tenant_id,
        )
        return True

    def remaining_steps(self, continuation: ContinuationRead) -> list[ActionStep | ConditionStep] | None:
        try:
            return parse_steps(continuation.remaining_steps)
        except ValidationError as exc:
            logger.warning(
                "automation_continuation_invalid",
                extra={"continuation_id": str(continuation.id), "error": str(exc)},
            )
            return None
