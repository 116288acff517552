from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from functools import lru_cache

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app import audit
from app.automation.actions import ActionExecutor
from app.automation.conditions import ConditionEvaluator
from app.automation.context import ExecutionContext, ExecutionSignal
from app.automation.continuations import ContinuationStore
from app.automation.interpreter import StepInterpreter
from app.automation.outbound import OutboundTransports, build_outbound_transports
from app.automation.placeholders import PlaceholderResolver
from app.automation.schemas import RESUMED_EVENT_TYPE, ActionStep, ConditionStep, DomainEvent, parse_steps
from app.automation.store import AutomationStore, SqlAlchemyAutomationStore
from app.automation.triggers import TriggerMatcher
from app.context import get_automation_depth, reset_automation_depth, set_automation_depth
from app.core.config import get_settings
from app.crm.models import CRMAutomation, CRMDeal, CRMTask, utcnow
from app.metrics import observe_automation_guardrail_block, observe_automation_run
from app.otel import get_tracer

logger = logging.getLogger("app.automation.engine")
tracer = get_tracer("app.automation.engine")

StoreFactory = Callable[[Session], AutomationStore]


class AutomationEngine:
    """Entry points that drive automations for one unit of work each.

    ``on_event`` runs the automations a domain event triggers,
    ``on_deal_mutated`` resumes condition waits on a deal that changed and
    ``sweep_due_continuations`` resumes time waits that came due. Each call
    commits its session on success and rolls it back when the store fails.
    """

    def __init__(
        self,
        transports: OutboundTransports,
        store_factory: StoreFactory = SqlAlchemyAutomationStore,
    ):
        self.store_factory = store_factory
        self.evaluator = ConditionEvaluator()
        self.resolver = PlaceholderResolver()
        self.continuations = ContinuationStore()
        self.executor = ActionExecutor(transports, self.resolver, self.continuations)
        self.interpreter = StepInterpreter(self.evaluator, self.executor)
        self.matcher = TriggerMatcher()

    def on_event(
        self,
        session: Session,
        event: DomainEvent,
        tenant_id: uuid.UUID,
        deal_id: uuid.UUID | None = None,
        task_id: uuid.UUID | None = None,
    ) -> int:
        if self._guardrail_blocked(tenant_id, event.type, deal_id):
            return 0
        with self._unit_of_work(session), tracer.start_as_current_span("automation.on_event") as span:
            span.set_attribute("event_type", event.type)
            span.set_attribute("tenant_id", str(tenant_id))
            store = self.store_factory(session)
            deal = store.get_deal(tenant_id, deal_id) if deal_id is not None else None
            task = store.get_task(tenant_id, task_id) if task_id is not None else None

            automations = self.matcher.match(store, event, tenant_id)
            span.set_attribute("matched", len(automations))
            logger.info(
                "automation_event_received",
                extra={
                    "tenant_id": str(tenant_id),
                    "event_type": event.type,
                    "deal_id": str(deal_id) if deal_id else None,
                    "task_id": str(task_id) if task_id else None,
                    "count": len(automations),
                },
            )

            mutated: set[uuid.UUID] = set()
            ran = 0
            for automation in automations:
                steps = self._definition_steps(automation)
                if steps is None:
                    continue
                context = self._build_context(store, tenant_id, event.type, deal, task)
                self._run(store, automation.id, steps, context, origin="trigger")
                mutated |= context.mutated_deal_ids
                ran += 1

            self._settle_mutations(store, tenant_id, mutated)
            return ran

    def on_deal_mutated(self, session: Session, deal_id: uuid.UUID, tenant_id: uuid.UUID) -> int:
        if self._guardrail_blocked(tenant_id, "DEAL_MUTATED", deal_id):
            return 0
        with self._unit_of_work(session), tracer.start_as_current_span("automation.on_deal_mutated") as span:
            span.set_attribute("deal_id", str(deal_id))
            store = self.store_factory(session)
            resumed, mutated = self._resume_by_condition(store, tenant_id, deal_id)
            self._settle_mutations(store, tenant_id, mutated)
            return resumed

    def sweep_due_continuations(self, session: Session, now: datetime | None = None) -> int:
        cutoff = now or utcnow()
        resumed = 0
        store = self.store_factory(session)
        with tracer.start_as_current_span("automation.sweep") as span:
            due = self.continuations.due(store, cutoff)
            span.set_attribute("count", len(due))
            for continuation in due:
                with self._unit_of_work(session):
                    tenant_id = continuation.tenant_id
                    deal_id = continuation.deal_id
                    automation_id = continuation.automation_id
                    steps = self.continuations.remaining_steps(continuation)
                    if not self.continuations.claim(store, continuation, "time"):
                        continue
                    if steps is None:
                        continue
                    deal = store.get_deal(tenant_id, deal_id)
                    if deal is None:
                        logger.warning(
                            "automation_resume_skipped",
                            extra={"deal_id": str(deal_id), "automation_id": str(automation_id), "reason": "deal_not_found"},
                        )
                        continue
                    context = self._build_context(store, tenant_id, RESUMED_EVENT_TYPE, deal, None)
                    self._run(store, automation_id, steps, context, origin="time")
                    self._settle_mutations(store, tenant_id, context.mutated_deal_ids)
                    resumed += 1
        logger.info("automation_sweep_finished", extra={"count": resumed})
        return resumed

    def _resume_by_condition(
        self,
        store: AutomationStore,
        tenant_id: uuid.UUID,
        deal_id: uuid.UUID,
    ) -> tuple[int, set[uuid.UUID]]:
        mutated: set[uuid.UUID] = set()
        resumed = 0
        deal = store.get_deal(tenant_id, deal_id)
        if deal is None:
            return resumed, mutated

        for continuation, condition in self.continuations.open_condition_waits(store, tenant_id, deal_id):
            probe = ExecutionContext(tenant_id=tenant_id, event_type=RESUMED_EVENT_TYPE, deal=deal)
            if not self.evaluator.evaluate(store, condition, probe):
                continue
            automation_id = continuation.automation_id
            steps = self.continuations.remaining_steps(continuation)
            if not self.continuations.claim(store, continuation, "condition"):
                continue
            if steps is None:
                continue
            context = self._build_context(store, tenant_id, RESUMED_EVENT_TYPE, deal, None)
            self._run(store, automation_id, steps, context, origin="condition")
            mutated |= context.mutated_deal_ids
            resumed += 1
        return resumed, mutated

    def _settle_mutations(self, store: AutomationStore, tenant_id: uuid.UUID, deal_ids: set[uuid.UUID]) -> None:
        """Re-check condition waits on deals the run changed, one level deeper each time."""
        if not deal_ids:
            return
        depth = get_automation_depth() or 0
        if depth + 1 >= get_settings().automation_max_depth:
            for deal_id in sorted(deal_ids, key=str):
                self._record_guardrail_block(tenant_id, "DEAL_MUTATED", deal_id, depth + 1)
            return

        token = set_automation_depth(depth + 1)
        try:
            for deal_id in sorted(deal_ids, key=str):
                _, nested = self._resume_by_condition(store, tenant_id, deal_id)
                self._settle_mutations(store, tenant_id, nested)
        finally:
            reset_automation_depth(token)

    def _run(
        self,
        store: AutomationStore,
        automation_id: uuid.UUID,
        steps: list[ActionStep | ConditionStep],
        context: ExecutionContext,
        *,
        origin: str,
    ) -> ExecutionSignal:
        started = time.perf_counter()
        with tracer.start_as_current_span("automation.run") as span:
            span.set_attribute("automation_id", str(automation_id))
            span.set_attribute("origin", origin)
            try:
                signal = self.interpreter.run(store, steps, context, automation_id)
            except Exception:
                observe_automation_run(origin, "error", time.perf_counter() - started)
                raise
            span.set_attribute("signal", signal.value)

        observe_automation_run(origin, signal.value.lower(), time.perf_counter() - started)
        audit.record(
            actor_user_id=audit.SYSTEM_ACTOR,
            entity_type="crm.automation",
            entity_id=str(automation_id),
            action="automation.executed",
            before=None,
            after={"origin": origin, "signal": signal.value, **context.log_fields()},
            tenant_id=str(context.tenant_id),
        )
        logger.info(
            "automation_run_finished",
            extra={**context.log_fields(), "automation_id": str(automation_id), "status": signal.value},
        )
        return signal

    def _build_context(
        self,
        store: AutomationStore,
        tenant_id: uuid.UUID,
        event_type: str,
        deal: CRMDeal | None,
        task: CRMTask | None,
    ) -> ExecutionContext:
        contact_id = None
        if deal is not None:
            contact_id = deal.contact_id
        elif task is not None:
            contact_id = task.contact_id
        contact = store.get_contact(tenant_id, contact_id) if contact_id is not None else None
        return ExecutionContext(tenant_id=tenant_id, event_type=event_type, deal=deal, task=task, contact=contact)

    def _definition_steps(self, automation: CRMAutomation) -> list[ActionStep | ConditionStep] | None:
        try:
            return parse_steps(automation.steps)
        except ValidationError as exc:
            logger.warning(
                "automation_definition_invalid",
                extra={"automation_id": str(automation.id), "error": str(exc)},
            )
            return None

    def _guardrail_blocked(self, tenant_id: uuid.UUID, event_type: str, deal_id: uuid.UUID | None) -> bool:
        depth = get_automation_depth() or 0
        if depth < get_settings().automation_max_depth:
            return False
        self._record_guardrail_block(tenant_id, event_type, deal_id, depth)
        return True

    def _record_guardrail_block(
        self,
        tenant_id: uuid.UUID,
        event_type: str,
        deal_id: uuid.UUID | None,
        depth: int,
    ) -> None:
        max_depth = get_settings().automation_max_depth
        logger.warning(
            "automation_guardrail_blocked",
            extra={
                "reason": "MAX_DEPTH",
                "tenant_id": str(tenant_id),
                "event_type": event_type,
                "deal_id": str(deal_id) if deal_id else None,
                "depth": depth,
            },
        )
        observe_automation_guardrail_block("MAX_DEPTH")
        audit.record(
            actor_user_id=audit.SYSTEM_ACTOR,
            entity_type="crm.automation",
            entity_id=str(deal_id) if deal_id else event_type,
            action="automation.blocked",
            before=None,
            after={
                "reason": "MAX_DEPTH",
                "event_type": event_type,
                "deal_id": str(deal_id) if deal_id else None,
                "depth": depth,
                "max_depth": max_depth,
            },
            tenant_id=str(tenant_id),
        )

    @contextmanager
    def _unit_of_work(self, session: Session) -> Iterator[None]:
        try:
            yield
        except Exception:
            session.rollback()
            raise
        session.commit()


@lru_cache
def get_automation_engine() -> AutomationEngine:
    return AutomationEngine(build_outbound_transports(get_settings()))
