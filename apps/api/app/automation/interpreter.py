from __future__ import annotations

import logging
import uuid

from sqlalchemy.exc import SQLAlchemyError

from app.automation.actions import FAILED, ActionExecutor
from app.automation.conditions import ConditionEvaluator
from app.automation.context import ExecutionContext, ExecutionSignal
from app.automation.schemas import ActionStep, ConditionStep
from app.automation.store import AutomationStore
from app.metrics import observe_automation_action
from app.otel import get_tracer

logger = logging.getLogger("app.automation.interpreter")
tracer = get_tracer("app.automation.interpreter")


class StepInterpreter:
    """Walks a step tree depth-first.

    A ``SUSPEND`` from an action ends the sequence it belongs to; when that
    sequence is a condition branch, the enclosing sequence carries on with
    its next step. The automation id travels down every branch so a WAIT
    anywhere in the tree links its continuation to the right automation.
    """

    def __init__(self, evaluator: ConditionEvaluator, executor: ActionExecutor):
        self.evaluator = evaluator
        self.executor = executor

    def run(
        self,
        store: AutomationStore,
        steps: list[ActionStep | ConditionStep],
        context: ExecutionContext,
        automation_id: uuid.UUID,
    ) -> ExecutionSignal:
        for index, step in enumerate(steps):
            if isinstance(step, ConditionStep):
                matched = self.evaluator.evaluate(store, step.condition, context)
                logger.info(
                    "automation_condition_evaluated",
                    extra={
                        **context.log_fields(),
                        "automation_id": str(automation_id),
                        "matched": matched,
                    },
                )
                branch = step.on_true if matched else step.on_false
                self.run(store, branch, context, automation_id)
                continue

            signal = self._execute_action(store, step, context, steps[index + 1 :], automation_id)
            if signal is ExecutionSignal.SUSPEND:
                return ExecutionSignal.SUSPEND
        return ExecutionSignal.CONTINUE

    def _execute_action(
        self,
        store: AutomationStore,
        step: ActionStep,
        context: ExecutionContext,
        remaining_steps: list[ActionStep | ConditionStep],
        automation_id: uuid.UUID,
    ) -> ExecutionSignal:
        with tracer.start_as_current_span("automation.action") as span:
            span.set_attribute("automation_id", str(automation_id))
            span.set_attribute("action_type", step.action_type)
            try:
                signal = self.executor.execute(
                    store,
                    step,
                    context,
                    remaining_steps=remaining_steps,
                    automation_id=automation_id,
                )
            except SQLAlchemyError:
                raise
            except Exception as exc:
                observe_automation_action(step.action_type, FAILED)
                span.set_attribute("error", True)
                logger.exception(
                    "automation_action_failed",
                    extra={
                        **context.log_fields(),
                        "automation_id": str(automation_id),
                        "action_type": step.action_type,
                        "error": str(exc),
                    },
                )
                return ExecutionSignal.CONTINUE
            span.set_attribute("signal", signal.value)
            return signal
