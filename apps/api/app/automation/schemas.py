from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


TriggerType = Literal[
    "DEAL_CREATED",
    "DEAL_STAGE_CHANGED",
    "DEAL_STATUS_UPDATED",
    "DEAL_ENTERED_PIPELINE",
    "NOTE_ADDED_TO_DEAL",
    "TASK_CREATED",
    "TASK_COMPLETED",
    "DEAL_DUE_DATE_APPROACHING",
]

ConditionField = Literal[
    "DEAL_VALUE",
    "DEAL_STATUS",
    "DEAL_PIPELINE",
    "DEAL_CUSTOM_FIELD",
    "DEAL_DUE_DATE",
]

ConditionOperator = Literal[
    "EQUALS",
    "NOT_EQUALS",
    "GREATER_THAN",
    "LESS_THAN",
    "ON_OR_AFTER",
    "ON_OR_BEFORE",
]

ActionType = Literal[
    "CREATE_DEAL",
    "ADD_NOTE",
    "UPDATE_DEAL_STATUS",
    "MOVE_DEAL_TO_STAGE",
    "WAIT",
    "SEND_WEBHOOK",
    "SEND_WHATSAPP",
    "SEND_EMAIL",
    "CREATE_TASK",
    "CREATE_CALENDAR_NOTE",
]

# trigger type -> key its trigger config must carry
TRIGGER_CONFIG_KEYS: dict[str, str] = {
    "DEAL_STAGE_CHANGED": "stageId",
    "DEAL_STATUS_UPDATED": "status",
    "DEAL_ENTERED_PIPELINE": "pipelineId",
}

RESUMED_EVENT_TYPE = "AUTOMATION_RESUMED"


class Condition(BaseModel):
    """A single comparison against the deal in context.

    ``field`` and ``operator`` stay plain strings so that a stored definition
    with an unknown value still loads; the evaluator treats those as false.
    Authoring goes through :func:`validate_condition` which is strict.
    """

    model_config = ConfigDict(populate_by_name=True)

    field: str
    operator: str
    value: Any = None
    custom_field_id: str | None = Field(default=None, alias="customFieldId")


class ActionStep(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["ACTION"] = "ACTION"
    id: str | None = None
    action_type: str = Field(alias="actionType")
    action_config: dict[str, Any] = Field(default_factory=dict, alias="actionConfig")


class ConditionStep(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["CONDITION"] = "CONDITION"
    id: str | None = None
    condition: Condition
    on_true: list["Step"] = Field(default_factory=list, alias="onTrue")
    on_false: list["Step"] = Field(default_factory=list, alias="onFalse")


Step = Annotated[ActionStep | ConditionStep, Field(discriminator="type")]

ConditionStep.model_rebuild()

_step_list_adapter = TypeAdapter(list[Step])


def parse_steps(payload: Any) -> list[ActionStep | ConditionStep]:
    return _step_list_adapter.validate_python(payload or [])


def dump_steps(steps: list[ActionStep | ConditionStep]) -> list[dict[str, Any]]:
    return _step_list_adapter.dump_python(steps, mode="json", by_alias=True)


class TimeCriterion(BaseModel):
    kind: Literal["TIME"] = "TIME"
    execute_at: datetime


class ConditionCriterion(BaseModel):
    kind: Literal["CONDITION"] = "CONDITION"
    condition: Condition


ResumeCriterion = Annotated[TimeCriterion | ConditionCriterion, Field(discriminator="kind")]


class _DomainEventBase(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class DealCreatedEvent(_DomainEventBase):
    type: Literal["DEAL_CREATED"] = "DEAL_CREATED"


class DealStageChangedEvent(_DomainEventBase):
    type: Literal["DEAL_STAGE_CHANGED"] = "DEAL_STAGE_CHANGED"
    old_stage_id: UUID | None = Field(default=None, alias="oldStageId")
    new_stage_id: UUID = Field(alias="newStageId")


class DealStatusUpdatedEvent(_DomainEventBase):
    type: Literal["DEAL_STATUS_UPDATED"] = "DEAL_STATUS_UPDATED"
    new_status: str = Field(alias="newStatus")


class DealEnteredPipelineEvent(_DomainEventBase):
    type: Literal["DEAL_ENTERED_PIPELINE"] = "DEAL_ENTERED_PIPELINE"
    pipeline_id: UUID = Field(alias="pipelineId")


class NoteAddedToDealEvent(_DomainEventBase):
    type: Literal["NOTE_ADDED_TO_DEAL"] = "NOTE_ADDED_TO_DEAL"


class TaskCreatedEvent(_DomainEventBase):
    type: Literal["TASK_CREATED"] = "TASK_CREATED"


class TaskCompletedEvent(_DomainEventBase):
    type: Literal["TASK_COMPLETED"] = "TASK_COMPLETED"


DomainEvent = Annotated[
    DealCreatedEvent
    | DealStageChangedEvent
    | DealStatusUpdatedEvent
    | DealEnteredPipelineEvent
    | NoteAddedToDealEvent
    | TaskCreatedEvent
    | TaskCompletedEvent,
    Field(discriminator="type"),
]

domain_event_adapter = TypeAdapter(DomainEvent)


_condition_field_adapter = TypeAdapter(ConditionField)
_condition_operator_adapter = TypeAdapter(ConditionOperator)
_action_type_adapter = TypeAdapter(ActionType)


def validate_condition(payload: Any) -> Condition:
    condition = Condition.model_validate(payload)
    _condition_field_adapter.validate_python(condition.field)
    _condition_operator_adapter.validate_python(condition.operator)
    if condition.field == "DEAL_CUSTOM_FIELD" and not condition.custom_field_id:
        raise ValueError("customFieldId is required when field is DEAL_CUSTOM_FIELD")
    if condition.field != "DEAL_CUSTOM_FIELD" and condition.custom_field_id:
        raise ValueError("customFieldId is only allowed when field is DEAL_CUSTOM_FIELD")
    return condition


def validate_step_tree(steps: list[ActionStep | ConditionStep]) -> None:
    for step in steps:
        if isinstance(step, ConditionStep):
            validate_condition(step.condition.model_dump(by_alias=True))
            validate_step_tree(step.on_true)
            validate_step_tree(step.on_false)
            continue
        _action_type_adapter.validate_python(step.action_type)
        if step.action_type == "WAIT" and step.action_config.get("waitMode") == "CONDITION":
            wait_condition = step.action_config.get("waitCondition")
            if not isinstance(wait_condition, dict):
                raise ValueError("waitCondition is required when waitMode is CONDITION")
            validate_condition(wait_condition)


def validate_trigger(trigger_type: str, trigger_config: dict[str, Any]) -> None:
    required_key = TRIGGER_CONFIG_KEYS.get(trigger_type)
    if required_key is None:
        return
    if trigger_config.get(required_key) in (None, ""):
        raise ValueError(f"triggerConfig.{required_key} is required for {trigger_type}")


class AutomationCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    trigger_type: TriggerType = Field(alias="triggerType")
    trigger_config: dict[str, Any] = Field(default_factory=dict, alias="triggerConfig")
    steps: list[dict[str, Any]] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_automation_structure(self) -> "AutomationCreate":
        validate_trigger(self.trigger_type, self.trigger_config)
        steps = parse_steps(self.steps)
        validate_step_tree(steps)
        self.steps = dump_steps(steps)
        return self


class AutomationUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = Field(default=None, min_length=1)
    trigger_type: TriggerType | None = Field(default=None, alias="triggerType")
    trigger_config: dict[str, Any] | None = Field(default=None, alias="triggerConfig")
    steps: list[dict[str, Any]] | None = None

    @model_validator(mode="after")
    def validate_automation_structure(self) -> "AutomationUpdate":
        if self.steps is not None:
            steps = parse_steps(self.steps)
            validate_step_tree(steps)
            self.steps = dump_steps(steps)
        return self


class AutomationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    name: str
    trigger_type: str
    trigger_config: dict[str, Any]
    steps: list[dict[str, Any]]
    created_at: datetime
    updated_at: datetime


class ContinuationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    deal_id: UUID
    automation_id: UUID
    remaining_steps: list[dict[str, Any]]
    execute_at: datetime | None
    condition_json: dict[str, Any] | None
    created_at: datetime
