from __future__ import annotations

import logging
import math
import re
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from app.automation.context import ExecutionContext
from app.automation.schemas import Condition
from app.crm.models import CRMDeal

if TYPE_CHECKING:
    from app.automation.store import AutomationStore

logger = logging.getLogger("app.automation.conditions")

_DECIMAL_LITERAL_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_LEADING_NUMBER_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")
_HEX_LITERAL_RE = re.compile(r"^0[xX][0-9a-fA-F]+$")

_DATE_OPERATORS = {"EQUALS", "NOT_EQUALS", "ON_OR_AFTER", "ON_OR_BEFORE"}
_EQUALITY_OPERATORS = {"EQUALS", "NOT_EQUALS"}
_RELATIONAL_OPERATORS = {"GREATER_THAN", "LESS_THAN"}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def to_number(value: Any) -> float:
    """Whole-value number conversion; anything that is not entirely a number is NaN."""
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        if _DECIMAL_LITERAL_RE.match(text):
            return float(text)
        if _HEX_LITERAL_RE.match(text):
            return float(int(text, 16))
        if text in {"Infinity", "+Infinity"}:
            return math.inf
        if text == "-Infinity":
            return -math.inf
    return math.nan


def parse_float(value: Any) -> float:
    """Leading-number parsing: ``"1500 BRL"`` is 1500, ``"abc"`` is NaN."""
    if _is_number(value):
        return float(value)
    if not isinstance(value, str):
        return math.nan
    text = value.lstrip()
    match = _LEADING_NUMBER_RE.match(text)
    if match:
        return float(match.group(0))
    for literal, number in (("Infinity", math.inf), ("+Infinity", math.inf), ("-Infinity", -math.inf)):
        if text.startswith(literal):
            return number
    return math.nan


def _normalize(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def loose_equals(left: Any, right: Any) -> bool:
    """Type-coercing equality: ``"1000"`` equals ``1000``, NaN equals nothing."""
    left, right = _normalize(left), _normalize(right)
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, bool):
        return loose_equals(1.0 if left else 0.0, right)
    if isinstance(right, bool):
        return loose_equals(left, 1.0 if right else 0.0)
    if _is_number(left) and _is_number(right):
        return left == right
    if _is_number(left) and isinstance(right, str):
        return left == to_number(right)
    if isinstance(left, str) and _is_number(right):
        return to_number(left) == right
    return left == right


def _relational(left: Any, right: Any, operator: str) -> bool:
    left, right = _normalize(left), _normalize(right)
    if left is None or right is None:
        return False
    if not (isinstance(left, str) and isinstance(right, str)):
        left, right = to_number(left), to_number(right)
    if operator == "GREATER_THAN":
        return left > right
    return left < right


def calendar_day_millis(value: Any) -> int | None:
    """Milliseconds of the UTC midnight starting the calendar day of ``value``."""
    if value is None or value == "":
        return None
    day: date | None = None
    if isinstance(value, datetime):
        day = (value.astimezone(timezone.utc) if value.tzinfo else value).date()
    elif isinstance(value, date):
        day = value
    elif _is_number(value):
        try:
            day = datetime.fromtimestamp(float(value) / 1000, tz=timezone.utc).date()
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            try:
                day = date.fromisoformat(text[:10])
            except ValueError:
                return None
        else:
            day = (parsed.astimezone(timezone.utc) if parsed.tzinfo else parsed).date()
    if day is None:
        return None
    midnight = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    return int(midnight.timestamp() * 1000)


class ConditionEvaluator:
    def evaluate(self, store: AutomationStore, condition: Condition, context: ExecutionContext) -> bool:
        deal = context.deal
        if deal is None:
            return False

        resolved, deal_value = self._resolve_deal_value(store, condition, context.tenant_id, deal)
        if not resolved:
            return False

        operator = condition.operator
        if condition.field == "DEAL_DUE_DATE":
            return self._compare_dates(deal_value, condition.value, operator)

        if operator in _EQUALITY_OPERATORS:
            equal = loose_equals(deal_value, condition.value)
            return equal if operator == "EQUALS" else not equal

        if operator not in _RELATIONAL_OPERATORS:
            return False

        if condition.field == "DEAL_VALUE" or _is_number(deal_value):
            left = deal_value if _is_number(deal_value) else parse_float(deal_value)
            return _relational(left, to_number(condition.value), operator)
        return _relational(deal_value, condition.value, operator)

    def _resolve_deal_value(
        self,
        store: AutomationStore,
        condition: Condition,
        tenant_id: uuid.UUID,
        deal: CRMDeal,
    ) -> tuple[bool, Any]:
        field = condition.field
        if field == "DEAL_VALUE":
            return True, deal.value
        if field == "DEAL_STATUS":
            return True, deal.status
        if field == "DEAL_PIPELINE":
            stage = store.get_stage(tenant_id, deal.stage_id)
            return True, stage.pipeline_id if stage is not None else None
        if field == "DEAL_CUSTOM_FIELD":
            if not condition.custom_field_id:
                return False, None
            custom_fields = deal.custom_fields or {}
            return True, custom_fields.get(str(condition.custom_field_id))
        if field == "DEAL_DUE_DATE":
            return True, deal.due_date
        logger.info(
            "automation_condition_unknown_field",
            extra={"reason": field, "deal_id": str(deal.id)},
        )
        return False, None

    def _compare_dates(self, deal_value: Any, condition_value: Any, operator: str) -> bool:
        if operator not in _DATE_OPERATORS:
            return False
        deal_millis = calendar_day_millis(deal_value)
        condition_millis = calendar_day_millis(condition_value)
        if deal_millis is None or condition_millis is None:
            return False
        if operator == "EQUALS":
            return deal_millis == condition_millis
        if operator == "NOT_EQUALS":
            return deal_millis != condition_millis
        if operator == "ON_OR_AFTER":
            return deal_millis >= condition_millis
        return deal_millis <= condition_millis
