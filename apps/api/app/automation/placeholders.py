from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from app.automation.context import ExecutionContext
from app.crm.models import CRMCustomFieldDefinition

if TYPE_CHECKING:
    from app.automation.store import AutomationStore


_MARKER_RE = re.compile(r"\{\{([^{}]+)\}\}")

_DEAL_ATTRIBUTES = {
    "id": "id",
    "name": "name",
    "value": "value",
    "status": "status",
    "observation": "observation",
    "due_date": "due_date",
}
_TASK_ATTRIBUTES = {"id": "id", "title": "title", "due_date": "due_date"}
_CONTACT_ATTRIBUTES = {"name", "email", "phone"}

_UNRESOLVED = object()


def render_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return str(int(value))
        return format(value.normalize(), "f")
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


class PlaceholderResolver:
    """Replaces ``{{...}}`` markers with values from the execution context.

    Markers are matched case-insensitively. A marker that cannot be resolved
    (unknown attribute, missing record, unknown custom field name, value not
    stored) is left in the text untouched.
    """

    def resolve(self, store: AutomationStore, template: Any, context: ExecutionContext) -> Any:
        if not isinstance(template, str) or "{{" not in template:
            return template

        definitions: dict[str, dict[str, str]] = {}

        def _replace(match: re.Match[str]) -> str:
            value = self._resolve_marker(store, match.group(1).strip(), context, definitions)
            if value is _UNRESOLVED:
                return match.group(0)
            return render_value(value)

        return _MARKER_RE.sub(_replace, template)

    def _resolve_marker(
        self,
        store: AutomationStore,
        marker: str,
        context: ExecutionContext,
        definitions: dict[str, dict[str, str]],
    ) -> Any:
        scope, _, path = marker.partition(".")
        scope = scope.strip().lower()
        path = path.strip()

        if scope == "custom":
            if context.deal is None:
                return _UNRESOLVED
            by_name = self._definitions_by_name(store, context, "deal", definitions)
            return self._custom_value(by_name, path, context.deal.custom_fields)

        if scope == "deal":
            attribute = _DEAL_ATTRIBUTES.get(path.lower())
            if context.deal is None or attribute is None:
                return _UNRESOLVED
            return getattr(context.deal, attribute)

        if scope == "contact":
            contact = context.contact
            if contact is None:
                return _UNRESOLVED
            head, _, custom_name = path.partition(".")
            if head.strip().lower() == "custom" and custom_name:
                by_name = self._definitions_by_name(store, context, "contact", definitions)
                return self._custom_value(by_name, custom_name, contact.custom_fields)
            attribute = path.lower()
            if attribute not in _CONTACT_ATTRIBUTES:
                return _UNRESOLVED
            if attribute == "phone":
                phones = contact.phones or []
                return phones[0] if phones else ""
            return getattr(contact, attribute) or ""

        if scope == "task":
            attribute = _TASK_ATTRIBUTES.get(path.lower())
            if context.task is None or attribute is None:
                return _UNRESOLVED
            return getattr(context.task, attribute)

        return _UNRESOLVED

    def _custom_value(self, by_name: dict[str, str], name: str, stored: dict[str, Any] | None) -> Any:
        field_id = by_name.get(name.strip().lower())
        values = stored or {}
        if field_id is None or field_id not in values:
            return _UNRESOLVED
        return values[field_id]

    def _definitions_by_name(
        self,
        store: AutomationStore,
        context: ExecutionContext,
        entity: str,
        cache: dict[str, dict[str, str]],
    ) -> dict[str, str]:
        if entity not in cache:
            rows: list[CRMCustomFieldDefinition]
            if entity == "contact":
                rows = store.get_contact_custom_field_definitions(context.tenant_id)
            else:
                rows = store.get_custom_field_definitions(context.tenant_id)
            by_name: dict[str, str] = {}
            for row in rows:
                by_name.setdefault(row.name.strip().lower(), str(row.id))
            cache[entity] = by_name
        return cache[entity]
