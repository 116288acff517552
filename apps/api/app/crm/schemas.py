from __future__ import annotations

from datetime import date, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class DealNoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    content: str
    created_at: datetime


class DealHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    action: str
    details_json: dict[str, Any] | None = None
    created_at: datetime


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    name: str
    value: float
    status: str
    stage_id: UUID
    contact_id: UUID | None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    observation: str | None = None
    due_date: date | None = None
    created_at: datetime
    updated_at: datetime
    notes: list[DealNoteRead] = Field(default_factory=list)
    history: list[DealHistoryRead] = Field(default_factory=list)


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    title: str
    is_completed: bool
    due_date: date | None = None
    deal_id: UUID | None = None
    contact_id: UUID | None = None
    created_at: datetime
