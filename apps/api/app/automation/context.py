from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field

from app.crm.models import CRMContact, CRMDeal, CRMTask


class ExecutionSignal(str, enum.Enum):
    CONTINUE = "CONTINUE"
    SUSPEND = "SUSPEND"


@dataclass
class ExecutionContext:
    """State shared by every step of one automation run.

    ``contact`` is derived from the deal (or the task when no deal is in
    play); ``mutated_deal_ids`` collects the deals actions changed so the
    engine can re-check condition waits once the run is over.
    """

    tenant_id: uuid.UUID
    event_type: str
    deal: CRMDeal | None = None
    task: CRMTask | None = None
    contact: CRMContact | None = None
    mutated_deal_ids: set[uuid.UUID] = field(default_factory=set)

    def log_fields(self) -> dict[str, str | None]:
        return {
            "tenant_id": str(self.tenant_id),
            "event_type": self.event_type,
            "deal_id": str(self.deal.id) if self.deal is not None else None,
            "task_id": str(self.task.id) if self.task is not None else None,
        }
