from __future__ import annotations

import logging

from app.automation.engine import get_automation_engine
from app.core.celery_app import celery_app
from app.core.database import session_scope

logger = logging.getLogger("app.automation.tasks")


@celery_app.task(name="app.automation.sweep_due_continuations")
def sweep_due_continuations_task() -> int:
    with session_scope() as session:
        resumed = get_automation_engine().sweep_due_continuations(session)
    logger.info("automation_sweep_task_finished", extra={"count": resumed})
    return resumed
