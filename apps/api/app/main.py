from __future__ import annotations

import logging

from app.automation.engine import AutomationEngine, get_automation_engine
from app.automation.subscriptions import register_automation_subscriptions
from app.core.config import get_settings
from app.core.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.otel import setup_otel

logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_type": event.name, "status": event.payload.get("service")})


def bootstrap(service: str = "api") -> AutomationEngine:
    """Wire logging, tracing and the automation bus handlers for this process."""
    global _subscriptions_registered
    settings = get_settings()
    configure_logging(settings)
    setup_otel(service, settings)

    engine = get_automation_engine()
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        register_automation_subscriptions(event_bus, engine=engine)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": service})
    return engine
