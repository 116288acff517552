from __future__ import annotations

import logging
from collections.abc import Generator

import pytest

from app import main
from app.automation.engine import AutomationEngine, get_automation_engine
from app.automation.outbound import InlineDispatcher
from app.automation.subscriptions import AutomationEventSubscriber, unregister_automation_subscriptions
from app.core.config import get_settings
from app.core.events import event_bus


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[list[str], None, None]:
    configured: list[str] = []
    monkeypatch.setenv("OUTBOUND_MAX_WORKERS", "0")
    monkeypatch.setattr(main, "configure_logging", lambda settings=None: configured.append("logging"))
    monkeypatch.setattr(main, "_subscriptions_registered", False)
    get_settings.cache_clear()
    get_automation_engine.cache_clear()
    yield configured
    for handler in event_bus.subscribers("crm.deal.created"):
        if isinstance(handler, AutomationEventSubscriber):
            unregister_automation_subscriptions(handler, event_bus)
    event_bus.unsubscribe("system.started", main._on_system_started)
    get_settings.cache_clear()
    get_automation_engine.cache_clear()


def test_bootstrap_wires_subscriptions_once(setup_env: list[str], caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    engine = main.bootstrap("worker")
    assert main.bootstrap("worker") is engine

    assert isinstance(engine, AutomationEngine)
    assert isinstance(engine.executor.transports.dispatcher, InlineDispatcher)
    assert setup_env == ["logging", "logging"]

    subscribers = [
        handler for handler in event_bus.subscribers("crm.deal.updated") if isinstance(handler, AutomationEventSubscriber)
    ]
    assert len(subscribers) == 1
    assert subscribers[0].engine is engine
    assert event_bus.subscribers("system.started") == [main._on_system_started]

    started = [record for record in caplog.records if record.getMessage() == "system_event"]
    assert [getattr(record, "status", None) for record in started] == ["worker", "worker"]
