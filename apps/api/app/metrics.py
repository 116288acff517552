from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


automation_runs_total = Counter(
    "automation_runs_total",
    "Total automation runs by origin and outcome",
    ["origin", "outcome"],
)

automation_run_duration_seconds = Histogram(
    "automation_run_duration_seconds",
    "Automation run duration in seconds",
    ["origin"],
)

automation_actions_total = Counter(
    "automation_actions_total",
    "Total automation actions by type and outcome",
    ["action_type", "outcome"],
)

automation_continuations_total = Counter(
    "automation_continuations_total",
    "Total continuation lifecycle transitions",
    ["kind", "transition"],
)

automation_guardrail_blocks_total = Counter(
    "automation_guardrail_blocks_total",
    "Total automation guardrail blocks by reason",
    ["reason"],
)

automation_outbound_requests_total = Counter(
    "automation_outbound_requests_total",
    "Total outbound deliveries by channel and status",
    ["channel", "status"],
)


def observe_automation_run(origin: str, outcome: str, duration: float) -> None:
    automation_runs_total.labels(origin=origin, outcome=outcome).inc()
    automation_run_duration_seconds.labels(origin=origin).observe(duration)


def observe_automation_action(action_type: str, outcome: str) -> None:
    automation_actions_total.labels(action_type=action_type, outcome=outcome).inc()


def observe_continuation(kind: str, transition: str) -> None:
    automation_continuations_total.labels(kind=kind, transition=transition).inc()


def observe_automation_guardrail_block(reason: str) -> None:
    automation_guardrail_blocks_total.labels(reason=reason).inc()


def observe_outbound_request(channel: str, status: str) -> None:
    automation_outbound_requests_total.labels(channel=channel, status=status).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
