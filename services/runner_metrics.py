"""Prometheus metrics for the Test Runner Agent."""

from typing import Dict

from prometheus_client import CollectorRegistry, Counter, Gauge

from models import LimiterCounts

registry = CollectorRegistry()

commands_received = Counter(
    "runner_commands_received_total",
    "Commands acknowledged and handed to the limiter",
    registry=registry,
)

commands_completed = Counter(
    "runner_commands_completed_total",
    "Commands whose result was produced",
    ["action", "outcome"],
    registry=registry,
)

command_errors = Counter(
    "runner_command_errors_total",
    "Commands that could not be executed normally",
    ["stage"],
    registry=registry,
)

poll_errors = Counter(
    "runner_poll_errors_total",
    "Failed polls against the ControlPlane",
    registry=registry,
)

limiter_jobs = Gauge(
    "runner_limiter_jobs",
    "Jobs in the concurrency limiter by state",
    ["state"],
    registry=registry,
)


def record_limiter_counts(counts: LimiterCounts) -> None:
    limiter_jobs.labels(state="queued").set(counts.queued)
    limiter_jobs.labels(state="running").set(counts.running)
    limiter_jobs.labels(state="done").set(counts.done)


def summary() -> Dict[str, float]:
    """Flatten every sample of the registry, for the final log line."""
    values: Dict[str, float] = {}
    for metric in registry.collect():
        for sample in metric.samples:
            if sample.name.endswith("_created"):
                continue
            labels = ",".join(f"{k}={v}" for k, v in sorted(sample.labels.items()))
            key = f"{sample.name}{{{labels}}}" if labels else sample.name
            values[key] = sample.value
    return values
