"""
Monitoring Surface - Prometheus counters and gauges.

Counters are labelled by task type (or event / rejection reason at the
gateway) and never carry per-delivery detail. Recording is fire-and-forget:
a broken metric must never fail a webhook or a task.

With several worker processes set PROMETHEUS_MULTIPROC_DIR; render_latest()
and the worker metrics server then aggregate every process's samples.
"""
import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
    multiprocess,
    start_http_server,
)

from reviewbot.core.logging import get_logger

logger = get_logger(__name__)

WEBHOOKS_RECEIVED = Counter(
    "reviewbot_webhooks_received_total",
    "Webhook deliveries received",
    ["event"],
)
WEBHOOKS_REJECTED = Counter(
    "reviewbot_webhooks_rejected_total",
    "Webhook deliveries rejected before publishing",
    ["reason"],
)
TASKS_PUBLISHED = Counter(
    "reviewbot_tasks_published_total",
    "Task envelopes published to the broker",
    ["task_type"],
)
TASKS_COMPLETED = Counter(
    "reviewbot_tasks_completed_total",
    "Tasks whose side effect completed",
    ["task_type"],
)
TASKS_RETRIED = Counter(
    "reviewbot_tasks_retried_total",
    "Tasks requeued after a transient failure",
    ["task_type"],
)
TASKS_DEAD_LETTERED = Counter(
    "reviewbot_tasks_dead_lettered_total",
    "Tasks routed to the dead-letter queue",
    ["task_type"],
)
TASKS_SKIPPED = Counter(
    "reviewbot_tasks_skipped_total",
    "Redeliveries acknowledged without execution (already done)",
    ["task_type"],
)
TASKS_IN_FLIGHT = Gauge(
    "reviewbot_tasks_in_flight",
    "Tasks currently executing",
    multiprocess_mode="livesum",
)
QUEUE_DEPTH = Gauge(
    "reviewbot_queue_depth",
    "Envelopes waiting in the task queue",
    multiprocess_mode="max",
)


def _safe(action, metric_name: str) -> None:
    try:
        action()
    except Exception as e:  # metrics must never break the hot path
        logger.warning("Metric update failed", extra_data={"metric": metric_name, "error": str(e)})


def record_webhook_received(event: str) -> None:
    _safe(lambda: WEBHOOKS_RECEIVED.labels(event=event or "unknown").inc(), "webhooks_received")


def record_webhook_rejected(reason: str) -> None:
    _safe(lambda: WEBHOOKS_REJECTED.labels(reason=reason).inc(), "webhooks_rejected")


def record_published(task_type: str) -> None:
    _safe(lambda: TASKS_PUBLISHED.labels(task_type=task_type).inc(), "tasks_published")


def record_completed(task_type: str) -> None:
    _safe(lambda: TASKS_COMPLETED.labels(task_type=task_type).inc(), "tasks_completed")


def record_retried(task_type: str) -> None:
    _safe(lambda: TASKS_RETRIED.labels(task_type=task_type).inc(), "tasks_retried")


def record_dead_lettered(task_type: str) -> None:
    _safe(lambda: TASKS_DEAD_LETTERED.labels(task_type=task_type).inc(), "tasks_dead_lettered")


def record_skipped(task_type: str) -> None:
    _safe(lambda: TASKS_SKIPPED.labels(task_type=task_type).inc(), "tasks_skipped")


def task_started() -> None:
    _safe(TASKS_IN_FLIGHT.inc, "tasks_in_flight")


def task_finished() -> None:
    _safe(TASKS_IN_FLIGHT.dec, "tasks_in_flight")


def set_queue_depth(depth: int) -> None:
    _safe(lambda: QUEUE_DEPTH.set(depth), "queue_depth")


def multiprocess_enabled() -> bool:
    return bool(os.environ.get("PROMETHEUS_MULTIPROC_DIR"))


def exposition_registry() -> CollectorRegistry:
    """Registry to expose: every process's samples in multiprocess mode, else this process's"""
    if multiprocess_enabled():
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        return registry
    return REGISTRY


def render_latest() -> tuple[bytes, str]:
    """Exposition payload and content type for the /metrics endpoint"""
    return generate_latest(exposition_registry()), CONTENT_TYPE_LATEST


def start_worker_metrics_server(port: int) -> bool:
    """
    Serve /metrics from a Celery worker.

    Workers have no web app of their own, so this is the only way their
    counters get scraped. Returns False when disabled (port 0).
    """
    if not port:
        return False
    start_http_server(port, registry=exposition_registry())
    logger.info(
        "Worker metrics server started",
        extra_data={"port": port, "multiprocess": multiprocess_enabled()},
    )
    return True


def mark_process_dead(pid: int) -> None:
    """Drop a finished worker child's live gauges from the multiprocess files"""
    if multiprocess_enabled():
        _safe(lambda: multiprocess.mark_process_dead(pid), "process_dead")
