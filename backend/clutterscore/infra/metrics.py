import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.http_5xx = None
            self.http_latency = None
            self.connector_syncs = None
            self.connector_requests = None
            self.playbook_executions = None
            self.playbook_items = None
            self.undo_actions = None
            self.archive_operations = None
            self.webhook_events = None
            self.job_events = None
            self.job_heartbeat = None
            self.job_last_success = None
            self.job_errors = None
            self.circuit_state = None
            return

        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "path"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency in seconds.",
            ["method", "path", "status_class"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
            registry=self.registry,
        )
        self.connector_syncs = Counter(
            "connector_syncs_total",
            "Integration sync outcomes by platform.",
            ["platform", "outcome"],
            registry=self.registry,
        )
        self.connector_requests = Counter(
            "connector_requests_total",
            "Upstream platform API calls by platform and status class.",
            ["platform", "status_class"],
            registry=self.registry,
        )
        self.playbook_executions = Counter(
            "playbook_executions_total",
            "Playbook executions by resulting audit log status.",
            ["mode", "status"],
            registry=self.registry,
        )
        self.playbook_items = Counter(
            "playbook_items_total",
            "Playbook item outcomes.",
            ["action", "outcome"],
            registry=self.registry,
        )
        self.undo_actions = Counter(
            "undo_actions_total",
            "Undo action replays by type and outcome.",
            ["type", "outcome"],
            registry=self.registry,
        )
        self.archive_operations = Counter(
            "archive_operations_total",
            "Archive store operations by kind and outcome.",
            ["operation", "outcome"],
            registry=self.registry,
        )
        self.webhook_events = Counter(
            "webhook_events_total",
            "Inbound webhook deliveries by platform and result.",
            ["platform", "result"],
            registry=self.registry,
        )
        self.job_events = Counter(
            "job_events_total",
            "Job event dispatch outcomes by event name.",
            ["event", "status"],
            registry=self.registry,
        )
        self.job_heartbeat = Gauge(
            "job_last_heartbeat_timestamp",
            "Unix timestamp for the latest job heartbeat.",
            ["job"],
            registry=self.registry,
        )
        self.job_last_success = Gauge(
            "job_last_success_timestamp",
            "Unix timestamp for the latest successful job loop.",
            ["job"],
            registry=self.registry,
        )
        self.job_errors = Counter(
            "job_errors_total",
            "Job execution errors by job and reason.",
            ["job", "reason"],
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "circuit_state",
            "Circuit breaker state (0=closed, 0.5=half-open, 1=open).",
            ["circuit"],
            registry=self.registry,
        )

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        duration_seconds = max(0.0, float(duration_seconds))
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(
            duration_seconds
        )

    def record_connector_sync(self, platform: str, outcome: str) -> None:
        if not self.enabled or self.connector_syncs is None:
            return
        self.connector_syncs.labels(platform=platform or "unknown", outcome=outcome).inc()

    def record_connector_request(self, platform: str, status_code: int | None) -> None:
        if not self.enabled or self.connector_requests is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "error"
        self.connector_requests.labels(platform=platform or "unknown", status_class=status_class).inc()

    def record_playbook_execution(self, mode: str, status: str) -> None:
        if not self.enabled or self.playbook_executions is None:
            return
        self.playbook_executions.labels(mode=mode, status=status).inc()

    def record_playbook_item(self, action: str, outcome: str, count: int = 1) -> None:
        if not self.enabled or self.playbook_items is None:
            return
        if count <= 0:
            return
        self.playbook_items.labels(action=action, outcome=outcome).inc(count)

    def record_undo_action(self, action_type: str, outcome: str) -> None:
        if not self.enabled or self.undo_actions is None:
            return
        self.undo_actions.labels(type=action_type, outcome=outcome).inc()

    def record_archive_operation(self, operation: str, outcome: str, count: int = 1) -> None:
        if not self.enabled or self.archive_operations is None:
            return
        if count <= 0:
            return
        self.archive_operations.labels(operation=operation, outcome=outcome).inc(count)

    def record_webhook(self, platform: str, result: str) -> None:
        if not self.enabled or self.webhook_events is None:
            return
        self.webhook_events.labels(platform=platform or "unknown", result=result).inc()

    def record_job_event(self, event: str, status: str) -> None:
        if not self.enabled or self.job_events is None:
            return
        self.job_events.labels(event=event or "unknown", status=status).inc()

    def record_job_heartbeat(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_heartbeat is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_heartbeat.labels(job=job).set(ts)

    def record_job_success(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_last_success is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_last_success.labels(job=job).set(ts)

    def record_job_error(self, job: str, reason: str) -> None:
        if not self.enabled or self.job_errors is None:
            return
        safe_reason = reason or "unknown"
        self.job_errors.labels(job=job, reason=safe_reason).inc()

    def record_circuit_state(self, circuit: str, state: str) -> None:
        if not self.enabled or self.circuit_state is None:
            return
        value = {"closed": 0, "half_open": 0.5, "open": 1}.get(state, -1)
        self.circuit_state.labels(circuit=circuit).set(value)

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
