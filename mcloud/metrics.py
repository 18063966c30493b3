from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

_REQ_COUNT = Counter(
    "mcloud_http_requests_total",
    "Total HTTP requests",
    labelnames=("method", "path", "status"),
)
_REQ_LATENCY = Histogram(
    "mcloud_http_request_duration_seconds",
    "HTTP request latency seconds",
    labelnames=("method", "path"),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.3, 0.5, 1.0, 2.5, 5.0, 10.0),
)
_EXTERNAL_OPS = Counter(
    "mcloud_external_operations_total",
    "Subsystem adapter calls",
    labelnames=("subsystem", "action", "result"),
)
_COMMANDS = Counter(
    "mcloud_commands_total",
    "External commands executed by real adapters",
    labelnames=("action", "result"),
)
_PIPELINE_RUNS = Counter(
    "mcloud_pipeline_runs_total",
    "Bootstrap, join and leave pipeline outcomes",
    labelnames=("kind", "result"),
)
_PIPELINE_LATENCY = Histogram(
    "mcloud_pipeline_duration_seconds",
    "Pipeline run duration seconds",
    labelnames=("kind",),
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)
_TOKEN_REDEMPTIONS = Counter(
    "mcloud_token_redemptions_total",
    "Bootstrap token redemption outcomes",
    labelnames=("result",),
)


def observe_http_request(*, method: str, path: str, status: int, duration_seconds: float) -> None:
    _REQ_COUNT.labels(method=method, path=path, status=str(status)).inc()
    _REQ_LATENCY.labels(method=method, path=path).observe(duration_seconds)


def record_external_operation(*, subsystem: str, action: str, result: str) -> None:
    _EXTERNAL_OPS.labels(subsystem=subsystem, action=action, result=result).inc()


def record_command(*, action: str, ok: bool) -> None:
    _COMMANDS.labels(action=action, result="ok" if ok else "error").inc()


def record_pipeline_run(*, kind: str, result: str, duration_seconds: float) -> None:
    _PIPELINE_RUNS.labels(kind=kind, result=result).inc()
    _PIPELINE_LATENCY.labels(kind=kind).observe(duration_seconds)


def record_token_redemption(*, result: str) -> None:
    _TOKEN_REDEMPTIONS.labels(result=result).inc()


def render_metrics() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
