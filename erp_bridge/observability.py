from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict

from flask import g, has_request_context, request


_HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
_OUTBOX_PROCESSING_BUCKETS_MS = (10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0, 30000.0)
_OUTBOX_BACKOFF_BUCKETS_SECONDS = (1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0)

_LOG_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("log_request_id", default="")


def _normalize_request_id(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


def set_log_request_id(request_id: str | None) -> None:
    _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))


@contextlib.contextmanager
def bind_request_id(request_id: str | None):
    token = _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))
    try:
        yield _LOG_REQUEST_ID_CTX.get()
    finally:
        _LOG_REQUEST_ID_CTX.reset(token)


def _background_request_id(default: str | None = None) -> str:
    request_id = str(_LOG_REQUEST_ID_CTX.get() or "").strip()
    if request_id and request_id != "n/a":
        return request_id
    return default or "n/a"


class JsonLogFormatter(logging.Formatter):
    _base_keys = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request_id"] = current_request_id(default="n/a")
            payload["path"] = request.path
            payload["method"] = request.method
        else:
            record_request_id = str(getattr(record, "request_id", "") or "").strip()
            payload["request_id"] = record_request_id or _background_request_id(default="n/a")

        for key, value in record.__dict__.items():
            if key in self._base_keys or key.startswith("_"):
                continue
            if key in payload:
                continue
            if callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if request_id:
        set_log_request_id(request_id)
        return request_id
    incoming = str(request.headers.get("X-Request-Id") or "").strip()
    request_id = incoming or str(uuid.uuid4())
    g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


def current_request_id(default: str | None = None) -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return _background_request_id(default=default)


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._requests_total = 0
        self._errors_total = 0
        self._http_request_total: Dict[tuple[str, str, str], int] = {}
        self._http_request_duration_ms: Dict[tuple[str, str], dict] = {}

        self._erp_outbox_enqueued_total: Dict[str, int] = {}
        self._erp_outbox_delivered_total = 0
        self._erp_outbox_retry_count = 0
        self._erp_dead_letter_total = 0
        self._erp_sync_tick_total: Dict[str, int] = {}
        self._erp_outbox_processing_time = self._new_histogram_state(_OUTBOX_PROCESSING_BUCKETS_MS)
        self._erp_retry_backoff_seconds = self._new_histogram_state(_OUTBOX_BACKOFF_BUCKETS_SECONDS)

    @staticmethod
    def _bucket_label(limit: float) -> str:
        return f"{limit:g}"

    @classmethod
    def _new_histogram_state(cls, limits: tuple[float, ...]) -> dict:
        return {
            "count": 0,
            "sum": 0.0,
            "buckets": {cls._bucket_label(limit): 0 for limit in limits} | {"+Inf": 0},
        }

    @classmethod
    def _observe_histogram(cls, state: dict, value: float, limits: tuple[float, ...]) -> None:
        duration = max(0.0, float(value))
        state["count"] += 1
        state["sum"] += duration
        for limit in limits:
            if duration <= limit:
                key = cls._bucket_label(limit)
                state["buckets"][key] = int(state["buckets"].get(key, 0)) + 1
        state["buckets"]["+Inf"] = int(state["count"])

    @staticmethod
    def _copy_histogram(state: dict) -> dict:
        return {
            "count": int(state["count"]),
            "sum": float(state["sum"]),
            "buckets": {label: int(count) for label, count in state["buckets"].items()},
        }

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method_key = str(method or "GET").strip().upper() or "GET"
        route_key = str(route or "unknown").strip() or "unknown"
        status_key = str(int(status_code))
        with self._lock:
            self._requests_total += 1
            if int(status_code) >= 400:
                self._errors_total += 1
            key = (method_key, route_key, status_key)
            self._http_request_total[key] = int(self._http_request_total.get(key, 0)) + 1
            histogram = self._http_request_duration_ms.setdefault(
                (method_key, route_key),
                self._new_histogram_state(_HTTP_DURATION_BUCKETS_MS),
            )
            self._observe_histogram(histogram, duration_ms, _HTTP_DURATION_BUCKETS_MS)

    def observe_erp_outbox_enqueued(self, event_type: str) -> None:
        key = str(event_type or "unknown").strip() or "unknown"
        with self._lock:
            self._erp_outbox_enqueued_total[key] = int(self._erp_outbox_enqueued_total.get(key, 0)) + 1

    def observe_erp_outbox_delivered(self, count: int = 1) -> None:
        increment = max(0, int(count or 0))
        if increment <= 0:
            return
        with self._lock:
            self._erp_outbox_delivered_total += increment

    def observe_erp_outbox_retry(self, count: int = 1) -> None:
        increment = max(0, int(count or 0))
        if increment <= 0:
            return
        with self._lock:
            self._erp_outbox_retry_count += increment

    def observe_erp_outbox_dead_letter(self, count: int = 1) -> None:
        increment = max(0, int(count or 0))
        if increment <= 0:
            return
        with self._lock:
            self._erp_dead_letter_total += increment

    def observe_erp_sync_tick(self, result: str) -> None:
        key = str(result or "unknown").strip().lower() or "unknown"
        with self._lock:
            self._erp_sync_tick_total[key] = int(self._erp_sync_tick_total.get(key, 0)) + 1

    def observe_erp_outbox_retry_backoff(self, backoff_seconds: float) -> None:
        with self._lock:
            self._observe_histogram(self._erp_retry_backoff_seconds, float(backoff_seconds), _OUTBOX_BACKOFF_BUCKETS_SECONDS)

    def observe_erp_outbox_processing(self, duration_ms: float) -> None:
        with self._lock:
            self._observe_histogram(self._erp_outbox_processing_time, duration_ms, _OUTBOX_PROCESSING_BUCKETS_MS)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "requests_total": int(self._requests_total),
                "errors_total": int(self._errors_total),
                "erp_outbox": {
                    "enqueued_total": int(sum(self._erp_outbox_enqueued_total.values())),
                    "delivered_total": int(self._erp_outbox_delivered_total),
                    "retry_count": int(self._erp_outbox_retry_count),
                    "dead_letter_total": int(self._erp_dead_letter_total),
                    "processing_count": int(self._erp_outbox_processing_time["count"]),
                    "ticks": dict(sorted(self._erp_sync_tick_total.items())),
                },
            }

    def prometheus_snapshot(self) -> dict:
        with self._lock:
            return {
                "http_request_total": [
                    {"method": method, "route": route, "status": status, "value": int(value)}
                    for (method, route, status), value in sorted(self._http_request_total.items())
                ],
                "http_request_duration_ms": [
                    {"method": method, "route": route} | self._copy_histogram(state)
                    for (method, route), state in sorted(self._http_request_duration_ms.items())
                ],
                "erp_outbox_enqueued_total": dict(sorted(self._erp_outbox_enqueued_total.items())),
                "erp_outbox_delivered_total": int(self._erp_outbox_delivered_total),
                "erp_outbox_retry_count": int(self._erp_outbox_retry_count),
                "erp_dead_letter_total": int(self._erp_dead_letter_total),
                "erp_sync_tick_total": dict(sorted(self._erp_sync_tick_total.items())),
                "erp_outbox_processing_time": self._copy_histogram(self._erp_outbox_processing_time),
                "erp_retry_backoff_seconds": self._copy_histogram(self._erp_retry_backoff_seconds),
            }

    def reset(self) -> None:
        with self._lock:
            self._requests_total = 0
            self._errors_total = 0
            self._http_request_total.clear()
            self._http_request_duration_ms.clear()
            self._erp_outbox_enqueued_total.clear()
            self._erp_outbox_delivered_total = 0
            self._erp_outbox_retry_count = 0
            self._erp_dead_letter_total = 0
            self._erp_sync_tick_total.clear()
            self._erp_outbox_processing_time = self._new_histogram_state(_OUTBOX_PROCESSING_BUCKETS_MS)
            self._erp_retry_backoff_seconds = self._new_histogram_state(_OUTBOX_BACKOFF_BUCKETS_SECONDS)


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = float(getattr(g, "_request_started_at", 0.0) or 0.0)
    elapsed_ms = 0.0
    if started > 0.0:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code), elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_erp_outbox_enqueued(event_type: str) -> None:
    _METRICS.observe_erp_outbox_enqueued(event_type)


def observe_erp_outbox_delivered(count: int = 1) -> None:
    _METRICS.observe_erp_outbox_delivered(count)


def observe_erp_outbox_retry(count: int = 1) -> None:
    _METRICS.observe_erp_outbox_retry(count)


def observe_erp_outbox_dead_letter(count: int = 1) -> None:
    _METRICS.observe_erp_outbox_dead_letter(count)


def observe_erp_sync_tick(result: str) -> None:
    _METRICS.observe_erp_sync_tick(result)


def observe_erp_outbox_retry_backoff(backoff_seconds: float) -> None:
    _METRICS.observe_erp_outbox_retry_backoff(backoff_seconds)


def observe_erp_outbox_processing(duration_ms: float) -> None:
    _METRICS.observe_erp_outbox_processing(duration_ms)


def _prom_label(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prom_line(name: str, value: int | float, labels: dict[str, object] | None = None) -> str:
    if labels:
        labels_blob = ",".join(f'{key}="{_prom_label(val)}"' for key, val in sorted(labels.items()))
        return f"{name}{{{labels_blob}}} {value}"
    return f"{name} {value}"


def _prom_histogram(lines: list[str], name: str, hist: dict, labels: dict[str, object] | None = None) -> None:
    base_labels = dict(labels or {})
    for le_label, bucket_value in hist["buckets"].items():
        lines.append(_prom_line(f"{name}_bucket", int(bucket_value), labels=base_labels | {"le": le_label}))
    lines.append(_prom_line(f"{name}_sum", float(hist["sum"]), labels=base_labels or None))
    lines.append(_prom_line(f"{name}_count", int(hist["count"]), labels=base_labels or None))


def prometheus_metrics_text(*, outbox_state: dict | None = None) -> str:
    snapshot = _METRICS.prometheus_snapshot()
    lines: list[str] = []

    lines.append("# HELP http_request_total Total HTTP requests by method, route and status.")
    lines.append("# TYPE http_request_total counter")
    for sample in snapshot["http_request_total"]:
        lines.append(
            _prom_line(
                "http_request_total",
                int(sample["value"]),
                labels={"method": sample["method"], "route": sample["route"], "status": sample["status"]},
            )
        )

    lines.append("# HELP http_request_duration_ms HTTP request duration in milliseconds.")
    lines.append("# TYPE http_request_duration_ms histogram")
    for hist in snapshot["http_request_duration_ms"]:
        _prom_histogram(lines, "http_request_duration_ms", hist, {"method": hist["method"], "route": hist["route"]})

    outbox_queue = ((outbox_state or {}).get("queue") or {}) if isinstance(outbox_state, dict) else {}
    lines.append("# HELP erp_outbox_queue_size ERP outbox queue size by state.")
    lines.append("# TYPE erp_outbox_queue_size gauge")
    lines.append(_prom_line("erp_outbox_queue_size", int(outbox_queue.get("pending_jobs") or 0), labels={"state": "pending"}))
    lines.append(_prom_line("erp_outbox_queue_size", int(outbox_queue.get("failed_jobs") or 0), labels={"state": "failed"}))
    lines.append(_prom_line("erp_outbox_queue_size", int(outbox_queue.get("dead_letter_jobs") or 0), labels={"state": "dead_letter"}))
    lines.append(_prom_line("erp_outbox_queue_size", int(outbox_queue.get("completed_jobs") or 0), labels={"state": "sent"}))

    lines.append("# HELP erp_outbox_enqueued_total Events enqueued by event type.")
    lines.append("# TYPE erp_outbox_enqueued_total counter")
    for event_type, total in snapshot["erp_outbox_enqueued_total"].items():
        lines.append(_prom_line("erp_outbox_enqueued_total", int(total), labels={"event_type": event_type}))

    lines.append("# HELP erp_outbox_delivered_total Documents delivered to the ERP.")
    lines.append("# TYPE erp_outbox_delivered_total counter")
    lines.append(_prom_line("erp_outbox_delivered_total", int(snapshot["erp_outbox_delivered_total"])))

    lines.append("# HELP erp_outbox_retry_count Total outbox retries scheduled.")
    lines.append("# TYPE erp_outbox_retry_count counter")
    lines.append(_prom_line("erp_outbox_retry_count", int(snapshot["erp_outbox_retry_count"])))

    lines.append("# HELP erp_dead_letter_total Total outbox events moved to dead letter.")
    lines.append("# TYPE erp_dead_letter_total counter")
    lines.append(_prom_line("erp_dead_letter_total", int(snapshot["erp_dead_letter_total"])))

    lines.append("# HELP erp_sync_tick_total Worker ticks by result.")
    lines.append("# TYPE erp_sync_tick_total counter")
    for result, total in snapshot["erp_sync_tick_total"].items():
        lines.append(_prom_line("erp_sync_tick_total", int(total), labels={"result": result}))

    lines.append("# HELP erp_outbox_processing_time ERP outbox processing time in milliseconds.")
    lines.append("# TYPE erp_outbox_processing_time histogram")
    _prom_histogram(lines, "erp_outbox_processing_time", snapshot["erp_outbox_processing_time"])

    lines.append("# HELP erp_retry_backoff_seconds ERP outbox retry backoff delay in seconds.")
    lines.append("# TYPE erp_retry_backoff_seconds histogram")
    _prom_histogram(lines, "erp_retry_backoff_seconds", snapshot["erp_retry_backoff_seconds"])

    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)


def _parse_timestamp(value: str | None) -> datetime | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    normalized = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def outbox_health(summary: dict, *, critical_age_seconds: int = 900, critical_pending_jobs: int = 50) -> dict:
    counters = dict(summary or {})
    pending = int(counters.get("pending") or 0)
    failed = int(counters.get("failed") or 0)
    now = datetime.now(timezone.utc)

    oldest_due = _parse_timestamp(counters.get("oldest_due_at"))
    oldest_age = max(0, int((now - oldest_due).total_seconds())) if oldest_due else 0
    last_attempt_at = _parse_timestamp(counters.get("last_attempt_at"))

    worker_state = "idle"
    if pending or failed:
        if last_attempt_at is None:
            worker_state = "stalled" if oldest_age > 120 else "draining"
        else:
            age_since_last_attempt = int((now - last_attempt_at).total_seconds())
            worker_state = "stalled" if age_since_last_attempt > 120 and oldest_age > 120 else "draining"

    backlog = pending + failed
    backlog_critical = backlog >= max(1, int(critical_pending_jobs)) or oldest_age >= max(1, int(critical_age_seconds))

    return {
        "worker_status": worker_state,
        "worker_active": worker_state == "draining",
        "backlog_critical": backlog_critical,
        "queue": {
            "pending_jobs": pending,
            "failed_jobs": failed,
            "dead_letter_jobs": int(counters.get("dead_letter") or 0),
            "completed_jobs": int(counters.get("sent") or 0),
            "oldest_pending_age_seconds": oldest_age,
            "last_attempt_at": counters.get("last_attempt_at"),
            "backlog_critical": backlog_critical,
        },
    }
