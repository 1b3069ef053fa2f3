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
_LOOKUP_BACKOFF_BUCKETS_SECONDS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0)

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
    if request_id:
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
            if request.url_rule is not None:
                payload["route"] = request.url_rule.rule
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
        self._by_route: Dict[str, Dict[str, float]] = {}

        self._http_request_total: Dict[tuple[str, str, str], int] = {}
        self._http_request_duration_ms: Dict[tuple[str, str], dict] = {}

        self._workflow_transition_total: Dict[tuple[str, str, str], int] = {}
        self._workflow_approval_total: Dict[str, int] = {}
        self._workflow_override_total: Dict[str, int] = {}
        self._workflow_concurrent_update_total = 0
        self._workflow_external_timeout_total: Dict[str, int] = {}
        self._workflow_lookup_backoff_seconds = self._new_histogram_state(_LOOKUP_BACKOFF_BUCKETS_SECONDS)
        self._vendor_approval_total: Dict[str, int] = {}
        self._domain_event_emitted_total: Dict[str, int] = {}

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

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method_key = str(method or "GET").strip().upper() or "GET"
        route_key = str(route or "unknown").strip() or "unknown"
        status_key = str(int(status_code))

        key = f"{method_key} {route_key}"
        with self._lock:
            bucket = self._by_route.setdefault(
                key,
                {
                    "requests": 0.0,
                    "errors": 0.0,
                    "latency_sum_ms": 0.0,
                    "latency_max_ms": 0.0,
                },
            )
            bucket["requests"] += 1
            bucket["latency_sum_ms"] += max(0.0, float(duration_ms))
            bucket["latency_max_ms"] = max(bucket["latency_max_ms"], max(0.0, float(duration_ms)))
            self._requests_total += 1
            if int(status_code) >= 400:
                bucket["errors"] += 1
                self._errors_total += 1

            self._http_request_total[(method_key, route_key, status_key)] = (
                int(self._http_request_total.get((method_key, route_key, status_key), 0)) + 1
            )
            hist_key = (method_key, route_key)
            histogram = self._http_request_duration_ms.setdefault(
                hist_key,
                self._new_histogram_state(_HTTP_DURATION_BUCKETS_MS),
            )
            self._observe_histogram(histogram, duration_ms, _HTTP_DURATION_BUCKETS_MS)

    def observe_workflow_transition(self, from_status: str, to_status: str, result: str) -> None:
        key = (
            str(from_status or "none").strip() or "none",
            str(to_status or "unknown").strip() or "unknown",
            str(result or "unknown").strip().lower() or "unknown",
        )
        with self._lock:
            self._workflow_transition_total[key] = int(self._workflow_transition_total.get(key, 0)) + 1

    def observe_workflow_approval(self, outcome: str) -> None:
        key = str(outcome or "unknown").strip().lower() or "unknown"
        with self._lock:
            self._workflow_approval_total[key] = int(self._workflow_approval_total.get(key, 0)) + 1

    def observe_workflow_override(self, kind: str) -> None:
        key = str(kind or "unknown").strip() or "unknown"
        with self._lock:
            self._workflow_override_total[key] = int(self._workflow_override_total.get(key, 0)) + 1

    def observe_workflow_concurrent_update(self, count: int = 1) -> None:
        increment = max(0, int(count or 0))
        if increment <= 0:
            return
        with self._lock:
            self._workflow_concurrent_update_total += increment

    def observe_workflow_external_timeout(self, dependency: str) -> None:
        key = str(dependency or "unknown").strip() or "unknown"
        with self._lock:
            self._workflow_external_timeout_total[key] = int(self._workflow_external_timeout_total.get(key, 0)) + 1

    def observe_workflow_lookup_backoff(self, backoff_seconds: float) -> None:
        with self._lock:
            self._observe_histogram(
                self._workflow_lookup_backoff_seconds,
                float(backoff_seconds),
                _LOOKUP_BACKOFF_BUCKETS_SECONDS,
            )

    def observe_vendor_approval(self, reason: str) -> None:
        key = str(reason or "unknown").strip().lower() or "unknown"
        with self._lock:
            self._vendor_approval_total[key] = int(self._vendor_approval_total.get(key, 0)) + 1

    def observe_domain_event_emitted(self, event_type: str) -> None:
        key = str(event_type or "unknown").strip() or "unknown"
        with self._lock:
            self._domain_event_emitted_total[key] = int(self._domain_event_emitted_total.get(key, 0)) + 1

    def snapshot(self) -> dict:
        with self._lock:
            route_stats = []
            for route, bucket in self._by_route.items():
                requests_count = int(bucket["requests"])
                avg_ms = 0.0
                if requests_count > 0:
                    avg_ms = float(bucket["latency_sum_ms"]) / requests_count
                route_stats.append(
                    {
                        "route": route,
                        "requests": requests_count,
                        "errors": int(bucket["errors"]),
                        "avg_latency_ms": round(avg_ms, 2),
                        "max_latency_ms": round(float(bucket["latency_max_ms"]), 2),
                    }
                )
            route_stats.sort(key=lambda item: item["requests"], reverse=True)
            return {
                "requests_total": int(self._requests_total),
                "errors_total": int(self._errors_total),
                "by_route": route_stats[:40],
                "workflow": {
                    "transitions_total": int(sum(self._workflow_transition_total.values())),
                    "approvals": dict(self._workflow_approval_total),
                    "overrides": dict(self._workflow_override_total),
                    "concurrent_updates_total": int(self._workflow_concurrent_update_total),
                    "external_timeouts": dict(self._workflow_external_timeout_total),
                },
            }

    def prometheus_snapshot(self) -> dict:
        with self._lock:
            return {
                "http_request_total": [
                    {"method": method, "route": route, "status": status, "value": value}
                    for (method, route, status), value in sorted(self._http_request_total.items())
                ],
                "http_request_duration_ms": [
                    {"method": method, "route": route, "histogram": _copy_histogram(state)}
                    for (method, route), state in sorted(self._http_request_duration_ms.items())
                ],
                "workflow_transition_total": [
                    {"from_status": from_status, "to_status": to_status, "result": result, "value": value}
                    for (from_status, to_status, result), value in sorted(self._workflow_transition_total.items())
                ],
                "workflow_approval_total": dict(sorted(self._workflow_approval_total.items())),
                "workflow_override_total": dict(sorted(self._workflow_override_total.items())),
                "workflow_concurrent_update_total": int(self._workflow_concurrent_update_total),
                "workflow_external_timeout_total": dict(sorted(self._workflow_external_timeout_total.items())),
                "workflow_lookup_backoff_seconds": _copy_histogram(self._workflow_lookup_backoff_seconds),
                "vendor_approval_total": dict(sorted(self._vendor_approval_total.items())),
                "domain_event_emitted_total": dict(sorted(self._domain_event_emitted_total.items())),
            }

    def reset(self) -> None:
        with self._lock:
            self._requests_total = 0
            self._errors_total = 0
            self._by_route.clear()
            self._http_request_total.clear()
            self._http_request_duration_ms.clear()
            self._workflow_transition_total.clear()
            self._workflow_approval_total.clear()
            self._workflow_override_total.clear()
            self._workflow_concurrent_update_total = 0
            self._workflow_external_timeout_total.clear()
            self._workflow_lookup_backoff_seconds = self._new_histogram_state(_LOOKUP_BACKOFF_BUCKETS_SECONDS)
            self._vendor_approval_total.clear()
            self._domain_event_emitted_total.clear()


def _copy_histogram(state: dict) -> dict:
    return {
        "count": int(state["count"]),
        "sum": float(state["sum"]),
        "buckets": dict(state["buckets"]),
    }


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


def observe_workflow_transition(from_status: str, to_status: str, result: str) -> None:
    _METRICS.observe_workflow_transition(from_status, to_status, result)


def observe_workflow_approval(outcome: str) -> None:
    _METRICS.observe_workflow_approval(outcome)


def observe_workflow_override(kind: str) -> None:
    _METRICS.observe_workflow_override(kind)


def observe_workflow_concurrent_update(count: int = 1) -> None:
    _METRICS.observe_workflow_concurrent_update(count)


def observe_workflow_external_timeout(dependency: str) -> None:
    _METRICS.observe_workflow_external_timeout(dependency)


def observe_workflow_lookup_backoff(backoff_seconds: float) -> None:
    _METRICS.observe_workflow_lookup_backoff(backoff_seconds)


def observe_vendor_approval(reason: str) -> None:
    _METRICS.observe_vendor_approval(reason)


def observe_domain_event_emitted(event_type: str) -> None:
    _METRICS.observe_domain_event_emitted(event_type)


def _prom_label(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prom_line(name: str, value: int | float, labels: dict[str, object] | None = None) -> str:
    if labels:
        labels_blob = ",".join(f'{key}="{_prom_label(val)}"' for key, val in sorted(labels.items()))
        return f"{name}{{{labels_blob}}} {value}"
    return f"{name} {value}"


def _prom_histogram(lines: list[str], name: str, histogram: dict, labels: dict[str, object] | None = None) -> None:
    base_labels = dict(labels or {})
    for bucket, value in histogram["buckets"].items():
        lines.append(_prom_line(f"{name}_bucket", int(value), labels={**base_labels, "le": bucket}))
    lines.append(_prom_line(f"{name}_sum", round(float(histogram["sum"]), 6), labels=base_labels or None))
    lines.append(_prom_line(f"{name}_count", int(histogram["count"]), labels=base_labels or None))


def prometheus_metrics_text() -> str:
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

    lines.append("# HELP http_request_duration_ms HTTP request latency in milliseconds.")
    lines.append("# TYPE http_request_duration_ms histogram")
    for sample in snapshot["http_request_duration_ms"]:
        _prom_histogram(
            lines,
            "http_request_duration_ms",
            sample["histogram"],
            labels={"method": sample["method"], "route": sample["route"]},
        )

    lines.append("# HELP workflow_transition_total Status transitions attempted by edge and result.")
    lines.append("# TYPE workflow_transition_total counter")
    for sample in snapshot["workflow_transition_total"]:
        lines.append(
            _prom_line(
                "workflow_transition_total",
                int(sample["value"]),
                labels={
                    "from_status": sample["from_status"],
                    "to_status": sample["to_status"],
                    "result": sample["result"],
                },
            )
        )

    lines.append("# HELP workflow_approval_total Approvals recorded by outcome.")
    lines.append("# TYPE workflow_approval_total counter")
    for outcome, value in snapshot["workflow_approval_total"].items():
        lines.append(_prom_line("workflow_approval_total", int(value), labels={"outcome": outcome}))

    lines.append("# HELP workflow_override_total Overrides recorded by kind.")
    lines.append("# TYPE workflow_override_total counter")
    for kind, value in snapshot["workflow_override_total"].items():
        lines.append(_prom_line("workflow_override_total", int(value), labels={"kind": kind}))

    lines.append("# HELP workflow_concurrent_update_total Commits refused because the request version changed.")
    lines.append("# TYPE workflow_concurrent_update_total counter")
    lines.append(_prom_line("workflow_concurrent_update_total", int(snapshot["workflow_concurrent_update_total"])))

    lines.append("# HELP workflow_external_timeout_total Collaborator lookups that exhausted retries.")
    lines.append("# TYPE workflow_external_timeout_total counter")
    for dependency, value in snapshot["workflow_external_timeout_total"].items():
        lines.append(_prom_line("workflow_external_timeout_total", int(value), labels={"dependency": dependency}))

    lines.append("# HELP workflow_lookup_backoff_seconds Backoff applied between collaborator lookup retries.")
    lines.append("# TYPE workflow_lookup_backoff_seconds histogram")
    _prom_histogram(lines, "workflow_lookup_backoff_seconds", snapshot["workflow_lookup_backoff_seconds"])

    lines.append("# HELP vendor_approval_total Vendor approvals granted on completion by reason.")
    lines.append("# TYPE vendor_approval_total counter")
    for reason, value in snapshot["vendor_approval_total"].items():
        lines.append(_prom_line("vendor_approval_total", int(value), labels={"reason": reason}))

    lines.append("# HELP domain_event_emitted_total Domain events published by type.")
    lines.append("# TYPE domain_event_emitted_total counter")
    for event_type, value in snapshot["domain_event_emitted_total"].items():
        lines.append(_prom_line("domain_event_emitted_total", int(value), labels={"event_type": event_type}))

    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)
