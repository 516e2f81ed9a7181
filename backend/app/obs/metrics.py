"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, Histogram

log = logging.getLogger(__name__)


REQUEST_COUNTER = Counter(
	"club_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"club_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

WORKSHOP_TRANSITIONS = Counter(
	"club_workshop_transitions_total",
	"Workshop status transitions applied",
	["status"],
)

WORKSHOP_REGISTRATIONS = Counter(
	"club_workshop_registrations_total",
	"Workshop registration outcomes",
	["outcome"],
)

WORKSHOP_REFUNDS = Counter(
	"club_workshop_refunds_total",
	"Workshop refund outcomes",
	["outcome"],
)

PROVIDER_ERRORS = Counter(
	"club_payment_provider_errors_total",
	"Payment provider call failures",
	["operation", "code"],
)

SETTINGS_UPDATES = Counter(
	"club_settings_updates_total",
	"Club settings rows written",
	["key"],
)

POSTGRES_UP = Gauge(
	"club_postgres_up",
	"Whether the last postgres readiness probe succeeded",
)

POSTGRES_LATENCY = Histogram(
	"club_postgres_probe_seconds",
	"Postgres readiness probe latency",
	buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5),
)


def observe_request(route: str, method: str, status: int, latency_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(latency_seconds)


def inc_workshop_transition(status: str) -> None:
	WORKSHOP_TRANSITIONS.labels(status=status).inc()


def inc_registration(outcome: str) -> None:
	WORKSHOP_REGISTRATIONS.labels(outcome=outcome).inc()


def inc_refund(outcome: str, count: int = 1) -> None:
	WORKSHOP_REFUNDS.labels(outcome=outcome).inc(count)


def inc_provider_error(operation: str, code: str) -> None:
	PROVIDER_ERRORS.labels(operation=operation, code=code).inc()


def inc_settings_update(key: str) -> None:
	SETTINGS_UPDATES.labels(key=key).inc()


def mark_postgres(ok: bool, *, latency_seconds: float | None = None) -> None:
	POSTGRES_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		POSTGRES_LATENCY.observe(latency_seconds)
