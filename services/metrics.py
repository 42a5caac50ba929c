# services/metrics.py
from __future__ import annotations
import os

os.environ.setdefault("PROMETHEUS_DISABLE_CREATED_SERIES", "1")

from prometheus_client import (  # noqa: E402
    Counter, Histogram, CollectorRegistry,
    generate_latest, CONTENT_TYPE_LATEST,
)

# Use a DEDICATED registry so only our app metrics show up
APP_REGISTRY = CollectorRegistry(auto_describe=True)

# --- Generic HTTP metrics (bind to our registry) ---
REQUEST_COUNT = Counter(
    "http_requests_total", "HTTP requests total",
    ["method", "endpoint", "status"], registry=APP_REGISTRY
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds", "Request latency (seconds)",
    ["endpoint", "method"], registry=APP_REGISTRY,
)

# --- Khalti gateway calls ---
PAYMENT_INITIATIONS = Counter(
    "payments_initiations_total", "Khalti initiate calls", ["outcome"], registry=APP_REGISTRY
)
PAYMENT_LOOKUPS = Counter(
    "payments_lookups_total", "Khalti lookup calls", ["outcome"], registry=APP_REGISTRY
)

# --- Webhook / reconciliation ---
WEBHOOK_EVENTS = Counter(
    "payments_webhook_events_total", "Webhook events", ["outcome"], registry=APP_REGISTRY
)
BOOKINGS_RECONCILED = Counter(
    "payments_bookings_reconciled_total", "Status snapshots applied to bookings",
    ["status", "applied"], registry=APP_REGISTRY
)


def init_app(app):
    @app.get("/metrics")
    def metrics():
        data = generate_latest(APP_REGISTRY)
        return app.response_class(data, mimetype=CONTENT_TYPE_LATEST)

    # --- pre-warm labeled series so dashboards don't say "No data" ---
    for outcome in ("ok", "rejected", "transport_error", "malformed"):
        PAYMENT_INITIATIONS.labels(outcome=outcome).inc(0)
    for outcome in ("ok", "bad_signature", "lookup_failed", "unknown_payment"):
        WEBHOOK_EVENTS.labels(outcome=outcome).inc(0)
