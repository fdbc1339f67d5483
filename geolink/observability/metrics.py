"""
Metrics definitions for the GeoLink rule engine.

This module defines Prometheus metrics for monitoring match admission,
authorization, execution and completion bookkeeping.
"""

from prometheus_client import Counter, Histogram, Gauge

# 카운터 메트릭
matches_admitted = Counter(
    "geolink_matches_admitted_total",
    "Match events admitted to the pending list"
)

matches_held = Counter(
    "geolink_matches_held_total",
    "Match events held back by the rate/dwell gate",
    ["reason"]
)

executions = Counter(
    "geolink_executions_total",
    "Rule executions by submission path and result",
    ["path", "result"]
)

proofs_requested = Counter(
    "geolink_proofs_requested_total",
    "Passkey proof requests by result",
    ["result"]
)

batch_items = Counter(
    "geolink_batch_items_total",
    "Batch items by result",
    ["result"]
)

completions = Counter(
    "geolink_completions_total",
    "Completion calls by result",
    ["result"]
)

reconcile_attempts = Counter(
    "geolink_reconcile_attempts_total",
    "Outbox reconciliation attempts by result",
    ["result"]
)

rules_deactivated = Counter(
    "geolink_rules_deactivated_total",
    "Rules deactivated by the balance sweep"
)

# 히스토그램 메트릭
execution_seconds = Histogram(
    "geolink_execution_duration_seconds",
    "Time spent in a single rule execution",
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)

# 게이지 메트릭
pending_events = Gauge(
    "geolink_pending_events",
    "Match events currently in the pending cache"
)

outbox_size = Gauge(
    "geolink_outbox_size",
    "Receipts waiting for completion reconciliation"
)

outbox_parked = Gauge(
    "geolink_outbox_parked",
    "Receipts parked after exceeding the attempt limit"
)

batch_in_flight = Gauge(
    "geolink_batch_in_flight",
    "1 while a batch execution is running"
)

uptime_seconds = Gauge(
    "geolink_uptime_seconds",
    "Service uptime in seconds"
)
