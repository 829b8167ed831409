"""Prometheus metrics registration for roomfix.

All metric objects are defined at import time and exported through the
default registry.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

credit_reservations_total = Counter(
    "roomfix_credit_reservations_total",
    "Metering reservations by outcome",
    ["transaction_type", "result"],  # result: ok|limit_reached
)
dedup_lookups_total = Counter(
    "roomfix_dedup_lookups_total",
    "Content dedup lookups",
    ["result"],  # hit|miss|stale
)
signature_lookups_total = Counter(
    "roomfix_signature_lookups_total",
    "Transformation signature lookups",
    ["result"],  # hit_own|hit_source|miss|stale
)
jobs_finished_total = Counter(
    "roomfix_jobs_finished_total",
    "Jobs reaching a terminal state",
    ["kind", "status"],
)
stage_duration_seconds = Histogram(
    "roomfix_stage_duration_seconds",
    "Duration of each pipeline stage",
    ["kind", "stage"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
)
cache_operations_total = Counter(
    "roomfix_cache_operations_total",
    "Cache operations by outcome",
    ["operation", "result"],  # result: hit|miss|ok|error|disabled
)
ai_retries_total = Counter(
    "roomfix_ai_retries_total",
    "Retries of transient AI failures",
    ["operation"],
)
content_violations_total = Counter(
    "roomfix_content_violations_total",
    "Content policy strikes recorded",
    ["category"],
)
fix_fallbacks_total = Counter(
    "roomfix_fix_fallbacks_total",
    "Fix units that fell back to a textual plan",
    ["kind"],
)
cache_available = Gauge(
    "roomfix_cache_available",
    "1 when the cache backend is connected, 0 otherwise",
)
