"""
Prometheus metrics for the analytics aggregation pipeline.

Provides metrics for:
- Request outcomes and latency
- Hot cache hits, misses and corrupt entries
- Warehouse query duration and failures
- Retry attempts against the warehouse
- Audit write failures
"""

from prometheus_client import Counter, Histogram

# ============================================================================
# Request Metrics
# ============================================================================

analytics_requests_total = Counter(
    "asoinsight_requests_total",
    "Total analytics requests by outcome",
    ["outcome", "error_kind"]
)

analytics_request_duration_seconds = Histogram(
    "asoinsight_request_duration_seconds",
    "End-to-end analytics request duration in seconds",
    ["outcome"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

over_ask_total = Counter(
    "asoinsight_over_ask_total",
    "Requests that asked for applications outside their scope",
    ["policy"]
)

# ============================================================================
# Cache Metrics
# ============================================================================

cache_hits_total = Counter(
    "asoinsight_cache_hits_total",
    "Hot cache hits",
    ["backend"]
)

cache_misses_total = Counter(
    "asoinsight_cache_misses_total",
    "Hot cache misses",
    ["backend"]
)

cache_corruptions_total = Counter(
    "asoinsight_cache_corruptions_total",
    "Cached values discarded because they could not be decoded",
    ["backend"]
)

cache_shared_inflight_total = Counter(
    "asoinsight_cache_shared_inflight_total",
    "Misses served by joining an in-flight computation for the same key"
)

# ============================================================================
# Warehouse Metrics
# ============================================================================

warehouse_query_duration_seconds = Histogram(
    "asoinsight_warehouse_query_duration_seconds",
    "Warehouse query duration in seconds",
    ["comparison"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0]
)

warehouse_failures_total = Counter(
    "asoinsight_warehouse_failures_total",
    "Warehouse query failures by error kind",
    ["kind"]
)

retry_attempts = Counter(
    "asoinsight_retry_attempts_total",
    "Total number of attempts made by retry_with_backoff",
    ["service", "attempt"]
)

retry_exhausted = Counter(
    "asoinsight_retry_exhausted_total",
    "Retries that exhausted all attempts",
    ["service"]
)

# ============================================================================
# Audit Metrics
# ============================================================================

audit_write_failures_total = Counter(
    "asoinsight_audit_write_failures_total",
    "Audit records that could not be written",
    ["backend"]
)
