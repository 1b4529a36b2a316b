"""
Prometheus metrics definitions for issue-mirror.

Defines Counter, Gauge and Histogram metrics for monitoring sync runs,
persistence throughput and read-path cache efficiency.

Naming conventions: snake_case, issue_mirror_ prefix.
"""

from prometheus_client import Counter, Gauge, Histogram

# ==============================================================================
# COUNTERS - Monotonically increasing values
# ==============================================================================

sync_runs_total = Counter(
    "issue_mirror_sync_runs_total",
    "Total sync runs",
    ["mode", "status"],
    # mode: full, incremental
    # status: success, failed
)

issues_fetched_total = Counter(
    "issue_mirror_issues_fetched_total",
    "Issues received from the remote source (pull requests excluded)",
)

issues_upserted_total = Counter(
    "issue_mirror_issues_upserted_total",
    "Issue rows written by the upsert writer",
)

issues_skipped_total = Counter(
    "issue_mirror_issues_skipped_total",
    "Issues not written",
    ["reason"],
    # reason: unchanged, unresolved_author, malformed, pull_request
)

authors_upserted_total = Counter(
    "issue_mirror_authors_upserted_total",
    "Author rows upserted",
)

sync_jobs_enqueued_total = Counter(
    "issue_mirror_sync_jobs_enqueued_total",
    "Background sync enqueue attempts",
    ["status"],
    # status: queued, coalesced, rejected
)

sync_job_retries_total = Counter(
    "issue_mirror_sync_job_retries_total",
    "Background sync jobs re-run after raising",
)

read_cache_requests_total = Counter(
    "issue_mirror_read_cache_requests_total",
    "Read-path cache lookups",
    ["result"],
    # result: hit, miss, error
)

finalization_failures_total = Counter(
    "issue_mirror_finalization_failures_total",
    "Aggregate recompute or cache invalidation failures after a sync run",
    ["step"],
    # step: recount, invalidate
)

# ==============================================================================
# GAUGES - Point-in-time values (can go up or down)
# ==============================================================================

sync_queue_depth = Gauge(
    "issue_mirror_sync_queue_depth",
    "Sync jobs waiting for a worker",
)

# ==============================================================================
# HISTOGRAMS - Distributions of observed values
# ==============================================================================

sync_duration_seconds = Histogram(
    "issue_mirror_sync_duration_seconds",
    "Wall time of a sync run",
    ["mode"],
    buckets=[0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0, 3600.0],
)

sync_pages_fetched = Histogram(
    "issue_mirror_sync_pages_fetched",
    "Remote pages fetched per sync run",
    ["mode"],
    buckets=[1, 2, 5, 10, 50, 100, 500, 1000],
)
