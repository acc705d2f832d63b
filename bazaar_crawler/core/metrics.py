from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    start_http_server,
)

# ---------------------------------------------------------------------------
# Scan throughput
# ---------------------------------------------------------------------------
targets_total = Counter(
    "crawler_targets_total",
    "Targets processed by scan kind and outcome",
    ["kind", "outcome"],
)
store_errors_total = Counter(
    "crawler_store_errors_total",
    "Record-level store write failures",
    ["kind"],
)
records_archived_total = Counter(
    "crawler_records_archived_total",
    "Records copied into history by reconciliation passes",
)

# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------
escalations_total = Counter(
    "crawler_escalations_total",
    "Escalation actions taken by tier",
    ["tier"],
)
challenge_encounters_total = Counter(
    "crawler_challenge_encounters_total",
    "Challenge pages encountered by resolution",
    ["result"],
)
challenge_wait_seconds = Histogram(
    "crawler_challenge_wait_seconds",
    "Time spent waiting for a challenge page to clear",
    buckets=[1, 2, 5, 10, 20, 30, 60, 120],
)

# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------
active_sessions = Gauge(
    "crawler_active_sessions",
    "Browser sessions currently held by a pool",
    ["pool"],
)


def start_metrics_server(port: int) -> None:
    """Expose /metrics on ``port`` for the lifetime of the process."""
    start_http_server(port)
