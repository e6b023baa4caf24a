from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# ---------------------------------------------------------------------------
# Fetch facade
# ---------------------------------------------------------------------------
fetch_requests_total = Counter(
    "stealthfetch_fetch_requests_total",
    "Total number of fetch_html calls",
    ["status"],
)
fetch_duration_seconds = Histogram(
    "stealthfetch_fetch_duration_seconds",
    "Time spent serving a single fetch_html call",
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300],
)

# ---------------------------------------------------------------------------
# Fallback chain / navigator
# ---------------------------------------------------------------------------
strategy_attempts_total = Counter(
    "stealthfetch_strategy_attempts_total",
    "Fetch strategy attempts by strategy and outcome",
    ["strategy", "status"],
)
navigator_attempts_total = Counter(
    "stealthfetch_navigator_attempts_total",
    "Relay navigation attempts by outcome",
    ["outcome"],
)

# ---------------------------------------------------------------------------
# Browser pool / tabs
# ---------------------------------------------------------------------------
leased_tabs = Gauge(
    "stealthfetch_leased_tabs",
    "Number of currently leased browser tabs",
)
browser_instances_alive = Gauge(
    "stealthfetch_browser_instances_alive",
    "Number of live browser processes in the pool",
)
browser_respawns_total = Counter(
    "stealthfetch_browser_respawns_total",
    "Browser respawn attempts by outcome",
    ["status"],
)
permit_exhausted_total = Counter(
    "stealthfetch_permit_exhausted_total",
    "Number of times a tab permit or browser slot could not be acquired in time",
)

# ---------------------------------------------------------------------------
# Scrape cache
# ---------------------------------------------------------------------------
scrape_cache_requests_total = Counter(
    "stealthfetch_scrape_cache_requests_total",
    "Scrape cache lookups by result",
    ["result"],
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
