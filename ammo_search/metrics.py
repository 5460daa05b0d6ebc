"""Prometheus metrics for the search service."""

from prometheus_client import Counter, Histogram, Info

# Application info
app_info = Info("ammo_search", "Ammunition search service info")
app_info.info({"version": "0.1.0", "name": "ammo-search"})

# Search metrics
search_requests_total = Counter(
    "search_requests_total",
    "Total number of search requests",
    ["sort_by", "tier", "status"],
)

search_duration_seconds = Histogram(
    "search_duration_seconds",
    "Time spent serving a search request",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0],
)

search_retrieval_total = Counter(
    "search_retrieval_total",
    "Retrieval attempts by strategy and outcome",
    ["strategy", "outcome"],
)

# Price metrics
price_stats_cache_total = Counter(
    "price_stats_cache_total",
    "Price statistics cache lookups",
    ["result"],
)

price_observations_excluded_total = Counter(
    "price_observations_excluded_total",
    "Price observations hidden from consumers",
    ["reason"],
)

price_signal_bands_total = Counter(
    "price_signal_bands_total",
    "Price signals computed, by context band",
    ["band"],
)
