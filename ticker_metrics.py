"""
Prometheus metrics shared by every watcher in the process.

Watchers never touch the collectors directly; they are handed a sink object
so tests can swap in a recorder.
"""

import logging

from prometheus_client import Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)

CACHE_HITS    = Counter("ticker_cache_hits", "Crypto price lookups served from the cache")
CACHE_MISSES  = Counter("ticker_cache_misses", "Crypto price lookups that went to the provider")
RATE_LIMITED  = Counter("ticker_rate_limited", "Price fetches rejected by a provider rate limit")
UPDATE_ERRORS = Counter("ticker_update_errors", "Ticks skipped because of a price fetch error")
LAST_UPDATE   = Gauge(
    "ticker_last_update",
    "Unix time of the last successful presence update",
    ["type", "ticker", "guild"],
)

NO_GUILD = "None"


class PrometheusMetrics:
    """Metrics sink backed by the process-wide collectors."""

    def cache_hit(self) -> None:
        CACHE_HITS.inc()

    def cache_miss(self) -> None:
        CACHE_MISSES.inc()

    def rate_limited(self) -> None:
        RATE_LIMITED.inc()

    def update_error(self) -> None:
        UPDATE_ERRORS.inc()

    def mark_updated(self, ticker: str, guild: str = NO_GUILD) -> None:
        LAST_UPDATE.labels(type="ticker", ticker=ticker, guild=guild).set_to_current_time()

    def mark_failed(self, ticker: str, guild: str = NO_GUILD) -> None:
        LAST_UPDATE.labels(type="ticker", ticker=ticker, guild=guild).set(0)


def serve_metrics(port: int) -> None:
    if not port:
        return
    start_http_server(port)
    logger.info("Serving metrics on :%d/metrics", port)
