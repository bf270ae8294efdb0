"""
Prometheus metrics for gateway monitoring.

Tracks:
- STK push requests by outcome and duration
- OAuth token fetches and cache hits
- Callback outcomes and processing duration
"""
from prometheus_client import Counter, Histogram

# STK push metrics
stk_push_requests_total = Counter(
    "stk_push_requests_total",
    "Total STK push requests",
    ["status"],  # pending, failed, auth_error, persistence_error
)

stk_push_duration_seconds = Histogram(
    "stk_push_duration_seconds",
    "STK push submission duration in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

stk_push_amount = Histogram(
    "stk_push_amount",
    "Requested STK push amounts",
    buckets=(1, 10, 50, 100, 500, 1000, 5000, 10000, 50000, 100000),
)

# Token metrics
mpesa_token_fetches_total = Counter(
    "mpesa_token_fetches_total",
    "Total OAuth token fetches against M-PESA",
    ["status"],  # success, failed
)

mpesa_token_cache_hits_total = Counter(
    "mpesa_token_cache_hits_total",
    "Token requests served from the cache",
)

# Callback metrics
callback_events_total = Counter(
    "callback_events_total",
    "Total STK callbacks received",
    ["outcome"],
)

callback_processing_duration_seconds = Histogram(
    "callback_processing_duration_seconds",
    "Callback processing duration in seconds",
    ["outcome"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_stk_push(status: str, amount: int, duration_seconds: float) -> None:
        """Record an STK push submission."""
        stk_push_requests_total.labels(status=status).inc()
        stk_push_amount.observe(amount)
        stk_push_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_token_fetch(status: str) -> None:
        """Record a token fetch against the auth endpoint."""
        mpesa_token_fetches_total.labels(status=status).inc()

    @staticmethod
    def record_token_cache_hit() -> None:
        """Record a token served from cache."""
        mpesa_token_cache_hits_total.inc()

    @staticmethod
    def record_callback(outcome: str, duration_seconds: float) -> None:
        """Record callback processing."""
        callback_events_total.labels(outcome=outcome).inc()
        callback_processing_duration_seconds.labels(outcome=outcome).observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
