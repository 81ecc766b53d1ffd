"""Prometheus collectors shared across the relay.

Exposed through the ``/metrics`` sub-application mounted in :mod:`llmrelay.main`.
"""

from prometheus_client import Counter, Histogram

PROVIDER_ATTEMPTS = Counter(
    "relay_provider_attempts_total",
    "Upstream provider attempts by outcome",
    labelnames=("provider", "outcome"),
)

PROVIDER_LATENCY = Histogram(
    "relay_provider_latency_seconds",
    "Duration of upstream provider requests",
    labelnames=("provider",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)

RATE_LIMITED = Counter(
    "relay_rate_limited_total",
    "Requests rejected by the per-client rate limiter",
)

QUOTA_REJECTED = Counter(
    "relay_quota_rejected_total",
    "Requests rejected by the usage gate",
    labelnames=("feature",),
)
