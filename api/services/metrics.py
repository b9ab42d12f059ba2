"""
Prometheus metrics for payments, webhooks and story generation.

Exposed through the /metrics endpoint in api.main.
"""

import time

from prometheus_client import Counter, Gauge, Histogram

# Counters
payment_requests_total = Counter(
    "payment_requests_total",
    "Total payment processing requests",
    ["provider", "status"],
)

payment_errors_total = Counter(
    "payment_errors_total",
    "Total payment errors by type",
    ["provider", "error_type"],
)

webhook_events_total = Counter(
    "webhook_events_total",
    "Total webhook events received",
    ["provider", "event_type", "status"],
)

credits_granted_total = Counter(
    "credits_granted_total",
    "Credits added to user balances",
    ["provider"],
)

credits_recovered_total = Counter(
    "credits_recovered_total",
    "Credits added by the recovery sweep",
)

credits_spent_total = Counter(
    "credits_spent_total",
    "Credits spent on story generation",
)

story_generations_total = Counter(
    "story_generations_total",
    "Story generation requests by outcome",
    ["status"],  # success, rate_limited, insufficient_credits, failed
)

rate_limit_rejections_total = Counter(
    "rate_limit_rejections_total",
    "Requests rejected by the rate limiter",
)

redis_circuit_state = Gauge(
    "redis_circuit_state",
    "Redis balance cache circuit breaker state (0=closed, 1=open)",
)

# Histograms
payment_duration_seconds = Histogram(
    "payment_duration_seconds",
    "End-to-end payment processing duration",
    ["provider"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60],
)

webhook_duration_seconds = Histogram(
    "webhook_duration_seconds",
    "Webhook handling duration",
    ["provider"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1, 5],
)

api_request_duration = Histogram(
    "provider_api_request_duration_seconds",
    "Outbound provider API request duration",
    ["provider", "endpoint"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30],
)

generation_step_duration = Histogram(
    "generation_step_duration_seconds",
    "Duration of each story generation step",
    ["step"],  # story, image, image_fetch, upload
    buckets=[1, 5, 10, 30, 60, 120, 240],
)


def track_payment_request(provider: str, status: str) -> None:
    payment_requests_total.labels(provider=provider, status=status).inc()


def track_payment_error(provider: str, error_type: str) -> None:
    payment_errors_total.labels(provider=provider, error_type=error_type).inc()


def track_webhook_event(provider: str, event_type: str, status: str) -> None:
    webhook_events_total.labels(provider=provider, event_type=event_type, status=status).inc()


def track_api_request(provider: str, endpoint: str, duration: float) -> None:
    api_request_duration.labels(provider=provider, endpoint=endpoint).observe(duration)


class _Timer:
    histogram = None

    def __init__(self, label: str):
        self.label = label
        self._start = 0.0

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.histogram.labels(self.label).observe(time.perf_counter() - self._start)
        return False


class PaymentTimer(_Timer):
    """Context manager timing a payment flow for one provider."""
    histogram = payment_duration_seconds


class WebhookTimer(_Timer):
    """Context manager timing webhook handling for one provider."""
    histogram = webhook_duration_seconds


class StepTimer(_Timer):
    """Context manager timing one generation step."""
    histogram = generation_step_duration
