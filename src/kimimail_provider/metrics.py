from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

requests_total = Counter(
    "provider_requests_total",
    "Total completion calls handled per provider",
    labelnames=["provider", "operation", "status"],
)

request_latency_seconds = Histogram(
    "provider_request_latency_seconds",
    "Completion call latency (seconds)",
    buckets=[0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120],
    labelnames=["provider", "operation"],
)

errors_total = Counter(
    "provider_errors_total",
    "Classified provider errors",
    labelnames=["provider", "kind"],
)

stream_chunks_total = Counter(
    "stream_chunks_total",
    "Completion chunks delivered from event streams",
    labelnames=["provider"],
)

stream_events_dropped_total = Counter(
    "stream_events_dropped_total",
    "Malformed stream events skipped by the decoder",
    labelnames=["provider"],
)

health_events_total = Counter(
    "provider_health_events_total",
    "Provider health transitions",
    labelnames=["provider", "event"],
)


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)
