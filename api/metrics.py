"""Prometheus metrics for the detection API and the worker pool."""

from __future__ import annotations

from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "Request latency in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)
ACTIVE_REQUESTS = Gauge(
    "http_requests_in_progress",
    "Number of requests currently being processed",
)
MATCH_COUNT = Counter(
    "face_match_requests_total",
    "Single-descriptor match requests",
    ["mode", "outcome"],
)
BATCH_ITEM_COUNT = Counter(
    "face_match_batch_items_total",
    "Batch items processed",
    ["outcome"],
)
FALLBACK_COUNT = Counter(
    "face_match_fallbacks_total",
    "Requests that fell back from the worker pool to direct matching",
)
POOL_WORKERS = Gauge(
    "worker_pool_workers",
    "Worker pool slots by state",
    ["state"],
)
POOL_REQUESTS = Gauge(
    "worker_pool_requests",
    "Requests held by the worker pool",
    ["state"],
)
POOL_RESTARTS = Gauge(
    "worker_pool_restarts",
    "Times each worker slot has been replaced after a crash",
    ["worker"],
)


def update_pool_gauges(pool) -> None:
    """Copy the pool's live status into the gauges (called at scrape time)."""
    if pool is None:
        return
    status = pool.status()
    POOL_WORKERS.labels(state="total").set(status.total_workers)
    POOL_WORKERS.labels(state="available").set(status.available_workers)
    POOL_REQUESTS.labels(state="queued").set(status.queued_requests)
    POOL_REQUESTS.labels(state="pending").set(status.pending_requests)
    for slot in pool.slots():
        POOL_RESTARTS.labels(worker=str(slot.index)).set(slot.restarts)


def render_latest(pool: Optional[object] = None) -> bytes:
    update_pool_gauges(pool)
    return generate_latest()


__all__ = [
    "ACTIVE_REQUESTS",
    "BATCH_ITEM_COUNT",
    "CONTENT_TYPE_LATEST",
    "FALLBACK_COUNT",
    "MATCH_COUNT",
    "POOL_REQUESTS",
    "POOL_RESTARTS",
    "POOL_WORKERS",
    "REQUEST_COUNT",
    "REQUEST_LATENCY",
    "render_latest",
    "update_pool_gauges",
]
