"""Prometheus metrics definitions for PailStore.

Custom metrics use the ``pailstore_`` prefix. HTTP-level request metrics
(count, duration, sizes) come from ``prometheus-fastapi-instrumentator``
and are not duplicated here.

Counters reset to zero on restart. Gauges are refreshed from the key store
and the upload tracker whenever those change.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

_initialized: bool = False

# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------
auth_failures_total: Counter | None = None
access_keys_loaded: Gauge | None = None

# ---------------------------------------------------------------------------
# Multipart uploads
# ---------------------------------------------------------------------------
multipart_uploads_active: Gauge | None = None
multipart_uploads_expired_total: Counter | None = None

# ---------------------------------------------------------------------------
# Byte counters
# ---------------------------------------------------------------------------
bytes_received_total: Counter | None = None
bytes_sent_total: Counter | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics.

    Idempotent. When metrics are disabled in config this is never called
    and the module-level references stay ``None``.
    """
    global _initialized
    global auth_failures_total, access_keys_loaded
    global multipart_uploads_active, multipart_uploads_expired_total
    global bytes_received_total, bytes_sent_total

    if _initialized:
        return

    auth_failures_total = Counter(
        "pailstore_auth_failures_total",
        "Rejected write requests by failure kind",
        ["kind"],
    )

    access_keys_loaded = Gauge(
        "pailstore_access_keys_loaded",
        "Number of access keys currently loaded",
    )

    multipart_uploads_active = Gauge(
        "pailstore_multipart_uploads_active",
        "Number of in-progress multipart upload sessions",
    )

    multipart_uploads_expired_total = Counter(
        "pailstore_multipart_uploads_expired_total",
        "Multipart upload sessions removed by the expiry sweep",
    )

    bytes_received_total = Counter(
        "pailstore_bytes_received_total",
        "Total bytes received in request bodies",
    )

    bytes_sent_total = Counter(
        "pailstore_bytes_sent_total",
        "Total bytes sent in response bodies",
    )

    _initialized = True


def record_auth_failure(kind: str) -> None:
    if auth_failures_total is not None:
        auth_failures_total.labels(kind=kind).inc()


def set_access_keys_loaded(count: int) -> None:
    if access_keys_loaded is not None:
        access_keys_loaded.set(count)


def set_active_uploads(count: int) -> None:
    if multipart_uploads_active is not None:
        multipart_uploads_active.set(count)


def record_expired_uploads(count: int) -> None:
    if multipart_uploads_expired_total is not None and count:
        multipart_uploads_expired_total.inc(count)
