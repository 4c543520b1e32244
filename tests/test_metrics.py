"""Tests for the custom Prometheus metrics helpers."""

from prometheus_client import REGISTRY

from pailstore import metrics


def _value(name, labels=None):
    return REGISTRY.get_sample_value(name, labels or {})


def test_init_is_idempotent():
    metrics.init_metrics()
    metrics.init_metrics()
    assert metrics.auth_failures_total is not None


def test_gauges_track_latest_value():
    metrics.init_metrics()
    metrics.set_access_keys_loaded(7)
    metrics.set_active_uploads(2)
    assert _value("pailstore_access_keys_loaded") == 7
    assert _value("pailstore_multipart_uploads_active") == 2


def test_counters_increment():
    metrics.init_metrics()
    before = _value("pailstore_auth_failures_total", {"kind": "signature_mismatch"}) or 0
    metrics.record_auth_failure("signature_mismatch")
    after = _value("pailstore_auth_failures_total", {"kind": "signature_mismatch"})
    assert after == before + 1

    expired_before = _value("pailstore_multipart_uploads_expired_total") or 0
    metrics.record_expired_uploads(0)
    metrics.record_expired_uploads(3)
    assert _value("pailstore_multipart_uploads_expired_total") == expired_before + 3
