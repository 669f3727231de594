from __future__ import annotations

from nl_traffic.metrics_store import MetricsStore


def test_metrics_split_client_and_server_errors() -> None:
    store = MetricsStore()
    store.record("events", duration_ms=10.0)
    store.record("events", duration_ms=30.0, stale=True)
    store.record("events", duration_ms=5.0, status_code=502)
    store.record("cache", duration_ms=-1.0, status_code=404)

    snap = store.snapshot()

    events = snap["endpoints"]["events"]  # type: ignore[index]
    assert events["request_count"] == 3
    assert events["server_error_count"] == 1
    assert events["stale_count"] == 1
    assert events["avg_duration_ms"] == 15.0
    assert events["max_duration_ms"] == 30.0
    assert events["status_counts"] == {"200": 2, "502": 1}
    assert snap["endpoints"]["cache"]["client_error_count"] == 1  # type: ignore[index]
    assert snap["total_requests"] == 4
    assert snap["total_errors"] == 1


def test_reset_clears_endpoints() -> None:
    store = MetricsStore()
    store.record("events", duration_ms=1.0)
    store.reset()

    assert store.snapshot()["endpoints"] == {}
