from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import Lock


@dataclass
class EndpointStats:
    request_count: int = 0
    client_error_count: int = 0
    server_error_count: int = 0
    stale_count: int = 0
    total_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    status_counts: dict[int, int] = field(default_factory=dict)


class MetricsStore:
    """Per-endpoint request counters for the HTTP layer."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._created_at = datetime.now(UTC).isoformat()
        self._endpoints: dict[str, EndpointStats] = {}

    def record(self, endpoint: str, *, duration_ms: float, status_code: int = 200, stale: bool = False) -> None:
        name = endpoint.strip() or "unknown"
        d_ms = max(float(duration_ms), 0.0)

        with self._lock:
            stats = self._endpoints.setdefault(name, EndpointStats())
            stats.request_count += 1
            stats.status_counts[status_code] = stats.status_counts.get(status_code, 0) + 1
            if 400 <= status_code < 500:
                stats.client_error_count += 1
            elif status_code >= 500:
                stats.server_error_count += 1
            if stale:
                stats.stale_count += 1
            stats.total_duration_ms += d_ms
            stats.max_duration_ms = max(stats.max_duration_ms, d_ms)

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            endpoints: dict[str, dict[str, object]] = {}
            for name in sorted(self._endpoints):
                stats = self._endpoints[name]
                avg = stats.total_duration_ms / stats.request_count if stats.request_count else 0.0
                endpoints[name] = {
                    "request_count": stats.request_count,
                    "client_error_count": stats.client_error_count,
                    "server_error_count": stats.server_error_count,
                    "stale_count": stats.stale_count,
                    "avg_duration_ms": round(avg, 3),
                    "max_duration_ms": round(stats.max_duration_ms, 3),
                    "status_counts": {str(k): v for k, v in sorted(stats.status_counts.items())},
                }
            return {
                "created_at": self._created_at,
                "total_requests": sum(s.request_count for s in self._endpoints.values()),
                "total_errors": sum(s.server_error_count for s in self._endpoints.values()),
                "endpoints": endpoints,
            }

    def reset(self) -> None:
        with self._lock:
            self._created_at = datetime.now(UTC).isoformat()
            self._endpoints.clear()


METRICS = MetricsStore()


def record_request(endpoint: str, *, duration_ms: float, status_code: int = 200, stale: bool = False) -> None:
    METRICS.record(endpoint, duration_ms=duration_ms, status_code=status_code, stale=stale)


def metrics_snapshot() -> dict[str, object]:
    return METRICS.snapshot()


def reset_metrics() -> None:
    METRICS.reset()
