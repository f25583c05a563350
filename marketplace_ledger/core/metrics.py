from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from threading import Lock


@dataclass
class EndpointMetric:
    total_requests: int = 0
    total_duration_ms: float = 0.0
    error_count: int = 0


class InMemoryRequestMetrics:
    def __init__(self) -> None:
        self._metrics: dict[tuple[str, str], EndpointMetric] = {}
        self._lock = Lock()

    def observe(
        self,
        endpoint: str,
        method: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        key = (endpoint, method)
        with self._lock:
            metric = self._metrics.setdefault(key, EndpointMetric())
            metric.total_requests += 1
            metric.total_duration_ms += duration_ms
            if status_code >= 400:
                metric.error_count += 1

    def snapshot(self) -> dict[str, dict[str, float | int]]:
        with self._lock:
            result: dict[str, dict[str, float | int]] = {}
            for (endpoint, method), metric in self._metrics.items():
                avg = metric.total_duration_ms / metric.total_requests if metric.total_requests else 0.0
                result[f"{method} {endpoint}"] = {
                    "total_requests": metric.total_requests,
                    "total_duration_ms": round(metric.total_duration_ms, 2),
                    "avg_duration_ms": round(avg, 2),
                    "error_count": metric.error_count,
                }
            return result


class LedgerCounters:
    """Outcome counters for settlements, transfers and payout reconciliations."""

    def __init__(self) -> None:
        self._counts: Counter[str] = Counter()
        self._lock = Lock()

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counts[name] += amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts[name]

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()


request_metrics = InMemoryRequestMetrics()
ledger_counters = LedgerCounters()
