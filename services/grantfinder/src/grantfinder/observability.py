from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from dataclasses import dataclass, field

from common.utils import now_utc_iso
from pydantic import BaseModel

LOGGER = logging.getLogger("grantfinder.api")

DOMAIN_COUNTERS = (
    "interactions_committed",
    "interactions_rolled_back",
    "replenishments",
    "replenishment_failures",
)
STATUS_CLASSES = ("2xx", "4xx", "5xx")


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    counters: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]


@dataclass
class EndpointStats:
    count: int = 0
    statuses: Counter[str] = field(default_factory=Counter)
    latency_ms_sum: float = 0.0
    latency_ms_max: float = 0.0

    def record(self, status_code: int, duration_ms: float) -> None:
        self.count += 1
        self.statuses[f"{status_code // 100}xx"] += 1
        self.latency_ms_sum += duration_ms
        self.latency_ms_max = max(self.latency_ms_max, duration_ms)

    def as_dict(self) -> dict[str, float | int]:
        summary: dict[str, float | int] = {"count": self.count}
        summary.update({name: self.statuses[name] for name in STATUS_CLASSES})
        summary["latency_ms_sum"] = self.latency_ms_sum
        summary["latency_ms_avg"] = self.latency_ms_sum / self.count if self.count else 0.0
        summary["latency_ms_max"] = self.latency_ms_max
        return summary


class MetricsStore:
    """Thread-safe request and domain counters served by ``GET /metrics``."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._requests = 0
        self._errors = 0
        self._counters = Counter({name: 0 for name in DOMAIN_COUNTERS})
        self._endpoints: dict[str, EndpointStats] = {}

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters[name]

    def observe(self, *, method: str, path: str, status_code: int, duration_ms: float) -> None:
        with self._lock:
            self._requests += 1
            if status_code >= 400:
                self._errors += 1
            stats = self._endpoints.setdefault(f"{method} {path}", EndpointStats())
            stats.record(status_code, duration_ms)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals={"requests": self._requests, "errors": self._errors},
                counters=dict(self._counters),
                endpoints={key: stats.as_dict() for key, stats in self._endpoints.items()},
            )


def log_request(
    *,
    request_id: str,
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    source_ip: str | None = None,
    error: Exception | None = None,
) -> None:
    payload = {
        "event": "request_complete",
        "request_id": request_id,
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 3),
    }
    if error is not None:
        payload["error"] = str(error)
        LOGGER.error(json.dumps(payload), exc_info=error)
        return
    payload["source_ip"] = source_ip
    LOGGER.info(json.dumps(payload))
