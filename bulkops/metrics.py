from __future__ import annotations

import json
import os
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional

from bulkops.config import atomic_write_text, dlog


METRICS_SCHEMA_VERSION = 1
MAX_LATENCY_SAMPLES = 200
NETWORK_ERROR_KEY = "network_error"


def _percentile(ordered: list, fraction: float) -> float:
    if len(ordered) == 1:
        return ordered[0]
    return ordered[min(len(ordered) - 1, int(round(fraction * (len(ordered) - 1))))]


@dataclass
class EndpointStats:
    """Counters for one upstream route template, e.g. ``GET /users/{id}``."""

    calls: int = 0
    errors: int = 0
    last_call: float = field(default_factory=time.time)
    statuses: Dict[str, int] = field(default_factory=dict)
    samples: Deque[float] = field(default_factory=lambda: deque(maxlen=MAX_LATENCY_SAMPLES))

    def latency(self) -> Dict:
        if not self.samples:
            return {"avg": 0.0, "p50": 0.0, "p95": 0.0, "p99": 0.0, "count": 0}
        ordered = sorted(self.samples)
        return {
            "avg": sum(ordered) / len(ordered),
            "p50": _percentile(ordered, 0.50),
            "p95": _percentile(ordered, 0.95),
            "p99": _percentile(ordered, 0.99),
            "count": len(ordered),
        }

    def to_dict(self) -> Dict:
        return {
            "count": self.calls,
            "error_count": self.errors,
            "last_seen": self.last_call,
            "by_status": dict(self.statuses),
            "latency_ms": self.latency(),
        }

    @classmethod
    def from_dict(cls, raw: Dict) -> "EndpointStats":
        stats = cls(
            calls=int(raw.get("count") or 0),
            errors=int(raw.get("error_count") or 0),
            last_call=float(raw.get("last_seen") or time.time()),
            statuses={str(k): int(v) for k, v in (raw.get("by_status") or {}).items()},
        )
        stats.samples.extend(float(v) for v in raw.get("samples") or [])
        return stats


class ApiMetrics:
    """Per-route call counts, status codes and latency for PingOne API traffic."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started = time.time()
        self._endpoints: Dict[str, EndpointStats] = {}
        self._path: Optional[str] = None

    @property
    def start_time(self) -> float:
        return self._started

    def configure_persistence(self, path: str) -> None:
        self._path = path
        self._load()

    def reset(self) -> None:
        with self._lock:
            self._endpoints = {}
            self._started = time.time()
            self._save_locked()

    def record(
        self,
        *,
        route: str,
        status_code: Optional[int],
        duration_ms: Optional[float] = None,
        error: bool = False,
    ) -> None:
        key = NETWORK_ERROR_KEY if status_code is None else str(status_code)
        with self._lock:
            stats = self._endpoints.get(route)
            if stats is None:
                stats = self._endpoints[route] = EndpointStats()
            stats.calls += 1
            stats.errors += 1 if error else 0
            stats.last_call = time.time()
            stats.statuses[key] = stats.statuses.get(key, 0) + 1
            if duration_ms is not None:
                stats.samples.append(float(duration_ms))
            self._save_locked()

    def snapshot(self) -> Dict:
        with self._lock:
            return {
                "start_time": self._started,
                "routes": {route: stats.to_dict() for route, stats in self._endpoints.items()},
            }

    def summary(self) -> Dict:
        """Totals across routes; average latency is weighted by sample count."""
        snap = self.snapshot()
        calls = errors = samples = 0
        weighted = 0.0
        for stats in snap["routes"].values():
            calls += stats["count"]
            errors += stats["error_count"]
            samples += stats["latency_ms"]["count"]
            weighted += stats["latency_ms"]["avg"] * stats["latency_ms"]["count"]
        return {
            "start_time": snap["start_time"],
            "total_calls": calls,
            "total_errors": errors,
            "error_rate": errors / calls if calls else 0.0,
            "avg_latency_ms": weighted / samples if samples else 0.0,
        }

    def _save_locked(self) -> None:
        if not self._path:
            return
        payload = {
            "version": METRICS_SCHEMA_VERSION,
            "start_time": self._started,
            "routes": {
                route: {**stats.to_dict(), "samples": list(stats.samples)} for route, stats in self._endpoints.items()
            },
        }
        try:
            atomic_write_text(self._path, json.dumps(payload))
        except OSError as e:
            dlog("metrics_persist_error", str(e))

    def _load(self) -> None:
        if not self._path or not os.path.exists(self._path):
            return
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            dlog("metrics_load_error", f"Could not read metrics file: {e}")
            return
        if not isinstance(data, dict) or data.get("version") != METRICS_SCHEMA_VERSION:
            dlog("metrics_load_skipped", "Incompatible metrics file")
            return
        with self._lock:
            self._started = float(data.get("start_time") or time.time())
            self._endpoints = {route: EndpointStats.from_dict(raw) for route, raw in (data.get("routes") or {}).items()}
