from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import Lock
from typing import Literal

CallOutcome = Literal["ok", "no_route", "rate_limited", "error"]

# Outcomes that count as provider failures; a no_route answer is a valid reply.
_FAILED_OUTCOMES: frozenset[str] = frozenset({"rate_limited", "error"})


@dataclass
class ProviderStats:
    outcomes: Counter[str] = field(default_factory=Counter)
    retries: int = 0
    total_ms: float = 0.0
    slowest_ms: float = 0.0
    last_failure_at: str | None = None

    @property
    def calls(self) -> int:
        return sum(self.outcomes.values())

    def as_dict(self) -> dict[str, object]:
        calls = self.calls
        return {
            "request_count": calls,
            "error_count": sum(self.outcomes[o] for o in _FAILED_OUTCOMES),
            "rate_limited_count": self.outcomes["rate_limited"],
            "no_route_count": self.outcomes["no_route"],
            "retry_count": self.retries,
            "total_duration_ms": round(self.total_ms, 3),
            "avg_duration_ms": round(self.total_ms / calls, 3) if calls else 0.0,
            "max_duration_ms": round(self.slowest_ms, 3),
            "last_failure_at": self.last_failure_at,
        }


class MetricsStore:
    """Directions-provider call counters, keyed by the calling component."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._since = datetime.now(UTC).isoformat()
        self._providers: dict[str, ProviderStats] = {}

    def _stats(self, endpoint: str) -> ProviderStats:
        return self._providers.setdefault(endpoint.strip() or "unknown", ProviderStats())

    def record(self, endpoint: str, *, duration_ms: float, outcome: CallOutcome = "ok") -> None:
        elapsed = max(float(duration_ms), 0.0)
        with self._lock:
            stats = self._stats(endpoint)
            stats.outcomes[outcome] += 1
            stats.total_ms += elapsed
            stats.slowest_ms = max(stats.slowest_ms, elapsed)
            if outcome in _FAILED_OUTCOMES:
                stats.last_failure_at = datetime.now(UTC).isoformat()

    def record_retry(self, endpoint: str) -> None:
        with self._lock:
            self._stats(endpoint).retries += 1

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            endpoints = {name: self._providers[name].as_dict() for name in sorted(self._providers)}
        return {
            "created_at": self._since,
            "total_requests": sum(int(e["request_count"]) for e in endpoints.values()),  # type: ignore[call-overload]
            "total_errors": sum(int(e["error_count"]) for e in endpoints.values()),  # type: ignore[call-overload]
            "endpoint_count": len(endpoints),
            "endpoints": endpoints,
        }

    def reset(self) -> None:
        with self._lock:
            self._since = datetime.now(UTC).isoformat()
            self._providers.clear()


METRICS = MetricsStore()


def record_provider_call(endpoint: str, *, duration_ms: float, outcome: CallOutcome = "ok") -> None:
    METRICS.record(endpoint, duration_ms=duration_ms, outcome=outcome)


def record_retry(endpoint: str) -> None:
    METRICS.record_retry(endpoint)


def metrics_snapshot() -> dict[str, object]:
    return METRICS.snapshot()


def reset_metrics() -> None:
    METRICS.reset()
