"""
Sync metrics with Prometheus text exposition.

Counts reconciliations, discarded stale results, subscription failures and
optimistic reverts so a degraded (polling) engine is observable.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any

PREFIX = "sync_"


def _key(name: str, labels: dict[str, Any]) -> tuple[str, tuple[tuple[str, str], ...]]:
    return PREFIX + name, tuple(sorted((k, str(v)) for k, v in labels.items()))


def _render(name: str, labels: tuple[tuple[str, str], ...]) -> str:
    if not labels:
        return name
    inner = ",".join(f'{k}="{v}"' for k, v in labels)
    return f"{name}{{{inner}}}"


class MetricsCollector:
    """Labelled counters and gauges for the sync engine."""

    def __init__(self) -> None:
        self._counters: dict[tuple, int] = defaultdict(int)
        self._gauges: dict[tuple, float] = {}
        self._start_time = time.time()

    def inc(self, name: str, value: int = 1, **labels: Any) -> None:
        self._counters[_key(name, labels)] += value

    def set_gauge(self, name: str, value: float, **labels: Any) -> None:
        self._gauges[_key(name, labels)] = value

    def get(self, name: str, **labels: Any) -> int | float:
        """Current value; counters without labels sum over every label set."""
        key = _key(name, labels)
        if key in self._gauges:
            return self._gauges[key]
        if labels:
            return self._counters.get(key, 0)
        return sum(v for (n, _), v in self._counters.items() if n == key[0])

    def to_prometheus(self) -> str:
        lines = []
        seen: set[str] = set()
        for (name, labels), value in sorted(self._counters.items()):
            if name not in seen:
                lines.append(f"# TYPE {name} counter")
                seen.add(name)
            lines.append(f"{_render(name, labels)} {value}")
        for (name, labels), value in sorted(self._gauges.items()):
            if name not in seen:
                lines.append(f"# TYPE {name} gauge")
                seen.add(name)
            lines.append(f"{_render(name, labels)} {value}")
        uptime = time.time() - self._start_time
        lines.append(f"# TYPE {PREFIX}uptime_seconds gauge")
        lines.append(f"{PREFIX}uptime_seconds {uptime:.1f}")
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        return {
            "counters": {_render(n, l): v for (n, l), v in self._counters.items()},
            "gauges": {_render(n, l): v for (n, l), v in self._gauges.items()},
            "uptime_seconds": time.time() - self._start_time,
        }
