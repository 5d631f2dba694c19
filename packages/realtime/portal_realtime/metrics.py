"""
Counters and gauges for the realtime client, exported as Prometheus text.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any

PREFIX = "portal_realtime_"

LabelSet = tuple[tuple[str, str], ...]


def _labels(labels: dict[str, Any]) -> LabelSet:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


def _render(name: str, labels: LabelSet) -> str:
    if not labels:
        return name
    inner = ",".join(f'{k}="{v}"' for k, v in labels)
    return f"{name}{{{inner}}}"


class MetricsCollector:
    """
    Labelled counters and gauges.

    ``inc("notifications_total", kind="dm")`` and
    ``inc("notifications_total", kind="community")`` are separate series of
    the same metric.
    """

    def __init__(self) -> None:
        self._counters: dict[str, dict[LabelSet, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[LabelSet, float]] = defaultdict(dict)
        self._start_time = time.time()

    def inc(self, name: str, value: int = 1, **labels: Any) -> None:
        self._counters[PREFIX + name][_labels(labels)] += value

    def set_gauge(self, name: str, value: float, **labels: Any) -> None:
        self._gauges[PREFIX + name][_labels(labels)] = value

    def get(self, name: str, **labels: Any) -> int | float:
        """Value of one series; without labels, the sum over all counter series."""
        full = PREFIX + name
        key = _labels(labels)
        if full in self._gauges:
            return self._gauges[full].get(key, 0)
        series = self._counters.get(full, {})
        if labels:
            return series.get(key, 0)
        return sum(series.values())

    def to_prometheus(self) -> str:
        lines = []
        for name in sorted(self._counters):
            lines.append(f"# TYPE {name} counter")
            for labels, value in sorted(self._counters[name].items()):
                lines.append(f"{_render(name, labels)} {value}")
        for name in sorted(self._gauges):
            lines.append(f"# TYPE {name} gauge")
            for labels, value in sorted(self._gauges[name].items()):
                lines.append(f"{_render(name, labels)} {value}")
        uptime = time.time() - self._start_time
        lines.append(f"# TYPE {PREFIX}uptime_seconds gauge")
        lines.append(f"{PREFIX}uptime_seconds {uptime:.1f}")
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        return {
            "counters": {
                _render(n, l): v for n, s in self._counters.items() for l, v in s.items()
            },
            "gauges": {
                _render(n, l): v for n, s in self._gauges.items() for l, v in s.items()
            },
            "uptime_seconds": time.time() - self._start_time,
        }
