"""Lightweight in-memory metrics (Prometheus text format)."""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple


def _sanitize_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"")


def _format_labels(label_names: List[str], values: Tuple[str, ...]) -> str:
    if not label_names:
        return ""
    parts = [f'{name}="{_sanitize_label_value(val)}"' for name, val in zip(label_names, values)]
    return "{" + ",".join(parts) + "}"


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.label_names = list(label_names or [])
        self._values: Dict[Tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _label_tuple(self, labels: Optional[Dict[str, str]]) -> Tuple[str, ...]:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._values.get(self._label_tuple(labels), 0.0)

    def export(self) -> List[str]:
        lines = [f"# TYPE {self.name} {self.kind}"]
        with self._lock:
            for label_values, value in self._values.items():
                labels = _format_labels(self.label_names, label_values)
                lines.append(f"{self.name}{labels} {value}")
        return lines

    def reset(self):
        with self._lock:
            self._values.clear()


class Counter(_Metric):
    kind = "counter"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        key = self._label_tuple(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)


class Gauge(_Metric):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None):
        key = self._label_tuple(labels)
        with self._lock:
            self._values[key] = float(value)


class MetricsRegistry:
    def __init__(self):
        self.metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _register(self, cls, name: str, label_names: Optional[Iterable[str]]):
        with self._lock:
            if name not in self.metrics:
                self.metrics[name] = cls(name, label_names)
            return self.metrics[name]

    def counter(self, name: str, label_names: Optional[Iterable[str]] = None) -> Counter:
        return self._register(Counter, name, label_names)

    def gauge(self, name: str, label_names: Optional[Iterable[str]] = None) -> Gauge:
        return self._register(Gauge, name, label_names)

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for metric in list(self.metrics.values()):
            lines.extend(metric.export())
        return "\n".join(lines) + "\n"

    def reset(self):
        for metric in self.metrics.values():
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter("http_requests_total", ["method", "path", "status"])
telemetry_events_accepted_total = METRICS.counter("telemetry_events_accepted_total", ["surface"])
telemetry_batches_rejected_total = METRICS.counter("telemetry_batches_rejected_total", ["surface", "reason"])
ratelimit_block_total = METRICS.counter("ratelimit_block_total", ["scope"])
consolidation_total = METRICS.counter("consolidation_total", ["outcome"])
counter_shard_updates_total = METRICS.counter("counter_shard_updates_total", ["store"])
schema_normalizations_total = METRICS.counter("schema_normalizations_total", ["outcome"])

queue_pending_entries = METRICS.gauge("queue_pending_entries")


_UUID_RE = re.compile(r"^[0-9a-fA-F-]{8,}$")


def normalize_path(path: str) -> str:
    """Reduce cardinality by replacing UUID/number segments with :id."""
    parts = []
    for segment in path.split("/"):
        if not segment:
            continue
        if segment.isdigit() or _UUID_RE.match(segment):
            parts.append(":id")
        else:
            parts.append(segment)
    return "/" + "/".join(parts)
