"""Metrics collection and Prometheus export for playbook runs."""

import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from threading import RLock
from typing import Any, Dict, List, Optional

Labels = Dict[str, str]

DURATION_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


class MetricType(Enum):
    """Type of metric."""

    COUNTER = "counter"
    HISTOGRAM = "histogram"
    GAUGE = "gauge"


@dataclass
class MetricValue:
    """Histogram observation with labels."""

    value: float
    labels: Labels = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class MetricsCollector:
    """
    Thread-safe store of counters, histograms and gauges.

    Histogram observations older than ``retention_seconds`` are discarded.

    Example:
        metrics = MetricsCollector()
        metrics.increment_counter("playbook_runs_total", {"status": "SUCCEEDED"})
        metrics.observe_histogram("step_duration_seconds", 0.42, {"type": "AGENT"})
    """

    def __init__(self, retention_seconds: int = 3600) -> None:
        self.retention_seconds = retention_seconds
        self._lock = RLock()
        self._counters: Dict[str, Dict[str, float]] = defaultdict(
            lambda: defaultdict(float)
        )
        self._gauges: Dict[str, Dict[str, float]] = defaultdict(dict)
        self._histograms: Dict[str, List[MetricValue]] = defaultdict(list)
        self._types: Dict[str, MetricType] = {}
        self._help: Dict[str, str] = {}

    def increment_counter(
        self,
        name: str,
        labels: Optional[Labels] = None,
        value: float = 1.0,
        help_text: Optional[str] = None,
    ) -> None:
        with self._lock:
            self._declare(name, MetricType.COUNTER, help_text)
            self._counters[name][label_key(labels)] += value

    def observe_histogram(
        self,
        name: str,
        value: float,
        labels: Optional[Labels] = None,
        help_text: Optional[str] = None,
    ) -> None:
        with self._lock:
            self._declare(name, MetricType.HISTOGRAM, help_text)
            cutoff = time.time() - self.retention_seconds
            kept = [v for v in self._histograms[name] if v.timestamp >= cutoff]
            kept.append(MetricValue(value=value, labels=dict(labels or {})))
            self._histograms[name] = kept

    def set_gauge(
        self,
        name: str,
        value: float,
        labels: Optional[Labels] = None,
        help_text: Optional[str] = None,
    ) -> None:
        with self._lock:
            self._declare(name, MetricType.GAUGE, help_text)
            self._gauges[name][label_key(labels)] = value

    def add_gauge(self, name: str, delta: float, labels: Optional[Labels] = None) -> None:
        """Adjust a gauge by ``delta``."""
        with self._lock:
            self._declare(name, MetricType.GAUGE, None)
            key = label_key(labels)
            self._gauges[name][key] = self._gauges[name].get(key, 0.0) + delta

    def get_counter(self, name: str, labels: Optional[Labels] = None) -> float:
        """Counter value; the sum over all label sets when ``labels`` is None."""
        with self._lock:
            series = self._counters.get(name, {})
            if labels is None:
                return float(sum(series.values()))
            return series.get(label_key(labels), 0.0)

    def get_gauge(self, name: str, labels: Optional[Labels] = None) -> float:
        with self._lock:
            series = self._gauges.get(name, {})
            if labels is None:
                return float(sum(series.values()))
            return series.get(label_key(labels), 0.0)

    def get_histogram_values(
        self, name: str, labels: Optional[Labels] = None
    ) -> List[float]:
        with self._lock:
            values = self._histograms.get(name, [])
            return [
                v.value
                for v in values
                if labels is None
                or all(v.labels.get(k) == want for k, want in labels.items())
            ]

    def get_histogram_stats(
        self, name: str, labels: Optional[Labels] = None
    ) -> Dict[str, float]:
        """
        Summary statistics of a histogram.

        Returns:
            Dict with count, sum, min, max, avg, p50, p95, p99
        """
        values = sorted(self.get_histogram_values(name, labels))
        if not values:
            return dict.fromkeys(("count", "sum", "min", "max", "avg", "p50", "p95", "p99"), 0.0)

        total = sum(values)
        return {
            "count": len(values),
            "sum": total,
            "min": values[0],
            "max": values[-1],
            "avg": total / len(values),
            "p50": percentile(values, 0.50),
            "p95": percentile(values, 0.95),
            "p99": percentile(values, 0.99),
        }

    def get_all_metrics(self) -> Dict[str, Any]:
        with self._lock:
            result: Dict[str, Any] = {}
            for name, metric_type in self._types.items():
                entry: Dict[str, Any] = {
                    "type": metric_type.value,
                    "help": self._help.get(name, ""),
                }
                if metric_type == MetricType.COUNTER:
                    entry["values"] = dict(self._counters[name])
                elif metric_type == MetricType.GAUGE:
                    entry["values"] = dict(self._gauges[name])
                else:
                    entry["stats"] = self.get_histogram_stats(name)
                result[name] = entry
            return result

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._types.clear()
            self._help.clear()

    def _declare(self, name: str, metric_type: MetricType, help_text: Optional[str]) -> None:
        self._types[name] = metric_type
        if help_text and name not in self._help:
            self._help[name] = help_text


def label_key(labels: Optional[Labels]) -> str:
    """Stable key for a label set."""
    if not labels:
        return ""
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def percentile(sorted_values: List[float], p: float) -> float:
    """Linear-interpolated percentile of already sorted values."""
    if not sorted_values:
        return 0.0
    k = (len(sorted_values) - 1) * p
    lower = int(k)
    upper = min(lower + 1, len(sorted_values) - 1)
    return sorted_values[lower] + (k - lower) * (sorted_values[upper] - sorted_values[lower])


class EngineMetrics:
    """Named engine metrics recorded by the run coordinator."""

    RUNS_TOTAL = "playbook_runs_total"
    RUN_DURATION = "playbook_run_duration_seconds"
    ACTIVE_RUNS = "playbook_active_runs"
    STEP_ATTEMPTS = "playbook_step_attempts_total"
    STEP_RETRIES = "playbook_step_retries_total"
    STEP_SKIPS = "playbook_step_skips_total"
    STEP_DURATION = "playbook_step_duration_seconds"

    def __init__(self, collector: Optional[MetricsCollector] = None) -> None:
        self.collector = collector or MetricsCollector()

    def run_started(self, playbook_id: str) -> None:
        self.collector.add_gauge(self.ACTIVE_RUNS, 1, {"playbook": playbook_id})

    def run_finished(self, playbook_id: str, status: str, duration_seconds: float) -> None:
        labels = {"playbook": playbook_id, "status": status}
        self.collector.add_gauge(self.ACTIVE_RUNS, -1, {"playbook": playbook_id})
        self.collector.increment_counter(
            self.RUNS_TOTAL, labels, help_text="Finished playbook runs by status"
        )
        self.collector.observe_histogram(
            self.RUN_DURATION,
            duration_seconds,
            {"playbook": playbook_id},
            help_text="Wall-clock duration of playbook runs",
        )

    def step_finished(self, step_type: str, status: str, duration_seconds: float) -> None:
        self.collector.increment_counter(
            self.STEP_ATTEMPTS,
            {"type": step_type, "status": status},
            help_text="Step attempts by type and outcome",
        )
        self.collector.observe_histogram(
            self.STEP_DURATION,
            duration_seconds,
            {"type": step_type},
            help_text="Duration of step attempts",
        )

    def step_retried(self, step_type: str) -> None:
        self.collector.increment_counter(
            self.STEP_RETRIES, {"type": step_type}, help_text="Scheduled step retries"
        )

    def step_skipped(self, reason: str) -> None:
        self.collector.increment_counter(
            self.STEP_SKIPS, {"reason": reason}, help_text="Skipped steps by reason"
        )


class PrometheusExporter:
    """Export metrics in Prometheus text format."""

    def __init__(self, metrics: MetricsCollector) -> None:
        self.metrics = metrics

    def export(self) -> str:
        lines: List[str] = []
        for name, data in sorted(self.metrics.get_all_metrics().items()):
            if data["help"]:
                lines.append(f"# HELP {name} {data['help']}")
            lines.append(f"# TYPE {name} {data['type']}")

            if data["type"] in ("counter", "gauge"):
                for key, value in sorted(data["values"].items()):
                    lines.append(f"{name}{format_labels(key)} {value}")
            else:
                values = self.metrics.get_histogram_values(name)
                for le in DURATION_BUCKETS:
                    count = sum(1 for v in values if v <= le)
                    lines.append(f'{name}_bucket{{le="{le}"}} {count}')
                lines.append(f'{name}_bucket{{le="+Inf"}} {data["stats"]["count"]}')
                lines.append(f'{name}_sum {data["stats"]["sum"]}')
                lines.append(f'{name}_count {data["stats"]["count"]}')

            lines.append("")

        return "\n".join(lines)


def format_labels(key: str) -> str:
    """Render a label key ("a=1,b=2") as a Prometheus label set."""
    if not key:
        return ""
    pairs = [part.split("=", 1) for part in key.split(",")]
    return "{" + ",".join(f'{k}="{v}"' for k, v in pairs) + "}"
