"""
In-memory metrics for the scheduler.

Counters:
- executions_started_total / executions_finished_total{status}
- tasks_dispatched_total{node_type}
- admission_total{provider,outcome}  (granted | queued | promoted)
- webhooks_received_total{provider,outcome}
- provider_call_failures_total{provider}

Histograms:
- provider_submit_seconds{provider}

Exposed at ``GET /api/metrics`` in Prometheus text format; histograms are
rendered as summaries (count, sum, p95, max).
"""
from __future__ import annotations

from collections import defaultdict
from typing import Any

PROM_PREFIX = "flowsched_"

# (metric name, sorted label pairs)
SeriesKey = tuple[str, tuple[tuple[str, str], ...]]


def _series(name: str, labels: dict[str, str] | None) -> SeriesKey:
    return name, tuple(sorted((labels or {}).items()))


def _label_text(pairs: tuple[tuple[str, str], ...], quoted: bool) -> str:
    if not pairs:
        return ""
    if quoted:
        return "{" + ",".join(f'{k}="{v}"' for k, v in pairs) + "}"
    return "{" + ",".join(f"{k}={v}" for k, v in pairs) + "}"


def _summarise(values: list[float]) -> dict[str, Any]:
    if not values:
        return {"count": 0, "sum": 0, "max": 0, "avg": 0, "p95": 0}
    ordered = sorted(values)
    total = sum(ordered)
    return {
        "count": len(ordered),
        "sum": total,
        "max": ordered[-1],
        "avg": total / len(ordered),
        "p95": ordered[max(0, int(len(ordered) * 0.95) - 1)],
    }


class MetricsCollector:
    """Process-local counters and latency samples keyed by name and labels."""

    def __init__(self):
        self._counters: dict[SeriesKey, int] = defaultdict(int)
        self._samples: dict[SeriesKey, list[float]] = defaultdict(list)

    def increment_counter(self, name: str, value: int = 1, labels: dict[str, str] | None = None):
        self._counters[_series(name, labels)] += value

    def observe_histogram(self, name: str, value: float, labels: dict[str, str] | None = None):
        self._samples[_series(name, labels)].append(value)

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        return self._counters.get(_series(name, labels), 0)

    def get_histogram_stats(self, name: str, labels: dict[str, str] | None = None) -> dict[str, Any]:
        return _summarise(self._samples.get(_series(name, labels), []))

    def get_all_metrics(self) -> dict[str, Any]:
        """Snapshot with ``name{k=v}`` string keys, for JSON output."""
        return {
            "counters": {
                name + _label_text(pairs, quoted=False): value
                for (name, pairs), value in self._counters.items()
            },
            "histograms": {
                name + _label_text(pairs, quoted=False): _summarise(values)
                for (name, pairs), values in self._samples.items()
            },
        }

    def to_prometheus(self) -> str:
        lines: list[str] = []

        families: dict[str, list[tuple[tuple, int]]] = defaultdict(list)
        for (name, pairs), value in self._counters.items():
            families[name].append((pairs, value))
        for name, series in families.items():
            lines.append(f"# TYPE {PROM_PREFIX}{name} counter")
            lines.extend(
                f"{PROM_PREFIX}{name}{_label_text(pairs, quoted=True)} {value}" for pairs, value in series
            )

        summaries: dict[str, list[tuple[tuple, dict[str, Any]]]] = defaultdict(list)
        for (name, pairs), values in self._samples.items():
            summaries[name].append((pairs, _summarise(values)))
        for name, series in summaries.items():
            full = PROM_PREFIX + name
            lines.append(f"# TYPE {full} summary")
            for pairs, stats in series:
                labels = _label_text(pairs, quoted=True)
                lines.append(f"{full}_count{labels} {stats['count']}")
                lines.append(f"{full}_sum{labels} {stats['sum']:.6f}")
                if stats["count"]:
                    for quantile, key in (("0.95", "p95"), ("1.0", "max")):
                        q_labels = _label_text(pairs + (("quantile", quantile),), quoted=True)
                        lines.append(f"{full}{q_labels} {stats[key]:.6f}")
        return "\n".join(lines) + "\n"

    def reset(self):
        self._counters.clear()
        self._samples.clear()


metrics = MetricsCollector()


def record_execution_started():
    metrics.increment_counter("executions_started_total")


def record_execution_finished(status: str):
    metrics.increment_counter("executions_finished_total", labels={"status": status})


def record_task_dispatched(node_type: str):
    metrics.increment_counter("tasks_dispatched_total", labels={"node_type": node_type})


def record_admission(provider: str, outcome: str):
    """Record an admission decision: granted, queued or promoted."""
    metrics.increment_counter("admission_total", labels={"provider": provider, "outcome": outcome})


def record_webhook(provider: str, outcome: str):
    metrics.increment_counter("webhooks_received_total", labels={"provider": provider, "outcome": outcome})


def record_provider_call(provider: str, duration_seconds: float, ok: bool):
    """Record the latency of an outbound submit and count failures."""
    metrics.observe_histogram("provider_submit_seconds", duration_seconds, labels={"provider": provider})
    if not ok:
        metrics.increment_counter("provider_call_failures_total", labels={"provider": provider})


def to_prometheus_text() -> str:
    return metrics.to_prometheus()
