# tripod/infra/metrics.py
from __future__ import annotations
import time
from collections import defaultdict
from threading import Lock
from typing import Dict
from dataclasses import dataclass, field
from tripod.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Counter:
    value: int = 0

    def inc(self, amount: int = 1) -> None:
        self.value += amount


@dataclass
class Histogram:
    """Distribution of observed values (durations, amounts)."""
    values: list[float] = field(default_factory=list)

    def observe(self, value: float) -> None:
        self.values.append(value)

    def get_stats(self) -> dict:
        if not self.values:
            return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0, "p99": 0}

        ordered = sorted(self.values)
        count = len(ordered)

        def percentile(p: float) -> float:
            return ordered[min(int(count * p), count - 1)]

        return {
            "count": count,
            "min": ordered[0],
            "max": ordered[-1],
            "avg": sum(ordered) / count,
            "p95": percentile(0.95),
            "p99": percentile(0.99),
        }


class MetricsCollector:
    """In-process counters and histograms, dumped as JSON at /metrics."""

    def __init__(self):
        self._counters: Dict[str, Counter] = defaultdict(Counter)
        self._histograms: Dict[str, Histogram] = defaultdict(Histogram)
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key].inc(amount)

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms[key].observe(value)

    def get_metrics(self) -> dict:
        with self._lock:
            counters = {k: v.value for k, v in self._counters.items()}
            histograms = {k: v.get_stats() for k, v in self._histograms.items()}

        return {
            "counters": counters,
            "histograms": histograms,
        }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.info("Metrics reset")

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        """``name{k1=v1,k2=v2}`` with labels sorted by key."""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe_histogram(name, value, labels or None)


class Timer:
    """Context manager that records elapsed seconds into a histogram."""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self.start_time: float | None = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            observe_histogram(self.metric_name, time.perf_counter() - self.start_time, **self.labels)


class AppMetrics:
    """Named business counters, so call sites don't repeat metric names."""

    @staticmethod
    def request_submitted(kind: str, priority: str) -> None:
        inc_counter("jobs_submitted_total", kind=kind, priority=priority)

    @staticmethod
    def automation_outcome(status: str) -> None:
        inc_counter("automation_runs_total", status=status)

    @staticmethod
    def assignment_conflict() -> None:
        inc_counter("automation_conflicts_total")

    @staticmethod
    def coupon_redeemed(kind: str) -> None:
        inc_counter("coupons_redeemed_total", kind=kind)

    @staticmethod
    def refund_finished(status: str) -> None:
        inc_counter("refunds_processed_total", status=status)

    @staticmethod
    def payment_recorded(payment_type: str, status: str) -> None:
        inc_counter("payments_recorded_total", payment_type=payment_type, status=status)

    @staticmethod
    def database_error(operation: str) -> None:
        inc_counter("database_errors_total", operation=operation)

    @staticmethod
    def track_automation_time() -> Timer:
        return Timer("automation_run_seconds")
