"""
Metrics Collection for the Billing Sync Pipeline

Collects in-memory metrics for:
- Upstream requests (pages fetched, rate limits hit, retries)
- Fetch slices (completed, failed, truncated)
- Pipeline stage timings (average, p95)
"""

import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, List, Optional


@dataclass
class UpstreamMetrics:
    """Counters for upstream API traffic."""
    requests: int = 0
    pages_fetched: int = 0
    items_fetched: int = 0
    rate_limited: int = 0
    retries: int = 0
    failures: int = 0


@dataclass
class SliceMetrics:
    """Counters for fetch slices by outcome."""
    by_status: Dict[str, int] = field(default_factory=lambda: defaultdict(int))


@dataclass
class TimingMetrics:
    """Processing time samples by stage."""
    max_samples: int = 1000
    by_stage: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    def add_sample(self, stage: str, duration_ms: float):
        samples = self.by_stage[stage]
        samples.append(duration_ms)
        if len(samples) > self.max_samples:
            self.by_stage[stage] = samples[-self.max_samples:]

    def get_average(self, stage: str) -> float:
        samples = self.by_stage.get(stage, [])
        return statistics.mean(samples) if samples else 0.0

    def get_p95(self, stage: str) -> float:
        samples = self.by_stage.get(stage, [])
        if not samples:
            return 0.0
        sorted_samples = sorted(samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]


class MetricsCollector:
    """
    Thread-safe metrics collector.

    Usage:
        metrics = MetricsCollector.instance()
        metrics.record_page_fetched(items=250)
        metrics.record_stage_time("attribution", 1520.0)
    """

    _instance: Optional["MetricsCollector"] = None
    _instance_lock = Lock()

    def __init__(self):
        self.upstream = UpstreamMetrics()
        self.slices = SliceMetrics()
        self.timings = TimingMetrics()
        self._lock = Lock()

    @classmethod
    def instance(cls) -> "MetricsCollector":
        """Get singleton instance."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def record_request(self):
        with self._lock:
            self.upstream.requests += 1

    def record_page_fetched(self, items: int = 0):
        with self._lock:
            self.upstream.pages_fetched += 1
            self.upstream.items_fetched += items

    def record_rate_limited(self):
        with self._lock:
            self.upstream.rate_limited += 1

    def record_retry(self):
        with self._lock:
            self.upstream.retries += 1

    def record_upstream_failure(self):
        with self._lock:
            self.upstream.failures += 1

    def record_slice(self, status: str):
        with self._lock:
            self.slices.by_status[status] += 1

    def record_stage_time(self, stage: str, duration_ms: float):
        with self._lock:
            self.timings.add_sample(stage, duration_ms)

    def get_timing_stats(self, stage: str) -> Dict[str, float]:
        with self._lock:
            return {
                "average_ms": self.timings.get_average(stage),
                "p95_ms": self.timings.get_p95(stage),
                "samples": len(self.timings.by_stage.get(stage, [])),
            }

    def get_summary(self) -> Dict[str, Any]:
        """Snapshot of all metrics."""
        with self._lock:
            return {
                "upstream": {
                    "requests": self.upstream.requests,
                    "pages_fetched": self.upstream.pages_fetched,
                    "items_fetched": self.upstream.items_fetched,
                    "rate_limited": self.upstream.rate_limited,
                    "retries": self.upstream.retries,
                    "failures": self.upstream.failures,
                },
                "slices": dict(self.slices.by_status),
                "stages": {
                    stage: {
                        "average_ms": self.timings.get_average(stage),
                        "p95_ms": self.timings.get_p95(stage),
                    }
                    for stage in self.timings.by_stage
                },
            }


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return MetricsCollector.instance()
