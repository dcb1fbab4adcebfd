"""
Estimator diagnostics: counters, drop reasons and histograms.

Every discarded subset and every failed run is counted under a reason code,
so a batch of estimations can be audited afterwards:

    metrics = get_metrics()
    ...
    summary = metrics.estimator_summary()
    print(f"{summary['robust_success_rate']:.1%} of robust runs succeeded")

Histograms keep the most recent samples only (bounded deque per name).
"""

import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

import numpy as np

from rle_core.config import METRICS_CONFIG

logger = logging.getLogger(__name__)


@dataclass
class CounterSnapshot:
    """Copy of collector state at a point in time."""

    timestamp: float
    counters: Dict[str, int]
    drop_reasons: Dict[str, int]
    histograms: Dict[str, List[float]]

    def total_dropped(self) -> int:
        """Total subsets/runs dropped across all reasons."""
        return sum(self.drop_reasons.values())

    def drop_rate(self, total_attempts: int) -> float:
        """Dropped items as a percentage of attempts."""
        if total_attempts == 0:
            return 0.0
        return 100.0 * self.total_dropped() / total_attempts


class MetricsCollector:
    """
    Thread-safe metrics collection shared by solvers and robust estimators.

    Usage:
        collector = MetricsCollector()
        collector.increment('robust_estimate_attempts')
        collector.increment_drop('degenerate_subset')
        collector.record_histogram('robust_iterations', 42)

        stats = collector.get_histogram_stats('robust_iterations')
    """

    DROP_REASONS = {
        'degenerate_subset': 'Sampled subset could not be fitted',
        'solver_failed': 'Least-squares fit failed numerically',
        'not_ready': 'Not enough valid readings or initial values',
        'no_consensus': 'No candidate reached the minimum inlier count',
        'refinement_failed': 'Refinement over inliers failed',
    }

    STANDARD_COUNTERS = (
        'source_solve_attempts',
        'source_solve_success',
        'robust_estimate_attempts',
        'robust_estimate_success',
        'robust_estimate_failed',
        'sequential_estimate_attempts',
        'sequential_estimate_success',
        'sequential_estimate_failed',
    )

    def __init__(self, max_histogram_samples: Optional[int] = None):
        """
        Args:
            max_histogram_samples: Samples kept per histogram (METRICS_CONFIG if None)
        """
        self._lock = threading.Lock()
        self._max_samples = max_histogram_samples or METRICS_CONFIG["max_histogram_samples"]
        self._counters: Dict[str, int] = defaultdict(int)
        self._drop_reasons: Dict[str, int] = defaultdict(int)
        self._histograms: Dict[str, Deque[float]] = {}
        self._start_time = time.time()
        self._zero_standard_keys()

    def _zero_standard_keys(self):
        """Make standard counters and drop reasons show up as 0 in reports."""
        with self._lock:
            for name in self.STANDARD_COUNTERS:
                self._counters.setdefault(name, 0)
            for reason in self.DROP_REASONS:
                self._drop_reasons.setdefault(reason, 0)

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def increment(self, counter_name: str, value: int = 1):
        """Add value to a counter."""
        with self._lock:
            self._counters[counter_name] += value

    def increment_drop(self, reason: str, value: int = 1):
        """
        Count a dropped subset or failed run.

        Args:
            reason: Drop reason code (one of DROP_REASONS)
            value: Amount to add (default 1)
        """
        if reason not in self.DROP_REASONS:
            # Counted anyway so nothing disappears silently
            logger.warning(f"Unknown drop reason '{reason}'")

        with self._lock:
            self._drop_reasons[reason] += value
            self._counters['dropped'] += value

    def record_histogram(self, histogram_name: str, value: float):
        """Append a sample; the oldest sample is evicted once the bound is hit."""
        with self._lock:
            samples = self._histograms.get(histogram_name)
            if samples is None:
                samples = deque(maxlen=self._max_samples)
                self._histograms[histogram_name] = samples
            samples.append(float(value))

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_counter(self, counter_name: str) -> int:
        """Current counter value (0 if never incremented)."""
        with self._lock:
            return self._counters.get(counter_name, 0)

    def get_drop_count(self, reason: str) -> int:
        """Drops recorded for a reason."""
        with self._lock:
            return self._drop_reasons.get(reason, 0)

    def get_histogram_stats(self, histogram_name: str) -> Optional[Dict[str, float]]:
        """
        Summary statistics of a histogram.

        Returns:
            Dict with count, min, max, mean, median, p95, p99;
            None if nothing was recorded
        """
        with self._lock:
            samples = self._histograms.get(histogram_name)
            if not samples:
                return None
            values = np.fromiter(samples, dtype=float, count=len(samples))

        p50, p95, p99 = np.percentile(values, [50, 95, 99])
        return {
            'count': int(values.size),
            'min': float(values.min()),
            'max': float(values.max()),
            'mean': float(values.mean()),
            'median': float(p50),
            'p95': float(p95),
            'p99': float(p99),
        }

    def estimator_summary(self) -> Dict[str, float]:
        """
        Success rates of plain solves and robust runs.

        Returns:
            Dict with attempt counts and success rates (0-1, 0.0 without attempts)
        """
        with self._lock:
            solves = self._counters.get('source_solve_attempts', 0)
            solved = self._counters.get('source_solve_success', 0)
            runs = self._counters.get('robust_estimate_attempts', 0)
            succeeded = self._counters.get('robust_estimate_success', 0)
            degenerate = self._drop_reasons.get('degenerate_subset', 0)

        return {
            'source_solve_attempts': solves,
            'source_solve_success_rate': solved / solves if solves else 0.0,
            'robust_estimate_attempts': runs,
            'robust_success_rate': succeeded / runs if runs else 0.0,
            'degenerate_subset_rate': degenerate / solves if solves else 0.0,
        }

    def snapshot(self) -> CounterSnapshot:
        """Independent copy of all counters, drops and histograms."""
        with self._lock:
            return CounterSnapshot(
                timestamp=time.time(),
                counters=dict(self._counters),
                drop_reasons=dict(self._drop_reasons),
                histograms={name: list(samples) for name, samples in self._histograms.items()},
            )

    def reset(self):
        """Clear everything and restart the uptime clock."""
        with self._lock:
            self._counters.clear()
            self._drop_reasons.clear()
            self._histograms.clear()
            self._start_time = time.time()
        self._zero_standard_keys()

    def get_uptime(self) -> float:
        """Seconds since creation or last reset."""
        return time.time() - self._start_time

    def log_summary(self, level: int = logging.INFO):
        """Log counters, non-zero drop reasons and histogram statistics."""
        snapshot = self.snapshot()

        lines = [f"METRICS SUMMARY (uptime: {self.get_uptime():.1f}s)"]
        lines += [f"  {name:30s}: {value:8d}" for name, value in sorted(snapshot.counters.items())]

        dropped = snapshot.total_dropped()
        for reason, count in sorted(snapshot.drop_reasons.items()):
            if count:
                lines.append(f"  drop:{reason:25s}: {count:8d} ({100.0 * count / dropped:5.1f}%)")

        for name in sorted(snapshot.histograms):
            stats = self.get_histogram_stats(name)
            if stats:
                lines.append(
                    f"  {name}: count={stats['count']}, mean={stats['mean']:.3f}, "
                    f"p95={stats['p95']:.3f}, max={stats['max']:.3f}"
                )

        logger.log(level, "\n".join(lines))
