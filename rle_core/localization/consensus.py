"""
Consensus Strategies for Robust Estimation.

The robust estimator runs one sampling loop for every method; a strategy
supplies the parts that differ between methods:

- sample(): which minimal subset to draw next
- evaluate(): how a candidate is scored against all per-reading residuals
- is_better(): which of two scores wins (ties keep the earlier candidate)

Methods:
- RANSAC: maximize inlier count (|r| <= threshold)
- MSAC:   minimize truncated quadratic cost Σ min(r², t²)
- LMedS:  minimize median of r²; inliers from a robust scale estimate
- PROSAC: RANSAC scoring, progressive sampling by descending quality score
- PROMedS: LMedS scoring, PROSAC sampling

Median-scored methods (LMedS, PROMedS) size the adaptive iteration bound from
readings within the configured threshold, and stop early once the robust
scale threshold of the best candidate falls below stop_threshold.
"""

from typing import Optional, Sequence
from dataclasses import dataclass
from enum import Enum
import math

import numpy as np


class RobustMethod(Enum):
    """Robust estimation method."""

    RANSAC = "RANSAC"
    MSAC = "MSAC"
    LMEDS = "LMedS"
    PROSAC = "PROSAC"
    PROMEDS = "PROMedS"


# LMedS robust scale: consistency factor for Gaussian noise
LMEDS_SCALE_FACTOR = 1.4826
LMEDS_INLIER_FACTOR = 2.5
DEFAULT_STOP_THRESHOLD = 1e-4


@dataclass
class ConsensusScore:
    """
    Score of one candidate against all readings.

    Attributes:
        value: Method-specific score (count for RANSAC/PROSAC, cost otherwise)
        inliers: Boolean mask over readings
        threshold: Effective inlier threshold used for the mask
        support: Readings counted by the adaptive iteration bound
            (number of inliers if None)
        scale_threshold: Unfloored robust scale threshold (median-scored methods)
    """

    value: float
    inliers: np.ndarray
    threshold: float
    support: Optional[int] = None
    scale_threshold: Optional[float] = None

    def __post_init__(self):
        if self.support is None:
            self.support = self.num_inliers

    @property
    def num_inliers(self) -> int:
        """Number of inliers."""
        return int(np.count_nonzero(self.inliers))


def iteration_bound(
    inlier_ratio: float,
    subset_size: int,
    confidence: float,
    max_iterations: int,
) -> int:
    """
    Iterations needed to draw one all-inlier subset with given confidence.

    bound = log(1 - confidence) / log(1 - inlier_ratio^subset_size),
    clamped to [1, max_iterations]. Ratios so small that the denominator
    vanishes in floating point give max_iterations.
    """
    if inlier_ratio <= 0.0:
        return max_iterations

    prob_all_inliers = inlier_ratio ** subset_size
    if prob_all_inliers >= 1.0 - 1e-12:
        return 1

    denominator = math.log1p(-prob_all_inliers)
    if denominator == 0.0 or not math.isfinite(denominator):
        return max_iterations

    bound = math.log1p(-confidence) / denominator
    if not math.isfinite(bound):
        return max_iterations
    return int(min(max_iterations, max(1, math.ceil(bound))))


class ConsensusStrategy:
    """Uniform random sampling with inlier-count scoring (RANSAC)."""

    method = RobustMethod.RANSAC
    requires_quality_scores = False

    def __init__(self):
        self.num_readings = 0
        self.subset_size = 0

    def prepare(
        self,
        num_readings: int,
        subset_size: int,
        max_iterations: int,
        quality_scores: Optional[Sequence[float]] = None,
    ):
        """Reset per-run sampling state."""
        self.num_readings = num_readings
        self.subset_size = subset_size

    def sample(self, rng: np.random.Generator, iteration: int) -> np.ndarray:
        """Draw subset indices without replacement."""
        return rng.choice(self.num_readings, size=self.subset_size, replace=False)

    def evaluate(self, residuals: np.ndarray, threshold: float) -> ConsensusScore:
        """Score residuals; non-finite residuals are always outliers."""
        inliers = np.abs(residuals) <= threshold
        return ConsensusScore(float(np.count_nonzero(inliers)), inliers, threshold)

    def is_better(self, candidate: ConsensusScore, best: Optional[ConsensusScore]) -> bool:
        """Higher inlier count wins."""
        return best is None or candidate.value > best.value

    def adaptive_bound(self, best: ConsensusScore, confidence: float, max_iterations: int) -> int:
        """Iteration bound after a new best candidate."""
        return iteration_bound(best.support / self.num_readings, self.subset_size,
                               confidence, max_iterations)

    def should_stop(self, best: ConsensusScore) -> bool:
        """Check whether the best candidate ends the run before the bound."""
        return False


class RANSACStrategy(ConsensusStrategy):
    """RANdom SAmple Consensus."""


class MSACStrategy(ConsensusStrategy):
    """M-estimator SAmple Consensus (truncated quadratic cost)."""

    method = RobustMethod.MSAC

    def evaluate(self, residuals: np.ndarray, threshold: float) -> ConsensusScore:
        abs_residuals = np.abs(residuals)
        inliers = abs_residuals <= threshold
        sqr_threshold = threshold * threshold
        costs = np.where(inliers, abs_residuals ** 2, sqr_threshold)
        return ConsensusScore(float(np.sum(costs)), inliers, threshold)

    def is_better(self, candidate: ConsensusScore, best: Optional[ConsensusScore]) -> bool:
        """Lower cost wins."""
        return best is None or candidate.value < best.value


class LMedSStrategy(ConsensusStrategy):
    """
    Least Median of Squares.

    The inlier mask uses max(2.5·σ̂, threshold), where σ̂ is the robust scale
    of the candidate. A poor candidate has a large σ̂ and accepts nearly every
    reading, so the adaptive bound counts only readings within threshold.
    """

    method = RobustMethod.LMEDS

    def __init__(self, stop_threshold: float = DEFAULT_STOP_THRESHOLD):
        super().__init__()
        if not stop_threshold > 0:
            raise ValueError(f"Stop threshold must be positive: {stop_threshold}")
        self.stop_threshold = stop_threshold

    def evaluate(self, residuals: np.ndarray, threshold: float) -> ConsensusScore:
        abs_residuals = np.abs(residuals)
        sqr_residuals = np.where(np.isfinite(abs_residuals), abs_residuals ** 2, np.inf)
        median = float(np.median(sqr_residuals))

        # Robust scale estimate (Rousseeuw & Leroy)
        redundancy = max(self.num_readings - self.subset_size, 1)
        sigma = LMEDS_SCALE_FACTOR * (1.0 + 5.0 / redundancy) * math.sqrt(median)
        scale_threshold = LMEDS_INLIER_FACTOR * sigma

        effective_threshold = max(scale_threshold, threshold)
        if not math.isfinite(effective_threshold):
            effective_threshold = threshold

        inliers = abs_residuals <= effective_threshold
        support = int(np.count_nonzero(abs_residuals <= threshold))
        return ConsensusScore(median, inliers, effective_threshold,
                              support=support, scale_threshold=scale_threshold)

    def is_better(self, candidate: ConsensusScore, best: Optional[ConsensusScore]) -> bool:
        """Lower median wins."""
        return best is None or candidate.value < best.value

    def should_stop(self, best: ConsensusScore) -> bool:
        """Stop once the robust scale threshold is below stop_threshold."""
        return best.scale_threshold is not None and best.scale_threshold < self.stop_threshold


class PROSACStrategy(ConsensusStrategy):
    """
    PROgressive SAmple Consensus.

    Readings are ranked by descending quality score and subsets are drawn
    from a prefix of the ranking that grows with the iteration count, so
    high-quality readings are tried first. Scoring is the same as RANSAC.
    """

    method = RobustMethod.PROSAC
    requires_quality_scores = True

    def prepare(
        self,
        num_readings: int,
        subset_size: int,
        max_iterations: int,
        quality_scores: Optional[Sequence[float]] = None,
    ):
        super().prepare(num_readings, subset_size, max_iterations, quality_scores)
        if quality_scores is None or len(quality_scores) != num_readings:
            raise ValueError(f"{self.method.value} needs one quality score per reading")

        self._order = np.argsort(-np.asarray(quality_scores, dtype=float), kind='stable')

        # Growth function: T_n = T_N * Π_{i<m} (n - i) / (N - i), starting at n = m
        self._n = subset_size
        t_n = float(max_iterations)
        for i in range(subset_size):
            t_n *= (subset_size - i) / (num_readings - i)
        self._t_n = t_n
        self._t_n_prime = 1

    def sample(self, rng: np.random.Generator, iteration: int) -> np.ndarray:
        t = iteration + 1
        m = self.subset_size

        while t >= self._t_n_prime and self._n < self.num_readings:
            t_next = self._t_n * (self._n + 1) / (self._n + 1 - m)
            self._n += 1
            self._t_n_prime += int(math.ceil(t_next - self._t_n))
            self._t_n = t_next

        if self._t_n_prime < t or self._n == m:
            ranked = rng.choice(self._n, size=m, replace=False)
        else:
            # m-1 from the first n-1 ranked readings plus the n-th one
            ranked = np.append(rng.choice(self._n - 1, size=m - 1, replace=False), self._n - 1)

        return self._order[ranked]


class PROMedSStrategy(LMedSStrategy, PROSACStrategy):
    """
    PROgressive least Median of Squares.

    PROSAC sampling by descending quality score with LMedS scoring and
    stop threshold.
    """

    method = RobustMethod.PROMEDS


_STRATEGIES = {
    RobustMethod.RANSAC: RANSACStrategy,
    RobustMethod.MSAC: MSACStrategy,
    RobustMethod.LMEDS: LMedSStrategy,
    RobustMethod.PROSAC: PROSACStrategy,
    RobustMethod.PROMEDS: PROMedSStrategy,
}


def create_strategy(
    method: RobustMethod,
    stop_threshold: Optional[float] = None,
) -> ConsensusStrategy:
    """
    Create consensus strategy for a robust method.

    Args:
        method: RobustMethod (or its string value, e.g. "RANSAC")
        stop_threshold: Early-stop scale threshold for LMedS / PROMedS
            (DEFAULT_STOP_THRESHOLD if None, ignored by other methods)

    Returns:
        New ConsensusStrategy instance
    """
    strategy_class = _STRATEGIES[RobustMethod(method)]
    if stop_threshold is not None and issubclass(strategy_class, LMedSStrategy):
        return strategy_class(stop_threshold=stop_threshold)
    return strategy_class()
