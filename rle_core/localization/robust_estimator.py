"""
Robust Radio Source Estimator.

Wraps RadioSourceSolver in a consensus loop so that a fraction of grossly
wrong readings does not corrupt the estimate.

Usage:
    estimator = RobustRadioSourceEstimator(readings, config=RobustEstimatorConfig(
        method=RobustMethod.RANSAC,
        threshold=2.0,                  # dB for RSSI, m for ranging
        estimate_transmitted_power=True,
    ))

    estimate = estimator.estimate()
    print(f"Position: {estimate.position}")
    print(f"Inliers: {estimate.inliers_data.num_inliers}")

Loop per estimate():
1. Draw a minimal subset of readings (strategy sampler)
2. Fit a candidate on the subset (no covariance)
3. Score the candidate against every reading
4. Keep the best candidate, shrink the adaptive iteration bound
5. Refine the best candidate on its inliers (with covariance) if enabled

Configuration can only change while the estimator is unlocked; listener
callbacks run while it is locked.
"""

from typing import Callable, List, Optional, Sequence, Tuple
from dataclasses import dataclass, replace
import logging

import numpy as np

from rle_core.config import ROBUST_ESTIMATOR_CONFIG, SOLVER_CONFIG
from rle_core.proto.reading import Reading, ReadingKind, readings_kind, readings_dims
from rle_core.proto.estimated_source import EstimatedRadioSource, InliersData
from rle_core.localization.errors import (
    EstimationError,
    LockedError,
    NotReadyError,
    RobustEstimatorError,
)
from rle_core.localization.source_solver import (
    RadioSourceSolver,
    RadioSourceSolverConfig,
    min_readings,
)
from rle_core.localization.consensus import (
    ConsensusScore,
    ConsensusStrategy,
    RobustMethod,
    create_strategy,
)
from rle_core.metrics import get_metrics

logger = logging.getLogger(__name__)


# =============================================================================
# Setting validators (raise ValueError, never mutate)
# =============================================================================


def _validate_threshold(value: float) -> float:
    value = float(value)
    if not (value > 0 and np.isfinite(value)):
        raise ValueError(f"Threshold must be positive: {value}")
    return value


def _validate_confidence(value: float) -> float:
    value = float(value)
    if not 0.0 < value < 1.0:
        raise ValueError(f"Confidence must be in (0, 1): {value}")
    return value


def _validate_max_iterations(value: int) -> int:
    if int(value) != value or value < 1:
        raise ValueError(f"max_iterations must be an integer >= 1: {value}")
    return int(value)


def _validate_stop_threshold(value: float) -> float:
    value = float(value)
    if not value > 0:
        raise ValueError(f"Stop threshold must be positive: {value}")
    return value


def _validate_progress_delta(value: float) -> float:
    value = float(value)
    if not 0.0 < value <= 1.0:
        raise ValueError(f"Progress delta must be in (0, 1]: {value}")
    return value


def _validate_path_loss_exponent(value: float) -> float:
    value = float(value)
    if not value > 0:
        raise ValueError(f"Path-loss exponent must be positive: {value}")
    return value


def _validate_position(value: Optional[Sequence[float]]) -> Optional[Tuple[float, ...]]:
    if value is None:
        return None
    position = tuple(float(c) for c in value)
    if len(position) not in (2, 3):
        raise ValueError(f"Position must be 2D or 3D: {value}")
    return position


def _validate_optional_float(value: Optional[float]) -> Optional[float]:
    return None if value is None else float(value)


_VALIDATORS = {
    'method': RobustMethod,
    'threshold': _validate_threshold,
    'confidence': _validate_confidence,
    'max_iterations': _validate_max_iterations,
    'progress_delta': _validate_progress_delta,
    'stop_threshold': _validate_stop_threshold,
    'refine_result': bool,
    'keep_covariance': bool,
    'compute_and_keep_inliers': bool,
    'compute_and_keep_residuals': bool,
    'estimate_position': bool,
    'estimate_transmitted_power': bool,
    'estimate_path_loss': bool,
    'initial_position': _validate_position,
    'initial_transmitted_power_dbm': _validate_optional_float,
    'initial_path_loss_exponent': _validate_path_loss_exponent,
}


@dataclass
class RobustEstimatorConfig:
    """
    Configuration for robust radio source estimation.

    Attributes:
        method: Consensus method (RANSAC, MSAC, LMedS, PROSAC, PROMedS)
        threshold: Inlier threshold (m for ranging, dB for RSSI; both for combined)
        confidence: Probability of drawing at least one outlier-free subset
        max_iterations: Hard bound on sampling iterations
        progress_delta: Minimum progress change between progress callbacks
        stop_threshold: LMedS/PROMedS stop once the robust scale threshold
            of the best candidate is below this value
        refine_result: Re-fit the best candidate on its inliers
        keep_covariance: Keep covariance of the refined result
        compute_and_keep_inliers: Attach inlier mask to the result
        compute_and_keep_residuals: Attach per-reading residuals to the result
        estimate_position: Position is an unknown (else initial_position is fixed)
        estimate_transmitted_power: Transmitted power is an unknown
            (must be False for ranging-only readings)
        estimate_path_loss: Path-loss exponent is an unknown
        initial_position: Initial position guess for every fit
        initial_transmitted_power_dbm: Initial/fixed transmitted power (dBm)
        initial_path_loss_exponent: Initial/fixed path-loss exponent
    """

    method: RobustMethod = RobustMethod(ROBUST_ESTIMATOR_CONFIG["method"])
    threshold: float = ROBUST_ESTIMATOR_CONFIG["threshold"]
    confidence: float = ROBUST_ESTIMATOR_CONFIG["confidence"]
    max_iterations: int = ROBUST_ESTIMATOR_CONFIG["max_iterations"]
    progress_delta: float = ROBUST_ESTIMATOR_CONFIG["progress_delta"]
    stop_threshold: float = ROBUST_ESTIMATOR_CONFIG["stop_threshold"]
    refine_result: bool = ROBUST_ESTIMATOR_CONFIG["refine_result"]
    keep_covariance: bool = ROBUST_ESTIMATOR_CONFIG["keep_covariance"]
    compute_and_keep_inliers: bool = ROBUST_ESTIMATOR_CONFIG["compute_and_keep_inliers"]
    compute_and_keep_residuals: bool = ROBUST_ESTIMATOR_CONFIG["compute_and_keep_residuals"]
    estimate_position: bool = SOLVER_CONFIG["estimate_position"]
    estimate_transmitted_power: bool = SOLVER_CONFIG["estimate_transmitted_power"]
    estimate_path_loss: bool = SOLVER_CONFIG["estimate_path_loss"]
    initial_position: Optional[Tuple[float, ...]] = None
    initial_transmitted_power_dbm: Optional[float] = None
    initial_path_loss_exponent: float = SOLVER_CONFIG["initial_path_loss_exponent"]

    def __post_init__(self):
        """Validate configuration."""
        for name, validator in _VALIDATORS.items():
            setattr(self, name, validator(getattr(self, name)))


class RobustEstimatorListener:
    """
    Observer of robust estimation runs.

    Hooks run synchronously on the estimating thread while the estimator is
    locked; any attempt to reconfigure it from a hook raises LockedError.
    Override only the hooks you need.
    """

    def on_estimate_start(self, estimator: "RobustRadioSourceEstimator"):
        """Called once before sampling starts."""

    def on_estimate_end(self, estimator: "RobustRadioSourceEstimator"):
        """Called once after the result is available."""

    def on_estimate_next_iteration(self, estimator: "RobustRadioSourceEstimator", iteration: int):
        """Called after each sampling iteration (1-based iteration number)."""

    def on_estimate_progress_change(self, estimator: "RobustRadioSourceEstimator", progress: float):
        """Called when progress (0-1) advanced by at least progress_delta."""


class _Setting:
    """Configuration attribute that can only change while unlocked."""

    def __init__(self, validator: Callable):
        self.validator = validator

    def __set_name__(self, owner, name):
        self.name = name

    def __get__(self, instance, owner):
        if instance is None:
            return self
        return getattr(instance._config, self.name)

    def __set__(self, instance, value):
        instance._check_unlocked()
        setattr(instance._config, self.name, self.validator(value))


class RobustRadioSourceEstimator:
    """
    Robust estimator of radio source position, power and path loss.

    States: unlocked (configurable) -> locked (estimate() running) -> unlocked.
    Ready when readings of a consistent kind, in sufficient number for the
    enabled unknowns, are set (and quality scores for PROSAC / PROMedS).
    """

    method = _Setting(_VALIDATORS['method'])
    threshold = _Setting(_VALIDATORS['threshold'])
    confidence = _Setting(_VALIDATORS['confidence'])
    max_iterations = _Setting(_VALIDATORS['max_iterations'])
    progress_delta = _Setting(_VALIDATORS['progress_delta'])
    stop_threshold = _Setting(_VALIDATORS['stop_threshold'])
    refine_result = _Setting(_VALIDATORS['refine_result'])
    keep_covariance = _Setting(_VALIDATORS['keep_covariance'])
    compute_and_keep_inliers = _Setting(_VALIDATORS['compute_and_keep_inliers'])
    compute_and_keep_residuals = _Setting(_VALIDATORS['compute_and_keep_residuals'])
    estimate_position = _Setting(_VALIDATORS['estimate_position'])
    estimate_transmitted_power = _Setting(_VALIDATORS['estimate_transmitted_power'])
    estimate_path_loss = _Setting(_VALIDATORS['estimate_path_loss'])
    initial_position = _Setting(_VALIDATORS['initial_position'])
    initial_transmitted_power_dbm = _Setting(_VALIDATORS['initial_transmitted_power_dbm'])
    initial_path_loss_exponent = _Setting(_VALIDATORS['initial_path_loss_exponent'])

    def __init__(
        self,
        readings: Optional[Sequence[Reading]] = None,
        listener: Optional[RobustEstimatorListener] = None,
        config: Optional[RobustEstimatorConfig] = None,
        quality_scores: Optional[Sequence[float]] = None,
        seed: Optional[int] = None,
    ):
        """
        Initialize robust estimator.

        Args:
            readings: Readings of a single radio source (optional, set later)
            listener: Observer of estimation runs
            config: Estimator configuration (uses defaults if None)
            quality_scores: Per-reading quality (higher is better), used by PROSAC
            and PROMedS
            seed: Random generator seed for reproducible sampling
        """
        self._config = replace(config) if config is not None else RobustEstimatorConfig()
        self._locked = False
        self._readings: Optional[List[Reading]] = None
        self._quality_scores: Optional[np.ndarray] = None
        self._result: Optional[EstimatedRadioSource] = None
        self._listener = listener
        self._rng = np.random.default_rng(seed)
        self.metrics = get_metrics()

        if readings is not None:
            self.readings = readings
        if quality_scores is not None:
            self.quality_scores = quality_scores

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def config(self) -> RobustEstimatorConfig:
        """Copy of the current configuration."""
        return replace(self._config)

    def is_locked(self) -> bool:
        """Check if an estimation is running."""
        return self._locked

    def _check_unlocked(self):
        if self._locked:
            raise LockedError("estimator is locked while estimating")

    @property
    def readings(self) -> Optional[List[Reading]]:
        """Readings used for estimation."""
        return None if self._readings is None else list(self._readings)

    @readings.setter
    def readings(self, readings: Sequence[Reading]):
        self._check_unlocked()
        if readings is None:
            raise ValueError("Readings cannot be None")

        readings = list(readings)
        kind = readings_kind(readings)
        if kind is None:
            raise ValueError("Readings must be non-empty, of one kind and one dimension")

        required = self._required_readings(kind, readings_dims(readings))
        if len(readings) < required:
            raise ValueError(f"Need at least {required} readings, got {len(readings)}")

        self._readings = readings

    @property
    def listener(self) -> Optional[RobustEstimatorListener]:
        """Observer of estimation runs."""
        return self._listener

    @listener.setter
    def listener(self, listener: Optional[RobustEstimatorListener]):
        self._check_unlocked()
        self._listener = listener

    @property
    def quality_scores(self) -> Optional[np.ndarray]:
        """Per-reading quality scores (only PROSAC and PROMedS use them)."""
        return None if self._quality_scores is None else self._quality_scores.copy()

    @quality_scores.setter
    def quality_scores(self, quality_scores: Optional[Sequence[float]]):
        self._check_unlocked()
        if quality_scores is None:
            self._quality_scores = None
            return

        scores = np.asarray(quality_scores, dtype=float)
        if scores.ndim != 1 or not np.all(np.isfinite(scores)):
            raise ValueError("Quality scores must be a flat sequence of finite values")
        required = self.min_readings
        if required is not None and len(scores) < required:
            raise ValueError(f"Need at least {required} quality scores, got {len(scores)}")
        self._quality_scores = scores

    def reseed(self, seed: Optional[int]):
        """Restart the random generator with a new seed."""
        self._check_unlocked()
        self._rng = np.random.default_rng(seed)

    @property
    def kind(self) -> Optional[ReadingKind]:
        """Kind of the current readings."""
        return readings_kind(self._readings)

    @property
    def dims(self) -> Optional[int]:
        """Position dimension of the current readings."""
        return readings_dims(self._readings)

    @property
    def min_readings(self) -> Optional[int]:
        """Minimal subset size for the current readings and unknowns."""
        kind = self.kind
        if kind is None:
            return None
        return self._required_readings(kind, self.dims)

    def _required_readings(self, kind: ReadingKind, dims: int) -> int:
        """Minimum readings; distances alone never carry power/path loss."""
        if kind == ReadingKind.RANGING:
            return min_readings(dims)
        return min_readings(dims, self._config.estimate_transmitted_power,
                            self._config.estimate_path_loss, self._config.estimate_position)

    def is_ready(self) -> bool:
        """Check whether estimate() can run with the current configuration."""
        if self._readings is None:
            return False

        if not self._solver(keep_covariance=False).is_ready(self._readings):
            return False

        if self._strategy().requires_quality_scores:
            return (self._quality_scores is not None
                    and len(self._quality_scores) == len(self._readings))

        return True

    # -------------------------------------------------------------------------
    # Result
    # -------------------------------------------------------------------------

    @property
    def result(self) -> Optional[EstimatedRadioSource]:
        """Result of the last successful estimate() (None before/after failure)."""
        return self._result

    @property
    def estimated_position(self) -> Optional[Tuple[float, ...]]:
        return self._result.position if self._result else None

    @property
    def estimated_position_coordinates(self) -> Optional[np.ndarray]:
        return self._result.position_coordinates if self._result else None

    @property
    def estimated_transmitted_power_dbm(self) -> Optional[float]:
        return self._result.transmitted_power_dbm if self._result else None

    @property
    def estimated_transmitted_power(self) -> Optional[float]:
        """Estimated transmitted power in milliwatts."""
        return self._result.transmitted_power_mw if self._result else None

    @property
    def estimated_path_loss_exponent(self) -> Optional[float]:
        return self._result.path_loss_exponent if self._result else None

    @property
    def covariance(self) -> Optional[np.ndarray]:
        return self._result.covariance if self._result else None

    @property
    def estimated_position_covariance(self) -> Optional[np.ndarray]:
        return self._result.position_covariance if self._result else None

    @property
    def estimated_transmitted_power_variance(self) -> Optional[float]:
        return self._result.transmitted_power_variance if self._result else None

    @property
    def estimated_path_loss_exponent_variance(self) -> Optional[float]:
        return self._result.path_loss_exponent_variance if self._result else None

    @property
    def inliers_data(self) -> Optional[InliersData]:
        return self._result.inliers_data if self._result else None

    # -------------------------------------------------------------------------
    # Estimation
    # -------------------------------------------------------------------------

    def estimate(self) -> EstimatedRadioSource:
        """
        Run robust estimation.

        Returns:
            EstimatedRadioSource

        Raises:
            LockedError: Estimation already running (e.g. called from a listener)
            NotReadyError: Not enough valid readings / initial values
            RobustEstimatorError: No consensus found or refinement failed
        """
        self._check_unlocked()
        if not self.is_ready():
            self.metrics.increment_drop('not_ready')
            raise NotReadyError("robust estimator is not ready")

        self.metrics.increment('robust_estimate_attempts')

        try:
            self._locked = True
            self._result = None
            result = self._run()
            self.metrics.increment('robust_estimate_success')
            return result
        except RobustEstimatorError:
            self.metrics.increment('robust_estimate_failed')
            raise
        finally:
            self._locked = False

    def _run(self) -> EstimatedRadioSource:
        """Consensus loop; runs locked."""
        config = self._config
        readings = self._readings
        num_readings = len(readings)
        subset_size = self.min_readings

        strategy = self._strategy()
        strategy.prepare(num_readings, subset_size, config.max_iterations,
                         self._quality_scores)

        subset_solver = self._solver(keep_covariance=False)

        if self._listener is not None:
            self._listener.on_estimate_start(self)

        best_candidate: Optional[EstimatedRadioSource] = None
        best_score: Optional[ConsensusScore] = None
        best_residuals: Optional[np.ndarray] = None

        # A single deterministic fit when no proper subset exists
        exhaustive = subset_size >= num_readings
        all_indices = np.arange(num_readings)

        bound = config.max_iterations
        iteration = 0
        last_progress = 0.0
        stop = False

        while iteration < bound:
            indices = all_indices if exhaustive else strategy.sample(self._rng, iteration)
            candidate = self._fit_subset(subset_solver, [readings[i] for i in indices])

            if candidate is not None:
                residuals = self._reading_residuals(subset_solver, readings, candidate)
                score = strategy.evaluate(residuals, config.threshold)

                # Strictly better only: ties keep the earliest candidate
                if strategy.is_better(score, best_score):
                    best_candidate, best_score, best_residuals = candidate, score, residuals
                    bound = strategy.adaptive_bound(best_score, config.confidence,
                                                    config.max_iterations)
                    stop = strategy.should_stop(best_score)

            iteration += 1
            if self._listener is not None:
                self._listener.on_estimate_next_iteration(self, iteration)

                progress = min(iteration / bound, 1.0)
                if progress - last_progress >= config.progress_delta:
                    last_progress = progress
                    self._listener.on_estimate_progress_change(self, progress)

            if exhaustive or stop:
                break

        self.metrics.record_histogram('robust_iterations', iteration)

        if best_score is None or best_score.num_inliers < subset_size:
            self.metrics.increment_drop('no_consensus')
            found = best_score.num_inliers if best_score is not None else 0
            raise RobustEstimatorError(
                f"no consensus: best candidate has {found} inliers, "
                f"{subset_size} required ({iteration} iterations)"
            )

        self.metrics.record_histogram('robust_inlier_ratio', best_score.num_inliers / num_readings)

        inliers_data = None
        if config.compute_and_keep_inliers or config.compute_and_keep_residuals:
            inliers_data = InliersData(
                inliers=best_score.inliers,
                residuals=best_residuals if config.compute_and_keep_residuals else None,
                threshold=best_score.threshold,
            )

        if config.refine_result:
            result = self._refine(readings, best_candidate, best_score)
        else:
            result = best_candidate

        self._result = replace(result, inliers_data=inliers_data, method=config.method.value)

        logger.info(
            f"{config.method.value} estimate: {best_score.num_inliers}/{num_readings} inliers "
            f"after {iteration} iterations (refined={config.refine_result})"
        )

        if self._listener is not None:
            self._listener.on_estimate_end(self)

        return self._result

    def _strategy(self) -> ConsensusStrategy:
        """Create the consensus strategy for the configured method."""
        return create_strategy(self._config.method, self._config.stop_threshold)

    def _solver(self, keep_covariance: bool, **overrides) -> RadioSourceSolver:
        """Create a solver configured with the current unknowns and guesses."""
        config = self._config
        solver_config = RadioSourceSolverConfig(
            estimate_position=config.estimate_position,
            estimate_transmitted_power=config.estimate_transmitted_power,
            estimate_path_loss=config.estimate_path_loss,
            initial_position=config.initial_position,
            initial_transmitted_power_dbm=config.initial_transmitted_power_dbm,
            initial_path_loss_exponent=config.initial_path_loss_exponent,
            keep_covariance=keep_covariance,
        )
        if overrides:
            solver_config = replace(solver_config, **overrides)
        return RadioSourceSolver(solver_config)

    def _fit_subset(
        self,
        solver: RadioSourceSolver,
        subset: List[Reading],
    ) -> Optional[EstimatedRadioSource]:
        """Fit a candidate on a subset; degenerate subsets yield None."""
        try:
            return solver.solve(subset)
        except EstimationError as e:
            self.metrics.increment_drop('degenerate_subset')
            logger.debug(f"Skipping degenerate subset: {e}")
            return None

    def _reading_residuals(
        self,
        solver: RadioSourceSolver,
        readings: List[Reading],
        candidate: EstimatedRadioSource,
    ) -> np.ndarray:
        """
        Per-reading residual of a candidate.

        The largest absolute channel residual is used, so a combined reading is
        an inlier only if both its distance and RSSI residuals pass.
        """
        channel_residuals = solver.residuals(
            readings, candidate.position,
            candidate.transmitted_power_dbm, candidate.path_loss_exponent,
        )
        return np.nanmax(np.abs(channel_residuals), axis=1)

    def _refine(
        self,
        readings: List[Reading],
        best_candidate: EstimatedRadioSource,
        best_score: ConsensusScore,
    ) -> EstimatedRadioSource:
        """Re-fit the best candidate on its inliers."""
        inlier_readings = [readings[i] for i in np.flatnonzero(best_score.inliers)]
        solver = self._solver(
            keep_covariance=self._config.keep_covariance,
            initial_position=best_candidate.position,
            initial_transmitted_power_dbm=best_candidate.transmitted_power_dbm,
            initial_path_loss_exponent=best_candidate.path_loss_exponent,
        )

        try:
            return solver.solve(inlier_readings)
        except (EstimationError, NotReadyError) as e:
            self.metrics.increment_drop('refinement_failed')
            raise RobustEstimatorError(f"refinement over {len(inlier_readings)} inliers failed") from e


def create_robust_estimator(
    readings: Optional[Sequence[Reading]] = None,
    method: RobustMethod = RobustMethod.RANSAC,
    listener: Optional[RobustEstimatorListener] = None,
    quality_scores: Optional[Sequence[float]] = None,
    seed: Optional[int] = None,
    **settings,
) -> RobustRadioSourceEstimator:
    """
    Create robust estimator for a method with keyword overrides.

    Args:
        readings: Readings of a single radio source
        method: Consensus method
        listener: Observer of estimation runs
        quality_scores: Per-reading quality (PROSAC, PROMedS)
        seed: Random generator seed
        **settings: Any RobustEstimatorConfig field

    Returns:
        Configured RobustRadioSourceEstimator

    Distances alone carry no power information, so for ranging-only
    readings transmitted power and path-loss estimation default to off.
    """
    if readings is not None:
        readings = list(readings)
    if readings is not None and readings_kind(readings) == ReadingKind.RANGING:
        settings.setdefault("estimate_transmitted_power", False)
        settings.setdefault("estimate_path_loss", False)

    config = RobustEstimatorConfig(method=method, **settings)
    return RobustRadioSourceEstimator(
        readings, listener=listener, config=config,
        quality_scores=quality_scores, seed=seed,
    )
