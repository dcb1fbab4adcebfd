"""
Sequential Robust Radio Source Estimator.

Readings carrying both a distance and an RSSI are solved in two robust
stages:

1. Position from the distances alone (ranging consensus)
2. Transmitted power and/or path-loss exponent from the RSSI values, with
   the stage 1 position held fixed (RSSI consensus)

Stage 2 is skipped when neither power nor path loss is estimated.

Usage:
    estimator = SequentialRobustRadioSourceEstimator(readings, config=SequentialEstimatorConfig(
        ranging_threshold=0.5,          # m
        rssi_threshold=2.0,             # dB
        estimate_path_loss=True,
    ))

    estimate = estimator.estimate()
    print(f"Position: {estimate.position}, Pt: {estimate.transmitted_power_dbm:.1f} dBm")

Listener hooks receive this estimator. Iteration numbers restart with each
stage; progress covers [0, 0.5] for stage 1 and [0.5, 1] for stage 2.
"""

from typing import List, Optional, Sequence, Tuple
from dataclasses import dataclass, replace
import logging

import numpy as np

from rle_core.config import (
    ROBUST_ESTIMATOR_CONFIG,
    SEQUENTIAL_ESTIMATOR_CONFIG,
    SOLVER_CONFIG,
)
from rle_core.proto.reading import (
    Reading,
    ReadingKind,
    ranging_reading,
    readings_dims,
    readings_kind,
    rssi_reading,
)
from rle_core.proto.estimated_source import EstimatedRadioSource, InliersData
from rle_core.localization.errors import LockedError, NotReadyError, RobustEstimatorError
from rle_core.localization.consensus import RobustMethod
from rle_core.localization.source_solver import min_readings
from rle_core.localization.robust_estimator import (
    _VALIDATORS,
    _Setting,
    RobustEstimatorConfig,
    RobustEstimatorListener,
    RobustRadioSourceEstimator,
)
from rle_core.metrics import get_metrics

logger = logging.getLogger(__name__)


_SHARED_SETTINGS = (
    'confidence',
    'max_iterations',
    'progress_delta',
    'stop_threshold',
    'refine_result',
    'keep_covariance',
    'compute_and_keep_inliers',
    'compute_and_keep_residuals',
    'estimate_transmitted_power',
    'estimate_path_loss',
    'initial_position',
    'initial_transmitted_power_dbm',
    'initial_path_loss_exponent',
)

_SEQUENTIAL_VALIDATORS = {
    'ranging_method': RobustMethod,
    'rssi_method': RobustMethod,
    'ranging_threshold': _VALIDATORS['threshold'],
    'rssi_threshold': _VALIDATORS['threshold'],
}
_SEQUENTIAL_VALIDATORS.update({name: _VALIDATORS[name] for name in _SHARED_SETTINGS})


@dataclass
class SequentialEstimatorConfig:
    """
    Configuration for sequential (ranging, then RSSI) estimation.

    Attributes:
        ranging_method: Consensus method of the position stage
        rssi_method: Consensus method of the power / path-loss stage
        ranging_threshold: Inlier threshold of the position stage (m)
        rssi_threshold: Inlier threshold of the power / path-loss stage (dB)
        confidence: Confidence of both stages
        max_iterations: Iteration bound of each stage
        progress_delta: Minimum progress change between progress callbacks
        stop_threshold: LMedS/PROMedS early-stop threshold of both stages
        refine_result: Refine each stage on its inliers
        keep_covariance: Keep covariance of the refined stages
        compute_and_keep_inliers: Attach the position stage inlier mask
        compute_and_keep_residuals: Attach the position stage residuals
        estimate_transmitted_power: Transmitted power is an unknown
        estimate_path_loss: Path-loss exponent is an unknown
        initial_position: Initial position guess of the position stage
        initial_transmitted_power_dbm: Initial/fixed transmitted power (dBm)
        initial_path_loss_exponent: Initial/fixed path-loss exponent
    """

    ranging_method: RobustMethod = RobustMethod(SEQUENTIAL_ESTIMATOR_CONFIG["ranging_method"])
    rssi_method: RobustMethod = RobustMethod(SEQUENTIAL_ESTIMATOR_CONFIG["rssi_method"])
    ranging_threshold: float = SEQUENTIAL_ESTIMATOR_CONFIG["ranging_threshold"]
    rssi_threshold: float = SEQUENTIAL_ESTIMATOR_CONFIG["rssi_threshold"]
    confidence: float = ROBUST_ESTIMATOR_CONFIG["confidence"]
    max_iterations: int = ROBUST_ESTIMATOR_CONFIG["max_iterations"]
    progress_delta: float = ROBUST_ESTIMATOR_CONFIG["progress_delta"]
    stop_threshold: float = ROBUST_ESTIMATOR_CONFIG["stop_threshold"]
    refine_result: bool = ROBUST_ESTIMATOR_CONFIG["refine_result"]
    keep_covariance: bool = ROBUST_ESTIMATOR_CONFIG["keep_covariance"]
    compute_and_keep_inliers: bool = ROBUST_ESTIMATOR_CONFIG["compute_and_keep_inliers"]
    compute_and_keep_residuals: bool = ROBUST_ESTIMATOR_CONFIG["compute_and_keep_residuals"]
    estimate_transmitted_power: bool = SOLVER_CONFIG["estimate_transmitted_power"]
    estimate_path_loss: bool = SOLVER_CONFIG["estimate_path_loss"]
    initial_position: Optional[Tuple[float, ...]] = None
    initial_transmitted_power_dbm: Optional[float] = None
    initial_path_loss_exponent: float = SOLVER_CONFIG["initial_path_loss_exponent"]

    def __post_init__(self):
        """Validate configuration."""
        for name, validator in _SEQUENTIAL_VALIDATORS.items():
            setattr(self, name, validator(getattr(self, name)))


class _StageListener(RobustEstimatorListener):
    """Forward iteration and progress of one stage to the sequential listener."""

    def __init__(self, owner: "SequentialRobustRadioSourceEstimator", offset: float, scale: float):
        self.owner = owner
        self.offset = offset
        self.scale = scale

    def on_estimate_next_iteration(self, estimator, iteration: int):
        self.owner.listener.on_estimate_next_iteration(self.owner, iteration)

    def on_estimate_progress_change(self, estimator, progress: float):
        self.owner.listener.on_estimate_progress_change(
            self.owner, self.offset + self.scale * progress
        )


class SequentialRobustRadioSourceEstimator:
    """
    Robust position from distances, then power / path loss from RSSI.

    Same lock, readiness and listener behaviour as RobustRadioSourceEstimator.
    Readings must all carry both a distance and an RSSI.
    """

    ranging_method = _Setting(_SEQUENTIAL_VALIDATORS['ranging_method'])
    rssi_method = _Setting(_SEQUENTIAL_VALIDATORS['rssi_method'])
    ranging_threshold = _Setting(_SEQUENTIAL_VALIDATORS['ranging_threshold'])
    rssi_threshold = _Setting(_SEQUENTIAL_VALIDATORS['rssi_threshold'])
    confidence = _Setting(_VALIDATORS['confidence'])
    max_iterations = _Setting(_VALIDATORS['max_iterations'])
    progress_delta = _Setting(_VALIDATORS['progress_delta'])
    stop_threshold = _Setting(_VALIDATORS['stop_threshold'])
    refine_result = _Setting(_VALIDATORS['refine_result'])
    keep_covariance = _Setting(_VALIDATORS['keep_covariance'])
    compute_and_keep_inliers = _Setting(_VALIDATORS['compute_and_keep_inliers'])
    compute_and_keep_residuals = _Setting(_VALIDATORS['compute_and_keep_residuals'])
    estimate_transmitted_power = _Setting(_VALIDATORS['estimate_transmitted_power'])
    estimate_path_loss = _Setting(_VALIDATORS['estimate_path_loss'])
    initial_position = _Setting(_VALIDATORS['initial_position'])
    initial_transmitted_power_dbm = _Setting(_VALIDATORS['initial_transmitted_power_dbm'])
    initial_path_loss_exponent = _Setting(_VALIDATORS['initial_path_loss_exponent'])

    def __init__(
        self,
        readings: Optional[Sequence[Reading]] = None,
        listener: Optional[RobustEstimatorListener] = None,
        config: Optional[SequentialEstimatorConfig] = None,
        quality_scores: Optional[Sequence[float]] = None,
        seed: Optional[int] = None,
    ):
        """
        Initialize sequential estimator.

        Args:
            readings: Ranging-and-RSSI readings of a single radio source
            listener: Observer of estimation runs
            config: Estimator configuration (uses defaults if None)
            quality_scores: Per-reading quality used by PROSAC / PROMedS stages
            seed: Random generator seed for reproducible sampling
        """
        self._config = replace(config) if config is not None else SequentialEstimatorConfig()
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
    def config(self) -> SequentialEstimatorConfig:
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
        if readings_kind(readings) != ReadingKind.RANGING_AND_RSSI:
            raise ValueError("Readings must all carry a distance and an RSSI, in one dimension")

        required = min_readings(readings_dims(readings))
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
        """Per-reading quality scores (PROSAC and PROMedS stages)."""
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
    def dims(self) -> Optional[int]:
        """Position dimension of the current readings."""
        return readings_dims(self._readings)

    @property
    def min_readings(self) -> Optional[int]:
        """Minimum readings: those of the position stage."""
        dims = self.dims
        return None if dims is None else min_readings(dims)

    def _estimates_rssi_parameters(self) -> bool:
        return self._config.estimate_transmitted_power or self._config.estimate_path_loss

    def is_ready(self) -> bool:
        """
        Check whether estimate() can run with the current configuration.

        Both stages must be ready; without power estimation a fixed
        transmitted power is required.
        """
        if self._readings is None:
            return False

        config = self._config
        if not config.estimate_transmitted_power and config.initial_transmitted_power_dbm is None:
            return False

        if not self._ranging_stage(seed=None).is_ready():
            return False

        if self._estimates_rssi_parameters():
            placeholder = config.initial_position or (0.0,) * self.dims
            return self._rssi_stage(placeholder, seed=None).is_ready()

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
    def estimated_transmitted_power_dbm(self) -> Optional[float]:
        return self._result.transmitted_power_dbm if self._result else None

    @property
    def estimated_path_loss_exponent(self) -> Optional[float]:
        return self._result.path_loss_exponent if self._result else None

    @property
    def covariance(self) -> Optional[np.ndarray]:
        return self._result.covariance if self._result else None

    @property
    def inliers_data(self) -> Optional[InliersData]:
        """Inlier data of the position stage, if kept."""
        return self._result.inliers_data if self._result else None

    # -------------------------------------------------------------------------
    # Estimation
    # -------------------------------------------------------------------------

    def estimate(self) -> EstimatedRadioSource:
        """
        Run both stages.

        Returns:
            EstimatedRadioSource with the stage 1 position and the stage 2
            power / path-loss exponent

        Raises:
            LockedError: Estimation already running (e.g. called from a listener)
            NotReadyError: Readings or configuration insufficient
            RobustEstimatorError: Either stage found no consensus or failed to refine
        """
        self._check_unlocked()
        if not self.is_ready():
            self.metrics.increment_drop('not_ready')
            raise NotReadyError("sequential estimator is not ready")

        self.metrics.increment('sequential_estimate_attempts')

        try:
            self._locked = True
            self._result = None
            result = self._run()
            self.metrics.increment('sequential_estimate_success')
            return result
        except RobustEstimatorError:
            self.metrics.increment('sequential_estimate_failed')
            raise
        finally:
            self._locked = False

    def _run(self) -> EstimatedRadioSource:
        """Run the position stage, then the RSSI stage; runs locked."""
        config = self._config
        two_stages = self._estimates_rssi_parameters()

        if self._listener is not None:
            self._listener.on_estimate_start(self)

        ranging = self._ranging_stage(self._stage_seed(), two_stages).estimate()

        power = config.initial_transmitted_power_dbm
        exponent = config.initial_path_loss_exponent
        power_variance = None
        exponent_variance = None
        covariance = ranging.covariance
        chi_sq = ranging.chi_sq
        method = ranging.method

        if two_stages:
            rssi = self._rssi_stage(ranging.position, self._stage_seed(), two_stages).estimate()
            power = rssi.transmitted_power_dbm
            exponent = rssi.path_loss_exponent
            power_variance = rssi.transmitted_power_variance
            exponent_variance = rssi.path_loss_exponent_variance
            covariance = self._joint_covariance(ranging.position_covariance, rssi.covariance)
            chi_sq = rssi.chi_sq
            method = f"{ranging.method}+{rssi.method}"

        self._result = EstimatedRadioSource(
            source=ranging.source,
            position=ranging.position,
            transmitted_power_dbm=power,
            path_loss_exponent=exponent,
            position_covariance=ranging.position_covariance,
            transmitted_power_variance=power_variance,
            path_loss_exponent_variance=exponent_variance,
            covariance=covariance,
            inliers_data=ranging.inliers_data,
            chi_sq=chi_sq,
            num_readings_used=ranging.num_readings_used,
            method=method,
        )

        logger.info(f"Sequential estimate ({method}): position {ranging.position}, "
                    f"Pt={power:.2f} dBm, n={exponent:.2f}")

        if self._listener is not None:
            self._listener.on_estimate_end(self)

        return self._result

    def _stage_seed(self) -> int:
        return int(self._rng.integers(2 ** 32))

    def _stage_listener(self, offset: float, scale: float) -> Optional[RobustEstimatorListener]:
        if self._listener is None:
            return None
        return _StageListener(self, offset, scale)

    def _stage_config(self, two_stages: bool, **settings) -> RobustEstimatorConfig:
        """Settings shared by both stages plus per-stage overrides."""
        config = self._config
        progress_delta = min(1.0, 2.0 * config.progress_delta) if two_stages else config.progress_delta
        return RobustEstimatorConfig(
            confidence=config.confidence,
            max_iterations=config.max_iterations,
            progress_delta=progress_delta,
            stop_threshold=config.stop_threshold,
            refine_result=config.refine_result,
            keep_covariance=config.keep_covariance,
            initial_path_loss_exponent=config.initial_path_loss_exponent,
            **settings,
        )

    def _ranging_stage(self, seed: Optional[int], two_stages: bool = False) -> RobustRadioSourceEstimator:
        """Robust position estimator over the distances."""
        config = self._config
        readings = [
            ranging_reading(r.source, r.position, r.distance_m, r.distance_std_m)
            for r in self._readings
        ]
        stage_config = self._stage_config(
            two_stages,
            method=config.ranging_method,
            threshold=config.ranging_threshold,
            compute_and_keep_inliers=config.compute_and_keep_inliers,
            compute_and_keep_residuals=config.compute_and_keep_residuals,
            estimate_transmitted_power=False,
            estimate_path_loss=False,
            initial_position=config.initial_position,
        )
        return RobustRadioSourceEstimator(
            readings,
            listener=self._stage_listener(0.0, 0.5 if two_stages else 1.0),
            config=stage_config,
            quality_scores=self._quality_scores,
            seed=seed,
        )

    def _rssi_stage(
        self,
        position: Sequence[float],
        seed: Optional[int],
        two_stages: bool = True,
    ) -> RobustRadioSourceEstimator:
        """Robust power / path-loss estimator over the RSSI values at a fixed position."""
        config = self._config
        readings = [
            rssi_reading(r.source, r.position, r.rssi_dbm, r.rssi_std_db)
            for r in self._readings
        ]
        stage_config = self._stage_config(
            two_stages,
            method=config.rssi_method,
            threshold=config.rssi_threshold,
            estimate_position=False,
            estimate_transmitted_power=config.estimate_transmitted_power,
            estimate_path_loss=config.estimate_path_loss,
            initial_position=tuple(position),
            initial_transmitted_power_dbm=config.initial_transmitted_power_dbm,
        )
        return RobustRadioSourceEstimator(
            readings,
            listener=self._stage_listener(0.5, 0.5),
            config=stage_config,
            quality_scores=self._quality_scores,
            seed=seed,
        )

    @staticmethod
    def _joint_covariance(
        position_covariance: Optional[np.ndarray],
        rssi_covariance: Optional[np.ndarray],
    ) -> Optional[np.ndarray]:
        """Block-diagonal [position, power?, exponent?] covariance of both stages."""
        if position_covariance is None or rssi_covariance is None:
            return None
        dims = position_covariance.shape[0]
        size = dims + rssi_covariance.shape[0]
        covariance = np.zeros((size, size))
        covariance[:dims, :dims] = position_covariance
        covariance[dims:, dims:] = rssi_covariance
        return covariance
