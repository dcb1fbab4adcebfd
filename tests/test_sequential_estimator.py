"""
Unit tests for the sequential (ranging, then RSSI) robust estimator.

Tests cover:
- Configuration validation and reading kind
- Readiness rules
- Recovery with outliers on both channels
- Position-only runs without the RSSI stage
- Joint covariance and inlier bookkeeping
- Listener forwarding and locking
- Failure modes
"""

from typing import List

import numpy as np
import pytest

from rle_core.proto import ReadingKind
from rle_core.localization import (
    LockedError,
    NotReadyError,
    RobustEstimatorError,
    RobustEstimatorListener,
    RobustMethod,
    SequentialEstimatorConfig,
    SequentialRobustRadioSourceEstimator,
)
from rle_core.metrics import get_metrics

from conftest import TX_POWER_DBM, make_readings


PATH_LOSS_EXPONENT = 2.5


def make_combined(
    seed: int,
    num_readings: int = 60,
    outlier_ratio: float = 0.2,
    distance_noise: float = 0.0,
    rssi_noise: float = 0.0,
):
    """
    Combined readings with independent outliers on each channel.

    Returns:
        (readings, source_position, distance_outliers mask)
    """
    rng = np.random.default_rng(seed)
    positions = [tuple(p) for p in rng.uniform(-50.0, 50.0, size=(num_readings, 3))]
    source_position = tuple(rng.uniform(-20.0, 20.0, size=3))

    num_outliers = int(round(outlier_ratio * num_readings))
    distance_outliers = np.zeros(num_readings, dtype=bool)
    distance_outliers[rng.choice(num_readings, size=num_outliers, replace=False)] = True
    rssi_outliers = np.zeros(num_readings, dtype=bool)
    rssi_outliers[rng.choice(num_readings, size=num_outliers, replace=False)] = True

    distance_errors = (rng.normal(0.0, distance_noise, size=num_readings)
                       + np.where(distance_outliers, rng.uniform(5.0, 20.0, size=num_readings), 0.0))
    signs = rng.choice([-1.0, 1.0], size=num_readings)
    rssi_errors = (rng.normal(0.0, rssi_noise, size=num_readings)
                   + np.where(rssi_outliers, signs * rng.uniform(5.0, 15.0, size=num_readings), 0.0))

    readings = make_readings(
        ReadingKind.RANGING_AND_RSSI, positions, source_position,
        TX_POWER_DBM, PATH_LOSS_EXPONENT,
        distance_errors=distance_errors, rssi_errors=rssi_errors,
    )
    return readings, source_position, distance_outliers


class RecordingListener(RobustEstimatorListener):
    """Listener recording every notification and the estimator it got."""

    def __init__(self):
        self.starts = 0
        self.ends = 0
        self.iterations: List[int] = []
        self.progress: List[float] = []
        self.estimators = set()

    def on_estimate_start(self, estimator):
        self.starts += 1
        self.estimators.add(id(estimator))

    def on_estimate_end(self, estimator):
        self.ends += 1

    def on_estimate_next_iteration(self, estimator, iteration):
        self.iterations.append(iteration)
        self.estimators.add(id(estimator))

    def on_estimate_progress_change(self, estimator, progress):
        self.progress.append(progress)


# =============================================================================
# Test Configuration
# =============================================================================


class TestSequentialConfig:
    """Tests for configuration and reading validation."""

    def test_defaults(self):
        """Test default configuration."""
        config = SequentialEstimatorConfig()

        assert config.ranging_method == RobustMethod.RANSAC
        assert config.rssi_method == RobustMethod.RANSAC
        assert config.ranging_threshold == 0.1
        assert config.rssi_threshold == 0.1
        assert config.estimate_transmitted_power
        assert not config.estimate_path_loss

    @pytest.mark.parametrize("field, value", [
        ('ranging_threshold', 0.0),
        ('rssi_threshold', -1.0),
        ('ranging_method', "HOUGH"),
        ('confidence', 1.0),
        ('stop_threshold', 0.0),
        ('initial_position', (1.0,)),
    ])
    def test_invalid_values_raise(self, field, value):
        """Test invalid settings raise ValueError."""
        with pytest.raises(ValueError):
            SequentialEstimatorConfig(**{field: value})

    def test_methods_from_strings(self):
        """Test stage methods accept their string values."""
        config = SequentialEstimatorConfig(ranging_method="LMedS", rssi_method="MSAC")

        assert config.ranging_method == RobustMethod.LMEDS
        assert config.rssi_method == RobustMethod.MSAC

    def test_readings_must_be_combined(self, cube_positions, source_position_3d):
        """Test single-channel readings are rejected."""
        estimator = SequentialRobustRadioSourceEstimator()

        for kind in (ReadingKind.RANGING, ReadingKind.RSSI):
            with pytest.raises(ValueError):
                estimator.readings = make_readings(kind, cube_positions, source_position_3d)

        estimator.readings = make_readings(ReadingKind.RANGING_AND_RSSI, cube_positions,
                                           source_position_3d)
        assert estimator.dims == 3
        assert estimator.min_readings == 4

    def test_too_few_readings_rejected(self, cube_positions, source_position_3d):
        """Test fewer readings than the position stage needs are rejected."""
        readings = make_readings(ReadingKind.RANGING_AND_RSSI, cube_positions,
                                 source_position_3d)

        with pytest.raises(ValueError):
            SequentialRobustRadioSourceEstimator(readings[:3])

    def test_setters_validate(self):
        """Test setters reject invalid values and keep the old ones."""
        estimator = SequentialRobustRadioSourceEstimator()
        estimator.rssi_threshold = 2.0

        with pytest.raises(ValueError):
            estimator.rssi_threshold = 0.0

        assert estimator.rssi_threshold == 2.0
        assert estimator.config.rssi_threshold == 2.0


# =============================================================================
# Test Readiness
# =============================================================================


class TestSequentialReadiness:
    """Tests for is_ready() and NotReadyError."""

    def test_not_ready_without_readings(self):
        """Test estimator without readings is not ready."""
        estimator = SequentialRobustRadioSourceEstimator()

        assert not estimator.is_ready()
        with pytest.raises(NotReadyError):
            estimator.estimate()

        assert get_metrics().get_drop_count('not_ready') == 1

    def test_fixed_power_needs_value(self, cube_positions, source_position_3d):
        """Test fixed transmitted power needs the power value."""
        readings = make_readings(ReadingKind.RANGING_AND_RSSI, cube_positions,
                                 source_position_3d)
        estimator = SequentialRobustRadioSourceEstimator(readings, config=SequentialEstimatorConfig(
            estimate_transmitted_power=False,
        ))

        assert not estimator.is_ready()
        estimator.initial_transmitted_power_dbm = TX_POWER_DBM
        assert estimator.is_ready()

    def test_quality_scored_stage_needs_scores(self, cube_positions, source_position_3d):
        """Test a PROMedS stage is ready only with one score per reading."""
        readings = make_readings(ReadingKind.RANGING_AND_RSSI, cube_positions,
                                 source_position_3d)
        estimator = SequentialRobustRadioSourceEstimator(readings, config=SequentialEstimatorConfig(
            rssi_method=RobustMethod.PROMEDS,
        ))

        assert not estimator.is_ready()
        estimator.quality_scores = np.ones(len(readings))
        assert estimator.is_ready()


# =============================================================================
# Test Recovery
# =============================================================================


class TestSequentialRecovery:
    """Tests for two-stage estimation with outliers."""

    def test_position_power_and_path_loss(self):
        """Test every parameter is recovered with outliers on both channels."""
        readings, source_position, _ = make_combined(seed=3)
        estimator = SequentialRobustRadioSourceEstimator(
            readings, config=SequentialEstimatorConfig(estimate_path_loss=True), seed=0,
        )

        estimate = estimator.estimate()

        np.testing.assert_allclose(estimate.position, source_position, atol=1e-4)
        assert estimate.transmitted_power_dbm == pytest.approx(TX_POWER_DBM, abs=1e-3)
        assert estimate.path_loss_exponent == pytest.approx(PATH_LOSS_EXPONENT, abs=1e-3)
        assert estimate.method == "RANSAC+RANSAC"
        assert estimator.result is estimate
        assert estimator.estimated_position == estimate.position
        assert estimator.estimated_transmitted_power_dbm == estimate.transmitted_power_dbm
        assert estimator.estimated_path_loss_exponent == estimate.path_loss_exponent

    def test_median_methods_with_quality_scores(self):
        """Test PROMedS then LMedS stages recover the source."""
        readings, source_position, distance_outliers = make_combined(seed=4)
        rng = np.random.default_rng(4)
        quality_scores = np.where(distance_outliers, rng.uniform(0.0, 0.5, size=len(readings)),
                                  rng.uniform(1.0, 2.0, size=len(readings)))
        estimator = SequentialRobustRadioSourceEstimator(
            readings,
            config=SequentialEstimatorConfig(ranging_method=RobustMethod.PROMEDS,
                                             rssi_method=RobustMethod.LMEDS),
            quality_scores=quality_scores,
            seed=1,
        )

        estimate = estimator.estimate()

        np.testing.assert_allclose(estimate.position, source_position, atol=1e-4)
        assert estimate.transmitted_power_dbm == pytest.approx(TX_POWER_DBM, abs=1e-3)
        assert estimate.method == "PROMedS+LMedS"

    def test_position_only_skips_rssi_stage(self):
        """Test fixed power and exponent leave only the position stage."""
        readings, source_position, _ = make_combined(seed=5)
        estimator = SequentialRobustRadioSourceEstimator(readings, config=SequentialEstimatorConfig(
            estimate_transmitted_power=False,
            initial_transmitted_power_dbm=12.0,
            initial_path_loss_exponent=3.0,
        ))

        estimate = estimator.estimate()

        np.testing.assert_allclose(estimate.position, source_position, atol=1e-4)
        assert estimate.transmitted_power_dbm == 12.0
        assert estimate.path_loss_exponent == 3.0
        assert estimate.transmitted_power_variance is None
        assert estimate.covariance.shape == (3, 3)
        assert estimate.method == "RANSAC"

    def test_same_seed_same_result(self):
        """Test stage sampling is reproducible with a seed."""
        readings, _, _ = make_combined(seed=6)
        config = SequentialEstimatorConfig(refine_result=False)

        first = SequentialRobustRadioSourceEstimator(readings, config=config, seed=9).estimate()
        second = SequentialRobustRadioSourceEstimator(readings, config=config, seed=9).estimate()

        assert first.position == second.position
        assert first.transmitted_power_dbm == second.transmitted_power_dbm


# =============================================================================
# Test Result Bookkeeping
# =============================================================================


class TestSequentialResult:
    """Tests for covariance, inliers and metrics."""

    def test_joint_covariance_is_block_diagonal(self):
        """Test position block from distances, power/exponent block from RSSI."""
        readings, _, _ = make_combined(seed=7, distance_noise=0.01, rssi_noise=0.01)
        estimator = SequentialRobustRadioSourceEstimator(readings, config=SequentialEstimatorConfig(
            estimate_path_loss=True,
        ))

        estimate = estimator.estimate()
        covariance = estimator.covariance

        assert covariance.shape == (5, 5)
        np.testing.assert_array_equal(covariance[:3, :3], estimate.position_covariance)
        np.testing.assert_array_equal(covariance[:3, 3:], 0.0)
        np.testing.assert_array_equal(covariance[3:, :3], 0.0)
        assert covariance[3, 3] == pytest.approx(estimate.transmitted_power_variance)
        assert covariance[4, 4] == pytest.approx(estimate.path_loss_exponent_variance)
        assert np.all(np.diag(covariance) > 0)

    def test_no_covariance_without_refinement(self):
        """Test unrefined stages leave the joint covariance empty."""
        readings, _, _ = make_combined(seed=8)
        estimator = SequentialRobustRadioSourceEstimator(readings, config=SequentialEstimatorConfig(
            refine_result=False,
        ))

        estimate = estimator.estimate()

        assert not estimate.has_covariance
        assert estimator.covariance is None

    def test_inliers_from_position_stage(self):
        """Test inlier mask flags the distance outliers."""
        readings, _, distance_outliers = make_combined(seed=9)
        estimator = SequentialRobustRadioSourceEstimator(readings, config=SequentialEstimatorConfig(
            compute_and_keep_inliers=True,
        ))

        estimator.estimate()
        inliers = estimator.inliers_data.inliers

        assert len(inliers) == len(readings)
        assert not np.any(inliers[distance_outliers])
        assert np.all(inliers[~distance_outliers])

    def test_success_metrics(self):
        """Test one sequential run records two robust runs."""
        readings, _, _ = make_combined(seed=10)
        SequentialRobustRadioSourceEstimator(readings).estimate()

        metrics = get_metrics()
        assert metrics.get_counter('sequential_estimate_attempts') == 1
        assert metrics.get_counter('sequential_estimate_success') == 1
        assert metrics.get_counter('robust_estimate_success') == 2


# =============================================================================
# Test Listener and Locking
# =============================================================================


class TestSequentialListener:
    """Tests for forwarded notifications and locking."""

    def test_notifications(self):
        """Test start/end once and progress spanning both stages."""
        readings, _, _ = make_combined(seed=11)
        listener = RecordingListener()
        estimator = SequentialRobustRadioSourceEstimator(
            readings, listener=listener,
            config=SequentialEstimatorConfig(progress_delta=0.01),
        )

        estimator.estimate()

        assert listener.starts == 1
        assert listener.ends == 1
        assert listener.estimators == {id(estimator)}
        assert listener.iterations[0] == 1
        assert listener.progress == sorted(listener.progress)
        assert all(0.0 < p <= 1.0 for p in listener.progress)
        assert listener.progress[-1] > 0.5
        assert not estimator.is_locked()

    def test_locked_during_estimation(self):
        """Test reconfiguration and re-entry are rejected from callbacks."""
        readings, _, _ = make_combined(seed=12)
        errors = []

        class ReconfiguringListener(RobustEstimatorListener):
            def on_estimate_next_iteration(self, est, iteration):
                for action in (
                    lambda: setattr(est, 'rssi_threshold', 1.0),
                    lambda: setattr(est, 'readings', readings),
                    lambda: est.reseed(3),
                    est.estimate,
                ):
                    try:
                        action()
                    except LockedError as e:
                        errors.append(e)

        estimator = SequentialRobustRadioSourceEstimator(readings, listener=ReconfiguringListener())
        estimator.estimate()

        assert errors
        assert len(errors) % 4 == 0
        assert estimator.rssi_threshold == 0.1
        assert not estimator.is_locked()


# =============================================================================
# Test Failures
# =============================================================================


class TestSequentialFailures:
    """Tests for stage failures."""

    def test_position_stage_without_consensus(self):
        """Test a failing position stage surfaces and unlocks the estimator."""
        rng = np.random.default_rng(3)
        readings = make_readings(
            ReadingKind.RANGING_AND_RSSI,
            [tuple(p) for p in rng.uniform(-50, 50, size=(10, 3))],
            (0.0, 0.0, 0.0),
            distance_errors=rng.uniform(-20, 20, size=10),
        )
        estimator = SequentialRobustRadioSourceEstimator(
            readings,
            config=SequentialEstimatorConfig(ranging_threshold=1e-9, max_iterations=50),
            seed=0,
        )

        with pytest.raises(RobustEstimatorError, match="no consensus"):
            estimator.estimate()

        metrics = get_metrics()
        assert estimator.result is None
        assert not estimator.is_locked()
        assert metrics.get_counter('sequential_estimate_failed') == 1
        assert metrics.get_drop_count('no_consensus') == 1
