"""
Radio Source Solver (Non-Robust Weighted Least Squares).

Estimates the position of a radio source, and optionally its transmitted
power and path-loss exponent, from every reading it is given. Outliers are
not handled here; see robust_estimator for the consensus wrapper.

Residual model per reading i (predicted - observed):

    ranging:  |p - x_i| - d_i                                     weight 1/σd²
    RSSI:     n·kdB(f) + Pt - 5·n·log10(|p - x_i|²) - rssi_i       weight 1/σr²

Readings carrying both channels contribute both rows.

Unknowns: [position... (if enabled), Pt (if enabled), n (if enabled)].
Disabled parameters are held at their configured initial values.
"""

from typing import List, Optional, Sequence, Tuple
from dataclasses import dataclass
import logging
import math

import numpy as np

from rle_core.config import SOLVER_CONFIG
from rle_core.proto.reading import Reading, ReadingKind, readings_kind, readings_dims
from rle_core.proto.estimated_source import EstimatedRadioSource
from rle_core.localization.errors import EstimationError, NotReadyError
from rle_core.localization.lm_fitter import levenberg_marquardt
from rle_core.localization.path_loss import wavelength_constant_db
from rle_core.metrics import get_metrics

logger = logging.getLogger(__name__)

LN10 = math.log(10.0)


@dataclass
class RadioSourceSolverConfig:
    """
    Configuration for the radio source solver.

    Attributes:
        estimate_position: If False, initial_position is held fixed
        estimate_transmitted_power: If True, Pt is an unknown
        estimate_path_loss: If True, the path-loss exponent is an unknown
        initial_position: Initial position guess (centroid of readings if None)
        initial_transmitted_power_dbm: Initial/fixed Pt (mean RSSI if None)
        initial_path_loss_exponent: Initial/fixed path-loss exponent
        keep_covariance: If True, compute the parameter covariance
        max_iterations: Maximum Levenberg-Marquardt iterations
        convergence_tol: Relative step size tolerance
    """

    estimate_position: bool = SOLVER_CONFIG["estimate_position"]
    estimate_transmitted_power: bool = SOLVER_CONFIG["estimate_transmitted_power"]
    estimate_path_loss: bool = SOLVER_CONFIG["estimate_path_loss"]
    initial_position: Optional[Tuple[float, ...]] = None
    initial_transmitted_power_dbm: Optional[float] = None
    initial_path_loss_exponent: float = SOLVER_CONFIG["initial_path_loss_exponent"]
    keep_covariance: bool = SOLVER_CONFIG["keep_covariance"]
    max_iterations: int = SOLVER_CONFIG["max_iterations"]
    convergence_tol: float = SOLVER_CONFIG["convergence_tol"]

    def __post_init__(self):
        """Validate configuration."""
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1: {self.max_iterations}")
        if not self.convergence_tol > 0:
            raise ValueError(f"convergence_tol must be positive: {self.convergence_tol}")
        if not self.initial_path_loss_exponent > 0:
            raise ValueError(
                f"Path-loss exponent must be positive: {self.initial_path_loss_exponent}"
            )
        if self.initial_position is not None:
            self.initial_position = tuple(float(c) for c in self.initial_position)
            if len(self.initial_position) not in (2, 3):
                raise ValueError(f"Initial position must be 2D or 3D: {self.initial_position}")


def min_readings(
    dims: int,
    estimate_transmitted_power: bool = False,
    estimate_path_loss: bool = False,
    estimate_position: bool = True,
) -> int:
    """
    Minimum number of readings needed to solve the enabled unknowns.

    dims + 1, plus one for each of transmitted power / path loss if enabled
    (3D: 4, 5 or 6). With a fixed position only the enabled power / path-loss
    unknowns count, plus one.
    """
    count = dims + 1 if estimate_position else 1
    if estimate_transmitted_power:
        count += 1
    if estimate_path_loss:
        count += 1
    return count


class _ReadingArrays:
    """Readings stacked into arrays for vectorized residual evaluation."""

    def __init__(self, readings: Sequence[Reading]):
        self.positions = np.array([r.position for r in readings], dtype=float)
        self.has_ranging = readings[0].has_ranging
        self.has_rssi = readings[0].has_rssi

        if self.has_ranging:
            self.distances = np.array([r.distance_m for r in readings], dtype=float)
            self.distance_weights = np.array([r.distance_weight() for r in readings])
        if self.has_rssi:
            self.rssi = np.array([r.rssi_dbm for r in readings], dtype=float)
            self.rssi_weights = np.array([r.rssi_weight() for r in readings])
            self.kdb = np.array(
                [wavelength_constant_db(r.source.frequency_hz) for r in readings]
            )

    @property
    def weights(self) -> np.ndarray:
        """Weights in the row order used by the model."""
        parts = []
        if self.has_ranging:
            parts.append(self.distance_weights)
        if self.has_rssi:
            parts.append(self.rssi_weights)
        return np.concatenate(parts)


class RadioSourceSolver:
    """
    Solve radio source position (and optionally power / path loss).

    Usage:
        solver = RadioSourceSolver(RadioSourceSolverConfig(
            estimate_transmitted_power=True,
            estimate_path_loss=False,
        ))

        if solver.is_ready(readings):
            estimate = solver.solve(readings)
            print(f"Source position: {estimate.position}")

    The solver is stateless apart from its configuration: solve() is a pure
    function of the readings and the configured initial values.
    """

    def __init__(self, config: Optional[RadioSourceSolverConfig] = None):
        """
        Initialize radio source solver.

        Args:
            config: Solver configuration (uses defaults if None)
        """
        self.config = config or RadioSourceSolverConfig()
        self.metrics = get_metrics()

    def min_readings(self, dims: int) -> int:
        """Minimum readings for the configured unknowns."""
        return min_readings(dims, self.config.estimate_transmitted_power,
                            self.config.estimate_path_loss, self.config.estimate_position)

    def num_parameters(self, dims: int) -> int:
        """Number of unknowns for the configured flags."""
        return self.min_readings(dims) - 1

    def is_ready(self, readings: Optional[Sequence[Reading]]) -> bool:
        """
        Check whether readings and configuration allow a solve.

        Requires a consistent reading kind, enough readings, no power/path-loss
        estimation on distance-only readings (unobservable), a fixed
        transmitted power when RSSI is used but power is not estimated, and
        a fixed position when position is not estimated.
        """
        kind = readings_kind(readings)
        if kind is None:
            return False

        dims = readings_dims(readings)
        config = self.config

        if kind == ReadingKind.RANGING and (
            config.estimate_transmitted_power or config.estimate_path_loss
            or not config.estimate_position
        ):
            return False

        if not config.estimate_position and config.initial_position is None:
            return False

        if self.num_parameters(dims) == 0:
            return False

        if (kind != ReadingKind.RANGING and not config.estimate_transmitted_power
                and config.initial_transmitted_power_dbm is None):
            return False

        if config.initial_position is not None and len(config.initial_position) != dims:
            return False

        return len(readings) >= self.min_readings(dims)

    def solve(self, readings: Sequence[Reading]) -> EstimatedRadioSource:
        """
        Solve radio source parameters from readings.

        Args:
            readings: Readings of a single radio source

        Returns:
            EstimatedRadioSource (with covariance if keep_covariance)

        Raises:
            NotReadyError: Readings/configuration insufficient (see is_ready)
            EstimationError: Fit failed numerically
        """
        self.metrics.increment('source_solve_attempts')

        if not self.is_ready(readings):
            self.metrics.increment_drop('not_ready')
            raise NotReadyError(
                f"solver not ready for {len(readings) if readings else 0} readings"
            )

        config = self.config
        dims = readings_dims(readings)
        arrays = _ReadingArrays(readings)

        x0 = self._initial_parameters(readings, arrays, dims)
        fixed = (
            None if config.estimate_position else np.array(config.initial_position, dtype=float),
            self._initial_power(arrays),
            config.initial_path_loss_exponent,
        )

        model = self._build_model(arrays, dims, fixed)

        try:
            fit = levenberg_marquardt(
                model, x0, arrays.weights,
                max_iterations=config.max_iterations,
                tol=config.convergence_tol,
            )
        except EstimationError:
            self.metrics.increment_drop('solver_failed')
            raise

        position, power, exponent = self._split_parameters(fit.x, dims, fixed)

        covariance = None
        position_covariance = None
        power_variance = None
        exponent_variance = None
        if config.keep_covariance:
            # A-posteriori variance factor when redundancy allows it
            dof = len(fit.residuals) - len(fit.x)
            sigma0_sq = fit.chi_sq / dof if dof > 0 else 1.0
            covariance = sigma0_sq * fit.normal_inverse

            index = 0
            if config.estimate_position:
                position_covariance = covariance[:dims, :dims]
                index = dims
            if config.estimate_transmitted_power:
                power_variance = float(covariance[index, index])
                index += 1
            if config.estimate_path_loss:
                exponent_variance = float(covariance[index, index])

        self.metrics.increment('source_solve_success')
        self.metrics.record_histogram('source_solve_iterations', fit.iterations)
        self.metrics.record_histogram('source_solve_chi_sq', fit.chi_sq)

        logger.debug(f"Solved {len(readings)} readings in {fit.iterations} iterations "
                     f"(chi²={fit.chi_sq:.3g}, converged={fit.converged})")

        return EstimatedRadioSource(
            source=readings[0].source,
            position=tuple(position),
            transmitted_power_dbm=power,
            path_loss_exponent=exponent,
            position_covariance=position_covariance,
            transmitted_power_variance=power_variance,
            path_loss_exponent_variance=exponent_variance,
            covariance=covariance,
            chi_sq=fit.chi_sq,
            num_readings_used=len(readings),
        )

    def residuals(
        self,
        readings: Sequence[Reading],
        position: Sequence[float],
        transmitted_power_dbm: float,
        path_loss_exponent: float,
    ) -> np.ndarray:
        """
        Per-channel residuals of readings against a candidate solution.

        Args:
            readings: Readings to score (consistent kind)
            position: Candidate source position
            transmitted_power_dbm: Candidate transmitted power (dBm)
            path_loss_exponent: Candidate path-loss exponent

        Returns:
            Array of shape (n_readings, 2): [ranging residual (m), RSSI residual (dB)],
            NaN for channels a reading does not carry, ±inf where the candidate
            coincides with a reading position on the RSSI channel
        """
        arrays = _ReadingArrays(readings)
        diff = np.asarray(position, dtype=float) - arrays.positions
        sqr_distances = np.sum(diff ** 2, axis=1)

        result = np.full((len(readings), 2), np.nan)
        if arrays.has_ranging:
            result[:, 0] = np.sqrt(sqr_distances) - arrays.distances
        if arrays.has_rssi:
            with np.errstate(divide='ignore'):
                predicted = (path_loss_exponent * arrays.kdb + transmitted_power_dbm
                             - 5.0 * path_loss_exponent * np.log10(sqr_distances))
            result[:, 1] = predicted - arrays.rssi
        return result

    def _initial_power(self, arrays: _ReadingArrays) -> float:
        """Configured transmitted power, or mean RSSI as a first guess."""
        if self.config.initial_transmitted_power_dbm is not None:
            return float(self.config.initial_transmitted_power_dbm)
        if arrays.has_rssi:
            return float(np.mean(arrays.rssi))
        return 0.0

    def _initial_parameters(
        self,
        readings: Sequence[Reading],
        arrays: _ReadingArrays,
        dims: int,
    ) -> np.ndarray:
        """Build initial parameter vector [position?, power?, exponent?]."""
        params: List[float] = []
        if self.config.estimate_position:
            if self.config.initial_position is not None:
                position = np.array(self.config.initial_position, dtype=float)
            else:
                # Initial guess: centroid of reading positions
                position = np.mean(arrays.positions, axis=0)
            params.extend(position)
        if self.config.estimate_transmitted_power:
            params.append(self._initial_power(arrays))
        if self.config.estimate_path_loss:
            params.append(self.config.initial_path_loss_exponent)
        return np.array(params, dtype=float)

    def _split_parameters(
        self,
        x: np.ndarray,
        dims: int,
        fixed: Tuple[Optional[np.ndarray], float, float],
    ) -> Tuple[np.ndarray, float, float]:
        """Split parameter vector into position, power and exponent."""
        position, power, exponent = fixed
        index = 0
        if self.config.estimate_position:
            position = x[:dims]
            index = dims
        if self.config.estimate_transmitted_power:
            power = float(x[index])
            index += 1
        if self.config.estimate_path_loss:
            exponent = float(x[index])
        return position, power, exponent

    def _build_model(
        self,
        arrays: _ReadingArrays,
        dims: int,
        fixed: Tuple[Optional[np.ndarray], float, float],
    ):
        """Create the residual/Jacobian function for the fitter."""
        estimate_position = self.config.estimate_position
        estimate_power = self.config.estimate_transmitted_power
        estimate_exponent = self.config.estimate_path_loss
        n_params = self.num_parameters(dims)
        position_cols = dims if estimate_position else 0
        power_col = position_cols if estimate_power else None
        exponent_col = position_cols + int(estimate_power) if estimate_exponent else None

        def model(x: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
            position, power, exponent = self._split_parameters(x, dims, fixed)
            diff = position - arrays.positions
            sqr_distances = np.sum(diff ** 2, axis=1)

            residual_blocks = []
            jacobian_blocks = []

            if arrays.has_ranging:
                distances = np.sqrt(sqr_distances)
                jacobian = np.zeros((len(distances), n_params))
                if estimate_position:
                    # ∂r/∂p = (p - x_i) / |p - x_i| (zero at the reading itself)
                    nonzero = distances > 1e-12
                    jacobian[nonzero, :dims] = diff[nonzero] / distances[nonzero, None]
                residual_blocks.append(distances - arrays.distances)
                jacobian_blocks.append(jacobian)

            if arrays.has_rssi:
                with np.errstate(divide='ignore', invalid='ignore'):
                    log_sqr = np.log10(sqr_distances)
                    predicted = (exponent * arrays.kdb + power
                                 - 5.0 * exponent * log_sqr)
                    jacobian = np.zeros((len(sqr_distances), n_params))
                    if estimate_position:
                        # ∂Pr/∂p = -10·n·(p - x_i) / (ln(10)·d²)
                        jacobian[:, :dims] = (-10.0 * exponent * diff
                                              / (LN10 * sqr_distances)[:, None])
                if power_col is not None:
                    jacobian[:, power_col] = 1.0
                if exponent_col is not None:
                    jacobian[:, exponent_col] = arrays.kdb - 5.0 * log_sqr
                residual_blocks.append(predicted - arrays.rssi)
                jacobian_blocks.append(jacobian)

            return np.concatenate(residual_blocks), np.vstack(jacobian_blocks)

        return model
