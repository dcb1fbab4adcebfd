"""
Estimated Radio Source Output Schema.

Defines the output of the estimators: position, transmitted power and
path-loss exponent of a radio source, with optional uncertainty and the
consensus (inlier) data of a robust run.

Arrays stored here are read-only copies, so results of successive runs
never alias each other.
"""

from dataclasses import dataclass
from typing import Optional, Tuple
import math

import numpy as np

from rle_core.proto.reading import RadioSource


def _frozen_copy(array) -> Optional[np.ndarray]:
    """Return a read-only copy of array (None passes through)."""
    if array is None:
        return None
    copy = np.array(array, copy=True)
    copy.setflags(write=False)
    return copy


@dataclass(frozen=True)
class InliersData:
    """
    Consensus data of a robust estimation run.

    Attributes:
        inliers: Boolean mask over the reading list (True = inlier)
        residuals: Per-reading residual against the best candidate, if kept
        threshold: Effective inlier threshold used by the robust method
    """

    inliers: np.ndarray
    residuals: Optional[np.ndarray] = None
    threshold: Optional[float] = None

    def __post_init__(self):
        """Store read-only copies."""
        object.__setattr__(self, "inliers", _frozen_copy(np.asarray(self.inliers, dtype=bool)))
        object.__setattr__(self, "residuals", _frozen_copy(self.residuals))

    @property
    def num_inliers(self) -> int:
        """Number of readings classified as inliers."""
        return int(np.count_nonzero(self.inliers))

    @property
    def inlier_ratio(self) -> float:
        """Fraction of readings classified as inliers."""
        if len(self.inliers) == 0:
            return 0.0
        return self.num_inliers / len(self.inliers)

    @property
    def inlier_indices(self) -> np.ndarray:
        """Indices of inlier readings."""
        return np.flatnonzero(self.inliers)


@dataclass(frozen=True)
class EstimatedRadioSource:
    """
    Radio source estimate.

    Attributes:
        source: Radio source identity taken from the readings
        position: Estimated position, (x, y) or (x, y, z) in meters
        transmitted_power_dbm: Estimated (or fixed) transmitted power (dBm)
        path_loss_exponent: Estimated (or fixed) path-loss exponent
        position_covariance: Position covariance block (m²), if computed
        transmitted_power_variance: Power variance (dB²), if estimated
        path_loss_exponent_variance: Exponent variance, if estimated
        covariance: Full parameter covariance [position?, power?, exponent?]
        inliers_data: Consensus data of a robust run, if kept
        chi_sq: Weighted sum of squared residuals of the final fit
        num_readings_used: Readings used by the final fit
        method: Robust method name, None for a plain least-squares fit

    Notes:
        - Variances are None for parameters held fixed during estimation
        - Without refinement a robust result carries no covariance
    """

    source: Optional[RadioSource]
    position: Tuple[float, ...]
    transmitted_power_dbm: float
    path_loss_exponent: float
    position_covariance: Optional[np.ndarray] = None
    transmitted_power_variance: Optional[float] = None
    path_loss_exponent_variance: Optional[float] = None
    covariance: Optional[np.ndarray] = None
    inliers_data: Optional[InliersData] = None
    chi_sq: Optional[float] = None
    num_readings_used: int = 0
    method: Optional[str] = None

    def __post_init__(self):
        """Normalize position and freeze arrays."""
        object.__setattr__(self, "position", tuple(float(c) for c in self.position))
        object.__setattr__(self, "position_covariance", _frozen_copy(self.position_covariance))
        object.__setattr__(self, "covariance", _frozen_copy(self.covariance))

        if len(self.position) not in (2, 3):
            raise ValueError(f"Position must be 2D or 3D: {self.position}")

    @property
    def dims(self) -> int:
        """Number of position coordinates."""
        return len(self.position)

    @property
    def position_coordinates(self) -> np.ndarray:
        """Estimated position as a flat array (same values as position)."""
        return np.array(self.position, dtype=float)

    @property
    def transmitted_power_mw(self) -> float:
        """Estimated transmitted power in milliwatts."""
        return 10.0 ** (self.transmitted_power_dbm / 10.0)

    @property
    def transmitted_power_std(self) -> Optional[float]:
        """Transmitted power standard deviation (dB), if available."""
        if self.transmitted_power_variance is None:
            return None
        return math.sqrt(self.transmitted_power_variance)

    @property
    def path_loss_exponent_std(self) -> Optional[float]:
        """Path-loss exponent standard deviation, if available."""
        if self.path_loss_exponent_variance is None:
            return None
        return math.sqrt(self.path_loss_exponent_variance)

    @property
    def position_std(self) -> Optional[Tuple[float, ...]]:
        """Per-axis position standard deviation (m), if available."""
        if self.position_covariance is None:
            return None
        return tuple(float(np.sqrt(max(v, 0.0))) for v in np.diag(self.position_covariance))

    @property
    def has_covariance(self) -> bool:
        """Check if uncertainty was computed for this estimate."""
        return self.covariance is not None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'source_id': self.source.source_id if self.source is not None else None,
            'frequency_hz': self.source.frequency_hz if self.source is not None else None,
            'position': self.position,
            'transmitted_power_dbm': self.transmitted_power_dbm,
            'path_loss_exponent': self.path_loss_exponent,
            'position_std': self.position_std,
            'transmitted_power_std': self.transmitted_power_std,
            'path_loss_exponent_std': self.path_loss_exponent_std,
            'chi_sq': self.chi_sq,
            'num_readings_used': self.num_readings_used,
            'num_inliers': self.inliers_data.num_inliers if self.inliers_data else None,
            'method': self.method,
        }
