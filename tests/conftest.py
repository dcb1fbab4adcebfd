"""
Pytest configuration and shared fixtures for the RLE core tests.

Provides reusable fixtures for generating synthetic reading sets (ranging,
RSSI and combined) around a known radio source, with optional outliers.
"""

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from rle_core.metrics import reset_metrics
from rle_core.proto import (
    RadioSource,
    Reading,
    ReadingKind,
    ranging_reading,
    rssi_reading,
    ranging_and_rssi_reading,
)
from rle_core.localization import received_power_dbm


FREQUENCY_HZ = 2.4e9
TX_POWER_DBM = 10.0
PATH_LOSS_EXPONENT = 2.0


@dataclass
class Scenario:
    """Synthetic readings with the ground truth that produced them."""

    readings: List[Reading]
    source_position: Tuple[float, ...]
    transmitted_power_dbm: float
    path_loss_exponent: float
    outliers: np.ndarray  # Boolean mask of corrupted readings


def make_readings(
    kind: ReadingKind,
    positions: Sequence[Sequence[float]],
    source_position: Sequence[float],
    transmitted_power_dbm: float = TX_POWER_DBM,
    path_loss_exponent: float = PATH_LOSS_EXPONENT,
    distance_errors: Optional[Sequence[float]] = None,
    rssi_errors: Optional[Sequence[float]] = None,
) -> List[Reading]:
    """
    Build readings of one source observed at given positions.

    Args:
        kind: Measurement channels of every reading
        positions: Observation positions
        source_position: True source position
        transmitted_power_dbm: True transmitted power
        path_loss_exponent: True path-loss exponent
        distance_errors: Additive distance errors (m), zeros if None
        rssi_errors: Additive RSSI errors (dB), zeros if None

    Returns:
        List of Reading
    """
    source = RadioSource("AP-1", frequency_hz=FREQUENCY_HZ)
    source_position = np.asarray(source_position, dtype=float)
    count = len(positions)
    distance_errors = np.zeros(count) if distance_errors is None else distance_errors
    rssi_errors = np.zeros(count) if rssi_errors is None else rssi_errors

    readings = []
    for i, position in enumerate(positions):
        distance = float(np.linalg.norm(np.asarray(position) - source_position))
        rssi = received_power_dbm(transmitted_power_dbm, distance, FREQUENCY_HZ,
                                  path_loss_exponent)
        measured_distance = abs(distance + distance_errors[i])
        measured_rssi = rssi + rssi_errors[i]

        if kind == ReadingKind.RANGING:
            readings.append(ranging_reading(source, position, measured_distance))
        elif kind == ReadingKind.RSSI:
            readings.append(rssi_reading(source, position, measured_rssi))
        else:
            readings.append(ranging_and_rssi_reading(
                source, position, measured_distance, measured_rssi
            ))
    return readings


def make_scenario(
    rng: np.random.Generator,
    kind: ReadingKind,
    num_readings: int = 100,
    dims: int = 3,
    outlier_ratio: float = 0.0,
    outlier_std: float = 10.0,
    transmitted_power_dbm: float = TX_POWER_DBM,
    path_loss_exponent: float = PATH_LOSS_EXPONENT,
) -> Scenario:
    """
    Random scenario: readings and source uniform in [-50, 50] per axis.

    Outliers get Gaussian errors (outlier_std) on the RSSI channel, or on the
    distance channel for ranging-only readings.
    """
    positions = rng.uniform(-50.0, 50.0, size=(num_readings, dims))
    source_position = rng.uniform(-50.0, 50.0, size=dims)

    outliers = np.zeros(num_readings, dtype=bool)
    num_outliers = int(round(outlier_ratio * num_readings))
    outliers[rng.choice(num_readings, size=num_outliers, replace=False)] = True

    errors = np.where(outliers, rng.normal(0.0, outlier_std, size=num_readings), 0.0)
    if kind == ReadingKind.RANGING:
        distance_errors, rssi_errors = errors, None
    else:
        distance_errors, rssi_errors = None, errors

    readings = make_readings(
        kind, [tuple(p) for p in positions], source_position,
        transmitted_power_dbm, path_loss_exponent,
        distance_errors=distance_errors, rssi_errors=rssi_errors,
    )
    return Scenario(readings, tuple(source_position), transmitted_power_dbm,
                    path_loss_exponent, outliers)


# =============================================================================
# Geometry Fixtures
# =============================================================================


@pytest.fixture
def cube_positions() -> List[Tuple[float, float, float]]:
    """
    Well-conditioned 3D observation layout.

    Cube corners (±50 m) plus face centers: 14 positions enclosing the origin.

    Returns:
        List of (x, y, z) tuples in meters.
    """
    corners = [(x, y, z) for x in (-50.0, 50.0) for y in (-50.0, 50.0) for z in (-50.0, 50.0)]
    faces = [
        (50.0, 0.0, 0.0), (-50.0, 0.0, 0.0),
        (0.0, 50.0, 0.0), (0.0, -50.0, 0.0),
        (0.0, 0.0, 50.0), (0.0, 0.0, -50.0),
    ]
    return corners + faces


@pytest.fixture
def square_positions() -> List[Tuple[float, float]]:
    """
    Well-conditioned 2D observation layout (square corners and edge midpoints).

    Returns:
        List of (x, y) tuples in meters.
    """
    return [
        (-50.0, -50.0), (50.0, -50.0), (50.0, 50.0), (-50.0, 50.0),
        (0.0, -50.0), (50.0, 0.0), (0.0, 50.0), (-50.0, 0.0),
    ]


@pytest.fixture
def source_position_3d() -> Tuple[float, float, float]:
    """True source position inside the cube layout."""
    return (3.0, -7.0, 5.0)


@pytest.fixture
def source_position_2d() -> Tuple[float, float]:
    """True source position inside the square layout."""
    return (4.0, -6.0)


@pytest.fixture
def radio_source() -> RadioSource:
    """Standard 2.4 GHz radio source."""
    return RadioSource("AP-1", frequency_hz=FREQUENCY_HZ)


@pytest.fixture
def rng() -> np.random.Generator:
    """Seeded random generator for reproducible scenarios."""
    return np.random.default_rng(12345)


# =============================================================================
# Metrics Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Give every test its own global metrics collector."""
    reset_metrics()
    yield
    reset_metrics()
