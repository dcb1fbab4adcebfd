"""
Located Reading Schema.

Defines the measurement records consumed by the estimators: a known
observation position paired with a distance and/or received signal
strength (RSSI) observed from an unknown radio source.

Readings are immutable once constructed; estimators only read them.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple
from enum import Enum
import math

import numpy as np

from rle_core.config import SOLVER_CONFIG

DEFAULT_FREQUENCY_HZ = 2.4e9  # 2.4 GHz ISM band (WiFi / BLE)


class ReadingKind(Enum):
    """Which measurement channels a reading (or reading set) carries."""

    RANGING = "ranging"                    # Distance only
    RSSI = "rssi"                          # Received power only
    RANGING_AND_RSSI = "ranging_and_rssi"  # Both, weighted independently


@dataclass(frozen=True)
class RadioSource:
    """
    Identity of the emitting source.

    Attributes:
        source_id: Identifier (BSSID, beacon id, ...)
        frequency_hz: Carrier frequency used by the path-loss law (Hz)
        metadata: Opaque payload carried through to the estimated source

    Notes:
        - The engine reads frequency_hz and nothing else
    """

    source_id: str
    frequency_hz: float = DEFAULT_FREQUENCY_HZ
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        """Validate radio source."""
        if not self.frequency_hz > 0:
            raise ValueError(f"Frequency must be positive: {self.frequency_hz}")


@dataclass(frozen=True)
class Reading:
    """
    Measurement of an unknown radio source taken at a known position.

    Attributes:
        source: Radio source the measurement belongs to
        position: Observation position, (x, y) or (x, y, z) in meters
        distance_m: Measured distance to the source (m), if ranging
        distance_std_m: Distance standard deviation (m), if known
        rssi_dbm: Received signal strength (dBm), if measured
        rssi_std_db: RSSI standard deviation (dB), if known

    Notes:
        - At least one of distance_m / rssi_dbm must be present
        - Standard deviations are used as least-squares weights (1/std²)
    """

    source: RadioSource
    position: Tuple[float, ...]
    distance_m: Optional[float] = None
    distance_std_m: Optional[float] = None
    rssi_dbm: Optional[float] = None
    rssi_std_db: Optional[float] = None

    def __post_init__(self):
        """Validate reading after initialization."""
        position = tuple(float(c) for c in self.position)
        if len(position) not in (2, 3):
            raise ValueError(f"Position must be 2D or 3D: {self.position}")
        if not all(math.isfinite(c) for c in position):
            raise ValueError(f"Position must be finite: {self.position}")
        object.__setattr__(self, "position", position)

        if self.distance_m is None and self.rssi_dbm is None:
            raise ValueError("Reading needs a distance or an RSSI measurement")

        if self.distance_m is not None and self.distance_m < 0:
            raise ValueError(f"Distance cannot be negative: {self.distance_m}")

        if self.distance_std_m is not None and not self.distance_std_m > 0:
            raise ValueError(f"Distance std must be positive: {self.distance_std_m}")

        if self.rssi_std_db is not None and not self.rssi_std_db > 0:
            raise ValueError(f"RSSI std must be positive: {self.rssi_std_db}")

    @property
    def has_ranging(self) -> bool:
        """Check if reading carries a distance measurement."""
        return self.distance_m is not None

    @property
    def has_rssi(self) -> bool:
        """Check if reading carries an RSSI measurement."""
        return self.rssi_dbm is not None

    @property
    def kind(self) -> ReadingKind:
        """Measurement channels carried by this reading."""
        if self.has_ranging and self.has_rssi:
            return ReadingKind.RANGING_AND_RSSI
        if self.has_ranging:
            return ReadingKind.RANGING
        return ReadingKind.RSSI

    @property
    def dims(self) -> int:
        """Number of position coordinates (2 or 3)."""
        return len(self.position)

    @property
    def coordinates(self) -> np.ndarray:
        """Observation position as a numpy array."""
        return np.array(self.position, dtype=float)

    def distance_weight(self) -> float:
        """Least-squares weight of the distance residual (1/m²)."""
        std = self.distance_std_m
        if std is None:
            std = SOLVER_CONFIG["default_distance_std_m"]
        return 1.0 / std ** 2

    def rssi_weight(self) -> float:
        """Least-squares weight of the RSSI residual (1/dB²)."""
        std = self.rssi_std_db
        if std is None:
            std = SOLVER_CONFIG["default_rssi_std_db"]
        return 1.0 / std ** 2


def ranging_reading(
    source: RadioSource,
    position: Sequence[float],
    distance_m: float,
    distance_std_m: Optional[float] = None,
) -> Reading:
    """Create a distance-only reading."""
    return Reading(source, tuple(position), distance_m=distance_m,
                   distance_std_m=distance_std_m)


def rssi_reading(
    source: RadioSource,
    position: Sequence[float],
    rssi_dbm: float,
    rssi_std_db: Optional[float] = None,
) -> Reading:
    """Create an RSSI-only reading."""
    return Reading(source, tuple(position), rssi_dbm=rssi_dbm,
                   rssi_std_db=rssi_std_db)


def ranging_and_rssi_reading(
    source: RadioSource,
    position: Sequence[float],
    distance_m: float,
    rssi_dbm: float,
    distance_std_m: Optional[float] = None,
    rssi_std_db: Optional[float] = None,
) -> Reading:
    """Create a reading carrying both distance and RSSI."""
    return Reading(source, tuple(position), distance_m=distance_m,
                   distance_std_m=distance_std_m, rssi_dbm=rssi_dbm,
                   rssi_std_db=rssi_std_db)


def readings_kind(readings: Optional[Sequence[Reading]]) -> Optional[ReadingKind]:
    """
    Get the common kind of a reading set.

    Args:
        readings: Readings to inspect

    Returns:
        Shared ReadingKind, or None if empty or inconsistent
        (mixed kinds or mixed 2D/3D positions)
    """
    if not readings:
        return None

    kinds = {r.kind for r in readings}
    if len(kinds) != 1:
        return None

    if readings_dims(readings) is None:
        return None

    return kinds.pop()


def readings_dims(readings: Optional[Sequence[Reading]]) -> Optional[int]:
    """Get the shared position dimension of a reading set (None if mixed/empty)."""
    if not readings:
        return None
    dims = {r.dims for r in readings}
    if len(dims) != 1:
        return None
    return dims.pop()
