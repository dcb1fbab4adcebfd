"""
Protocol Module: Value objects exchanged with the estimators.

- Readings (input): known position + distance and/or RSSI
- Estimated radio source (output): position, power, path loss, uncertainty
"""

from .reading import (
    DEFAULT_FREQUENCY_HZ,
    RadioSource,
    Reading,
    ReadingKind,
    ranging_reading,
    rssi_reading,
    ranging_and_rssi_reading,
    readings_kind,
    readings_dims,
)
from .estimated_source import (
    EstimatedRadioSource,
    InliersData,
)

__all__ = [
    'DEFAULT_FREQUENCY_HZ',
    'RadioSource',
    'Reading',
    'ReadingKind',
    'ranging_reading',
    'rssi_reading',
    'ranging_and_rssi_reading',
    'readings_kind',
    'readings_dims',
    'EstimatedRadioSource',
    'InliersData',
]
