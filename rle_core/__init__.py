"""
Radio Localization Estimation (RLE) Core Package.

Robust estimation of radio source position, transmitted power and path-loss
exponent from ranging and/or RSSI readings taken at known positions.

Package structure:
- proto: Reading and estimated radio source value objects
- localization: Path-loss model, least-squares solver, robust estimators
- metrics: Diagnostics, counters, histograms
- config: Default parameters and logging setup
"""

__version__ = "0.1.0"

from .metrics import get_metrics
from .proto import (
    RadioSource,
    Reading,
    ReadingKind,
    EstimatedRadioSource,
    InliersData,
)
from .localization import (
    RadioSourceSolver,
    RobustMethod,
    RobustRadioSourceEstimator,
    create_robust_estimator,
    SequentialRobustRadioSourceEstimator,
)
