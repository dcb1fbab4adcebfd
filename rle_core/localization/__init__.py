"""
Localization Module: Radio source estimation from readings.

Key pieces:
- path_loss: Log-distance path-loss law and power conversions
- lm_fitter: Levenberg-Marquardt weighted least squares
- RadioSourceSolver: Non-robust position / power / path-loss fit
- Consensus strategies: RANSAC, MSAC, LMedS, PROSAC, PROMedS
- RobustRadioSourceEstimator: Consensus loop with refinement and listener
- SequentialRobustRadioSourceEstimator: Robust position from distances, then
  power / path loss from RSSI
"""

# Errors
from .errors import (
    EstimatorError,
    NotReadyError,
    LockedError,
    EstimationError,
    RobustEstimatorError,
)

# Path-loss model
from .path_loss import (
    SPEED_OF_LIGHT,
    DEFAULT_PATH_LOSS_EXPONENT,
    dbm_to_power,
    power_to_dbm,
    wavelength_constant_db,
    received_power_dbm,
    received_power,
    distance_from_rssi,
    propagate_power_variance_to_distance_variance,
)

# Non-robust solver
from .lm_fitter import (
    LMResult,
    levenberg_marquardt,
)
from .source_solver import (
    RadioSourceSolver,
    RadioSourceSolverConfig,
    min_readings,
)

# Robust estimation
from .consensus import (
    RobustMethod,
    ConsensusScore,
    ConsensusStrategy,
    RANSACStrategy,
    MSACStrategy,
    LMedSStrategy,
    PROSACStrategy,
    PROMedSStrategy,
    DEFAULT_STOP_THRESHOLD,
    create_strategy,
    iteration_bound,
)
from .robust_estimator import (
    RobustRadioSourceEstimator,
    RobustEstimatorConfig,
    RobustEstimatorListener,
    create_robust_estimator,
)
from .sequential_estimator import (
    SequentialRobustRadioSourceEstimator,
    SequentialEstimatorConfig,
)

__all__ = [
    # Errors
    'EstimatorError',
    'NotReadyError',
    'LockedError',
    'EstimationError',
    'RobustEstimatorError',
    # Path-loss model
    'SPEED_OF_LIGHT',
    'DEFAULT_PATH_LOSS_EXPONENT',
    'dbm_to_power',
    'power_to_dbm',
    'wavelength_constant_db',
    'received_power_dbm',
    'received_power',
    'distance_from_rssi',
    'propagate_power_variance_to_distance_variance',
    # Solver
    'LMResult',
    'levenberg_marquardt',
    'RadioSourceSolver',
    'RadioSourceSolverConfig',
    'min_readings',
    # Robust estimation
    'RobustMethod',
    'ConsensusScore',
    'ConsensusStrategy',
    'RANSACStrategy',
    'MSACStrategy',
    'LMedSStrategy',
    'PROSACStrategy',
    'PROMedSStrategy',
    'DEFAULT_STOP_THRESHOLD',
    'create_strategy',
    'iteration_bound',
    'RobustRadioSourceEstimator',
    'RobustEstimatorConfig',
    'RobustEstimatorListener',
    'create_robust_estimator',
    'SequentialRobustRadioSourceEstimator',
    'SequentialEstimatorConfig',
]
