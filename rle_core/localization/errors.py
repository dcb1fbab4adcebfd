"""
Estimator error taxonomy.

Invalid configuration values raise the built-in ValueError at the setter.
Everything raised by an estimation run derives from EstimatorError.
"""


class EstimatorError(Exception):
    """Base class for estimator failures."""


class NotReadyError(EstimatorError):
    """Estimation requested without enough valid readings or initial values."""


class LockedError(EstimatorError):
    """Estimator mutated or re-entered while an estimation is running."""


class EstimationError(EstimatorError):
    """Non-robust fit failed numerically (singular Jacobian, non-finite residuals)."""


class RobustEstimatorError(EstimatorError):
    """No adequate consensus found, or the refinement step failed."""
