"""
Robust Localization Engine default configuration.

Plain dictionaries hold every tunable default so that applications can
inspect or override them in one place. Dataclass configs in the
localization package read their defaults from here.
"""

import logging
from typing import Optional

# Non-robust solver configuration
SOLVER_CONFIG = {
    "estimate_position": True,            # False holds initial_position fixed
    "estimate_transmitted_power": True,   # Estimate Pt (dBm) from RSSI
    "estimate_path_loss": False,          # Estimate path-loss exponent n
    "initial_path_loss_exponent": 2.0,    # Free space
    "keep_covariance": True,
    "max_iterations": 200,                # Levenberg-Marquardt iterations
    "convergence_tol": 1e-12,             # Relative step tolerance
    "default_distance_std_m": 1.0,        # Used when a reading has no std
    "default_rssi_std_db": 1.0,
}

# Robust (consensus) estimator configuration
ROBUST_ESTIMATOR_CONFIG = {
    "method": "RANSAC",
    "threshold": 0.1,                     # m for ranging, dB for RSSI
    "confidence": 0.99,
    "max_iterations": 5000,
    "progress_delta": 0.05,
    "stop_threshold": 1e-4,               # LMedS / PROMedS early stop
    "refine_result": True,
    "keep_covariance": True,
    "compute_and_keep_inliers": False,
    "compute_and_keep_residuals": False,
}

# Sequential (ranging, then RSSI) estimator configuration
SEQUENTIAL_ESTIMATOR_CONFIG = {
    "ranging_method": "RANSAC",
    "rssi_method": "RANSAC",
    "ranging_threshold": 0.1,             # m
    "rssi_threshold": 0.1,                # dB
}

# Metrics configuration
METRICS_CONFIG = {
    "max_histogram_samples": 10000,
}

# Logging configuration
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}


def setup_logging(level: Optional[str] = None):
    """
    Configure root logging for applications embedding the engine.

    The library itself never configures logging on import.

    Args:
        level: Level name overriding LOGGING_CONFIG["level"] (e.g. "DEBUG")
    """
    logging.basicConfig(
        level=getattr(logging, (level or LOGGING_CONFIG["level"]).upper()),
        format=LOGGING_CONFIG["format"],
    )
