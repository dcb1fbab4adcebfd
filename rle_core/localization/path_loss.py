"""
Free-Space Path-Loss Model.

Received power follows the power law

    Pr = Pt * (c / (4 * pi * f))^n / d^n

which in logarithmic units reads

    Pr(dBm) = n * kdB + Pt(dBm) - 10 * n * log10(d),   kdB = 10 * log10(c / (4 * pi * f))

The estimators work in dB because residuals there are well scaled.
"""

from typing import Optional
import math

SPEED_OF_LIGHT = 299792458.0  # m/s
DEFAULT_PATH_LOSS_EXPONENT = 2.0  # Free space


def dbm_to_power(dbm: float) -> float:
    """Convert power in dBm to milliwatts."""
    return 10.0 ** (dbm / 10.0)


def power_to_dbm(mw: float) -> float:
    """Convert power in milliwatts to dBm."""
    return 10.0 * math.log10(mw)


def wavelength_constant_db(frequency_hz: float) -> float:
    """
    Get kdB = 10 * log10(c / (4 * pi * f)).

    Args:
        frequency_hz: Carrier frequency (Hz)

    Returns:
        Frequency-dependent constant of the log path-loss law (dB)
    """
    if not frequency_hz > 0:
        raise ValueError(f"Frequency must be positive: {frequency_hz}")
    return 10.0 * math.log10(SPEED_OF_LIGHT / (4.0 * math.pi * frequency_hz))


def received_power_dbm(
    transmitted_power_dbm: float,
    distance_m: float,
    frequency_hz: float,
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
) -> float:
    """
    Expected received power at a distance from an isotropic source.

    Args:
        transmitted_power_dbm: Equivalent transmitted power (dBm)
        distance_m: Distance to the source (m)
        frequency_hz: Carrier frequency (Hz)
        path_loss_exponent: Path-loss exponent n

    Returns:
        Received power (dBm)
    """
    if not distance_m > 0:
        raise ValueError(f"Distance must be positive: {distance_m}")
    return (path_loss_exponent * wavelength_constant_db(frequency_hz)
            + transmitted_power_dbm
            - 10.0 * path_loss_exponent * math.log10(distance_m))


def received_power(
    transmitted_power_mw: float,
    distance_m: float,
    frequency_hz: float,
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
) -> float:
    """Linear version of received_power_dbm (milliwatts in, milliwatts out)."""
    k = (SPEED_OF_LIGHT / (4.0 * math.pi * frequency_hz)) ** path_loss_exponent
    return transmitted_power_mw * k / distance_m ** path_loss_exponent


def distance_from_rssi(
    transmitted_power_dbm: float,
    rssi_dbm: float,
    frequency_hz: float,
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
) -> float:
    """
    Invert the path-loss law to get the distance implied by an RSSI.

    Returns:
        Distance (m)
    """
    kdb = wavelength_constant_db(frequency_hz)
    return 10.0 ** ((path_loss_exponent * kdb + transmitted_power_dbm - rssi_dbm)
                    / (10.0 * path_loss_exponent))


def propagate_power_variance_to_distance_variance(
    transmitted_power_dbm: float,
    rssi_dbm: float,
    path_loss_exponent: float,
    frequency_hz: float,
    rssi_variance: Optional[float],
) -> float:
    """
    First-order propagation of RSSI variance into distance variance.

    var(d) = (dd/dPr)^2 * var(Pr), with
    dd/dPr = -ln(10) / (10 * n) * d

    Args:
        transmitted_power_dbm: Transmitted power (dBm)
        rssi_dbm: Received power (dBm)
        path_loss_exponent: Path-loss exponent n
        frequency_hz: Carrier frequency (Hz)
        rssi_variance: Received power variance (dB²), None if unknown

    Returns:
        Distance variance (m²), 0.0 when rssi_variance is None
    """
    if rssi_variance is None:
        return 0.0

    distance = distance_from_rssi(transmitted_power_dbm, rssi_dbm,
                                  frequency_hz, path_loss_exponent)
    derivative = -math.log(10.0) / (10.0 * path_loss_exponent) * distance
    return derivative * derivative * rssi_variance
