"""First-order uncertainty propagation for RF ranging.

Received power follows the log-distance model

    rx_power = n * k_db + tx_power - 10 * n * log10(d)

with ``k_db = 10 * log10(c / (4 * pi * f))``. Inverting it gives the distance

    d = 10 ** ((n * k_db + tx_power - rx_power) / (10 * n))

and the variances below are the linearization of that expression.
"""

from __future__ import annotations

import math

import numpy as np

SPEED_OF_LIGHT = 299792458.0  # m/s


def dbm_to_power(dbm: float) -> float:
    """Convert dBm to mW."""
    return 10.0 ** (dbm / 10.0)


def power_to_dbm(mw: float) -> float:
    """Convert mW to dBm."""
    return 10.0 * math.log10(mw)


def _k_db(frequency: float) -> float:
    return 10.0 * math.log10(SPEED_OF_LIGHT / (4.0 * math.pi * frequency))


def distance_from_power(
    tx_power: float,
    rx_power: float,
    path_loss_exponent: float,
    frequency: float,
) -> float:
    """Distance implied by a received power under the log-distance model."""
    ten_n = 10.0 * path_loss_exponent
    return 10.0 ** (
        (path_loss_exponent * _k_db(frequency) + tx_power - rx_power) / ten_n
    )


def propagate_power_variance_to_distance_variance(
    tx_power: float,
    rx_power: float,
    path_loss_exponent: float,
    frequency: float,
    rx_power_variance: float | None,
) -> float:
    """Distance variance caused only by received power variance."""
    if rx_power_variance is None:
        return 0.0
    distance = distance_from_power(tx_power, rx_power, path_loss_exponent, frequency)
    derivative = -math.log(10.0) / (10.0 * path_loss_exponent) * distance
    return derivative * derivative * rx_power_variance


def propagate_variances_to_distance_variance(
    tx_power: float,
    rx_power: float,
    path_loss_exponent: float,
    frequency: float,
    tx_power_variance: float | None = None,
    rx_power_variance: float | None = None,
    path_loss_exponent_variance: float | None = None,
) -> tuple[float, float] | None:
    """Propagate independent input variances into the distance.

    Returns:
        (expected_distance, distance_variance), or None when no variance is known.
    """
    if (
        tx_power_variance is None
        and rx_power_variance is None
        and path_loss_exponent_variance is None
    ):
        return None

    n = path_loss_exponent
    distance = distance_from_power(tx_power, rx_power, n, frequency)
    ln10 = math.log(10.0)

    # Gradient of d with respect to (tx_power, rx_power, n).
    d_tx = ln10 / (10.0 * n) * distance
    d_rx = -d_tx
    # k_db does not depend on n, so it drops out of d_n.
    d_n = ln10 * distance * (-(tx_power - rx_power) / (10.0 * n * n))

    jacobian = np.array([d_tx, d_rx, d_n], dtype=np.float64)
    covariance = np.diag([
        tx_power_variance or 0.0,
        rx_power_variance or 0.0,
        path_loss_exponent_variance or 0.0,
    ])
    variance = float(jacobian @ covariance @ jacobian)
    return distance, variance


def position_variance_along(
    position_covariance: np.ndarray,
    receiver: np.ndarray,
    estimate: np.ndarray,
) -> float:
    """Variance of the receiver position projected on the receiver-to-source ray."""
    direction = np.asarray(estimate, dtype=np.float64) - np.asarray(receiver, dtype=np.float64)
    norm = float(np.linalg.norm(direction))
    if norm <= 1e-12:
        # No defined direction; use the mean variance over all axes.
        return float(np.trace(position_covariance)) / len(direction)
    unit = direction / norm
    return float(unit @ np.asarray(position_covariance, dtype=np.float64) @ unit)
