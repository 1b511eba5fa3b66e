"""Inlier refinement and position covariance estimation."""

from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np

from rangeloc.config import EstimatorConfig
from rangeloc.errors import NumericalError
from rangeloc.lateration import nonlinear_solve
from rangeloc.readings import (
    RangingReading,
    distance_stds_array,
    distances_array,
    positions_array,
)

log = logging.getLogger(__name__)


def refine(
    inlier_readings: Sequence[RangingReading],
    rough_position: np.ndarray,
    config: EstimatorConfig,
) -> tuple[np.ndarray, np.ndarray | None]:
    """Re-fit the source position using every inlier.

    The fit is seeded with `config.initial_position` when set, otherwise with
    the consensus position. Each reading is weighted by the inverse of its
    distance variance; readings without a standard deviation use
    `config.fallback_distance_std`.

    Returns:
        (position, covariance); covariance is None unless `covariance_kept`.

    Raises:
        NumericalError: the fit diverged or its normal matrix is singular.
    """
    rough = np.asarray(rough_position, dtype=np.float64)
    if not config.result_refined:
        return rough, None

    seed = (
        np.asarray(config.initial_position, dtype=np.float64)
        if config.initial_position is not None
        else rough
    )
    variances = distance_stds_array(inlier_readings, config.fallback_distance_std) ** 2

    position_covariances = None
    if config.use_reading_position_covariances and any(
        reading.position_covariance is not None for reading in inlier_readings
    ):
        position_covariances = [reading.position_covariance for reading in inlier_readings]

    result = nonlinear_solve(
        positions_array(inlier_readings),
        distances_array(inlier_readings),
        seed,
        variances=variances,
        position_covariances=position_covariances,
        compute_covariance=config.covariance_kept,
    )
    log.debug(
        "refined with %d inliers in %d iterations, chi2=%.3g",
        len(inlier_readings),
        result.iterations,
        result.chi_sq,
    )
    return result.position, result.covariance


def position_accuracy(covariance: np.ndarray, std_factor: float = 1.0) -> float:
    """Average positional uncertainty (meters) along the covariance principal axes."""
    eigenvalues = np.linalg.eigvalsh(np.asarray(covariance, dtype=np.float64))
    if np.any(eigenvalues < -1e-12):
        raise NumericalError("covariance is not positive semi-definite")
    return std_factor * float(np.mean(np.sqrt(np.clip(eigenvalues, 0.0, None))))
