"""Non-robust 3D lateration: linear minimal solvers and Levenberg-Marquardt."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from rangeloc.errors import FitError, NumericalError
from rangeloc.propagation import position_variance_along
from rangeloc.readings import (
    DIMENSIONS,
    MIN_READINGS,
    Point3,
    RangingReading,
    distances_array,
    positions_array,
)

_EPS = 1e-9
_RANK_TOLERANCE = 1e-10
_MAX_DAMPING = 1e12
_MIN_DAMPING = 1e-12


@dataclass
class LaterationResult:
    position: np.ndarray
    residuals: np.ndarray
    covariance: np.ndarray | None
    chi_sq: float
    iterations: int


def linear_solve(positions: np.ndarray, distances: np.ndarray) -> np.ndarray:
    """Inhomogeneous linearization against the first receiver.

    Subtracting the first sphere equation from the others removes the
    quadratic term: 2 (p_i - p_0) . x = |p_i|^2 - |p_0|^2 - d_i^2 + d_0^2
    """
    if len(positions) < MIN_READINGS:
        raise FitError(f"need at least {MIN_READINGS} readings, got {len(positions)}")

    p0 = positions[0]
    d0 = distances[0]
    A = 2.0 * (positions[1:] - p0)
    b = (
        np.sum(positions[1:] ** 2, axis=1)
        - float(np.sum(p0**2))
        - distances[1:] ** 2
        + d0**2
    )
    if np.linalg.matrix_rank(A) < DIMENSIONS:
        raise FitError("degenerate receiver geometry")
    try:
        solution, *_ = np.linalg.lstsq(A, b, rcond=None)
    except np.linalg.LinAlgError as exc:
        raise FitError("linear lateration failed") from exc
    return solution


def homogeneous_linear_solve(positions: np.ndarray, distances: np.ndarray) -> np.ndarray:
    """Solve for h ~ [x, y, z, |x|^2, 1] as the null vector of the sphere system.

    Each reading contributes the row [-2 p, 1, |p|^2 - d^2].
    """
    if len(positions) < MIN_READINGS:
        raise FitError(f"need at least {MIN_READINGS} readings, got {len(positions)}")

    rows = np.column_stack([
        -2.0 * positions,
        np.ones(len(positions)),
        np.sum(positions**2, axis=1) - distances**2,
    ])
    try:
        _, singular_values, vt = np.linalg.svd(rows)
    except np.linalg.LinAlgError as exc:
        raise FitError("homogeneous lateration failed") from exc

    rank = int(np.sum(singular_values > singular_values[0] * _RANK_TOLERANCE))
    if rank < DIMENSIONS + 1:
        raise FitError("degenerate receiver geometry")

    h = vt[-1]
    if abs(h[-1]) <= _EPS * float(np.max(np.abs(h))):
        raise FitError("solution at infinity")
    return h[:DIMENSIONS] / h[-1]


def _evaluate(
    x: np.ndarray,
    positions: np.ndarray,
    distances: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    diff = x - positions
    predicted = np.maximum(np.linalg.norm(diff, axis=1), _EPS)
    residuals = predicted - distances
    jacobian = diff / predicted[:, None]
    return residuals, jacobian


def _variances(
    x: np.ndarray,
    positions: np.ndarray,
    base_variances: np.ndarray,
    position_covariances: Sequence[np.ndarray | None] | None,
) -> np.ndarray:
    if position_covariances is None:
        return base_variances
    variances = base_variances.copy()
    for idx, covariance in enumerate(position_covariances):
        if covariance is not None:
            variances[idx] += position_variance_along(covariance, positions[idx], x)
    return variances


def nonlinear_solve(
    positions: np.ndarray,
    distances: np.ndarray,
    initial: np.ndarray,
    variances: np.ndarray | None = None,
    position_covariances: Sequence[np.ndarray | None] | None = None,
    compute_covariance: bool = False,
    max_iters: int = 100,
    tolerance: float = 1e-10,
) -> LaterationResult:
    """Weighted Levenberg-Marquardt lateration.

    Args:
        positions: (N, 3) receiver positions
        distances: (N,) measured ranges
        initial: starting point
        variances: per-range variances, unit weights when None
        position_covariances: optional per-receiver 3x3 covariances, projected
            onto the range direction and added to the range variance
        compute_covariance: return (J^T W J)^-1 at the solution
        max_iters: iteration cap
        tolerance: relative step size at which the solver stops

    Raises:
        NumericalError: no convergence within `max_iters`, a non-finite
            result, or a singular normal matrix when computing covariance.
    """
    if len(positions) < MIN_READINGS:
        raise FitError(f"need at least {MIN_READINGS} readings, got {len(positions)}")
    base_variances = (
        np.ones(len(positions), dtype=np.float64)
        if variances is None
        else np.asarray(variances, dtype=np.float64)
    )

    x = np.asarray(initial, dtype=np.float64).copy()
    weights = 1.0 / _variances(x, positions, base_variances, position_covariances)
    residuals, jacobian = _evaluate(x, positions, distances)
    cost = float(np.sum(weights * residuals**2))
    damping = 1e-3

    iteration = 0
    for iteration in range(1, max_iters + 1):
        Jw = jacobian * weights[:, None]
        lhs = jacobian.T @ Jw
        rhs = Jw.T @ residuals
        damped = lhs + damping * np.diag(np.diag(lhs))
        try:
            delta = np.linalg.solve(damped, rhs)
        except np.linalg.LinAlgError:
            delta = np.linalg.pinv(damped) @ rhs

        step = float(np.linalg.norm(delta))
        if step <= tolerance * (float(np.linalg.norm(x)) + tolerance):
            break

        candidate = x - delta
        candidate_weights = 1.0 / _variances(
            candidate, positions, base_variances, position_covariances
        )
        candidate_residuals, candidate_jacobian = _evaluate(candidate, positions, distances)
        candidate_cost = float(np.sum(candidate_weights * candidate_residuals**2))

        if candidate_cost < cost:
            x = candidate
            weights = candidate_weights
            residuals = candidate_residuals
            jacobian = candidate_jacobian
            cost = candidate_cost
            damping = max(damping / 10.0, _MIN_DAMPING)
        else:
            damping *= 10.0
            if damping > _MAX_DAMPING:
                break
    else:
        raise NumericalError(f"lateration did not converge in {max_iters} iterations")

    if not np.all(np.isfinite(x)):
        raise NumericalError("lateration diverged")

    covariance = None
    if compute_covariance:
        normal = jacobian.T @ (jacobian * weights[:, None])
        try:
            np.linalg.cholesky(normal)
            covariance = np.linalg.inv(normal)
        except np.linalg.LinAlgError as exc:
            raise NumericalError("normal matrix is not positive definite") from exc

    return LaterationResult(
        position=x,
        residuals=residuals,
        covariance=covariance,
        chi_sq=cost,
        iterations=iteration,
    )


def fit_minimal(
    readings: Sequence[RangingReading],
    initial_position: Point3 | None = None,
    homogeneous: bool = False,
) -> np.ndarray:
    """Candidate source position from a minimal set of readings.

    Uses Levenberg-Marquardt from `initial_position` when one is given, and a
    closed-form linear solver otherwise.
    """
    positions = positions_array(readings)
    distances = distances_array(readings)

    if initial_position is not None:
        try:
            position = nonlinear_solve(
                positions,
                distances,
                np.asarray(initial_position, dtype=np.float64),
            ).position
        except NumericalError as exc:
            raise FitError(str(exc)) from exc
    elif homogeneous:
        position = homogeneous_linear_solve(positions, distances)
    else:
        position = linear_solve(positions, distances)

    if not np.all(np.isfinite(position)):
        raise FitError("non-finite candidate position")
    return position
