from __future__ import annotations

import numpy as np
import pytest

from rangeloc.errors import FitError, NumericalError
from rangeloc.lateration import (
    fit_minimal,
    homogeneous_linear_solve,
    linear_solve,
    nonlinear_solve,
)
from rangeloc.readings import RangingReading
from rangeloc.sources import WifiAccessPoint

AP = WifiAccessPoint(bssid="bssid", frequency=2.4e9)
SOURCE = np.array([3.0, -4.0, 5.0])
RECEIVERS = np.array([
    [0.0, 0.0, 0.0],
    [10.0, 0.0, 1.0],
    [0.0, 10.0, -2.0],
    [1.0, 2.0, 12.0],
    [-8.0, 5.0, 3.0],
    [6.0, -9.0, -7.0],
])


def _exact_distances(receivers: np.ndarray) -> np.ndarray:
    return np.linalg.norm(receivers - SOURCE, axis=1)


def _readings(receivers: np.ndarray) -> list[RangingReading]:
    return [
        RangingReading(source=AP, distance=float(d), position=tuple(p))
        for p, d in zip(receivers, _exact_distances(receivers))
    ]


def test_linear_solve_recovers_exact_position() -> None:
    position = linear_solve(RECEIVERS[:4], _exact_distances(RECEIVERS[:4]))
    assert np.allclose(position, SOURCE, atol=1e-9)


def test_homogeneous_solve_recovers_exact_position() -> None:
    position = homogeneous_linear_solve(RECEIVERS, _exact_distances(RECEIVERS))
    assert np.allclose(position, SOURCE, atol=1e-6)


def test_linear_solve_rejects_coplanar_receivers() -> None:
    coplanar = np.array([
        [0.0, 0.0, 0.0],
        [5.0, 0.0, 0.0],
        [0.0, 5.0, 0.0],
        [5.0, 5.0, 0.0],
    ])
    with pytest.raises(FitError):
        linear_solve(coplanar, _exact_distances(coplanar))


def test_linear_solve_requires_four_readings() -> None:
    with pytest.raises(FitError):
        linear_solve(RECEIVERS[:3], _exact_distances(RECEIVERS[:3]))


def test_nonlinear_solve_converges_from_offset_seed() -> None:
    result = nonlinear_solve(
        RECEIVERS,
        _exact_distances(RECEIVERS),
        SOURCE + np.array([1.5, -1.0, 2.0]),
        variances=np.full(len(RECEIVERS), 0.01),
        compute_covariance=True,
    )

    assert np.allclose(result.position, SOURCE, atol=1e-6)
    assert result.covariance is not None
    assert result.covariance.shape == (3, 3)
    assert np.allclose(result.covariance, result.covariance.T)
    assert np.all(np.linalg.eigvalsh(result.covariance) > 0.0)
    assert result.chi_sq < 1e-9


def test_nonlinear_solve_covariance_scales_with_variance() -> None:
    distances = _exact_distances(RECEIVERS)
    tight = nonlinear_solve(
        RECEIVERS, distances, SOURCE, variances=np.full(6, 0.01), compute_covariance=True
    )
    loose = nonlinear_solve(
        RECEIVERS, distances, SOURCE, variances=np.full(6, 1.0), compute_covariance=True
    )

    assert tight.covariance is not None and loose.covariance is not None
    assert np.allclose(loose.covariance, 100.0 * tight.covariance)


def test_nonlinear_solve_flags_singular_normal_matrix() -> None:
    collinear = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0], [3.0, 0.0, 0.0]])
    target = np.array([10.0, 0.0, 0.0])
    distances = np.linalg.norm(collinear - target, axis=1)

    with pytest.raises(NumericalError):
        nonlinear_solve(collinear, distances, target, compute_covariance=True)


def test_nonlinear_solve_raises_when_iterations_run_out() -> None:
    with pytest.raises(NumericalError, match="did not converge"):
        nonlinear_solve(
            RECEIVERS,
            _exact_distances(RECEIVERS),
            SOURCE + np.array([1.5, -1.0, 2.0]),
            max_iters=2,
        )


def test_fit_minimal_uses_initial_position() -> None:
    readings = _readings(RECEIVERS[:4])

    linear = fit_minimal(readings)
    seeded = fit_minimal(readings, initial_position=(2.0, -3.0, 4.0))
    homogeneous = fit_minimal(_readings(RECEIVERS), homogeneous=True)

    assert np.allclose(linear, SOURCE, atol=1e-9)
    assert np.allclose(seeded, SOURCE, atol=1e-6)
    assert np.allclose(homogeneous, SOURCE, atol=1e-6)
