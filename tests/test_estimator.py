from __future__ import annotations

import numpy as np
import pytest

from rangeloc.config import EstimatorConfig
from rangeloc.errors import (
    InvalidArgumentError,
    LockedError,
    NotReadyError,
    NoConsensusError,
    NumericalError,
)
from rangeloc.estimator import EstimatorListener, RANSACRangingSourceEstimator
from rangeloc.ransac import residuals
from rangeloc.readings import RangingReading, distances_array, positions_array
from rangeloc.refinement import position_accuracy, refine
from rangeloc.simulation import simulate_readings
from rangeloc.sources import Beacon, BeaconLocated, WifiAccessPoint, WifiAccessPointLocated

AP = WifiAccessPoint(bssid="00:11:22:33:44:55", frequency=2.4e9, ssid="lab")
TIMES = 50


class RecordingListener(EstimatorListener):
    """Counts callbacks and tries every mutator while the estimator is locked."""

    def __init__(self) -> None:
        self.start = 0
        self.end = 0
        self.next_iteration = 0
        self.progress_change = 0
        self.locked_errors = 0

    def _try_mutators(self, estimator: RANSACRangingSourceEstimator) -> None:
        mutators = [
            lambda: setattr(estimator, "threshold", 0.5),
            lambda: setattr(estimator, "confidence", 0.5),
            lambda: setattr(estimator, "max_iterations", 10),
            lambda: setattr(estimator, "progress_delta", 0.5),
            lambda: setattr(estimator, "result_refined", False),
            lambda: setattr(estimator, "covariance_kept", False),
            lambda: setattr(estimator, "initial_position", (0.0, 0.0, 0.0)),
            lambda: setattr(estimator, "compute_and_keep_inliers", True),
            lambda: setattr(estimator, "compute_and_keep_residuals", True),
            lambda: setattr(estimator, "readings", estimator.readings),
            lambda: setattr(estimator, "listener", None),
            lambda: setattr(estimator, "quality_scores", [1.0] * 4),
            estimator.estimate,
        ]
        for mutate in mutators:
            try:
                mutate()
            except LockedError:
                self.locked_errors += 1

    def on_estimate_start(self, estimator: RANSACRangingSourceEstimator) -> None:
        self.start += 1
        assert estimator.locked
        self._try_mutators(estimator)

    def on_estimate_end(self, estimator: RANSACRangingSourceEstimator) -> None:
        self.end += 1
        assert estimator.locked
        self._try_mutators(estimator)

    def on_estimate_next_iteration(
        self, estimator: RANSACRangingSourceEstimator, iteration: int
    ) -> None:
        self.next_iteration += 1

    def on_estimate_progress_change(
        self, estimator: RANSACRangingSourceEstimator, progress: float
    ) -> None:
        self.progress_change += 1


def _simulate(
    seed: int,
    count: int = 60,
    outlier_fraction: float = 0.0,
    **kwargs: float,
) -> tuple[list[RangingReading], tuple[float, float, float]]:
    rng = np.random.default_rng(seed)
    position = tuple(float(v) for v in rng.uniform(-20.0, 20.0, size=3))
    readings, _ = simulate_readings(
        AP, position, count=count, rng=rng, outlier_fraction=outlier_fraction, **kwargs
    )
    return readings, position  # type: ignore[return-value]


def test_defaults() -> None:
    estimator = RANSACRangingSourceEstimator()

    assert estimator.threshold == 0.1
    assert estimator.confidence == 0.99
    assert estimator.max_iterations == 5000
    assert estimator.progress_delta == 0.05
    assert estimator.result_refined
    assert estimator.covariance_kept
    assert not estimator.compute_and_keep_inliers
    assert not estimator.compute_and_keep_residuals
    assert estimator.initial_position is None
    assert estimator.dimensions == 3
    assert estimator.min_readings == 4
    assert estimator.preliminary_subset_size == 4
    assert estimator.readings is None
    assert estimator.listener is None
    assert estimator.quality_scores is None
    assert not estimator.is_ready
    assert not estimator.locked
    assert estimator.estimated_position is None
    assert estimator.estimated_position_covariance is None
    assert estimator.estimated_radio_source is None
    assert estimator.inliers_data is None


def test_setters_validate_arguments() -> None:
    estimator = RANSACRangingSourceEstimator()

    with pytest.raises(InvalidArgumentError):
        estimator.threshold = 0.0
    with pytest.raises(InvalidArgumentError):
        estimator.confidence = 1.5
    with pytest.raises(InvalidArgumentError):
        estimator.confidence = -0.1
    with pytest.raises(InvalidArgumentError):
        estimator.max_iterations = 0
    with pytest.raises(InvalidArgumentError):
        estimator.progress_delta = 2.0
    with pytest.raises(InvalidArgumentError):
        estimator.initial_position = (1.0, 2.0)  # type: ignore[assignment]
    with pytest.raises(InvalidArgumentError):
        estimator.preliminary_subset_size = 3
    with pytest.raises(InvalidArgumentError):
        estimator.fallback_distance_std = 0.0
    # InvalidArgumentError is also a ValueError
    with pytest.raises(ValueError):
        estimator.threshold = -1.0

    estimator.threshold = 0.5
    estimator.confidence = 0.0
    estimator.confidence = 1.0
    estimator.max_iterations = 1
    estimator.initial_position = (1, 2, 3)
    assert estimator.threshold == 0.5
    assert estimator.confidence == 1.0
    assert estimator.max_iterations == 1
    assert estimator.initial_position == (1.0, 2.0, 3.0)


def test_invalid_config_is_rejected_on_construction() -> None:
    with pytest.raises(InvalidArgumentError):
        RANSACRangingSourceEstimator(config=EstimatorConfig(threshold=-1.0))


def test_readings_and_readiness() -> None:
    readings, _ = _simulate(1, count=4)
    estimator = RANSACRangingSourceEstimator()

    with pytest.raises(InvalidArgumentError):
        estimator.readings = readings[:3]
    assert not estimator.is_ready

    estimator.readings = readings
    assert estimator.is_ready
    assert estimator.readings is readings


def test_estimate_without_readings_raises() -> None:
    with pytest.raises(NotReadyError):
        RANSACRangingSourceEstimator().estimate()


def test_estimate_with_outliers_without_refinement() -> None:
    readings, position = _simulate(2, outlier_fraction=0.2)
    listener = RecordingListener()
    estimator = RANSACRangingSourceEstimator(
        readings=readings,
        listener=listener,
        config=EstimatorConfig(result_refined=False),
        rng=np.random.default_rng(2),
    )

    located = estimator.estimate()

    assert isinstance(located, WifiAccessPointLocated)
    assert located.bssid == AP.bssid
    assert located.ssid == AP.ssid
    assert np.allclose(located.position, position, atol=1e-6)
    assert located.position_covariance is None
    assert estimator.inliers_data is None
    assert estimator.iterations > 0
    assert listener.start == 1
    assert listener.end == 1
    assert listener.next_iteration == estimator.iterations
    assert listener.progress_change > 0
    # 13 attempts per callback, twice
    assert listener.locked_errors == 26
    assert not estimator.locked

    # The estimator is mutable again once estimation returns.
    estimator.threshold = 0.2
    estimator.listener = None
    estimator.result_refined = True
    assert estimator.threshold == 0.2


def test_estimate_exact_readings_with_and_without_refinement() -> None:
    readings, position = _simulate(3)
    for refined in (False, True):
        estimator = RANSACRangingSourceEstimator(
            readings=readings,
            config=EstimatorConfig(result_refined=refined),
            rng=np.random.default_rng(3),
        )
        located = estimator.estimate()

        assert located is not None
        assert np.allclose(located.position, position, atol=1e-6)
        assert np.allclose(estimator.estimated_position, position, atol=1e-6)


def test_estimate_refined_with_noisy_inliers_and_outliers() -> None:
    valid = 0
    for trial in range(TIMES):
        readings, position = _simulate(
            100 + trial,
            outlier_fraction=0.2,
            inlier_std=0.01,
            distance_std=0.01,
        )
        estimator = RANSACRangingSourceEstimator(
            readings=readings,
            rng=np.random.default_rng(trial),
        )
        located = estimator.estimate()

        assert located is not None
        if np.linalg.norm(np.asarray(located.position) - position) < 0.05:
            valid += 1

    assert valid > TIMES // 2


def test_estimate_keeps_covariance_and_inliers() -> None:
    readings, _ = _simulate(4, outlier_fraction=0.2, inlier_std=0.01, distance_std=0.01)
    estimator = RANSACRangingSourceEstimator(readings=readings, rng=np.random.default_rng(4))

    located = estimator.estimate()

    assert located is not None
    covariance = estimator.estimated_position_covariance
    assert covariance is not None
    assert covariance.shape == (3, 3)
    assert np.allclose(covariance, covariance.T)
    assert np.all(np.linalg.eigvalsh(covariance) > 0)
    assert located.position_covariance is covariance
    assert position_accuracy(covariance) > 0

    # Refinement keeps the inliers data even without the explicit flags.
    data = estimator.inliers_data
    assert data is not None
    assert data.inliers is not None
    assert data.residuals is not None
    assert data.inliers.shape == (len(readings),)
    assert data.num_inliers == int(np.count_nonzero(data.inliers))
    expected = residuals(
        estimator.estimated_position, positions_array(readings), distances_array(readings)
    )
    assert np.allclose(data.residuals, expected)


def test_estimate_without_covariance() -> None:
    readings, _ = _simulate(5)
    estimator = RANSACRangingSourceEstimator(
        readings=readings,
        config=EstimatorConfig(covariance_kept=False),
        rng=np.random.default_rng(5),
    )

    located = estimator.estimate()

    assert located is not None
    assert located.position_covariance is None
    assert estimator.estimated_position_covariance is None


def test_keep_residuals_only() -> None:
    readings, _ = _simulate(6, outlier_fraction=0.1)
    estimator = RANSACRangingSourceEstimator(
        readings=readings,
        config=EstimatorConfig(result_refined=False, compute_and_keep_residuals=True),
        rng=np.random.default_rng(6),
    )

    estimator.estimate()

    data = estimator.inliers_data
    assert data is not None
    assert data.inliers is None
    assert data.residuals is not None
    assert data.residuals.shape == (len(readings),)


def test_quality_scores_are_ignored() -> None:
    estimator = RANSACRangingSourceEstimator()
    estimator.quality_scores = [1.0, 2.0, 3.0, 4.0]
    assert estimator.quality_scores is None


def test_estimate_locates_beacon() -> None:
    beacon = Beacon(
        identifiers=("f7826da6-4fa2-4e98-8024-bc5b71e0893e", "1", "2"),
        transmitted_power=-59.0,
        bluetooth_address="AA:BB:CC:DD:EE:FF",
    )
    rng = np.random.default_rng(7)
    readings, _ = simulate_readings(beacon, (1.0, 2.0, 3.0), count=20, rng=rng)
    estimator = RANSACRangingSourceEstimator(readings=readings, rng=rng)

    located = estimator.estimate()

    assert isinstance(located, BeaconLocated)
    assert located.identifiers == beacon.identifiers
    assert located.bluetooth_address == beacon.bluetooth_address
    assert np.allclose(located.position, (1.0, 2.0, 3.0), atol=1e-6)


def test_estimate_with_initial_position_and_homogeneous_solver() -> None:
    readings, position = _simulate(8, outlier_fraction=0.2)

    seeded = RANSACRangingSourceEstimator(
        readings=readings,
        config=EstimatorConfig(initial_position=(0.0, 0.0, 0.0)),
        rng=np.random.default_rng(8),
    )
    located = seeded.estimate()
    assert located is not None
    assert np.allclose(located.position, position, atol=1e-6)

    homogeneous = RANSACRangingSourceEstimator(
        readings=readings,
        config=EstimatorConfig(use_homogeneous_linear_solver=True),
        rng=np.random.default_rng(8),
    )
    located = homogeneous.estimate()
    assert located is not None
    assert np.allclose(located.position, position, atol=1e-6)


def test_refine_returns_rough_position_when_disabled() -> None:
    readings, _ = _simulate(9, count=10)
    rough = np.array([1.0, 2.0, 3.0])

    position, covariance = refine(readings, rough, EstimatorConfig(result_refined=False))

    assert np.array_equal(position, rough)
    assert covariance is None


def test_reading_position_covariances_widen_the_estimate() -> None:
    readings, position = _simulate(10, count=20, distance_std=0.01)
    uncertain = [
        RangingReading(
            source=r.source,
            distance=r.distance,
            position=r.position,
            distance_std=r.distance_std,
            position_covariance=np.eye(3) * 0.01,
        )
        for r in readings
    ]
    rough = np.asarray(position)

    _, tight = refine(readings, rough, EstimatorConfig())
    _, loose = refine(uncertain, rough, EstimatorConfig())
    _, ignored = refine(
        uncertain, rough, EstimatorConfig(use_reading_position_covariances=False)
    )

    assert tight is not None and loose is not None and ignored is not None
    assert np.trace(loose) > np.trace(tight)
    assert np.allclose(ignored, tight)


def test_refine_raises_on_collinear_inliers() -> None:
    readings = [
        RangingReading(source=AP, distance=abs(x), position=(x, 0.0, 0.0))
        for x in (1.0, 2.0, -3.0, 5.0)
    ]

    with pytest.raises(NumericalError):
        refine(readings, np.zeros(3), EstimatorConfig())


class ConfigTamperingListener(EstimatorListener):
    def on_estimate_start(self, estimator: RANSACRangingSourceEstimator) -> None:
        config = estimator.config
        config.threshold = -5.0
        config.max_iterations = 0


def test_config_accessor_returns_a_copy() -> None:
    readings, position = _simulate(11, outlier_fraction=0.2)
    estimator = RANSACRangingSourceEstimator(
        readings=readings,
        listener=ConfigTamperingListener(),
        rng=np.random.default_rng(11),
    )

    located = estimator.estimate()

    assert located is not None
    assert np.allclose(located.position, position, atol=1e-6)
    assert estimator.threshold == 0.1
    assert estimator.max_iterations == 5000
    assert estimator.config.threshold == 0.1
    assert estimator.config is not estimator.config


def test_failed_estimate_clears_previous_results(monkeypatch) -> None:
    readings, _ = _simulate(12)
    estimator = RANSACRangingSourceEstimator(readings=readings, rng=np.random.default_rng(12))
    assert estimator.estimate() is not None
    assert estimator.inliers_data is not None

    def no_consensus(*args, **kwargs):
        raise NoConsensusError("no candidate found")

    monkeypatch.setattr("rangeloc.estimator.search", no_consensus)
    with pytest.raises(NoConsensusError):
        estimator.estimate()

    assert not estimator.locked
    assert estimator.estimated_position is None
    assert estimator.estimated_position_covariance is None
    assert estimator.estimated_radio_source is None
    assert estimator.inliers_data is None


def test_located_source_keeps_identity_after_readings_change() -> None:
    readings, position = _simulate(13, count=10)
    estimator = RANSACRangingSourceEstimator(readings=readings, rng=np.random.default_rng(13))
    estimator.estimate()

    beacon = Beacon(identifiers=("uuid", "1", "2"), transmitted_power=-59.0)
    rng = np.random.default_rng(14)
    beacon_readings, _ = simulate_readings(beacon, (5.0, 5.0, 5.0), count=10, rng=rng)
    estimator.readings = beacon_readings

    located = estimator.estimated_radio_source
    assert isinstance(located, WifiAccessPointLocated)
    assert located.bssid == AP.bssid
    assert np.allclose(located.position, position, atol=1e-6)
