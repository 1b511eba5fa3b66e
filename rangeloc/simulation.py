"""Synthetic ranging readings around a known source position."""

from __future__ import annotations

import numpy as np

from rangeloc.readings import Point3, RangingReading
from rangeloc.sources import RadioSource


def simulate_readings(
    source: RadioSource,
    source_position: Point3,
    count: int,
    rng: np.random.Generator,
    bounds: tuple[float, float] = (-50.0, 50.0),
    outlier_fraction: float = 0.0,
    outlier_std: float = 10.0,
    inlier_std: float = 0.0,
    distance_std: float | None = None,
) -> tuple[list[RangingReading], np.ndarray]:
    """Draw receivers uniformly in a cube and range them to `source_position`.

    Outliers get a positive error |N(0, outlier_std)|, mimicking NLOS paths
    that can only lengthen a range. Inliers get N(0, inlier_std) noise.

    Returns:
        (readings, outlier_mask)
    """
    low, high = bounds
    target = np.asarray(source_position, dtype=np.float64)
    receivers = rng.uniform(low, high, size=(count, 3))
    true_distances = np.linalg.norm(receivers - target, axis=1)

    outliers = rng.random(count) < outlier_fraction
    errors = np.where(
        outliers,
        np.abs(rng.normal(0.0, outlier_std, size=count)),
        rng.normal(0.0, inlier_std, size=count) if inlier_std > 0 else 0.0,
    )
    distances = np.maximum(true_distances + errors, 0.0)

    readings = [
        RangingReading(
            source=source,
            distance=float(distance),
            position=(float(p[0]), float(p[1]), float(p[2])),
            distance_std=distance_std,
        )
        for p, distance in zip(receivers, distances)
    ]
    return readings, outliers
