"""Range observations of a radio source taken at known receiver positions."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np

from rangeloc.errors import InvalidArgumentError
from rangeloc.sources import RadioSource

Point3 = tuple[float, float, float]

DIMENSIONS = 3
MIN_READINGS = DIMENSIONS + 1


@dataclass(frozen=True, slots=True)
class RangingReading:
    source: RadioSource
    distance: float  # meters
    position: Point3  # receiver position
    distance_std: float | None = None
    position_covariance: np.ndarray | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not math.isfinite(self.distance) or self.distance < 0:
            raise InvalidArgumentError(f"distance must be >= 0, got {self.distance}")
        if self.distance_std is not None and not self.distance_std > 0:
            raise InvalidArgumentError(
                f"distance_std must be > 0 when present, got {self.distance_std}"
            )
        if len(self.position) != DIMENSIONS:
            raise InvalidArgumentError(
                f"receiver position must have {DIMENSIONS} coordinates"
            )
        if self.position_covariance is not None and np.shape(self.position_covariance) != (
            DIMENSIONS,
            DIMENSIONS,
        ):
            raise InvalidArgumentError("position_covariance must be a 3x3 matrix")


def positions_array(readings: Sequence[RangingReading]) -> np.ndarray:
    """Receiver positions as an (N, 3) array."""
    return np.array([reading.position for reading in readings], dtype=np.float64)


def distances_array(readings: Sequence[RangingReading]) -> np.ndarray:
    return np.array([reading.distance for reading in readings], dtype=np.float64)


def distance_stds_array(
    readings: Sequence[RangingReading],
    fallback: float,
) -> np.ndarray:
    """Per-reading distance standard deviations, using `fallback` where absent."""
    return np.array(
        [
            reading.distance_std if reading.distance_std is not None else fallback
            for reading in readings
        ],
        dtype=np.float64,
    )
