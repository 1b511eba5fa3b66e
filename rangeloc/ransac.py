"""RANSAC consensus search over ranging readings."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from functools import partial

import numpy as np

from rangeloc.config import EstimatorConfig
from rangeloc.errors import FitError, NoConsensusError
from rangeloc.lateration import fit_minimal
from rangeloc.readings import MIN_READINGS, RangingReading, distances_array, positions_array

log = logging.getLogger(__name__)

Fitter = Callable[[Sequence[RangingReading]], np.ndarray]


@dataclass
class ConsensusResult:
    position: np.ndarray
    inliers: np.ndarray  # bool mask over all readings
    residuals: np.ndarray  # against `position`
    num_inliers: int
    iterations: int


def residuals(
    candidate: np.ndarray,
    positions: np.ndarray,
    distances: np.ndarray,
) -> np.ndarray:
    """Absolute range error of every reading against a candidate source position."""
    return np.abs(np.linalg.norm(positions - candidate, axis=1) - distances)


def count_inliers(
    candidate: np.ndarray,
    readings: Sequence[RangingReading],
    threshold: float,
) -> int:
    errors = residuals(
        np.asarray(candidate, dtype=np.float64),
        positions_array(readings),
        distances_array(readings),
    )
    return int(np.count_nonzero(errors <= threshold))


def adaptive_iterations(
    num_inliers: int,
    total: int,
    min_samples: int,
    confidence: float,
    max_iterations: int,
) -> int:
    """Iterations needed to draw one all-inlier sample with `confidence`.

    k = log(1 - confidence) / log(1 - w^n), capped at `max_iterations`.
    """
    ratio = num_inliers / total if total > 0 else 0.0
    if ratio <= 0.0 or confidence >= 1.0:
        return max_iterations
    if ratio >= 1.0 or confidence <= 0.0:
        return 0

    denominator = math.log1p(-(ratio**min_samples))
    if denominator == 0.0:
        # w^n underflows: any sample is as good as unbounded.
        return max_iterations
    estimate = math.ceil(math.log1p(-confidence) / denominator)
    return min(max_iterations, max(estimate, 0))


def search(
    readings: Sequence[RangingReading],
    config: EstimatorConfig,
    rng: np.random.Generator | None = None,
    fitter: Fitter | None = None,
    on_iteration: Callable[[int], None] | None = None,
    on_progress: Callable[[float], None] | None = None,
) -> ConsensusResult:
    """Find the candidate position supported by the largest set of readings.

    The first candidate reaching the maximum inlier count is kept; later
    candidates with an equal count never replace it.

    Raises:
        NoConsensusError: no candidate reached the minimum number of inliers.
    """
    if rng is None:
        rng = np.random.default_rng()
    if fitter is None:
        fitter = partial(
            fit_minimal,
            initial_position=config.initial_position,
            homogeneous=config.use_homogeneous_linear_solver,
        )

    total = len(readings)
    subset_size = config.preliminary_subset_size or MIN_READINGS
    if total < subset_size:
        raise NoConsensusError(f"{total} readings cannot fill a sample of {subset_size}")

    positions = positions_array(readings)
    distances = distances_array(readings)

    best_count = 0
    best_position: np.ndarray | None = None
    best_mask: np.ndarray | None = None
    best_residuals: np.ndarray | None = None
    skipped = 0

    # Scoped to this call; shrinks as better consensus sets appear.
    dynamic_max = config.max_iterations
    last_progress = 0.0
    iterations = 0
    while iterations < dynamic_max:
        indices = rng.choice(total, size=subset_size, replace=False)
        sample = [readings[idx] for idx in indices]

        try:
            candidate = fitter(sample)
        except FitError as exc:
            # Degenerate samples are expected; resample on the next iteration.
            log.debug("skipping sample %s: %s", indices.tolist(), exc)
            skipped += 1
            candidate = None

        if candidate is not None:
            errors = residuals(candidate, positions, distances)
            mask = errors <= config.threshold
            count = int(np.count_nonzero(mask))
            if count > best_count:
                best_count = count
                best_position = candidate
                best_mask = mask
                best_residuals = errors
                dynamic_max = adaptive_iterations(
                    count,
                    total,
                    MIN_READINGS,
                    config.confidence,
                    config.max_iterations,
                )
                log.debug(
                    "iteration %d: %d/%d inliers, bound %d",
                    iterations,
                    count,
                    total,
                    dynamic_max,
                )

        if on_iteration is not None:
            on_iteration(iterations)

        progress = min((iterations + 1) / max(dynamic_max, 1), 1.0)
        if on_progress is not None and (progress - last_progress) >= config.progress_delta:
            on_progress(progress)
            last_progress = progress

        iterations += 1

    if best_position is None or best_mask is None or best_residuals is None:
        raise NoConsensusError(f"no candidate found in {iterations} iterations")
    if best_count < MIN_READINGS:
        raise NoConsensusError(
            f"best candidate has {best_count} inliers, need {MIN_READINGS}"
        )

    log.debug(
        "consensus: %d/%d inliers after %d iterations (%d skipped)",
        best_count,
        total,
        iterations,
        skipped,
    )
    return ConsensusResult(
        position=best_position,
        inliers=best_mask,
        residuals=best_residuals,
        num_inliers=best_count,
        iterations=iterations,
    )
