"""Robust RANSAC estimator for the position of a ranged radio source."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, fields, replace

import numpy as np

from rangeloc.config import EstimatorConfig
from rangeloc.errors import InvalidArgumentError, LockedError, NotReadyError
from rangeloc.ransac import residuals, search
from rangeloc.readings import (
    DIMENSIONS,
    MIN_READINGS,
    Point3,
    RangingReading,
    distances_array,
    positions_array,
)
from rangeloc.refinement import refine
from rangeloc.sources import LocatedSource, locate

log = logging.getLogger(__name__)


class EstimatorListener:
    """Receives estimation events synchronously on the estimating thread.

    Subclass and override only the callbacks you need.
    """

    def on_estimate_start(self, estimator: RANSACRangingSourceEstimator) -> None:
        pass

    def on_estimate_end(self, estimator: RANSACRangingSourceEstimator) -> None:
        pass

    def on_estimate_next_iteration(
        self, estimator: RANSACRangingSourceEstimator, iteration: int
    ) -> None:
        pass

    def on_estimate_progress_change(
        self, estimator: RANSACRangingSourceEstimator, progress: float
    ) -> None:
        pass


@dataclass(frozen=True)
class InliersData:
    inliers: np.ndarray | None  # bool mask over the readings
    residuals: np.ndarray | None
    num_inliers: int


class RANSACRangingSourceEstimator:
    """Locate a radio source from ranging readings containing outliers.

    Every setter raises LockedError while estimate() is running, including
    when called from a listener callback.
    """

    def __init__(
        self,
        readings: Sequence[RangingReading] | None = None,
        listener: EstimatorListener | None = None,
        config: EstimatorConfig | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self._locked = False
        self._config = EstimatorConfig()
        self._readings: Sequence[RangingReading] | None = None
        self._listener = listener
        self._rng = rng if rng is not None else np.random.default_rng()

        self._estimated_position: np.ndarray | None = None
        self._estimated_covariance: np.ndarray | None = None
        self._inliers_data: InliersData | None = None
        self._estimated_source: object | None = None
        self._iterations = 0

        if config is not None:
            # Route through the setters so every value is validated.
            for f in fields(config):
                setattr(self, f.name, getattr(config, f.name))
        if readings is not None:
            self.readings = readings

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _check_unlocked(self) -> None:
        if self._locked:
            raise LockedError("estimator is locked while estimating")

    @property
    def locked(self) -> bool:
        return self._locked

    @property
    def is_ready(self) -> bool:
        return self._readings is not None and len(self._readings) >= MIN_READINGS

    @property
    def min_readings(self) -> int:
        return MIN_READINGS

    @property
    def dimensions(self) -> int:
        return DIMENSIONS

    @property
    def config(self) -> EstimatorConfig:
        """A copy of the current settings; change them through the setters."""
        return replace(self._config)

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    @property
    def readings(self) -> Sequence[RangingReading] | None:
        return self._readings

    @readings.setter
    def readings(self, readings: Sequence[RangingReading] | None) -> None:
        self._check_unlocked()
        if readings is None or len(readings) < MIN_READINGS:
            raise InvalidArgumentError(f"at least {MIN_READINGS} readings are required")
        self._readings = readings

    @property
    def listener(self) -> EstimatorListener | None:
        return self._listener

    @listener.setter
    def listener(self, listener: EstimatorListener | None) -> None:
        self._check_unlocked()
        self._listener = listener

    @property
    def quality_scores(self) -> None:
        """Always None: RANSAC samples uniformly and keeps no scores."""
        return None

    @quality_scores.setter
    def quality_scores(self, quality_scores: Sequence[float] | None) -> None:
        self._check_unlocked()
        log.debug("quality scores are ignored by RANSAC sampling")

    # ------------------------------------------------------------------
    # Consensus search settings
    # ------------------------------------------------------------------

    @property
    def threshold(self) -> float:
        return self._config.threshold

    @threshold.setter
    def threshold(self, threshold: float) -> None:
        self._check_unlocked()
        if not threshold > 0:
            raise InvalidArgumentError(f"threshold must be > 0, got {threshold}")
        self._config.threshold = float(threshold)

    @property
    def confidence(self) -> float:
        return self._config.confidence

    @confidence.setter
    def confidence(self, confidence: float) -> None:
        self._check_unlocked()
        if not 0.0 <= confidence <= 1.0:
            raise InvalidArgumentError(f"confidence must be in [0, 1], got {confidence}")
        self._config.confidence = float(confidence)

    @property
    def max_iterations(self) -> int:
        return self._config.max_iterations

    @max_iterations.setter
    def max_iterations(self, max_iterations: int) -> None:
        self._check_unlocked()
        if max_iterations < 1:
            raise InvalidArgumentError(f"max_iterations must be >= 1, got {max_iterations}")
        self._config.max_iterations = int(max_iterations)

    @property
    def progress_delta(self) -> float:
        return self._config.progress_delta

    @progress_delta.setter
    def progress_delta(self, progress_delta: float) -> None:
        self._check_unlocked()
        if not 0.0 <= progress_delta <= 1.0:
            raise InvalidArgumentError(
                f"progress_delta must be in [0, 1], got {progress_delta}"
            )
        self._config.progress_delta = float(progress_delta)

    @property
    def preliminary_subset_size(self) -> int:
        return self._config.preliminary_subset_size or MIN_READINGS

    @preliminary_subset_size.setter
    def preliminary_subset_size(self, size: int | None) -> None:
        self._check_unlocked()
        if size is not None and size < MIN_READINGS:
            raise InvalidArgumentError(
                f"preliminary_subset_size must be >= {MIN_READINGS}, got {size}"
            )
        self._config.preliminary_subset_size = size

    @property
    def use_homogeneous_linear_solver(self) -> bool:
        return self._config.use_homogeneous_linear_solver

    @use_homogeneous_linear_solver.setter
    def use_homogeneous_linear_solver(self, enabled: bool) -> None:
        self._check_unlocked()
        self._config.use_homogeneous_linear_solver = bool(enabled)

    # ------------------------------------------------------------------
    # Refinement settings
    # ------------------------------------------------------------------

    @property
    def result_refined(self) -> bool:
        return self._config.result_refined

    @result_refined.setter
    def result_refined(self, refined: bool) -> None:
        self._check_unlocked()
        self._config.result_refined = bool(refined)

    @property
    def covariance_kept(self) -> bool:
        return self._config.covariance_kept

    @covariance_kept.setter
    def covariance_kept(self, kept: bool) -> None:
        self._check_unlocked()
        self._config.covariance_kept = bool(kept)

    @property
    def initial_position(self) -> Point3 | None:
        return self._config.initial_position

    @initial_position.setter
    def initial_position(self, position: Point3 | None) -> None:
        self._check_unlocked()
        if position is not None:
            if len(position) != DIMENSIONS:
                raise InvalidArgumentError("initial_position must have 3 coordinates")
            position = (float(position[0]), float(position[1]), float(position[2]))
        self._config.initial_position = position

    @property
    def fallback_distance_std(self) -> float:
        return self._config.fallback_distance_std

    @fallback_distance_std.setter
    def fallback_distance_std(self, std: float) -> None:
        self._check_unlocked()
        if not std > 0:
            raise InvalidArgumentError(f"fallback_distance_std must be > 0, got {std}")
        self._config.fallback_distance_std = float(std)

    @property
    def use_reading_position_covariances(self) -> bool:
        return self._config.use_reading_position_covariances

    @use_reading_position_covariances.setter
    def use_reading_position_covariances(self, enabled: bool) -> None:
        self._check_unlocked()
        self._config.use_reading_position_covariances = bool(enabled)

    # ------------------------------------------------------------------
    # Diagnostics settings
    # ------------------------------------------------------------------

    @property
    def compute_and_keep_inliers(self) -> bool:
        return self._config.compute_and_keep_inliers

    @compute_and_keep_inliers.setter
    def compute_and_keep_inliers(self, enabled: bool) -> None:
        self._check_unlocked()
        self._config.compute_and_keep_inliers = bool(enabled)

    @property
    def compute_and_keep_residuals(self) -> bool:
        return self._config.compute_and_keep_residuals

    @compute_and_keep_residuals.setter
    def compute_and_keep_residuals(self, enabled: bool) -> None:
        self._check_unlocked()
        self._config.compute_and_keep_residuals = bool(enabled)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    @property
    def estimated_position(self) -> np.ndarray | None:
        return self._estimated_position

    @property
    def estimated_position_covariance(self) -> np.ndarray | None:
        return self._estimated_covariance

    @property
    def inliers_data(self) -> InliersData | None:
        return self._inliers_data

    @property
    def iterations(self) -> int:
        """Iterations performed by the last consensus search."""
        return self._iterations

    @property
    def estimated_radio_source(self) -> LocatedSource | None:
        if self._estimated_source is None or self._estimated_position is None:
            return None
        x, y, z = (float(v) for v in self._estimated_position)
        return locate(self._estimated_source, (x, y, z), self._estimated_covariance)

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def estimate(self) -> LocatedSource | None:
        """Run consensus search and optional refinement.

        Raises:
            LockedError: an estimation is already running.
            NotReadyError: fewer than four readings are set.
            NoConsensusError: no candidate gathered enough inliers.
            NumericalError: refinement or covariance estimation failed.
        """
        self._check_unlocked()
        readings = self._readings
        if readings is None or len(readings) < MIN_READINGS:
            raise NotReadyError(f"at least {MIN_READINGS} readings are required")

        self._locked = True
        try:
            self._estimated_position = None
            self._estimated_covariance = None
            self._inliers_data = None
            self._iterations = 0
            self._estimated_source = None

            listener = self._listener
            if listener is not None:
                listener.on_estimate_start(self)

            consensus = search(
                readings,
                self._config,
                rng=self._rng,
                on_iteration=self._notify_iteration,
                on_progress=self._notify_progress,
            )
            self._iterations = consensus.iterations

            inlier_readings = [
                reading for reading, keep in zip(readings, consensus.inliers) if keep
            ]
            position, covariance = refine(inlier_readings, consensus.position, self._config)

            config = self._config
            keep_inliers = config.compute_and_keep_inliers or config.result_refined
            keep_residuals = config.compute_and_keep_residuals or config.result_refined
            if keep_inliers or keep_residuals:
                final_residuals = consensus.residuals
                if keep_residuals and config.result_refined:
                    final_residuals = residuals(
                        position, positions_array(readings), distances_array(readings)
                    )
                self._inliers_data = InliersData(
                    inliers=consensus.inliers if keep_inliers else None,
                    residuals=final_residuals if keep_residuals else None,
                    num_inliers=consensus.num_inliers,
                )

            self._estimated_position = position
            self._estimated_covariance = covariance
            self._estimated_source = readings[0].source

            if listener is not None:
                listener.on_estimate_end(self)
        finally:
            self._locked = False

        log.info(
            "located source from %d/%d inliers in %d iterations",
            consensus.num_inliers,
            len(readings),
            consensus.iterations,
        )
        return self.estimated_radio_source

    def _notify_iteration(self, iteration: int) -> None:
        if self._listener is not None:
            self._listener.on_estimate_next_iteration(self, iteration)

    def _notify_progress(self, progress: float) -> None:
        if self._listener is not None:
            self._listener.on_estimate_progress_change(self, progress)
