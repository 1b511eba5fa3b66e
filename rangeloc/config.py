"""Estimator configuration and TOML overrides."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from rangeloc.readings import Point3

DEFAULT_THRESHOLD = 0.1  # meters
DEFAULT_CONFIDENCE = 0.99
DEFAULT_MAX_ITERATIONS = 5000
DEFAULT_PROGRESS_DELTA = 0.05
DEFAULT_FALLBACK_DISTANCE_STD = 1e-3  # meters


@dataclass
class EstimatorConfig:
    # Consensus search
    threshold: float = DEFAULT_THRESHOLD
    confidence: float = DEFAULT_CONFIDENCE
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    progress_delta: float = DEFAULT_PROGRESS_DELTA
    preliminary_subset_size: int | None = None  # None: minimum readings

    # Refinement
    result_refined: bool = True
    covariance_kept: bool = True
    initial_position: Point3 | None = None
    fallback_distance_std: float = DEFAULT_FALLBACK_DISTANCE_STD
    use_reading_position_covariances: bool = True
    use_homogeneous_linear_solver: bool = False

    # Diagnostics
    compute_and_keep_inliers: bool = False
    compute_and_keep_residuals: bool = False


def load_config_file(path: Path) -> dict:
    """Load config overrides from a TOML file. Returns empty dict if not found."""
    if not path.exists():
        return {}
    import tomllib
    data = tomllib.loads(path.read_text())
    # Settings may live at top level or under an [estimator] table.
    section = data.get("estimator")
    return dict(section) if isinstance(section, dict) else data


def apply_overrides(config: EstimatorConfig, overrides: dict) -> EstimatorConfig:
    """Apply dict overrides (from TOML or CLI) onto a config."""
    for key, value in overrides.items():
        if key == "initial_position" and isinstance(value, list | tuple):
            config.initial_position = (float(value[0]), float(value[1]), float(value[2]))
        elif key == "max_iterations" and isinstance(value, int | float):
            config.max_iterations = int(value)
        elif key in ("threshold", "confidence", "progress_delta", "fallback_distance_std"):
            if isinstance(value, int | float):
                setattr(config, key, float(value))
        elif hasattr(config, key):
            setattr(config, key, value)
    return config
