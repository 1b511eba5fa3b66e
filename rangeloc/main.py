"""Command line entry point: load readings → estimate → report."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

import numpy as np

from rangeloc.config import EstimatorConfig, apply_overrides, load_config_file
from rangeloc.errors import EstimatorError
from rangeloc.estimator import RANSACRangingSourceEstimator
from rangeloc.readings import RangingReading
from rangeloc.report import print_report
from rangeloc.sources import Beacon, RadioSource, WifiAccessPoint

log = logging.getLogger("rangeloc")


def _source_from_dict(d: dict) -> RadioSource:
    kind = d.get("type", "wifi")
    if kind == "wifi":
        return WifiAccessPoint(
            bssid=d["bssid"],
            frequency=float(d["frequency"]),
            ssid=d.get("ssid"),
        )
    if kind == "beacon":
        return Beacon(
            identifiers=tuple(str(item) for item in d["identifiers"]),
            transmitted_power=float(d["transmitted_power"]),
            frequency=float(d.get("frequency", 2.4e9)),
            bluetooth_address=d.get("bluetooth_address"),
            beacon_type_code=int(d.get("beacon_type_code", 0)),
            manufacturer=int(d.get("manufacturer", 0)),
            service_uuid=int(d.get("service_uuid", -1)),
            bluetooth_name=d.get("bluetooth_name"),
        )
    raise ValueError(f"unknown source type: {kind}")


def _reading_from_dict(source: RadioSource, d: dict) -> RangingReading:
    covariance = d.get("position_covariance")
    return RangingReading(
        source=source,
        distance=float(d["distance"]),
        position=tuple(float(v) for v in d["position"]),  # type: ignore[arg-type]
        distance_std=float(d["distance_std"]) if d.get("distance_std") is not None else None,
        position_covariance=(
            np.array(covariance, dtype=np.float64) if covariance is not None else None
        ),
    )


def load_readings(path: Path) -> list[RangingReading]:
    """Load readings of a single source from JSON.

    Expected layout: {"source": {...}, "readings": [{"position": [x, y, z],
    "distance": d, "distance_std": s}, ...]}
    """
    data = json.loads(path.read_text())
    source = _source_from_dict(data["source"])
    return [_reading_from_dict(source, item) for item in data["readings"]]


def build_config() -> tuple[EstimatorConfig, argparse.Namespace]:
    parser = argparse.ArgumentParser(
        prog="rangeloc",
        description="Robust position estimation of a ranged radio source",
    )
    parser.add_argument("readings", type=Path, help="Readings JSON file")
    parser.add_argument("--config", type=Path, default=None, help="TOML config file")
    parser.add_argument("--threshold", type=float, default=None, help="Inlier threshold (m)")
    parser.add_argument("--confidence", type=float, default=None)
    parser.add_argument("--max-iterations", type=int, default=None)
    parser.add_argument(
        "--initial-position",
        type=float,
        nargs=3,
        metavar=("X", "Y", "Z"),
        default=None,
    )
    parser.add_argument("--no-refine", action="store_true", help="Skip inlier refinement")
    parser.add_argument("--no-covariance", action="store_true", help="Skip covariance")
    parser.add_argument("--keep-inliers", action="store_true")
    parser.add_argument("--keep-residuals", action="store_true")
    parser.add_argument("--homogeneous", action="store_true", help="Homogeneous linear solver")
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    parser.add_argument("--debug", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    config = EstimatorConfig()

    # Load from config file
    if args.config is not None:
        apply_overrides(config, load_config_file(args.config))

    # Apply CLI overrides
    cli_overrides: dict = {}
    if args.threshold is not None:
        cli_overrides["threshold"] = args.threshold
    if args.confidence is not None:
        cli_overrides["confidence"] = args.confidence
    if args.max_iterations is not None:
        cli_overrides["max_iterations"] = args.max_iterations
    if args.initial_position is not None:
        cli_overrides["initial_position"] = args.initial_position
    if args.no_refine:
        cli_overrides["result_refined"] = False
    if args.no_covariance:
        cli_overrides["covariance_kept"] = False
    if args.keep_inliers:
        cli_overrides["compute_and_keep_inliers"] = True
    if args.keep_residuals:
        cli_overrides["compute_and_keep_residuals"] = True
    if args.homogeneous:
        cli_overrides["use_homogeneous_linear_solver"] = True
    apply_overrides(config, cli_overrides)

    return config, args


def run(config: EstimatorConfig, readings_path: Path, seed: int | None = None) -> int:
    try:
        readings = load_readings(readings_path)
    except (OSError, ValueError, KeyError) as exc:
        log.error("failed to load readings from %s: %s", readings_path, exc)
        return 1
    log.info("loaded %d readings from %s", len(readings), readings_path)

    try:
        estimator = RANSACRangingSourceEstimator(
            readings=readings,
            config=config,
            rng=np.random.default_rng(seed),
        )
        located = estimator.estimate()
    except EstimatorError as exc:
        log.error("estimation failed: %s", exc)
        return 1

    if located is not None:
        print_report(located, estimator)
    return 0


def main() -> None:
    config, args = build_config()
    raise SystemExit(run(config, args.readings, seed=args.seed))


if __name__ == "__main__":
    main()
