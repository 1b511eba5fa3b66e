#!/usr/bin/env python3
"""Write a synthetic readings file for `python -m rangeloc`."""

from __future__ import annotations

import argparse
import json
from pathlib import Path

import numpy as np

from rangeloc.simulation import simulate_readings
from rangeloc.sources import WifiAccessPoint

FREQUENCY = 2.4e9  # Hz


def build_payload(
    count: int,
    outlier_fraction: float,
    seed: int | None,
) -> tuple[dict, tuple[float, float, float]]:
    rng = np.random.default_rng(seed)
    source = WifiAccessPoint(bssid="00:11:22:33:44:55", frequency=FREQUENCY, ssid="lab-ap")
    position = tuple(float(v) for v in rng.uniform(-20.0, 20.0, size=3))
    readings, _ = simulate_readings(
        source,
        position,  # type: ignore[arg-type]
        count=count,
        rng=rng,
        outlier_fraction=outlier_fraction,
        inlier_std=0.02,
        distance_std=0.05,
    )
    payload = {
        "source": {
            "type": "wifi",
            "bssid": source.bssid,
            "ssid": source.ssid,
            "frequency": source.frequency,
        },
        "readings": [
            {
                "position": list(reading.position),
                "distance": reading.distance,
                "distance_std": reading.distance_std,
            }
            for reading in readings
        ],
    }
    return payload, position  # type: ignore[return-value]


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("output", type=Path)
    parser.add_argument("--count", type=int, default=60)
    parser.add_argument("--outliers", type=float, default=0.2, help="Outlier fraction")
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args()

    payload, position = build_payload(args.count, args.outliers, args.seed)
    args.output.parent.mkdir(parents=True, exist_ok=True)
    args.output.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    x, y, z = position
    print(f"wrote {args.output} (true position {x:.3f}, {y:.3f}, {z:.3f})")


if __name__ == "__main__":
    main()
