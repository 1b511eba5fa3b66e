"""Radio source identities and their located counterparts."""

from __future__ import annotations

from dataclasses import dataclass, field, fields

import numpy as np


@dataclass(frozen=True, slots=True)
class WifiAccessPoint:
    bssid: str
    frequency: float  # Hz
    ssid: str | None = None

    @property
    def source_id(self) -> str:
        return self.bssid


@dataclass(frozen=True, slots=True)
class Beacon:
    identifiers: tuple[str, ...]
    transmitted_power: float  # dBm at 1 m
    frequency: float = 2.4e9
    bluetooth_address: str | None = None
    beacon_type_code: int = 0
    manufacturer: int = 0
    service_uuid: int = -1
    bluetooth_name: str | None = None

    @property
    def source_id(self) -> str:
        return ":".join(self.identifiers)


RadioSource = WifiAccessPoint | Beacon


@dataclass(frozen=True, slots=True, kw_only=True)
class WifiAccessPointLocated(WifiAccessPoint):
    position: tuple[float, float, float]
    position_covariance: np.ndarray | None = field(default=None, compare=False)


@dataclass(frozen=True, slots=True, kw_only=True)
class BeaconLocated(Beacon):
    position: tuple[float, float, float]
    position_covariance: np.ndarray | None = field(default=None, compare=False)


@dataclass(frozen=True, slots=True)
class LocatedRadioSource:
    """Fallback wrapper for source types without a dedicated located class."""

    source: object
    position: tuple[float, float, float]
    position_covariance: np.ndarray | None = field(default=None, compare=False)


LocatedSource = WifiAccessPointLocated | BeaconLocated | LocatedRadioSource

_LOCATED_TYPES: dict[type, type] = {
    WifiAccessPoint: WifiAccessPointLocated,
    Beacon: BeaconLocated,
}


def locate(
    source: object,
    position: tuple[float, float, float],
    covariance: np.ndarray | None = None,
) -> LocatedSource:
    """Attach an estimated position to a source, copying its identity fields."""
    located_type = _LOCATED_TYPES.get(type(source))
    if located_type is None:
        return LocatedRadioSource(
            source=source,
            position=position,
            position_covariance=covariance,
        )
    identity = {f.name: getattr(source, f.name) for f in fields(source)}
    return located_type(**identity, position=position, position_covariance=covariance)
