"""Terminal report of an estimation using rich."""

from __future__ import annotations

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from rangeloc.errors import NumericalError
from rangeloc.estimator import RANSACRangingSourceEstimator
from rangeloc.refinement import position_accuracy
from rangeloc.sources import (
    BeaconLocated,
    LocatedRadioSource,
    LocatedSource,
    WifiAccessPointLocated,
)


def _identity_rows(located: LocatedSource) -> list[tuple[str, str]]:
    if isinstance(located, WifiAccessPointLocated):
        return [
            ("type", "wifi access point"),
            ("bssid", located.bssid),
            ("ssid", located.ssid or "-"),
            ("frequency", f"{located.frequency / 1e9:.3f} GHz"),
        ]
    if isinstance(located, BeaconLocated):
        return [
            ("type", "beacon"),
            ("identifiers", ", ".join(located.identifiers)),
            ("tx power", f"{located.transmitted_power:.1f} dBm"),
            ("address", located.bluetooth_address or "-"),
            ("name", located.bluetooth_name or "-"),
        ]
    if isinstance(located, LocatedRadioSource):
        return [("source", repr(located.source))]
    return []


def _header(located: LocatedSource) -> Panel:
    x, y, z = located.position
    title = Text()
    title.append("rangeloc", "bold white")
    title.append(f"  ({x:.3f}, {y:.3f}, {z:.3f}) m", "cyan")
    return Panel(title, style="bold", height=3)


def _accuracy_text(located: LocatedSource) -> Text:
    covariance = located.position_covariance
    if covariance is None:
        return Text("no covariance", "dim")
    try:
        accuracy = position_accuracy(covariance)
    except NumericalError:
        return Text("invalid covariance", "red")
    color = "green" if accuracy < 0.5 else "yellow" if accuracy < 2.0 else "red"
    return Text(f"{accuracy:.3g} m (1 sigma)", color)


def render(located: LocatedSource, estimator: RANSACRangingSourceEstimator) -> Group:
    table = Table(show_header=False, box=None, pad_edge=False)
    table.add_column("field", style="dim")
    table.add_column("value")
    for name, value in _identity_rows(located):
        table.add_row(name, value)

    readings = estimator.readings or []
    inliers_data = estimator.inliers_data
    inlier_text = (
        f"{inliers_data.num_inliers}/{len(readings)}" if inliers_data is not None else "-"
    )
    table.add_row("inliers", inlier_text)
    table.add_row("iterations", str(estimator.iterations))
    table.add_row("refined", "yes" if estimator.result_refined else "no")
    table.add_row("accuracy", _accuracy_text(located))

    return Group(_header(located), Panel(table, title="source", title_align="left"))


def print_report(
    located: LocatedSource,
    estimator: RANSACRangingSourceEstimator,
    console: Console | None = None,
) -> None:
    (console or Console()).print(render(located, estimator))
