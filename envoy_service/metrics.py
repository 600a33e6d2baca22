"""Metric extraction from the Envoy ``/production.json`` document."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Tuple

LOGGER = logging.getLogger("envoy_service.metrics")

PRODUCTION_DISCRIMINATOR = "type"
CONSUMPTION_DISCRIMINATOR = "measurementType"

# Revenue-grade meter readings, preferred over the per-inverter estimate.
EIM = "eim"
TOTAL_CONSUMPTION = "total-consumption"
NET_CONSUMPTION = "net-consumption"


def to_float(value: object, default: Optional[float] = None) -> Optional[float]:
    """Convert a value to float with robust error handling.

    Args:
        value: The value to convert to float
        default: Value to return if conversion fails (defaults to None)

    Returns:
        Float value, or default if conversion fails or value is None
    """
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class ProductionMetrics:
    power_w: float = 0.0
    energy_today_wh: float = 0.0
    energy_7day_wh: float = 0.0
    energy_lifetime_wh: float = 0.0

    @property
    def energy_today_kwh(self) -> float:
        return self.energy_today_wh / 1000


@dataclass(frozen=True)
class ConsumptionMetrics:
    power_w: float = 0.0
    energy_today_wh: float = 0.0

    @property
    def energy_today_kwh(self) -> float:
        return self.energy_today_wh / 1000


@dataclass(frozen=True)
class GridFlow:
    """Direction and size of the power exchanged with the grid."""

    magnitude_w: float
    exporting: bool

    @property
    def label(self) -> str:
        return "Exporting to Grid" if self.exporting else "Importing from Grid"


@dataclass(frozen=True)
class NormalizedReading:
    production: ProductionMetrics
    consumption: ConsumptionMetrics
    net_power_w: float
    grid: GridFlow
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "production_power_w": self.production.power_w,
            "production_energy_today_kwh": self.production.energy_today_kwh,
            "production_energy_7day_wh": self.production.energy_7day_wh,
            "production_energy_lifetime_wh": self.production.energy_lifetime_wh,
            "consumption_power_w": self.consumption.power_w,
            "consumption_energy_today_kwh": self.consumption.energy_today_kwh,
            "net_power_w": self.net_power_w,
            "grid_power_w": self.grid.magnitude_w,
            "grid_exporting": self.grid.exporting,
        }


def _iter_entries(collection: object) -> Iterator[Mapping[str, Any]]:
    if not isinstance(collection, list):
        return
    for entry in collection:
        if isinstance(entry, dict):
            yield entry


def _select_entries(
    collection: object,
    discriminator: str,
    categories: Iterable[str],
) -> Dict[str, Mapping[str, Any]]:
    """Fold ``collection`` into one entry per wanted category.

    The first entry of each category wins. Entries of any other category
    are ignored.
    """
    wanted = set(categories)
    selected: Dict[str, Mapping[str, Any]] = {}
    for entry in _iter_entries(collection):
        category = entry.get(discriminator)
        if not isinstance(category, str) or category not in wanted:
            continue
        if category in selected:
            LOGGER.debug("Ignoring duplicate %s=%s entry", discriminator, category)
            continue
        selected[category] = entry
    return selected


def _field(entry: Optional[Mapping[str, Any]], key: str, *, clamp: bool) -> float:
    """Read a numeric field, defaulting to zero and optionally flooring at zero."""
    if entry is None:
        return 0.0
    value = to_float(entry.get(key))
    if value is None or not math.isfinite(value):
        LOGGER.debug("Field %s missing or not a finite number; using 0", key)
        value = 0.0
    if clamp:
        value = max(value, 0.0)
    return value


def extract_metrics(
    document: Mapping[str, Any],
) -> Tuple[ProductionMetrics, ConsumptionMetrics, float]:
    """Pick production, consumption and signed net power out of ``document``.

    A missing ``eim`` or ``total-consumption`` entry yields zeros rather than
    an error. Production and consumption values are floored at zero because
    small negative readings at night are meter noise. The net value keeps its
    sign: negative means power is flowing out to the grid.
    """
    production = _select_entries(
        document.get("production"), PRODUCTION_DISCRIMINATOR, (EIM,)
    )
    consumption = _select_entries(
        document.get("consumption"),
        CONSUMPTION_DISCRIMINATOR,
        (TOTAL_CONSUMPTION, NET_CONSUMPTION),
    )

    eim = production.get(EIM)
    if eim is None:
        LOGGER.debug("No %s production entry in document", EIM)
    total = consumption.get(TOTAL_CONSUMPTION)
    net = consumption.get(NET_CONSUMPTION)

    production_metrics = ProductionMetrics(
        power_w=_field(eim, "wNow", clamp=True),
        energy_today_wh=_field(eim, "whToday", clamp=True),
        energy_7day_wh=_field(eim, "whLastSevenDays", clamp=True),
        energy_lifetime_wh=_field(eim, "whLifetime", clamp=True),
    )
    consumption_metrics = ConsumptionMetrics(
        power_w=_field(total, "wNow", clamp=True),
        energy_today_wh=_field(total, "whToday", clamp=True),
    )
    net_power_w = _field(net, "wNow", clamp=False)
    return production_metrics, consumption_metrics, net_power_w


def derive_grid_flow(net_power_w: float) -> GridFlow:
    """Split a signed net power into magnitude and direction.

    Exactly zero counts as importing; only a negative value is an export.
    """
    return GridFlow(magnitude_w=abs(net_power_w), exporting=net_power_w < 0)


def build_reading(document: Mapping[str, Any]) -> NormalizedReading:
    """Run extraction and grid derivation over a decoded document."""
    production, consumption, net_power_w = extract_metrics(document)
    return NormalizedReading(
        production=production,
        consumption=consumption,
        net_power_w=net_power_w,
        grid=derive_grid_flow(net_power_w),
    )


__all__ = [
    "ConsumptionMetrics",
    "GridFlow",
    "NormalizedReading",
    "ProductionMetrics",
    "build_reading",
    "derive_grid_flow",
    "extract_metrics",
    "to_float",
]
