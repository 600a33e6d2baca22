"""Map normalized readings onto device-state events."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from .metrics import NormalizedReading

LOGGER = logging.getLogger("envoy_service.emitter")

MAIN = "main"
CONSUMED = "consumed"
GRID = "grid"

POWER_CONSUMPTION_REPORT = "powerConsumptionReport"


class UnsupportedCapabilityError(ValueError):
    """Raised by a sink for an event outside its declared device profile."""


class DeviceStateSink(Protocol):
    def supports(self, component: str, capability: str) -> bool:
        ...

    def emit_event(
        self,
        component: str,
        capability: str,
        attribute: str,
        value: Any,
        unit: Optional[str] = None,
    ) -> None:
        ...


@dataclass(frozen=True)
class Event:
    channel: str
    component: str
    capability: str
    attribute: str
    value: Any
    unit: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.component}.{self.capability}.{self.attribute}"


@dataclass
class EmissionResult:
    published: List[str] = field(default_factory=list)
    rejected: Dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.rejected


def build_events(reading: NormalizedReading, *, consumption_report: bool = False) -> List[Event]:
    """Return the events for the production, consumption and grid channels."""
    production = reading.production
    consumption = reading.consumption
    events = [
        Event("production", MAIN, "powerMeter", "power", production.power_w, "W"),
        Event("production", MAIN, "energyMeter", "energy", production.energy_today_kwh, "kWh"),
        Event("consumption", CONSUMED, "powerMeter", "power", consumption.power_w, "W"),
        Event("consumption", CONSUMED, "energyMeter", "energy", consumption.energy_today_kwh, "kWh"),
    ]
    if consumption_report:
        events.append(
            Event(
                "consumption",
                CONSUMED,
                POWER_CONSUMPTION_REPORT,
                "powerConsumption",
                {
                    "energy": consumption.energy_today_wh,
                    "power": consumption.power_w,
                    "deltaEnergy": 0.0,
                    "powerEnergy": 0.0,
                    "energySaved": 0.0,
                },
            )
        )
    events.append(Event("grid", GRID, "powerMeter", "power", reading.grid.magnitude_w, "W"))
    # on = exporting surplus, off = drawing from the grid
    events.append(Event("grid", GRID, "switch", "switch", "on" if reading.grid.exporting else "off"))
    return events


class ReadingEmitter:
    """Publish each reading to a :class:`DeviceStateSink`, channel by channel.

    A rejected or failed event is logged and skipped; there is no
    all-or-nothing guarantee, the next successful cycle overwrites any
    partial state.
    """

    def __init__(self, sink: DeviceStateSink) -> None:
        self._sink = sink

    def emit(self, reading: NormalizedReading) -> EmissionResult:
        result = EmissionResult()
        report = self._sink.supports(CONSUMED, POWER_CONSUMPTION_REPORT)
        for event in build_events(reading, consumption_report=report):
            outcome = self._publish(event)
            if outcome is None:
                result.published.append(event.key)
            else:
                result.rejected[event.key] = outcome
        return result

    def _publish(self, event: Event) -> Optional[str]:
        try:
            self._sink.emit_event(
                event.component,
                event.capability,
                event.attribute,
                event.value,
                event.unit,
            )
        except UnsupportedCapabilityError as exc:
            LOGGER.warning(
                "Sink rejected %s channel event %s: %s", event.channel, event.key, exc
            )
            return str(exc)
        except Exception as exc:
            LOGGER.warning("Failed to publish %s: %s", event.key, exc)
            return str(exc)
        LOGGER.debug("Emitted %s = %s %s", event.key, event.value, event.unit or "")
        return None


__all__ = [
    "DeviceStateSink",
    "EmissionResult",
    "Event",
    "ReadingEmitter",
    "UnsupportedCapabilityError",
    "build_events",
]
