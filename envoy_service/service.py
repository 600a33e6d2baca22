"""Asynchronous background service orchestrating Envoy polling."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from .config import ServiceConfig
from .credentials import DevicePreferences
from .emitter import EmissionResult, ReadingEmitter
from .envoy_client import (
    ConfigurationIncomplete,
    DecodeFailed,
    EnvoyClient,
    FetchFailed,
)
from .metrics import NormalizedReading, build_reading
from .mqtt_publisher import MQTTPublisher

LOGGER = logging.getLogger("envoy_service.service")

_BODY_LOG_LIMIT = 512

MQTT_CONNECT_WAIT_S = 5.0


@dataclass
class ComponentHealth:
    name: str
    healthy: bool
    detail: Optional[str] = None
    last_success: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass
class PollingResult:
    timestamp: datetime
    duration: float
    trigger: str
    reading: Optional[NormalizedReading]
    error_kind: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    emission: Optional[EmissionResult] = None
    emit_error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.reading is not None and self.error is None

    @property
    def emitted(self) -> bool:
        return self.emission is not None and bool(self.emission.published)


@dataclass
class HealthReport:
    overall: bool
    components: Dict[str, ComponentHealth]
    last_poll_time: Optional[datetime]
    last_success_time: Optional[datetime]
    consecutive_failures: int
    background_task_running: bool


class EnvoyService:
    """Poll one gateway on a timer, on startup, on preference changes and on demand.

    All triggers funnel into :meth:`poll_once`, which holds a per-device lock
    so that two cycles never interleave their fetches or emissions. A trigger
    that arrives mid-cycle waits and runs right after.
    """

    def __init__(self, config: ServiceConfig) -> None:
        self._config = config
        self._preferences = DevicePreferences.from_config(config)
        self._client = EnvoyClient(config)
        self._mqtt = MQTTPublisher(config) if config.mqtt_enabled else None
        self._emitter = ReadingEmitter(self._mqtt) if self._mqtt else None

        self._poll_lock = asyncio.Lock()
        self._background_task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

        self._last_result: Optional[PollingResult] = None
        self._last_reading: Optional[NormalizedReading] = None
        self._consecutive_failures = 0
        self._last_success_at: Optional[datetime] = None
        self._last_emit_success: Optional[datetime] = None

    # ------------------------------------------------------------------
    @property
    def preferences(self) -> DevicePreferences:
        return self._preferences

    async def start(self) -> None:
        if self._background_task and not self._background_task.done():
            return
        self._stop_event.clear()
        if self._mqtt and not self._mqtt.connected:
            # paho connects in its own thread; give the broker a moment so the
            # startup reading is not dropped.
            connected = await asyncio.to_thread(
                self._mqtt.wait_for_connection, MQTT_CONNECT_WAIT_S
            )
            if not connected:
                LOGGER.warning(
                    "MQTT broker not connected after %.0fs; starting polls anyway",
                    MQTT_CONNECT_WAIT_S,
                )
        self._background_task = asyncio.create_task(self._run_loop(), name="envoy-poller")

    async def stop(self) -> None:
        if self._background_task is not None:
            self._stop_event.set()
            self._background_task.cancel()
            try:
                await self._background_task
            except asyncio.CancelledError:  # pragma: no cover - expected during shutdown
                pass
            finally:
                self._background_task = None
                self._stop_event = asyncio.Event()
        # Cycles already queued on the lock finish before the clients close.
        async with self._poll_lock:
            await asyncio.to_thread(self._shutdown_clients)

    # ------------------------------------------------------------------
    async def poll_once(self, *, emit: bool = True, trigger: str = "manual") -> PollingResult:
        async with self._poll_lock:
            preferences = self._preferences
            cycle = asyncio.ensure_future(
                asyncio.to_thread(self._poll_once_blocking, preferences, emit, trigger)
            )
            try:
                result = await asyncio.shield(cycle)
            except asyncio.CancelledError:
                # The worker thread cannot be interrupted; keep the lock until it is done.
                await asyncio.wait({cycle})
                if not cycle.cancelled() and cycle.exception() is None:
                    self._update_state(cycle.result())
                raise
            self._update_state(result)
            return result

    async def update_preferences(
        self,
        *,
        host: Optional[str] = None,
        token_part1: Optional[str] = None,
        token_part2: Optional[str] = None,
    ) -> Optional[PollingResult]:
        """Apply new preference values; poll once if anything changed.

        ``None`` leaves a field untouched. Returns the result of the extra
        poll, or ``None`` when the values were identical.
        """
        changes = {
            name: value
            for name, value in (
                ("host", host.strip() if host is not None else None),
                ("token_part1", token_part1),
                ("token_part2", token_part2),
            )
            if value is not None
        }
        updated = dataclasses.replace(self._preferences, **changes)
        if updated == self._preferences:
            LOGGER.debug("Preferences unchanged; no poll triggered")
            return None
        self._preferences = updated
        LOGGER.info("Preferences updated; triggering immediate poll")
        return await self.poll_once(trigger="preferences")

    async def handle_switch_command(self, command: str) -> PollingResult:
        """The grid switch only reports direction; re-poll to restore the real state."""
        LOGGER.debug("Grid switch command %r ignored (read-only), re-polling", command)
        return await self.poll_once(trigger="switch")

    def get_latest_result(self) -> Optional[PollingResult]:
        return self._last_result

    def get_latest_reading(self) -> Optional[NormalizedReading]:
        return self._last_reading

    def is_running(self) -> bool:
        return self._background_task is not None and not self._background_task.done()

    def get_health_report(self) -> HealthReport:
        components: Dict[str, ComponentHealth] = {}

        last_error = self._last_result.error if self._last_result else None
        components["envoy"] = ComponentHealth(
            name="envoy",
            healthy=last_error is None,
            detail=last_error,
            last_success=self._last_success_at,
            last_error=last_error,
        )

        emit_error = self._last_result.emit_error if self._last_result else None
        if self._mqtt:
            mqtt_healthy = emit_error is None and self._mqtt.connected
            mqtt_detail = emit_error or (None if mqtt_healthy else "MQTT not connected")
        else:
            mqtt_healthy = True
            mqtt_detail = "MQTT disabled"
        components["mqtt"] = ComponentHealth(
            name="mqtt",
            healthy=mqtt_healthy,
            detail=mqtt_detail,
            last_success=self._last_emit_success,
            last_error=emit_error,
        )

        return HealthReport(
            overall=all(component.healthy for component in components.values()),
            components=components,
            last_poll_time=self._last_result.timestamp if self._last_result else None,
            last_success_time=self._last_success_at,
            consecutive_failures=self._consecutive_failures,
            background_task_running=self.is_running(),
        )

    # ------------------------------------------------------------------
    async def _run_loop(self) -> None:
        LOGGER.info("Starting background polling loop (interval=%ss)", self._config.poll_interval)
        trigger = "startup"
        try:
            while not self._stop_event.is_set():
                start = time.monotonic()
                try:
                    await self.poll_once(trigger=trigger)
                except Exception as exc:  # pragma: no cover - defensive
                    LOGGER.exception("Background poll failed: %s", exc)
                trigger = "schedule"
                elapsed = time.monotonic() - start
                sleep_for = max(0.0, self._config.poll_interval - elapsed)
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_for)
                except asyncio.TimeoutError:
                    continue
        finally:
            LOGGER.info("Background polling loop stopped")

    def _poll_once_blocking(
        self, preferences: DevicePreferences, emit: bool, trigger: str
    ) -> PollingResult:
        start = time.monotonic()
        reading: Optional[NormalizedReading] = None
        error_kind: Optional[str] = None
        error: Optional[str] = None
        status_code: Optional[int] = None
        emission: Optional[EmissionResult] = None
        emit_error: Optional[str] = None

        try:
            document = self._client.fetch_document(preferences.host, preferences.token)
        except ConfigurationIncomplete as exc:
            error_kind, error = exc.kind, str(exc)
            LOGGER.warning("IP or token not set; skipping poll")
        except FetchFailed as exc:
            error_kind, error, status_code = exc.kind, str(exc), exc.status
            LOGGER.error("Envoy fetch failed (status=%s): %s", exc.status, exc)
            if exc.status == 401:
                LOGGER.error("Envoy rejected the token (401); it has likely expired")
        except DecodeFailed as exc:
            error_kind, error = exc.kind, str(exc)
            LOGGER.error("%s; body: %s", exc, exc.body[:_BODY_LOG_LIMIT])
        else:
            reading = build_reading(document)
            self._log_reading(reading)
            if emit:
                emission, emit_error = self._emit(reading)

        return PollingResult(
            timestamp=datetime.now(timezone.utc),
            duration=time.monotonic() - start,
            trigger=trigger,
            reading=reading,
            error_kind=error_kind,
            error=error,
            status_code=status_code,
            emission=emission,
            emit_error=emit_error,
        )

    def _emit(self, reading: NormalizedReading):
        if self._emitter is None or self._mqtt is None:
            return None, None
        if not self._mqtt.connected:
            LOGGER.warning("MQTT not connected; reading not emitted this cycle")
            return None, "MQTT not connected"
        emission = self._emitter.emit(reading)
        if emission.rejected and not emission.published:
            return emission, "all events rejected by sink"
        return emission, None

    @staticmethod
    def _log_reading(reading: NormalizedReading) -> None:
        production = reading.production
        consumption = reading.consumption
        grid = reading.grid
        LOGGER.info(
            "Solar: %.0fW | Home: %.0fW | %s: %.0fW",
            production.power_w,
            consumption.power_w,
            grid.label,
            grid.magnitude_w,
        )
        LOGGER.info(
            "Today -> Solar: %.2f kWh | Home: %.2f kWh | 7-day: %.1f kWh | Lifetime: %.1f kWh",
            production.energy_today_kwh,
            consumption.energy_today_kwh,
            production.energy_7day_wh / 1000,
            production.energy_lifetime_wh / 1000,
        )
        LOGGER.debug(
            "Grid component: %.0fW | switch=%s (%s)",
            grid.magnitude_w,
            "ON" if grid.exporting else "OFF",
            grid.label,
        )

    def _update_state(self, result: PollingResult) -> None:
        self._last_result = result
        if result.success:
            self._last_reading = result.reading
            self._last_success_at = result.timestamp
            self._consecutive_failures = 0
        else:
            self._consecutive_failures += 1
        if result.emitted:
            self._last_emit_success = result.timestamp

    def _shutdown_clients(self) -> None:
        self._client.close()
        if self._mqtt:
            self._mqtt.close()


__all__ = [
    "ComponentHealth",
    "EnvoyService",
    "HealthReport",
    "PollingResult",
]
