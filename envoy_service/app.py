"""FastAPI application exposing Envoy polling management endpoints."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from pydantic import BaseModel, Field

from .config import build_config, load_environment, redact_config
from .metrics import NormalizedReading
from .service import EnvoyService, HealthReport, PollingResult

LOGGER = logging.getLogger("envoy_service.app")


class ReadingResponse(BaseModel):
    timestamp: str
    production_power_w: float
    production_energy_today_kwh: float
    production_energy_7day_wh: float
    production_energy_lifetime_wh: float
    consumption_power_w: float
    consumption_energy_today_kwh: float
    net_power_w: float
    grid_power_w: float
    grid_exporting: bool


class PollResponse(BaseModel):
    success: bool
    duration: float = Field(..., description="Duration of the polling cycle in seconds")
    timestamp: Optional[str]
    trigger: str
    reading: Optional[ReadingResponse] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    published: List[str] = Field(default_factory=list)
    rejected: Dict[str, str] = Field(default_factory=dict)
    emit_error: Optional[str] = None


class HealthComponentResponse(BaseModel):
    name: str
    healthy: bool
    detail: Optional[str] = None
    last_success: Optional[str] = None
    last_error: Optional[str] = None


class HealthResponse(BaseModel):
    overall: bool
    components: List[HealthComponentResponse]
    last_poll_time: Optional[str] = None
    last_success_time: Optional[str] = None
    consecutive_failures: int
    background_task_running: bool


class PreferencesRequest(BaseModel):
    host: Optional[str] = None
    token_part1: Optional[str] = None
    token_part2: Optional[str] = None


class PreferencesResponse(BaseModel):
    changed: bool
    poll: Optional[PollResponse] = None


def _reading_to_response(reading: NormalizedReading) -> ReadingResponse:
    return ReadingResponse(**reading.as_dict())


def _poll_to_response(result: PollingResult) -> PollResponse:
    emission = result.emission
    return PollResponse(
        success=result.success,
        duration=result.duration,
        timestamp=result.timestamp.isoformat() if result.timestamp else None,
        trigger=result.trigger,
        reading=_reading_to_response(result.reading) if result.reading else None,
        error_kind=result.error_kind,
        error=result.error,
        status_code=result.status_code,
        published=list(emission.published) if emission else [],
        rejected=dict(emission.rejected) if emission else {},
        emit_error=result.emit_error,
    )


def _health_to_response(report: HealthReport) -> HealthResponse:
    components = [
        HealthComponentResponse(
            name=component.name,
            healthy=component.healthy,
            detail=component.detail,
            last_success=component.last_success.isoformat() if component.last_success else None,
            last_error=component.last_error,
        )
        for component in report.components.values()
    ]
    return HealthResponse(
        overall=report.overall,
        components=components,
        last_poll_time=report.last_poll_time.isoformat() if report.last_poll_time else None,
        last_success_time=report.last_success_time.isoformat() if report.last_success_time else None,
        consecutive_failures=report.consecutive_failures,
        background_task_running=report.background_task_running,
    )


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def _lifespan(app: FastAPI):
    load_environment()
    config = build_config()
    _configure_logging(config.log_level)
    service = EnvoyService(config)
    await service.start()
    app.state.config = config
    app.state.service = service
    LOGGER.info("Envoy service started")
    try:
        yield
    finally:
        LOGGER.info("Shutting down Envoy service")
        await service.stop()


def create_app() -> FastAPI:
    app = FastAPI(title="Envoy Local Service", version="1.0.0", lifespan=_lifespan)

    @app.get("/", response_model=Dict[str, str])
    async def root() -> Dict[str, str]:
        return {"service": "envoy-local", "status": "ok"}

    def get_service(request: Request) -> EnvoyService:
        service = getattr(request.app.state, "service", None)
        if service is None:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service not ready")
        return service

    def get_config(request: Request):
        return getattr(request.app.state, "config", None)

    @app.get("/health", response_model=HealthResponse)
    async def health(service: EnvoyService = Depends(get_service)) -> HealthResponse:
        return _health_to_response(service.get_health_report())

    @app.get("/config", response_model=Dict[str, Any])
    async def config_endpoint(cfg=Depends(get_config)) -> Dict[str, Any]:
        if cfg is None:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Configuration unavailable")
        return redact_config(cfg)

    @app.get("/reading", response_model=ReadingResponse)
    async def latest_reading(service: EnvoyService = Depends(get_service)) -> ReadingResponse:
        reading = service.get_latest_reading()
        if reading is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No reading available yet")
        return _reading_to_response(reading)

    @app.post("/refresh", response_model=PollResponse)
    async def refresh(service: EnvoyService = Depends(get_service)) -> PollResponse:
        LOGGER.info("Manual refresh triggered")
        result = await service.poll_once(trigger="manual")
        return _poll_to_response(result)

    @app.put("/preferences", response_model=PreferencesResponse)
    async def update_preferences(
        request: PreferencesRequest,
        service: EnvoyService = Depends(get_service),
    ) -> PreferencesResponse:
        result = await service.update_preferences(
            host=request.host,
            token_part1=request.token_part1,
            token_part2=request.token_part2,
        )
        if result is None:
            return PreferencesResponse(changed=False)
        return PreferencesResponse(changed=True, poll=_poll_to_response(result))

    @app.post("/grid/switch/{command}", response_model=PollResponse)
    async def grid_switch(command: str, service: EnvoyService = Depends(get_service)) -> PollResponse:
        if command not in ("on", "off"):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Command must be 'on' or 'off'")
        result = await service.handle_switch_command(command)
        return _poll_to_response(result)

    @app.get("/status", response_model=Dict[str, Any])
    async def status_endpoint(service: EnvoyService = Depends(get_service)) -> Dict[str, Any]:
        latest = service.get_latest_result()
        report = service.get_health_report()
        return {
            "running": service.is_running(),
            "last_poll": latest.timestamp.isoformat() if latest else None,
            "last_success": report.last_success_time.isoformat() if report.last_success_time else None,
            "consecutive_failures": report.consecutive_failures,
            "overall": report.overall,
        }

    return app


__all__ = ["create_app"]
