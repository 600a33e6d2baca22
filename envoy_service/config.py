"""Configuration helpers for the Envoy local service."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Set

DEFAULT_ENV_PATH = Path(__file__).resolve().parent / "envoy.env"

# Capabilities declared by the stock three-component device profile.
DEFAULT_CAPABILITIES = frozenset(
    {
        "main.powerMeter",
        "main.energyMeter",
        "consumed.powerMeter",
        "consumed.energyMeter",
        "grid.powerMeter",
        "grid.switch",
    }
)


@dataclass
class ServiceConfig:
    """Configuration for the Envoy background service."""

    host: str
    token_part1: str
    token_part2: str
    poll_interval: float
    request_timeout: float
    log_level: str
    mqtt_enabled: bool
    mqtt_host: str
    mqtt_port: int
    mqtt_username: Optional[str]
    mqtt_password: Optional[str]
    mqtt_topic_prefix: str
    mqtt_qos: int
    mqtt_retain: bool
    mqtt_capabilities: Set[str] = field(default_factory=lambda: set(DEFAULT_CAPABILITIES))


def load_env_file(path: Path) -> None:
    """Populate :mod:`os.environ` with KEY=VALUE pairs from ``path``."""

    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.lower().startswith("export "):
            line = line[7:].strip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip().strip("'\""))


def load_environment(explicit: Optional[str] = None) -> None:
    """Load the first existing env file among the known candidates."""

    env_file = explicit or os.environ.get("ENVOY_ENV_FILE")
    candidates = []
    if env_file:
        candidates.append(Path(env_file))
    candidates.append(Path.cwd() / ".env")
    candidates.append(DEFAULT_ENV_PATH)

    seen: set[Path] = set()
    for candidate in candidates:
        resolved = candidate.resolve()
        if resolved in seen:
            continue
        seen.add(resolved)
        if resolved.exists():
            load_env_file(resolved)
            break


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


REDACTED = "***redacted***"


def build_config() -> ServiceConfig:
    """Construct a :class:`ServiceConfig` from environment variables.

    A missing host or token is not an error here: the service starts anyway
    and skips poll cycles until the preferences are filled in.
    """

    capabilities: Set[str] = set(DEFAULT_CAPABILITIES)
    extra_raw = os.environ.get("MQTT_CAPABILITIES", "").strip()
    if extra_raw:
        capabilities |= {token.strip() for token in extra_raw.split(",") if token.strip()}

    cfg = ServiceConfig(
        host=os.environ.get("ENVOY_HOST", "").strip(),
        token_part1=os.environ.get("ENVOY_TOKEN_PART1", ""),
        token_part2=os.environ.get("ENVOY_TOKEN_PART2", ""),
        poll_interval=_env_float("ENVOY_POLL_INTERVAL", 300.0),
        request_timeout=_env_float("ENVOY_REQUEST_TIMEOUT", 10.0),
        log_level=os.environ.get("ENVOY_LOG_LEVEL", "INFO"),
        mqtt_enabled=_env_bool("MQTT_ENABLED", False),
        mqtt_host=os.environ.get("MQTT_HOST", "mqtt.home"),
        mqtt_port=_env_int("MQTT_PORT", 1883),
        mqtt_username=os.environ.get("MQTT_USERNAME"),
        mqtt_password=os.environ.get("MQTT_PASSWORD"),
        mqtt_topic_prefix=os.environ.get("MQTT_TOPIC_PREFIX", "envoy").rstrip("/"),
        mqtt_qos=_env_int("MQTT_QOS", 1),
        mqtt_retain=_env_bool("MQTT_RETAIN", True),
        mqtt_capabilities=capabilities,
    )

    if cfg.poll_interval <= 0:
        raise RuntimeError("ENVOY_POLL_INTERVAL must be greater than zero")
    if cfg.request_timeout <= 0:
        raise RuntimeError("ENVOY_REQUEST_TIMEOUT must be greater than zero")
    if cfg.mqtt_qos not in (0, 1, 2):
        raise RuntimeError("MQTT_QOS must be 0, 1 or 2")

    return cfg


def redact_config(cfg: ServiceConfig) -> dict:
    """Return a sanitized view of ``cfg`` suitable for JSON responses."""

    return {
        "host": cfg.host,
        "token_part1": REDACTED if cfg.token_part1 else None,
        "token_part2": REDACTED if cfg.token_part2 else None,
        "poll_interval": cfg.poll_interval,
        "request_timeout": cfg.request_timeout,
        "log_level": cfg.log_level,
        "mqtt_enabled": cfg.mqtt_enabled,
        "mqtt_host": cfg.mqtt_host,
        "mqtt_port": cfg.mqtt_port,
        "mqtt_username": cfg.mqtt_username,
        "mqtt_password": REDACTED if cfg.mqtt_password else None,
        "mqtt_topic_prefix": cfg.mqtt_topic_prefix,
        "mqtt_qos": cfg.mqtt_qos,
        "mqtt_retain": cfg.mqtt_retain,
        "mqtt_capabilities": sorted(cfg.mqtt_capabilities),
    }
