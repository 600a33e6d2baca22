"""MQTT device-state sink for Envoy readings."""

import json
import logging
import threading
from typing import Any, Optional

import paho.mqtt.client as mqtt

from .config import ServiceConfig
from .emitter import UnsupportedCapabilityError

LOGGER = logging.getLogger("envoy_service.mqtt_publisher")


class MQTTPublisher:
    """Publish device-state events as retained MQTT messages.

    The publisher holds a declared device profile (``component.capability``
    entries); events for anything outside it are rejected with
    :class:`UnsupportedCapabilityError`.
    """

    def __init__(self, config: ServiceConfig) -> None:
        self._config = config
        self._client: Optional[Any] = None
        self._connected = False
        self._last_error: Optional[str] = None
        self._capabilities = frozenset(config.mqtt_capabilities)
        self._connected_event = threading.Event()

        if not config.mqtt_enabled:
            return

        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id="envoy_local_service")
        self._client = client

        if config.mqtt_username and config.mqtt_password:
            client.username_pw_set(config.mqtt_username, config.mqtt_password)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect

        try:
            LOGGER.info(
                "Connecting to MQTT broker at %s:%d", config.mqtt_host, config.mqtt_port
            )
            client.connect(config.mqtt_host, config.mqtt_port, 60)
            client.loop_start()
        except Exception as exc:  # pragma: no cover - depends on environment
            self._last_error = str(exc)
            LOGGER.error("Failed to connect to MQTT broker: %s", exc)
            self._client = None

    # Callback handlers -------------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties):  # pragma: no cover - callback
        if not reason_code.is_failure:
            self._connected = True
            self._last_error = None
            self._connected_event.set()
            LOGGER.info("Connected to MQTT broker")
        else:
            self._connected = False
            self._connected_event.clear()
            self._last_error = f"connect rc={reason_code}"
            LOGGER.error("MQTT connection failed: %s", reason_code)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):  # pragma: no cover - callback
        self._connected = False
        self._connected_event.clear()
        if reason_code.is_failure:
            self._last_error = f"disconnect rc={reason_code}"
            LOGGER.warning("Disconnected from MQTT broker: %s", reason_code)

    # Public API --------------------------------------------------------
    @property
    def enabled(self) -> bool:
        """Return True if MQTT publishing is enabled."""
        return bool(self._client)

    @property
    def connected(self) -> bool:
        """Return True if connected to MQTT broker."""
        return self._connected

    @property
    def last_error(self) -> Optional[str]:
        """Return the last error message, if any."""
        return self._last_error

    def wait_for_connection(self, timeout: float) -> bool:
        """Block until the broker acknowledges the connection or ``timeout`` passes."""
        if not self.enabled:
            return False
        return self._connected_event.wait(timeout)

    def supports(self, component: str, capability: str) -> bool:
        return f"{component}.{capability}" in self._capabilities

    def topic_for(self, component: str, capability: str, attribute: str) -> str:
        return f"{self._config.mqtt_topic_prefix}/{component}/{capability}/{attribute}"

    @staticmethod
    def format_payload(value: Any, unit: Optional[str] = None) -> str:
        if isinstance(value, bool):
            return "on" if value else "off"
        if isinstance(value, float):
            return f"{value:.2f}"
        if isinstance(value, dict):
            payload = dict(value)
            if unit:
                payload["unit"] = unit
            return json.dumps(payload, sort_keys=True)
        return str(value)

    def emit_event(
        self,
        component: str,
        capability: str,
        attribute: str,
        value: Any,
        unit: Optional[str] = None,
    ) -> None:
        """Publish one attribute value.

        Raises:
            UnsupportedCapabilityError: If the capability is not in the device profile
            RuntimeError: If the broker is not connected
        """
        if not self.supports(component, capability):
            raise UnsupportedCapabilityError(
                f"{component}.{capability} is not declared in the device profile"
            )
        if not self.enabled or not self._connected:
            raise RuntimeError("MQTT broker not connected")

        topic = self.topic_for(component, capability, attribute)
        payload = self.format_payload(value, unit)
        try:
            self._client.publish(  # type: ignore[union-attr]
                topic,
                payload,
                qos=self._config.mqtt_qos,
                retain=self._config.mqtt_retain,
            )
        except Exception as exc:
            self._last_error = str(exc)
            raise
        LOGGER.debug("Published %s = %s to MQTT", topic, payload)

    def close(self) -> None:
        """Close the MQTT connection."""
        if self._client:
            try:
                self._client.loop_stop()
                self._client.disconnect()
            except Exception as exc:  # pragma: no cover - best effort cleanup
                LOGGER.debug("Error closing MQTT connection: %s", exc)
            self._client = None
            self._connected = False
            self._connected_event.clear()
