"""Integration tests for the MQTT device-state sink."""

import json
import unittest
from unittest.mock import MagicMock, call, patch

from envoy_service.config import DEFAULT_CAPABILITIES, ServiceConfig
from envoy_service.emitter import ReadingEmitter, UnsupportedCapabilityError
from envoy_service.metrics import build_reading
from envoy_service.mqtt_publisher import MQTTPublisher, mqtt


def create_test_config(**kwargs):
    """Helper to create ServiceConfig with defaults for testing."""
    defaults = {
        'host': '192.168.1.50',
        'token_part1': 'abc',
        'token_part2': 'def',
        'poll_interval': 300.0,
        'request_timeout': 10.0,
        'log_level': 'INFO',
        'mqtt_enabled': True,
        'mqtt_host': 'localhost',
        'mqtt_port': 1883,
        'mqtt_username': 'test_user',
        'mqtt_password': 'test_pass',
        'mqtt_topic_prefix': 'envoy',
        'mqtt_qos': 1,
        'mqtt_retain': True,
        'mqtt_capabilities': set(DEFAULT_CAPABILITIES),
    }
    defaults.update(kwargs)
    return ServiceConfig(**defaults)


class TestMQTTPublisher(unittest.TestCase):
    """Test MQTT publisher functionality."""

    def setUp(self):
        self.config = create_test_config()

    @patch('envoy_service.mqtt_publisher.mqtt.Client')
    def test_mqtt_initialization(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value = mock_client

        publisher = MQTTPublisher(self.config)

        mock_client_class.assert_called_once_with(
            mqtt.CallbackAPIVersion.VERSION2, client_id="envoy_local_service"
        )
        mock_client.username_pw_set.assert_called_once_with("test_user", "test_pass")
        mock_client.connect.assert_called_once_with("localhost", 1883, 60)
        mock_client.loop_start.assert_called_once()
        self.assertTrue(publisher.enabled)

    @patch('envoy_service.mqtt_publisher.mqtt.Client')
    def test_disabled_publisher_creates_no_client(self, mock_client_class):
        publisher = MQTTPublisher(create_test_config(mqtt_enabled=False))

        mock_client_class.assert_not_called()
        self.assertFalse(publisher.enabled)

    @patch('envoy_service.mqtt_publisher.mqtt.Client')
    def test_emit_event_topic_and_payload(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value = mock_client
        publisher = MQTTPublisher(self.config)
        publisher._connected = True

        publisher.emit_event("main", "powerMeter", "power", 4500.0, "W")
        publisher.emit_event("grid", "switch", "switch", "on")

        mock_client.publish.assert_has_calls([
            call("envoy/main/powerMeter/power", "4500.00", qos=1, retain=True),
            call("envoy/grid/switch/switch", "on", qos=1, retain=True),
        ])

    @patch('envoy_service.mqtt_publisher.mqtt.Client')
    def test_undeclared_capability_rejected(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value = mock_client
        publisher = MQTTPublisher(self.config)
        publisher._connected = True

        with self.assertRaises(UnsupportedCapabilityError):
            publisher.emit_event("consumed", "powerConsumptionReport", "powerConsumption", {})
        mock_client.publish.assert_not_called()

    @patch('envoy_service.mqtt_publisher.mqtt.Client')
    def test_emit_requires_connection(self, mock_client_class):
        mock_client_class.return_value = MagicMock()
        publisher = MQTTPublisher(self.config)

        with self.assertRaises(RuntimeError):
            publisher.emit_event("main", "powerMeter", "power", 1.0, "W")

    @patch('envoy_service.mqtt_publisher.mqtt.Client')
    def test_wait_for_connection_follows_callbacks(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value = mock_client
        publisher = MQTTPublisher(self.config)

        self.assertFalse(publisher.wait_for_connection(0.01))

        publisher._on_connect(mock_client, None, None, MagicMock(is_failure=False), None)
        self.assertTrue(publisher.connected)
        self.assertTrue(publisher.wait_for_connection(0.01))

        publisher._on_disconnect(mock_client, None, None, MagicMock(is_failure=True), None)
        self.assertFalse(publisher.wait_for_connection(0.01))

    @patch('envoy_service.mqtt_publisher.mqtt.Client')
    def test_wait_for_connection_disabled_publisher(self, mock_client_class):
        publisher = MQTTPublisher(create_test_config(mqtt_enabled=False))

        self.assertFalse(publisher.wait_for_connection(0.01))

    def test_payload_formatting(self):
        self.assertEqual(MQTTPublisher.format_payload(12.0), "12.00")
        self.assertEqual(MQTTPublisher.format_payload(True), "on")
        self.assertEqual(MQTTPublisher.format_payload("off"), "off")
        self.assertEqual(
            json.loads(MQTTPublisher.format_payload({"energy": 8000.0}, "Wh")),
            {"energy": 8000.0, "unit": "Wh"},
        )

    @patch('envoy_service.mqtt_publisher.mqtt.Client')
    def test_emitter_through_publisher(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value = mock_client
        config = create_test_config(
            mqtt_capabilities=set(DEFAULT_CAPABILITIES) | {"consumed.powerConsumptionReport"}
        )
        publisher = MQTTPublisher(config)
        publisher._connected = True
        reading = build_reading({
            "production": [{"type": "eim", "wNow": 4500, "whToday": 12000}],
            "consumption": [
                {"measurementType": "total-consumption", "wNow": 1200, "whToday": 8000},
                {"measurementType": "net-consumption", "wNow": -3300},
            ],
        })

        result = ReadingEmitter(publisher).emit(reading)

        self.assertTrue(result.complete)
        topics = [c.args[0] for c in mock_client.publish.call_args_list]
        self.assertIn("envoy/consumed/energyMeter/energy", topics)
        self.assertIn("envoy/consumed/powerConsumptionReport/powerConsumption", topics)
        self.assertIn("envoy/grid/powerMeter/power", topics)

    @patch('envoy_service.mqtt_publisher.mqtt.Client')
    def test_close(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value = mock_client
        publisher = MQTTPublisher(self.config)

        publisher.close()

        mock_client.loop_stop.assert_called_once()
        mock_client.disconnect.assert_called_once()
        self.assertFalse(publisher.enabled)


if __name__ == '__main__':
    unittest.main()
