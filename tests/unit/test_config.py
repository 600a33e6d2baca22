"""Tests for environment-driven configuration."""

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from envoy_service.config import (
    DEFAULT_CAPABILITIES,
    REDACTED,
    build_config,
    load_env_file,
    redact_config,
)


class TestBuildConfig(unittest.TestCase):

    @patch.dict(os.environ, {}, clear=True)
    def test_defaults(self):
        cfg = build_config()

        self.assertEqual(cfg.host, "")
        self.assertEqual(cfg.poll_interval, 300.0)
        self.assertEqual(cfg.request_timeout, 10.0)
        self.assertFalse(cfg.mqtt_enabled)
        self.assertEqual(cfg.mqtt_topic_prefix, "envoy")
        self.assertEqual(cfg.mqtt_capabilities, set(DEFAULT_CAPABILITIES))

    @patch.dict(
        os.environ,
        {
            "ENVOY_HOST": " 10.0.0.20 ",
            "ENVOY_TOKEN_PART1": "first",
            "ENVOY_TOKEN_PART2": "second",
            "ENVOY_POLL_INTERVAL": "30",
            "MQTT_ENABLED": "yes",
            "MQTT_TOPIC_PREFIX": "home/envoy/",
            "MQTT_CAPABILITIES": "consumed.powerConsumptionReport, ",
        },
        clear=True,
    )
    def test_environment_overrides(self):
        cfg = build_config()

        self.assertEqual(cfg.host, "10.0.0.20")
        self.assertEqual(cfg.token_part1, "first")
        self.assertEqual(cfg.token_part2, "second")
        self.assertEqual(cfg.poll_interval, 30.0)
        self.assertTrue(cfg.mqtt_enabled)
        self.assertEqual(cfg.mqtt_topic_prefix, "home/envoy")
        self.assertIn("consumed.powerConsumptionReport", cfg.mqtt_capabilities)
        self.assertIn("grid.switch", cfg.mqtt_capabilities)

    @patch.dict(os.environ, {"ENVOY_POLL_INTERVAL": "0"}, clear=True)
    def test_rejects_non_positive_interval(self):
        with self.assertRaises(RuntimeError):
            build_config()

    @patch.dict(os.environ, {"MQTT_QOS": "3"}, clear=True)
    def test_rejects_invalid_qos(self):
        with self.assertRaises(RuntimeError):
            build_config()

    @patch.dict(os.environ, {"ENVOY_POLL_INTERVAL": "soon"}, clear=True)
    def test_unparseable_number_falls_back(self):
        self.assertEqual(build_config().poll_interval, 300.0)


class TestEnvFile(unittest.TestCase):

    @patch.dict(os.environ, {"ENVOY_HOST": "from-env"}, clear=True)
    def test_load_env_file_does_not_override(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / ".env"
            path.write_text(
                "# gateway\n"
                "ENVOY_HOST=from-file\n"
                "export ENVOY_TOKEN_PART1='abc'\n"
                "not a pair\n",
                encoding="utf-8",
            )
            load_env_file(path)

            self.assertEqual(os.environ["ENVOY_HOST"], "from-env")
            self.assertEqual(os.environ["ENVOY_TOKEN_PART1"], "abc")

    @patch.dict(os.environ, {"ENVOY_TOKEN_PART1": "a", "MQTT_PASSWORD": "p"}, clear=True)
    def test_redact_config_masks_secrets(self):
        view = redact_config(build_config())

        self.assertEqual(view["token_part1"], REDACTED)
        self.assertIsNone(view["token_part2"])
        self.assertEqual(view["mqtt_password"], REDACTED)


if __name__ == '__main__':
    unittest.main()
