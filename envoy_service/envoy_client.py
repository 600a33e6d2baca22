"""HTTPS client for the Envoy gateway's local production telemetry."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import requests
import urllib3
from requests import exceptions as requests_exceptions
from urllib3 import exceptions as urllib3_exceptions

from .config import ServiceConfig

LOGGER = logging.getLogger("envoy_service.envoy_client")

PRODUCTION_PATH = "/production.json"

# The gateway only ships a self-signed certificate.
urllib3.disable_warnings(urllib3_exceptions.InsecureRequestWarning)


class EnvoyError(RuntimeError):
    """Base class for failures that abort a single poll cycle."""

    kind = "envoy_error"


class ConfigurationIncomplete(EnvoyError):
    """Raised when the gateway address or the bearer token is not set."""

    kind = "configuration_incomplete"


class FetchFailed(EnvoyError):
    """Raised when the gateway did not answer with HTTP 200.

    ``status`` is ``None`` when no HTTP response was received at all
    (connection refused, TLS failure, timeout).
    """

    kind = "fetch_failed"

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class DecodeFailed(EnvoyError):
    """Raised when the response body is not a JSON object."""

    kind = "decode_failed"

    def __init__(self, message: str, body: str) -> None:
        super().__init__(message)
        self.body = body


def parse_document(body: str) -> Dict[str, Any]:
    """Decode a ``/production.json`` response body.

    Raises:
        DecodeFailed: If ``body`` is not well-formed JSON or is not an object
    """
    try:
        document = json.loads(body)
    except (TypeError, ValueError) as exc:
        raise DecodeFailed(f"Invalid JSON from gateway: {exc}", body) from exc
    if not isinstance(document, dict):
        raise DecodeFailed(
            f"Expected a JSON object from gateway, got {type(document).__name__}",
            body,
        )
    return document


class EnvoyClient:
    """Issue authenticated GETs against one gateway on the local network."""

    def __init__(self, config: ServiceConfig) -> None:
        self._config = config
        self._session = requests.Session()
        self._session.verify = False

    def close(self) -> None:
        """Close the underlying HTTP session."""
        try:
            self._session.close()
        except Exception as exc:  # pragma: no cover - best effort cleanup
            LOGGER.debug("Failed to close HTTP session: %s", exc)

    def fetch(self, host: str, token: str, path: str = PRODUCTION_PATH) -> str:
        """Fetch the raw body of ``path`` from the gateway at ``host``.

        Args:
            host: Gateway IP address or hostname
            token: Assembled bearer token
            path: Resource path, ``/production.json`` by default

        Returns:
            The response body text of an HTTP 200 response

        Raises:
            ConfigurationIncomplete: If ``host`` or ``token`` is empty; no request is made
            FetchFailed: On transport errors, timeouts and non-200 responses
        """
        host = (host or "").strip()
        if not host or not token:
            raise ConfigurationIncomplete("Gateway address or token not set")

        url = f"https://{host}{path}"
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {token}",
        }
        LOGGER.debug("GET %s (timeout=%ss)", url, self._config.request_timeout)
        try:
            response = self._session.get(
                url,
                headers=headers,
                timeout=self._config.request_timeout,
                verify=False,
            )
        except (requests_exceptions.RequestException, urllib3_exceptions.HTTPError) as exc:
            raise FetchFailed(f"HTTP GET {path} to {host} failed: {exc}") from exc

        if response.status_code != 200:
            raise FetchFailed(
                f"HTTP GET {path} to {host} returned {response.status_code}",
                status=response.status_code,
            )
        return response.text

    def fetch_document(self, host: str, token: str) -> Dict[str, Any]:
        """Fetch and decode the production telemetry document."""
        return parse_document(self.fetch(host, token))


__all__ = [
    "ConfigurationIncomplete",
    "DecodeFailed",
    "EnvoyClient",
    "EnvoyError",
    "FetchFailed",
    "PRODUCTION_PATH",
    "parse_document",
]
