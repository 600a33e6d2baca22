"""Bearer token assembly and the watched device preferences."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .config import ServiceConfig


def assemble_token(part1: Optional[str], part2: Optional[str]) -> str:
    """Join the two stored token fragments into one bearer token.

    The token is split across two preferences only because of a field length
    limit upstream, so the halves are concatenated in order and surrounding
    whitespace is trimmed. The token's structure and expiry are not checked;
    an expired token surfaces later as an HTTP 401.
    """
    return f"{part1 or ''}{part2 or ''}".strip()


@dataclass(frozen=True)
class DevicePreferences:
    """Values whose change triggers an immediate poll."""

    host: str = ""
    token_part1: str = ""
    token_part2: str = ""

    @classmethod
    def from_config(cls, config: ServiceConfig) -> "DevicePreferences":
        return cls(
            host=config.host,
            token_part1=config.token_part1,
            token_part2=config.token_part2,
        )

    @property
    def token(self) -> str:
        return assemble_token(self.token_part1, self.token_part2)


__all__ = ["DevicePreferences", "assemble_token"]
