"""Configuration helpers for the firehose client."""
from __future__ import annotations

import os
from dataclasses import dataclass

from atstream.firehose.models import DEFAULT_RELAY_URL, SUBSCRIBE_REPOS_NSID


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name, default)
    if value is None or value == "":
        return None
    return value


@dataclass
class Settings:
    relay_url: str = DEFAULT_RELAY_URL
    endpoint: str = SUBSCRIBE_REPOS_NSID
    cursor: int | None = None
    max_retries: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    ping_interval: float | None = 20.0
    ping_timeout: float | None = 20.0
    max_frame_size: int = 10_000_000

    @classmethod
    def from_env(cls) -> "Settings":
        invalid: list[str] = []

        def number(name: str, kind: type, default: float | int | None, allow_off: bool = False):
            value = _env(name)
            if value is None:
                return default
            if allow_off and value.lower() in ("none", "off"):
                return None
            try:
                return kind(value)
            except ValueError:
                invalid.append(name)
                return default

        settings = cls(
            relay_url=_env("FIREHOSE_RELAY_URL", DEFAULT_RELAY_URL) or DEFAULT_RELAY_URL,
            endpoint=_env("FIREHOSE_ENDPOINT", SUBSCRIBE_REPOS_NSID) or SUBSCRIBE_REPOS_NSID,
            cursor=number("FIREHOSE_CURSOR", int, None),
            max_retries=number("FIREHOSE_MAX_RETRIES", int, 5),
            backoff_base=number("FIREHOSE_BACKOFF_BASE", float, 1.0),
            backoff_max=number("FIREHOSE_BACKOFF_MAX", float, 30.0),
            ping_interval=number("FIREHOSE_PING_INTERVAL", float, 20.0, allow_off=True),
            ping_timeout=number("FIREHOSE_PING_TIMEOUT", float, 20.0, allow_off=True),
            max_frame_size=number("FIREHOSE_MAX_FRAME_SIZE", int, 10_000_000),
        )

        if invalid:
            raise RuntimeError(
                "Invalid numeric environment variables: " + ", ".join(invalid)
            )
        return settings
