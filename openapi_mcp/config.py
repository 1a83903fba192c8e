"""Serve-time configuration.

Read from the environment (after the generated server has loaded its .env):

  BACKEND_URL              upstream base URL override
  BACKEND_TIMEOUT          request timeout in seconds (default 30)
  BACKEND_MAX_CONNECTIONS  connection pool size (default 100)
  EXPOSE_OUTPUT_SCHEMA     advertise object output schemas (default true)
  <credential slots>       one variable per slot named in the artifact
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Mapping
from urllib.parse import urlparse

from .artifact import ServerArtifact
from .errors import ConfigurationError

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_CONNECTIONS = 100

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_bool(key: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigurationError(f"{key} must be a boolean, got {value!r}")


def _parse_number(key: str, value: str, kind: type) -> float | int:
    try:
        number = kind(value)
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be a number, got {value!r}") from exc
    if number <= 0:
        raise ConfigurationError(f"{key} must be positive, got {value!r}")
    return number


@dataclass(frozen=True)
class RuntimeConfig:
    base_url: str | None = None
    timeout: float = DEFAULT_TIMEOUT
    max_connections: int = DEFAULT_MAX_CONNECTIONS
    expose_output_schema: bool = True
    credentials: Mapping[str, str] = field(default_factory=dict, repr=False)

    @classmethod
    def from_env(
        cls,
        artifact: ServerArtifact,
        environ: Mapping[str, str] | None = None,
    ) -> RuntimeConfig:
        """Collect settings and the artifact's credential slots from the environment."""
        env = os.environ if environ is None else environ
        config = cls(
            base_url=env.get("BACKEND_URL") or None,
            credentials={slot: env[slot] for slot in artifact.credential_slots() if env.get(slot)},
        )
        if env.get("BACKEND_TIMEOUT"):
            config = replace(config, timeout=_parse_number("BACKEND_TIMEOUT", env["BACKEND_TIMEOUT"], float))
        if env.get("BACKEND_MAX_CONNECTIONS"):
            config = replace(config, max_connections=_parse_number(
                "BACKEND_MAX_CONNECTIONS", env["BACKEND_MAX_CONNECTIONS"], int))
        if env.get("EXPOSE_OUTPUT_SCHEMA"):
            config = replace(config, expose_output_schema=_parse_bool(
                "EXPOSE_OUTPUT_SCHEMA", env["EXPOSE_OUTPUT_SCHEMA"]))
        return config

    def with_overrides(self, base_url: str | None = None, timeout: float | None = None) -> RuntimeConfig:
        """Return a copy with CLI overrides applied."""
        config = self
        if base_url:
            config = replace(config, base_url=base_url)
        if timeout is not None:
            config = replace(config, timeout=timeout)
        return config

    def credential(self, slot: str) -> str | None:
        return self.credentials.get(slot)

    def effective_base_url(self, artifact: ServerArtifact) -> str:
        """Upstream base URL: the override if set, else the artifact's. Must be absolute."""
        base_url = (self.base_url or artifact.base_url or "").rstrip("/")
        parsed = urlparse(base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(
                f"Upstream base URL {base_url!r} is not an absolute http(s) URL; set BACKEND_URL"
            )
        return base_url
