"""Inject configured credentials into outgoing requests.

Values come from RuntimeConfig slots. OAuth2 client-credentials tokens are
fetched from the scheme's token URL and cached until shortly before expiry;
the cache is the only state shared between concurrent invocations besides the
connection pool, and it is guarded by a lock.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from .artifact import CredentialInjectionRule, SecuritySchemeKind
from .config import RuntimeConfig
from .errors import UpstreamErrorResponse, UpstreamUnavailableError

logger = logging.getLogger(__name__)

# Refresh tokens this many seconds before they expire
_EXPIRY_MARGIN = 30.0
_DEFAULT_TOKEN_LIFETIME = 300.0


@dataclass
class CredentialTarget:
    """The parts of an outgoing request credentials may be written into."""

    headers: dict[str, str] = field(default_factory=dict)
    params: list[tuple[str, str]] = field(default_factory=list)
    cookies: dict[str, str] = field(default_factory=dict)


class CredentialInjector:
    def __init__(self, config: RuntimeConfig) -> None:
        self.config = config
        self._tokens: dict[tuple[str, str, tuple[str, ...]], tuple[str, float]] = {}
        self._lock = asyncio.Lock()
        self._reported: set[str] = set()

    async def apply(
        self,
        tool: str,
        rules: list[CredentialInjectionRule],
        target: CredentialTarget,
        client: httpx.AsyncClient,
    ) -> None:
        for rule in rules:
            value = await self._credential_value(tool, rule, client)
            if value is None:
                continue
            if rule.location == "header":
                target.headers[rule.name] = value
            elif rule.location == "query":
                target.params.append((rule.name, value))
            else:
                target.cookies[rule.name] = value

    async def _credential_value(
        self, tool: str, rule: CredentialInjectionRule, client: httpx.AsyncClient,
    ) -> str | None:
        values = {role: self.config.credential(slot) for role, slot in rule.slots.items()}
        missing = [rule.slots[role] for role, value in values.items() if not value]
        if missing:
            self._report_missing(rule.scheme, missing)
            return None

        if rule.kind is SecuritySchemeKind.API_KEY:
            return values["value"]
        if rule.kind is SecuritySchemeKind.HTTP_BEARER:
            return f"Bearer {values['token']}"
        if rule.kind is SecuritySchemeKind.HTTP_BASIC:
            pair = f"{values['username']}:{values['password']}".encode()
            return f"Basic {base64.b64encode(pair).decode()}"
        if rule.kind is SecuritySchemeKind.OAUTH2_CLIENT_CREDENTIALS:
            token = await self._client_credentials_token(
                client, tool, rule, values["client_id"], values["client_secret"])
            return f"Bearer {token}"
        return None

    def _report_missing(self, scheme: str, missing: list[str]) -> None:
        if scheme in self._reported:
            return
        self._reported.add(scheme)
        logger.warning("No credential configured for scheme %r; set %s", scheme, ", ".join(missing))

    async def _client_credentials_token(
        self,
        client: httpx.AsyncClient,
        tool: str,
        rule: CredentialInjectionRule,
        client_id: str,
        client_secret: str,
    ) -> str:
        key = (rule.token_url or "", client_id, tuple(rule.scopes))
        async with self._lock:
            cached = self._tokens.get(key)
            if cached and cached[1] > time.monotonic():
                return cached[0]

            data: dict[str, Any] = {"grant_type": "client_credentials"}
            if rule.scopes:
                data["scope"] = " ".join(rule.scopes)
            try:
                response = await client.post(
                    rule.token_url,
                    data=data,
                    auth=(client_id, client_secret),
                    timeout=self.config.timeout,
                )
            except httpx.HTTPError as exc:
                raise UpstreamUnavailableError(tool, f"Token request to {rule.token_url} failed: {exc}") from exc
            if not response.is_success:
                raise UpstreamErrorResponse(tool, response.status_code, response.text)

            try:
                payload = response.json()
            except ValueError:
                payload = None
            token = payload.get("access_token") if isinstance(payload, dict) else None
            if not token:
                raise UpstreamErrorResponse(tool, response.status_code, response.text)
            lifetime = float(payload.get("expires_in") or _DEFAULT_TOKEN_LIFETIME)
            self._tokens[key] = (token, time.monotonic() + max(lifetime - _EXPIRY_MARGIN, 0.0))
            logger.info("Fetched client-credentials token for scheme %r", rule.scheme)
            return token
