"""Map OpenAPI security requirements to credential injection rules.

For each operation the first requirement alternative made only of supported
schemes (apiKey, HTTP basic, HTTP bearer, OAuth2 client credentials) wins; an
empty alternative (anonymous access) is used only when no credentialed one is
usable. When nothing is usable the tool is still emitted, flagged for manual
credential configuration. Rules name configuration slots; values are supplied
at serve time.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from .artifact import CredentialInjectionRule, SecuritySchemeKind
from .model import OpenApiDocument, Operation, SecurityScheme, TranslationWarning

logger = logging.getLogger(__name__)

# role names per scheme kind, in slot order
_SLOT_ROLES: dict[SecuritySchemeKind, tuple[str, ...]] = {
    SecuritySchemeKind.API_KEY: ("value",),
    SecuritySchemeKind.HTTP_BASIC: ("username", "password"),
    SecuritySchemeKind.HTTP_BEARER: ("token",),
    SecuritySchemeKind.OAUTH2_CLIENT_CREDENTIALS: ("client_id", "client_secret"),
}


def credential_slot(scheme_name: str, role: str) -> str:
    """Configuration key for one credential role: ('petstore_auth', 'token') -> 'PETSTORE_AUTH_TOKEN'."""
    base = re.sub(r"([a-z\d])([A-Z])", r"\1_\2", scheme_name)
    base = re.sub(r"[^A-Za-z0-9]+", "_", base).strip("_").upper() or "CREDENTIAL"
    return f"{base}_{role.upper()}"


@dataclass
class SecurityDecision:
    rules: list[CredentialInjectionRule] = field(default_factory=list)
    manual: bool = False
    note: str | None = None


class SecurityMapper:
    """Choose a security alternative per operation and describe how to inject it."""

    def __init__(self, document: OpenApiDocument, warnings: list[TranslationWarning] | None = None) -> None:
        self.document = document
        self.warnings = warnings if warnings is not None else []

    def map(self, operation: Operation) -> SecurityDecision:
        requirements = operation.security if operation.security is not None else self.document.security
        if not requirements:
            return SecurityDecision()

        anonymous = False
        for alternative in requirements:
            if not alternative:
                anonymous = True
                continue
            schemes = [self._scheme(name) for name in alternative]
            if all(scheme is not None and scheme.supported for scheme in schemes):
                return SecurityDecision(rules=[
                    self._rule(scheme, alternative[scheme.name]) for scheme in schemes
                ])
        if anonymous:
            return SecurityDecision()

        names = sorted({name for alternative in requirements for name in alternative})
        reasons = []
        for name in names:
            scheme = self._scheme(name)
            if scheme is None:
                reasons.append(f"{name} (undefined)")
            elif not scheme.supported:
                reasons.append(f"{name} ({scheme.reason})")
        message = (
            f"No supported security alternative for {operation.method.upper()} {operation.path}; "
            f"credentials must be configured manually ({', '.join(reasons) or ', '.join(names)})"
        )
        self.warnings.append(TranslationWarning("manual-credentials", operation.location, message))
        logger.warning("%s (at %s)", message, operation.location)
        return SecurityDecision(
            manual=True,
            note=(
                "Requires credentials that cannot be configured automatically "
                f"(schemes: {', '.join(names)}); configure the upstream manually."
            ),
        )

    def _scheme(self, name: str) -> SecurityScheme | None:
        return self.document.components.security_schemes.get(name)

    @staticmethod
    def _rule(scheme: SecurityScheme, scopes: list[str]) -> CredentialInjectionRule:
        return CredentialInjectionRule(
            scheme=scheme.name,
            kind=scheme.kind,
            location=scheme.location or "header",
            name=scheme.parameter_name or "Authorization",
            slots={role: credential_slot(scheme.name, role) for role in _SLOT_ROLES[scheme.kind]},
            token_url=scheme.token_url,
            scopes=list(scopes) if scopes else [],
        )
