"""Server artifact: the only state that survives translation.

The artifact is produced once by the builder, written to `manifest.json` by
the emitter, and loaded read-only by the runtime bridge. Credential values
never appear here; rules only name the configuration slots that hold them.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as ModelValidationError

from .errors import ConfigurationError

FORMAT_VERSION = 1


class Destination(str, Enum):
    """Where a tool input field goes in the outgoing HTTP request."""

    PATH = "path"
    QUERY = "query"
    HEADER = "header"
    COOKIE = "cookie"
    BODY_FIELD = "body_field"
    WHOLE_BODY = "whole_body"


class SecuritySchemeKind(str, Enum):
    API_KEY = "apiKey"
    HTTP_BASIC = "http-basic"
    HTTP_BEARER = "http-bearer"
    OAUTH2_CLIENT_CREDENTIALS = "oauth2-client-credentials"
    UNSUPPORTED = "unsupported"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class BindingRule(_Frozen):
    field: str  # name in the tool's input schema
    destination: Destination
    name: str  # name on the wire (parameter name or body property)
    style: str | None = None
    explode: bool = False


class ParameterBindingPlan(_Frozen):
    rules: list[BindingRule] = Field(default_factory=list)
    body_media_type: str | None = None
    body_required: bool = False

    def for_destination(self, destination: Destination) -> list[BindingRule]:
        return [rule for rule in self.rules if rule.destination is destination]


class CredentialInjectionRule(_Frozen):
    scheme: str
    kind: SecuritySchemeKind
    location: Literal["header", "query", "cookie"] = "header"
    name: str  # header / query / cookie name receiving the credential
    slots: dict[str, str]  # role -> configuration key, e.g. {"token": "PETSTORE_AUTH_TOKEN"}
    token_url: str | None = None
    scopes: list[str] = Field(default_factory=list)


class ToolDefinition(_Frozen):
    name: str
    description: str
    input_schema: dict[str, Any]
    output_schema: dict[str, Any] = Field(default_factory=dict)
    method: str
    path: str
    operation_id: str | None = None
    deprecated: bool = False


class ToolEntry(_Frozen):
    definition: ToolDefinition
    binding_plan: ParameterBindingPlan
    credentials: list[CredentialInjectionRule] = Field(default_factory=list)
    manual_credentials: bool = False

    @property
    def name(self) -> str:
        return self.definition.name


class ServerArtifact(_Frozen):
    format_version: int = FORMAT_VERSION
    name: str
    title: str
    version: str
    description: str | None = None
    base_url: str = ""
    default_headers: dict[str, str] = Field(default_factory=dict)
    tools: list[ToolEntry] = Field(default_factory=list)

    def tool(self, name: str) -> ToolEntry | None:
        for entry in self.tools:
            if entry.name == name:
                return entry
        return None

    def credential_slots(self) -> list[str]:
        """Every configuration key the operator may need to fill, in first-use order."""
        slots: list[str] = []
        for entry in self.tools:
            for rule in entry.credentials:
                for key in rule.slots.values():
                    if key not in slots:
                        slots.append(key)
        return slots

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    @classmethod
    def from_json(cls, text: str | bytes) -> ServerArtifact:
        try:
            artifact = cls.model_validate_json(text)
        except ModelValidationError as exc:
            raise ConfigurationError(f"Invalid server manifest: {exc}") from exc
        if artifact.format_version != FORMAT_VERSION:
            raise ConfigurationError(
                f"Manifest format {artifact.format_version} is not supported (expected {FORMAT_VERSION})"
            )
        return artifact

    @classmethod
    def load(cls, path: Path | str) -> ServerArtifact:
        return cls.from_json(Path(path).read_bytes())
