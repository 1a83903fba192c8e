"""Build a ServerArtifact from an OpenAPI document.

Pipeline: load -> resolve (barrier: every reference resolved before any
mapping starts) -> name all operations -> per operation: security mapping,
schema translation, binding plan -> ServerArtifact.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from .artifact import ServerArtifact, ToolEntry
from .loader import load_document
from .model import OpenApiDocument, TranslationWarning
from .naming import assign_tool_names
from .operation_mapper import OperationMapper
from .resolver import resolve_document
from .schema_translator import LAST_WRITER_WINS, SchemaTranslator, strip_html
from .security import SecurityMapper

logger = logging.getLogger(__name__)


@dataclass
class BuildOptions:
    allof_conflicts: str = LAST_WRITER_WINS
    base_url: str | None = None
    default_headers: dict[str, str] = field(default_factory=dict)
    server_name: str | None = None


@dataclass
class BuildResult:
    artifact: ServerArtifact
    warnings: list[TranslationWarning] = field(default_factory=list)


def _server_name(title: str) -> str:
    name = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return name or "openapi-server"


def build_artifact(document: OpenApiDocument, options: BuildOptions | None = None) -> BuildResult:
    """Translate a (possibly unresolved) document into a ServerArtifact."""
    options = options or BuildOptions()
    warnings: list[TranslationWarning] = []

    if not document.resolved:
        resolve_document(document)

    translator = SchemaTranslator(options.allof_conflicts, warnings)
    mapper = OperationMapper(translator)
    security = SecurityMapper(document, warnings)

    pairs = list(document.iter_operations())
    names = assign_tool_names([(op.operation_id, op.method, op.path) for _, op in pairs])

    tools: list[ToolEntry] = []
    for (path_item, operation), name in zip(pairs, names):
        decision = security.map(operation)
        notes = [decision.note] if decision.note else []
        definition, plan = mapper.map(path_item, operation, name, notes)
        tools.append(ToolEntry(
            definition=definition,
            binding_plan=plan,
            credentials=decision.rules,
            manual_credentials=decision.manual,
        ))
        logger.debug("Mapped %s %s -> %s", operation.method.upper(), operation.path, name)

    base_url = options.base_url or (document.servers[0] if document.servers else "")
    artifact = ServerArtifact(
        name=options.server_name or _server_name(document.title),
        title=document.title,
        version=document.version,
        description=strip_html(document.description) if document.description else None,
        base_url=base_url.rstrip("/"),
        default_headers=dict(options.default_headers),
        tools=tools,
    )
    logger.info("Built artifact %r with %d tools (%d warnings)", artifact.name, len(tools), len(warnings))
    return BuildResult(artifact=artifact, warnings=warnings)


def translate(raw: bytes | str, fmt: str | None = None, options: BuildOptions | None = None) -> BuildResult:
    """Parse, resolve and translate a raw OpenAPI document in one call."""
    return build_artifact(load_document(raw, fmt), options)
