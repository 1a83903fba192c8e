"""Write a ServerArtifact out as a runnable MCP server bundle.

The bundle holds manifest.json (the serialized artifact), a server.py entry
point rendered from templates/server.py.j2, and a .env.example listing every
configuration key the operator has to fill in.
"""

from __future__ import annotations

import logging
from collections import Counter
from pathlib import Path

import jinja2

from . import __version__
from .artifact import ServerArtifact
from .errors import EmissionError, OutputExistsError

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"
MANIFEST_NAME = "manifest.json"

# template name -> output file name
_RESOURCES = {
    "server.py.j2": "server.py",
    "env.example.j2": ".env.example",
}


def check_unique_names(artifact: ServerArtifact) -> None:
    """Raise EmissionError if two tools share a name."""
    counts = Counter(entry.name for entry in artifact.tools)
    duplicates = sorted(name for name, count in counts.items() if count > 1)
    if duplicates:
        entry = next(e for e in artifact.tools if e.name == duplicates[0])
        raise EmissionError(
            f"Duplicate tool name(s): {', '.join(duplicates)}",
            f"{entry.definition.method} {entry.definition.path}",
        )


def _environment() -> jinja2.Environment:
    return jinja2.Environment(
        loader=jinja2.FileSystemLoader(str(TEMPLATE_DIR)),
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
        undefined=jinja2.StrictUndefined,
    )


def emit(artifact: ServerArtifact, output_dir: Path | str, *, overwrite: bool = False) -> list[Path]:
    """Write the bundle into `output_dir` and return the paths written."""
    check_unique_names(artifact)

    output_dir = Path(output_dir)
    if output_dir.exists() and any(output_dir.iterdir()) and not overwrite:
        raise OutputExistsError(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    manifest_path = output_dir / MANIFEST_NAME
    manifest_path.write_text(artifact.to_json() + "\n", encoding="utf-8")
    written = [manifest_path]

    env = _environment()
    context = {
        "artifact": artifact,
        "tool_count": len(artifact.tools),
        "slots": artifact.credential_slots(),
        "manual_tools": [entry.name for entry in artifact.tools if entry.manual_credentials],
        "manifest_name": MANIFEST_NAME,
        "generator_version": __version__,
    }
    for template_name, file_name in _RESOURCES.items():
        output = env.get_template(template_name).render(**context)
        path = output_dir / file_name
        path.write_text(output, encoding="utf-8")
        written.append(path)

    logger.info("Generated %s (%d tools)", output_dir, len(artifact.tools))
    return written
