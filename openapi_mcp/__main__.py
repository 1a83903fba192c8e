"""Entry point: python -m openapi_mcp (or the `openapi-mcp` script)

  openapi-mcp generate openapi.yaml -o out/     translate and write a server bundle
  openapi-mcp serve out/manifest.json           serve a manifest over stdio or HTTP
"""

from __future__ import annotations

import logging
from pathlib import Path

import click
from dotenv import load_dotenv

from .artifact import ServerArtifact
from .builder import BuildOptions, build_artifact
from .codegen import emit
from .config import RuntimeConfig
from .errors import OpenApiMcpError
from .loader import load_spec
from .schema_translator import ALLOF_POLICIES, LAST_WRITER_WINS
from .server import build_server


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _parse_headers(values: tuple[str, ...]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for value in values:
        name, sep, header_value = value.partition(":")
        if not sep or not name.strip():
            raise click.BadParameter(f"expected 'Name: value', got {value!r}", param_hint="--header")
        headers[name.strip()] = header_value.strip()
    return headers


def _fail(exc: OpenApiMcpError) -> None:
    click.secho(f"Error: {exc}", fg="red", err=True)
    raise SystemExit(1)


@click.group()
@click.version_option(package_name="openapi-mcp")
def main():
    """Turn OpenAPI 3.x documents into MCP servers."""


@main.command()
@click.argument("spec_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("-o", "--output", required=True, type=click.Path(file_okay=False, path_type=Path),
              help="Directory to write the server bundle into.")
@click.option("--format", "fmt", default=None, type=click.Choice(["json", "yaml"]),
              help="Document format (default: from suffix or content).")
@click.option("--base-url", default=None, help="Upstream base URL (default: first server entry).")
@click.option("-H", "--header", "headers", multiple=True, help="Static header sent on every request, 'Name: value'.")
@click.option("--allof-conflicts", default=LAST_WRITER_WINS, type=click.Choice(ALLOF_POLICIES),
              help="How to treat conflicting property types inside allOf.")
@click.option("--name", default=None, help="Server name (default: derived from info.title).")
@click.option("--force", is_flag=True, help="Write into an existing output directory.")
@click.option("-v", "--verbose", count=True, help="Log more (-v info, -vv debug).")
def generate(spec_path: Path, output: Path, fmt: str | None, base_url: str | None, headers: tuple[str, ...],
             allof_conflicts: str, name: str | None, force: bool, verbose: int):
    """Translate SPEC_PATH into an MCP server bundle."""
    _configure_logging(verbose)
    options = BuildOptions(
        allof_conflicts=allof_conflicts,
        base_url=base_url,
        default_headers=_parse_headers(headers),
        server_name=name,
    )
    try:
        result = build_artifact(load_spec(spec_path, fmt), options)
        written = emit(result.artifact, output, overwrite=force)
    except OpenApiMcpError as exc:
        _fail(exc)

    for warning in result.warnings:
        click.secho(f"warning: [{warning.kind}] {warning.location}: {warning.message}", fg="yellow", err=True)
    manual = [entry.name for entry in result.artifact.tools if entry.manual_credentials]
    if manual:
        click.secho(f"{len(manual)} tool(s) need credentials configured by hand: {', '.join(manual)}",
                    fg="yellow", err=True)
    for path in written:
        click.echo(f"  Created {path}")
    click.echo(f"Generated {len(result.artifact.tools)} tools in {output}")


@main.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--base-url", default=None, help="Override BACKEND_URL.")
@click.option("--timeout", default=None, type=float, help="Override BACKEND_TIMEOUT (seconds).")
@click.option("--transport", default="stdio", type=click.Choice(["stdio", "http", "sse"]))
@click.option("--host", default="127.0.0.1", help="Bind address for HTTP transports.")
@click.option("--port", default=8000, type=int, help="Port for HTTP transports.")
@click.option("--env-file", default=None, type=click.Path(dir_okay=False, path_type=Path),
              help="Load settings from this file (default: .env next to the manifest).")
@click.option("-v", "--verbose", count=True, help="Log more (-v info, -vv debug).")
def serve(manifest: Path, base_url: str | None, timeout: float | None, transport: str, host: str, port: int,
          env_file: Path | None, verbose: int):
    """Serve MANIFEST as an MCP server."""
    _configure_logging(verbose)
    load_dotenv(env_file or manifest.parent / ".env")
    try:
        artifact = ServerArtifact.load(manifest)
        config = RuntimeConfig.from_env(artifact).with_overrides(base_url=base_url, timeout=timeout)
        mcp = build_server(artifact, config)
    except OpenApiMcpError as exc:
        _fail(exc)

    if transport == "stdio":
        mcp.run(transport="stdio")
    else:
        mcp.run(transport=transport, host=host, port=port)


if __name__ == "__main__":
    main()
