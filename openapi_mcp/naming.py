"""Convert operations to MCP tool names.

An operation's sanitized operationId is used when it is unique across the
document. Otherwise the name is derived from the HTTP method and the path
template, with path parameters rendered as `by_<name>`:

Examples:
  GET    /users              -> get_users
  GET    /users/{id}         -> get_users_by_id
  POST   /users/{id}         -> post_users_by_id
  GET    /users/{userId}/pets -> get_users_by_user_id_pets
  DELETE /                   -> delete_root

Remaining collisions get a numeric suffix (`_2`, `_3`, ...) in document
traversal order.
"""

from __future__ import annotations

import re
from collections import Counter

# MCP hosts commonly reject longer tool names
MAX_TOOL_NAME_LENGTH = 64


def _camel_to_snake(name: str) -> str:
    """Convert camelCase or PascalCase to snake_case."""
    s1 = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", name)
    return re.sub(r"([a-z\d])([A-Z])", r"\1_\2", s1).lower()


def _sanitize_segment(segment: str) -> str:
    """Sanitize a path segment for use in a tool name."""
    name = _camel_to_snake(segment)
    name = re.sub(r"[.\-\s]", "_", name)
    name = re.sub(r"[^a-z0-9_]", "", name)
    name = re.sub(r"_+", "_", name)
    return name.strip("_")


def sanitize_operation_id(operation_id: str | None) -> str | None:
    """Return a tool-safe form of an operationId, or None if nothing usable remains."""
    if not operation_id:
        return None
    name = re.sub(r"[^A-Za-z0-9_-]+", "_", operation_id.strip())
    name = re.sub(r"_+", "_", name).strip("_")
    return name or None


def build_tool_name(method: str, path: str) -> str:
    """Build a tool name from HTTP method and path template.

    Returns a name like 'get_users' or 'get_users_by_id'.
    """
    parts: list[str] = []
    for segment in path.split("/"):
        if not segment:
            continue
        params = re.findall(r"\{([^}]+)\}", segment)
        literal = re.sub(r"\{[^}]+\}", "", segment)
        clean = _sanitize_segment(literal)
        if clean:
            parts.append(clean)
        for param in params:
            clean_param = _sanitize_segment(param)
            if clean_param:
                parts.append(f"by_{clean_param}")

    resource = "_".join(parts) if parts else "root"
    return _truncate(f"{method.lower()}_{resource}")


def _truncate(name: str, limit: int = MAX_TOOL_NAME_LENGTH) -> str:
    return name[:limit].rstrip("_") or name[:limit]


def assign_tool_names(operations: list[tuple[str | None, str, str]]) -> list[str]:
    """Pick a unique name for each (operationId, method, path), preserving order."""
    sanitized = [sanitize_operation_id(op_id) for op_id, _, _ in operations]
    counts = Counter(name for name in sanitized if name)

    names: list[str] = []
    taken: set[str] = set()
    for op_id, (_, method, path) in zip(sanitized, operations):
        if op_id and counts[op_id] == 1:
            base = _truncate(op_id)
        else:
            base = build_tool_name(method, path)

        name = base
        suffix = 2
        while name in taken:
            tail = f"_{suffix}"
            name = _truncate(base, MAX_TOOL_NAME_LENGTH - len(tail)) + tail
            suffix += 1
        taken.add(name)
        names.append(name)
    return names
