"""Static mapping from caller-facing tool names onto canonical provider tools.

Agents are instructed with editor-style tool names (``codebase``,
``editFiles``...) whose argument shapes differ from the ones providers
expose. The mapping here is pure: it never looks at which providers are
connected.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

__all__ = ["ToolAlias", "TOOL_ALIASES", "CANONICAL_DEFAULTS", "canonical_tool_name", "map_tool_call"]


@dataclass(frozen=True)
class ToolAlias:
    alias: str
    canonical: str
    renames: Mapping[str, str] = field(default_factory=dict)

    def translate(self, arguments: Mapping[str, Any]) -> dict[str, Any]:
        translated: dict[str, Any] = {}
        for key, value in arguments.items():
            translated[self.renames.get(key, key)] = value
        return translated


TOOL_ALIASES: dict[str, ToolAlias] = {
    alias.alias: alias
    for alias in (
        ToolAlias("codebase", "read_file", {"filePath": "path"}),
        ToolAlias("editFiles", "write_file", {"filePath": "path"}),
        ToolAlias("search", "search_files", {"query": "pattern", "includePattern": "path"}),
        ToolAlias("file_search", "search_files", {"query": "pattern", "includePattern": "path"}),
        ToolAlias("list_dir", "list_directory"),
    )
}

# Defaults filled in for canonical calls, whichever name the caller used.
CANONICAL_DEFAULTS: dict[str, dict[str, Any]] = {
    "read_file": {"startLine": 1, "endLine": 100},
    "search_files": {"path": ".", "caseSensitive": False},
}


def canonical_tool_name(name: str) -> str:
    alias = TOOL_ALIASES.get(name)
    return alias.canonical if alias else name


def map_tool_call(name: str, arguments: Mapping[str, Any] | None) -> tuple[str, dict[str, Any]]:
    """Return the canonical ``(tool name, arguments)`` pair for a call."""
    payload = dict(arguments or {})
    alias = TOOL_ALIASES.get(name)
    if alias is not None:
        name = alias.canonical
        payload = alias.translate(payload)
    for key, value in CANONICAL_DEFAULTS.get(name, {}).items():
        if payload.get(key) is None:
            payload[key] = value
    return name, payload
