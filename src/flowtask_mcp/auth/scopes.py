"""Scope codec for the two scope families: ``workspace:{id}`` and ``tool:{name}``.

Pure functions, no I/O. Every scope string that reaches storage goes through
``normalize_scopes`` so stored values compare equal regardless of the
order a client listed them in.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from flowtask_mcp.auth.errors import InvalidScope
from flowtask_mcp.tools.registry import all_tool_names, is_supported_tool

WORKSPACE_SCOPE_PREFIX = "workspace:"
TOOL_SCOPE_PREFIX = "tool:"
WORKSPACE_SCOPE_TEMPLATE = f"{WORKSPACE_SCOPE_PREFIX}{{workspaceId}}"

# Clients that register before the user picks a workspace send a template
# literal such as "workspace:{workspaceId}".
_PLACEHOLDER_RE = re.compile(r"^\{.+\}$")


@dataclass(frozen=True)
class ParsedScope:
    """Result of parsing a scope string.

    ``workspace_id`` is None when the workspace scope is a placeholder that
    still has to be resolved on the consent page.
    """

    scopes: list[str]
    workspace_id: str | None
    tool_names: list[str]

    @property
    def scope_string(self) -> str:
        return " ".join(self.scopes)


def workspace_scope(workspace_id: str) -> str:
    return f"{WORKSPACE_SCOPE_PREFIX}{workspace_id}"


def tool_scope(tool_name: str) -> str:
    return f"{TOOL_SCOPE_PREFIX}{tool_name}"


def _sort_key(token: str) -> tuple[int, str]:
    if token.startswith(WORKSPACE_SCOPE_PREFIX):
        return (0, token)
    if token.startswith(TOOL_SCOPE_PREFIX):
        return (1, token)
    return (2, token)


def normalize_scopes(tokens: Iterable[str]) -> list[str]:
    """Deduplicate scope tokens and put them in canonical order."""
    return sorted({token for token in tokens if token}, key=_sort_key)


def split_scope_string(scope: str | None) -> list[str]:
    """Split a raw scope parameter into normalized tokens."""
    if not scope:
        return []
    return normalize_scopes(scope.split())


def normalize_scope_string(scope: str | None) -> str:
    return " ".join(split_scope_string(scope))


def workspace_scopes(scopes: Iterable[str]) -> list[str]:
    return [s for s in scopes if s.startswith(WORKSPACE_SCOPE_PREFIX)]


def tool_names(scopes: Iterable[str]) -> list[str]:
    return [s.removeprefix(TOOL_SCOPE_PREFIX) for s in scopes if s.startswith(TOOL_SCOPE_PREFIX)]


def is_placeholder_workspace(workspace_id: str) -> bool:
    return bool(_PLACEHOLDER_RE.match(workspace_id))


def is_subset(subset: Iterable[str], superset: Iterable[str]) -> bool:
    return set(subset) <= set(superset)


def validate_tool_names(names: Iterable[str]) -> list[str]:
    """Normalize a list of bare tool names, rejecting unknown or empty sets."""
    normalized = sorted({name for name in names if name})
    if not normalized:
        raise InvalidScope("At least one tool scope is required")
    unknown = [name for name in normalized if not is_supported_tool(name)]
    if unknown:
        raise InvalidScope(f"Unknown tool scopes: {', '.join(unknown)}")
    return normalized


def parse_scopes(scopes: Iterable[str]) -> ParsedScope:
    """Validate already-split scope tokens against the scope invariants.

    Exactly one workspace scope and at least one known tool scope are
    required. Tokens from neither family are kept but carry no permission.
    """
    normalized = normalize_scopes(scopes)

    workspace_tokens = workspace_scopes(normalized)
    if len(workspace_tokens) != 1:
        raise InvalidScope("Exactly one workspace scope is required")

    names = tool_names(normalized)
    if not names:
        raise InvalidScope("At least one tool scope is required")

    unknown = [name for name in names if not is_supported_tool(name)]
    if unknown:
        raise InvalidScope(f"Unknown tool scopes: {', '.join(unknown)}")

    raw_workspace_id = workspace_tokens[0].removeprefix(WORKSPACE_SCOPE_PREFIX)
    if not raw_workspace_id:
        raise InvalidScope("Invalid workspace scope")
    workspace_id = None if is_placeholder_workspace(raw_workspace_id) else raw_workspace_id

    return ParsedScope(scopes=normalized, workspace_id=workspace_id, tool_names=names)


def parse(scope: str | None) -> ParsedScope:
    """Parse a space-separated scope string. Raises InvalidScope."""
    return parse_scopes(split_scope_string(scope))


def build_scope_list(workspace_id: str, names: Iterable[str]) -> list[str]:
    return normalize_scopes([workspace_scope(workspace_id), *(tool_scope(n) for n in names)])


def build_scope_string(workspace_id: str, names: Iterable[str]) -> str:
    return " ".join(build_scope_list(workspace_id, names))


def supported_scopes() -> list[str]:
    """Scopes advertised by discovery: the workspace template plus every tool."""
    return [WORKSPACE_SCOPE_TEMPLATE, *(tool_scope(name) for name in all_tool_names())]
