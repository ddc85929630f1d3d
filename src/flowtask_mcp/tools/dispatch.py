"""MCP tools for FlowTask, gated per call by the scopes of the bearer token."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import orjson
from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from mcp.server.session import ServerSession
from mcp.types import Tool as MCPTool

from flowtask_mcp.auth.errors import InvalidToken, OAuthError
from flowtask_mcp.auth.middleware import AUTH_CONTEXT_KEY
from flowtask_mcp.auth.models import AuthContext
from flowtask_mcp.auth.tokens import ensure_tool_allowed
from flowtask_mcp.tools.registry import SUPPORTED_TOOLS

logger = logging.getLogger(__name__)


class TaskBackend(Protocol):
    """Executes an authorized tool call against the task domain."""

    async def execute(
        self, tool_name: str, arguments: dict[str, Any], context: AuthContext
    ) -> Any: ...


class UnconfiguredTaskBackend:
    """Placeholder used until a real task backend is wired in."""

    async def execute(
        self, tool_name: str, arguments: dict[str, Any], context: AuthContext
    ) -> Any:
        raise ToolError("FlowTask task backend is not configured")


def current_auth_context(ctx: Context[ServerSession, Any]) -> AuthContext:
    """The AuthContext the bearer gate attached to the current HTTP request."""
    try:
        request = ctx.request_context.request
    except ValueError as e:
        raise InvalidToken("No authenticated request in context") from e

    state = getattr(request, "state", None)
    context = getattr(state, AUTH_CONTEXT_KEY, None)
    if not isinstance(context, AuthContext):
        raise InvalidToken("Request was not authenticated")
    return context


async def dispatch_tool_call(
    backend: TaskBackend,
    context: AuthContext,
    tool_name: str,
    arguments: dict[str, Any],
) -> str:
    """Re-check the tool scope, run the call, and serialize the result."""
    ensure_tool_allowed(context, tool_name)
    logger.info(
        "Tool call %s: client=%s workspace=%s", tool_name, context.client_id, context.workspace_id
    )
    result = await backend.execute(tool_name, arguments, context)
    return orjson.dumps(result, default=str).decode()


class WorkspaceMCP(FastMCP):
    """FastMCP server whose tool listing only shows tools the token was granted."""

    async def list_tools(self) -> list[MCPTool]:
        tools = await super().list_tools()
        try:
            context = current_auth_context(self.get_context())
        except InvalidToken:
            return []
        granted = set(context.tool_names)
        return [tool for tool in tools if tool.name in granted]


def _make_tool(backend: TaskBackend, tool_name: str):  # type: ignore[no-untyped-def]
    async def run_tool(
        ctx: Context[ServerSession, Any],
        arguments: dict[str, Any] | None = None,
    ) -> str:
        try:
            context = current_auth_context(ctx)
            return await dispatch_tool_call(backend, context, tool_name, arguments or {})
        except OAuthError as e:
            raise ToolError(f"{e.error}: {e.description}") from e

    run_tool.__name__ = tool_name
    return run_tool


def register_task_tools(mcp: FastMCP, backend: TaskBackend) -> None:
    """Register one MCP tool per supported FlowTask tool name."""
    for tool_name, description in SUPPORTED_TOOLS.items():
        mcp.add_tool(_make_tool(backend, tool_name), name=tool_name, description=description)
