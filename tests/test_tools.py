"""Tests for MCP tool registration and per-call scope enforcement."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import orjson
import pytest
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from oauth_helpers import RecordingBackend

from flowtask_mcp.auth.errors import InsufficientScope, InvalidToken
from flowtask_mcp.auth.models import AuthContext
from flowtask_mcp.server import build_mcp
from flowtask_mcp.tools.dispatch import (
    UnconfiguredTaskBackend,
    current_auth_context,
    dispatch_tool_call,
    register_task_tools,
)
from flowtask_mcp.tools.registry import SUPPORTED_TOOLS, all_tool_names, is_supported_tool


@pytest.fixture
def context() -> AuthContext:
    return AuthContext(
        access_token_id="at_1",
        user_id="user-admin",
        workspace_id="W1",
        scopes=["workspace:W1", "tool:create_task", "tool:query_tasks"],
        tool_names=["create_task", "query_tasks"],
        client_id="ft_mcp_client_abc",
    )


def fake_ctx(state: Any) -> Any:
    return SimpleNamespace(request_context=SimpleNamespace(request=SimpleNamespace(state=state)))


class TestRegistry:
    def test_eleven_tools(self) -> None:
        assert len(SUPPORTED_TOOLS) == 11
        assert all_tool_names()[0] == "create_task"
        assert is_supported_tool("list_projects")
        assert not is_supported_tool("drop_database")


class TestDispatch:
    @pytest.mark.asyncio
    async def test_granted_tool_runs(self, context: AuthContext) -> None:
        backend = RecordingBackend()
        result = await dispatch_tool_call(backend, context, "create_task", {"title": "Ship it"})
        assert orjson.loads(result) == {
            "tool": "create_task",
            "workspace_id": "W1",
            "arguments": {"title": "Ship it"},
        }
        [(name, arguments, seen)] = backend.calls
        assert name == "create_task"
        assert arguments == {"title": "Ship it"}
        assert seen is context

    @pytest.mark.asyncio
    async def test_ungranted_tool_never_reaches_backend(self, context: AuthContext) -> None:
        backend = RecordingBackend()
        with pytest.raises(InsufficientScope):
            await dispatch_tool_call(backend, context, "delete_task", {})
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_unconfigured_backend(self, context: AuthContext) -> None:
        with pytest.raises(ToolError):
            await dispatch_tool_call(UnconfiguredTaskBackend(), context, "query_tasks", {})


class TestCurrentAuthContext:
    def test_reads_request_state(self, context: AuthContext) -> None:
        ctx = fake_ctx(SimpleNamespace(auth_context=context))
        assert current_auth_context(ctx) is context

    def test_unauthenticated_request(self) -> None:
        with pytest.raises(InvalidToken):
            current_auth_context(fake_ctx(SimpleNamespace()))


class TestRegistration:
    @pytest.mark.asyncio
    async def test_all_tools_registered(self) -> None:
        mcp = FastMCP("test")
        register_task_tools(mcp, RecordingBackend())
        tools = await mcp.list_tools()
        assert sorted(tool.name for tool in tools) == sorted(SUPPORTED_TOOLS)
        for tool in tools:
            assert tool.description == SUPPORTED_TOOLS[tool.name]
            assert "arguments" in tool.inputSchema["properties"]
            assert "ctx" not in tool.inputSchema["properties"]

    @pytest.mark.asyncio
    async def test_call_outside_request_rejected(self) -> None:
        mcp = FastMCP("test")
        backend = RecordingBackend()
        register_task_tools(mcp, backend)
        with pytest.raises(ToolError, match="invalid_token"):
            await mcp.call_tool("query_tasks", {"arguments": {}})
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_listing_without_token_is_empty(self) -> None:
        mcp = build_mcp(RecordingBackend(), "http://testserver")
        assert await mcp.list_tools() == []
