"""E2E test fixtures: in-process ASGI app with MCP client session."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncGenerator

import pytest
from mcp.client.session import ClientSession
from oauth_helpers import GRANTED_TOOLS, REDIRECT_URI, issue_tokens, open_mcp_session
from starlette.applications import Starlette

from flowtask_mcp.auth.models import OAuthClient, TokenPair
from flowtask_mcp.server import AppServices


# -- Component fixtures --


@pytest.fixture
def e2e_services(app: Starlette) -> AppServices:
    return app.state.services


@pytest.fixture
def e2e_client(e2e_services: AppServices) -> OAuthClient:
    registration = e2e_services.clients.register(
        {"client_name": "E2E Agent", "redirect_uris": [REDIRECT_URI]}
    )
    client = e2e_services.clients.lookup(registration["client_id"])
    assert client is not None
    return client


@pytest.fixture
def e2e_tokens(e2e_services: AppServices, e2e_client: OAuthClient) -> TokenPair:
    """Tokens for an admin-approved grant on W1 covering ``GRANTED_TOOLS``."""
    return issue_tokens(e2e_services, e2e_client, "W1", GRANTED_TOOLS)


@pytest.fixture
async def e2e_mcp_session(app: Starlette, e2e_tokens: TokenPair) -> AsyncGenerator[ClientSession]:
    """Connected and initialized MCP ClientSession over in-process ASGI transport.

    Runs the full MCP client stack in a dedicated asyncio task so that all
    anyio cancel scopes are entered and exited within the same task.
    pytest-asyncio tears down async generator fixtures in a different task
    from setup, which causes anyio to raise 'Attempted to exit cancel scope
    in a different task' during teardown of nested context managers.
    """
    ready: asyncio.Event = asyncio.Event()
    done: asyncio.Event = asyncio.Event()
    session_ref: dict[str, ClientSession] = {}

    async def _run() -> None:
        async with open_mcp_session(app, e2e_tokens.access_token) as session:
            session_ref["session"] = session
            ready.set()
            await done.wait()

    task = asyncio.create_task(_run())
    await ready.wait()

    yield session_ref["session"]

    done.set()
    try:
        await asyncio.wait_for(task, timeout=5.0)
    except (TimeoutError, RuntimeError, BaseExceptionGroup):
        pass
    if not task.done():
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
