"""FlowTask MCP OAuth server -- Streamable HTTP entry point."""

from __future__ import annotations

import contextlib
import logging
import os
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from urllib.parse import urlsplit

from mcp.server.transport_security import TransportSecuritySettings
from starlette.applications import Starlette
from starlette.routing import Mount

from flowtask_mcp.auth.authorize import AuthorizationRequestValidator
from flowtask_mcp.auth.clients import ClientRegistry
from flowtask_mcp.auth.codes import AuthorizationCodeService
from flowtask_mcp.auth.connections_api import ConnectionsApi
from flowtask_mcp.auth.consents import ConsentService
from flowtask_mcp.auth.errors import EXCEPTION_HANDLERS
from flowtask_mcp.auth.identity import (
    DEFAULT_SESSION_COOKIE,
    DatabaseWorkspaceDirectory,
    JwtSessionAuthenticator,
    SessionAuthenticator,
    WorkspaceDirectory,
)
from flowtask_mcp.auth.middleware import McpAuthMiddleware
from flowtask_mcp.auth.oauth_server import OAuthServer
from flowtask_mcp.auth.tokens import TokenService
from flowtask_mcp.storage.database import DEFAULT_DB_PATH, Database, utcnow
from flowtask_mcp.tools.dispatch import (
    TaskBackend,
    UnconfiguredTaskBackend,
    WorkspaceMCP,
    register_task_tools,
)

logger = logging.getLogger(__name__)

HOST = os.environ.get("FLOWTASK_MCP_HOST", "127.0.0.1")
PORT = int(os.environ.get("FLOWTASK_MCP_PORT", "8787"))
SERVER_URL = os.environ.get("FLOWTASK_MCP_SERVER_URL", f"http://{HOST}:{PORT}")
DB_PATH = Path(os.environ.get("FLOWTASK_MCP_DB_PATH", str(DEFAULT_DB_PATH)))

# The web app owns login and signs the session cookie we read.
WEB_URL = os.environ.get("FLOWTASK_WEB_URL", "http://localhost:3000")
SESSION_SECRET = os.environ.get("FLOWTASK_SESSION_SECRET", "")
SESSION_COOKIE = os.environ.get("FLOWTASK_SESSION_COOKIE", DEFAULT_SESSION_COOKIE)


@dataclass
class AppServices:
    """The OAuth services shared by every route of one application."""

    db: Database
    clients: ClientRegistry
    validator: AuthorizationRequestValidator
    tokens: TokenService
    codes: AuthorizationCodeService
    consents: ConsentService


def build_services(
    db: Database,
    workspaces: WorkspaceDirectory,
    clock: Callable[[], datetime] = utcnow,
) -> AppServices:
    clients = ClientRegistry(db, clock=clock)
    tokens = TokenService(db, clock=clock)
    return AppServices(
        db=db,
        clients=clients,
        validator=AuthorizationRequestValidator(clients, workspaces),
        tokens=tokens,
        codes=AuthorizationCodeService(db, tokens, clock=clock),
        consents=ConsentService(db, tokens, workspaces, clock=clock),
    )


def build_mcp(backend: TaskBackend, server_url: str) -> WorkspaceMCP:
    """The FastMCP server with every task tool registered."""
    mcp = WorkspaceMCP(
        name="FlowTask",
        instructions=(
            "FlowTask MCP server. Manage tasks, projects and comments in the "
            "workspace this connection was authorized for. Only the tools you "
            "were granted are listed."
        ),
        stateless_http=True,
        transport_security=TransportSecuritySettings(
            enable_dns_rebinding_protection=True,
            allowed_hosts=[urlsplit(server_url).netloc],
            allowed_origins=[server_url.rstrip("/")],
        ),
    )
    register_task_tools(mcp, backend)
    return mcp


def create_app(
    db: Database,
    sessions: SessionAuthenticator,
    workspaces: WorkspaceDirectory | None = None,
    backend: TaskBackend | None = None,
    server_url: str = SERVER_URL,
    login_url: str | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Starlette:
    """Create the full ASGI application with OAuth, connection and MCP routes."""
    services = build_services(db, workspaces or DatabaseWorkspaceDirectory(db), clock=clock)

    oauth = OAuthServer(
        server_url=server_url,
        login_url=login_url or f"{WEB_URL}/auth/login",
        clients=services.clients,
        validator=services.validator,
        consents=services.consents,
        codes=services.codes,
        tokens=services.tokens,
        sessions=sessions,
    )
    connections = ConnectionsApi(
        consents=services.consents,
        sessions=sessions,
        workspaces=services.validator.workspaces,
    )

    mcp = build_mcp(backend or UnconfiguredTaskBackend(), server_url)
    mcp_app = McpAuthMiddleware(
        mcp.streamable_http_app(),
        tokens=services.tokens,
        resource_metadata_url=oauth.resource_metadata_url,
    )

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        services.tokens.purge_expired()
        async with mcp.session_manager.run():
            yield
        logger.info("Server shutdown: MCP session manager stopped")

    routes = [
        # OAuth routes
        *oauth.routes(),
        # Workspace settings API
        *connections.routes(),
        # MCP endpoint (mounted as sub-application behind the bearer gate)
        Mount("/", mcp_app),
    ]

    app = Starlette(routes=routes, lifespan=lifespan, exception_handlers=EXCEPTION_HANDLERS)
    app.state.services = services
    app.state.mcp = mcp
    return app


def main() -> None:
    """Entry point: start the FlowTask MCP OAuth server."""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    if not SESSION_SECRET:
        msg = (
            "FLOWTASK_SESSION_SECRET is not set. It must be the key the web app "
            "uses to sign its session cookie."
        )
        raise RuntimeError(msg)

    db = Database(DB_PATH)
    sessions = JwtSessionAuthenticator(SESSION_SECRET, cookie_name=SESSION_COOKIE)
    logger.warning("No task backend configured; tool calls will fail until one is wired in.")
    logger.info("Starting FlowTask MCP server on %s", SERVER_URL)

    app = create_app(db=db, sessions=sessions, server_url=SERVER_URL)
    try:
        uvicorn.run(app, host=HOST, port=PORT, log_level="info")
    finally:
        db.close()


if __name__ == "__main__":
    main()
