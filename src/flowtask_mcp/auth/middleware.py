"""Bearer token gate in front of the MCP Streamable HTTP endpoint."""

from __future__ import annotations

import logging

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from flowtask_mcp.auth.errors import InvalidToken
from flowtask_mcp.auth.tokens import TokenService

logger = logging.getLogger(__name__)

REALM = "flowtask-mcp"
AUTH_CONTEXT_KEY = "auth_context"


class McpAuthMiddleware:
    """Authenticates every request under ``protected_path``.

    On success the ``AuthContext`` is stored in the request state under
    ``auth_context`` so tools can read it. On failure the client gets a 401
    carrying a ``WWW-Authenticate`` challenge that points at the protected
    resource metadata, which is how MCP clients discover the authorization
    server.
    """

    def __init__(
        self,
        app: ASGIApp,
        tokens: TokenService,
        resource_metadata_url: str,
        protected_path: str = "/mcp",
    ) -> None:
        self.app = app
        self.tokens = tokens
        self.resource_metadata_url = resource_metadata_url
        self.protected_path = protected_path

    @property
    def challenge(self) -> str:
        return f'Bearer realm="{REALM}", resource_metadata="{self.resource_metadata_url}"'

    def _is_protected(self, path: str) -> bool:
        return path == self.protected_path or path.startswith(f"{self.protected_path}/")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self._is_protected(scope["path"]):
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        scheme, _, token = request.headers.get("authorization", "").partition(" ")
        token = token.strip()

        try:
            if scheme.lower() != "bearer" or not token:
                raise InvalidToken("Missing bearer token")
            context = self.tokens.authenticate(token)
        except InvalidToken as e:
            logger.warning(
                "MCP request rejected: route=%s has_session=%s error=%s",
                request.url.path,
                "mcp-session-id" in request.headers,
                e.error,
            )
            response = JSONResponse(
                e.to_dict(),
                status_code=401,
                headers={"WWW-Authenticate": self.challenge},
            )
            await response(scope, receive, send)
            return

        scope.setdefault("state", {})[AUTH_CONTEXT_KEY] = context
        await self.app(scope, receive, send)
