"""Workspace settings API for listing, editing and revoking MCP connections."""

from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import duckdb
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from flowtask_mcp.auth.consents import ConsentService
from flowtask_mcp.auth.errors import AccessDenied, InvalidRequest, OAuthError
from flowtask_mcp.auth.identity import SessionAuthenticator, WorkspaceDirectory, is_authorizing_role
from flowtask_mcp.auth.models import UpdateToolScopesRequest

logger = logging.getLogger(__name__)

Handler = Callable[[Any, Request], Awaitable[Any]]


def _success(data: Any) -> JSONResponse:
    return JSONResponse({"success": True, "data": data})


def _failure(code: str, message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": {"code": code, "message": message}},
        status_code=status_code,
    )


def api_endpoint(failure_code: str, failure_message: str) -> Callable[[Handler], Callable[[Any, Request], Awaitable[Response]]]:
    """Wrap a handler's return value and errors in the ``{success, data|error}`` envelope."""

    def decorator(handler: Handler) -> Callable[[Any, Request], Awaitable[Response]]:
        @functools.wraps(handler)
        async def wrapper(self: Any, request: Request) -> Response:
            try:
                return _success(await handler(self, request))
            except OAuthError as e:
                return _failure(e.error.upper(), e.description, e.status_code)
            except duckdb.Error:
                logger.exception("Store failure on %s", request.url.path)
                return _failure(failure_code, failure_message, 500)

        return wrapper

    return decorator


class ConnectionsApi:
    """Routes under ``/api/workspaces/{workspace_id}/mcp-connections``.

    Only workspace owners and admins may use them.
    """

    def __init__(
        self,
        consents: ConsentService,
        sessions: SessionAuthenticator,
        workspaces: WorkspaceDirectory,
    ) -> None:
        self.consents = consents
        self.sessions = sessions
        self.workspaces = workspaces

    async def _require_manager(self, request: Request) -> str:
        """Return the workspace id from the path once the caller is allowed to manage it."""
        identity = await self.sessions.authenticate(request)
        if identity is None:
            raise AccessDenied("Authentication required", status_code=401)

        workspace_id = request.path_params["workspace_id"]
        role = self.workspaces.get_member_role(workspace_id, identity.user_id)
        if not is_authorizing_role(role):
            raise AccessDenied("Only workspace owners and admins can manage MCP OAuth connections")
        return workspace_id

    @api_endpoint("LIST_FAILED", "Failed to list MCP OAuth connections")
    async def list_connections(self, request: Request) -> dict[str, Any]:
        workspace_id = await self._require_manager(request)
        connections = self.consents.list_workspace_connections(workspace_id)
        return {"connections": [c.model_dump(mode="json") for c in connections]}

    @api_endpoint("UPDATE_FAILED", "Failed to update MCP OAuth scopes")
    async def update_scopes(self, request: Request) -> dict[str, Any]:
        workspace_id = await self._require_manager(request)
        try:
            body = UpdateToolScopesRequest.model_validate(await request.json())
        except (ValueError, ValidationError) as e:
            raise InvalidRequest("tool_scopes must be a non-empty array of tool names") from e

        connection = self.consents.update_consent_tool_scopes(
            request.path_params["consent_id"], workspace_id, body.tool_scopes
        )
        return connection.model_dump(mode="json")

    @api_endpoint("DELETE_FAILED", "Failed to delete MCP OAuth connection")
    async def revoke_connection(self, request: Request) -> None:
        workspace_id = await self._require_manager(request)
        self.consents.revoke_consent(request.path_params["consent_id"], workspace_id)
        return None

    def routes(self) -> list[Route]:
        base = "/api/workspaces/{workspace_id}/mcp-connections"
        return [
            Route(base, self.list_connections, methods=["GET"]),
            Route(f"{base}/{{consent_id}}/scopes", self.update_scopes, methods=["PATCH"]),
            Route(f"{base}/{{consent_id}}", self.revoke_connection, methods=["DELETE"]),
        ]
