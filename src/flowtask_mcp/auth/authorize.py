"""Validation of /authorize requests and resolution of the workspace being granted."""

from __future__ import annotations

import logging
import re

from flowtask_mcp.auth import scopes
from flowtask_mcp.auth.clients import ClientRegistry
from flowtask_mcp.auth.errors import (
    AccessDenied,
    InvalidClient,
    InvalidRequest,
    UnsupportedResponseType,
)
from flowtask_mcp.auth.identity import IdentityContext, WorkspaceDirectory, is_authorizing_role
from flowtask_mcp.auth.models import AuthorizationRequest, OAuthClient

logger = logging.getLogger(__name__)

# RFC 7636 section 4.2: 43-128 unreserved characters
CODE_CHALLENGE_RE = re.compile(r"[A-Za-z0-9\-._~]{43,128}")


class AuthorizationRequestValidator:
    def __init__(self, clients: ClientRegistry, workspaces: WorkspaceDirectory) -> None:
        self.clients = clients
        self.workspaces = workspaces

    def validate(
        self,
        response_type: str | None,
        client_id: str | None,
        redirect_uri: str | None,
        scope: str | None,
        code_challenge: str | None,
        code_challenge_method: str | None,
    ) -> AuthorizationRequest:
        """Check the protocol parameters of an authorization request.

        Each rule fails with its own error. Plain PKCE is never accepted.
        """
        if response_type != "code":
            raise UnsupportedResponseType("Only response_type=code is supported")
        if not client_id:
            raise InvalidRequest("client_id is required")
        if not redirect_uri:
            raise InvalidRequest("redirect_uri is required")
        if not code_challenge:
            raise InvalidRequest("code_challenge is required")
        if code_challenge_method != "S256":
            raise InvalidRequest("Only code_challenge_method=S256 is supported")
        if not CODE_CHALLENGE_RE.fullmatch(code_challenge):
            raise InvalidRequest("code_challenge must be 43-128 unreserved characters")

        parsed = scopes.parse(scope)
        return AuthorizationRequest(
            scopes=parsed.scopes,
            requested_workspace_id=parsed.workspace_id,
            tool_names=parsed.tool_names,
            code_challenge=code_challenge,
        )

    def validate_client_redirect(
        self, client_id: str | None, redirect_uri: str | None
    ) -> OAuthClient:
        """Load the client and confirm the redirect URI is one it registered."""
        if not client_id:
            raise InvalidRequest("client_id is required")
        if not redirect_uri:
            raise InvalidRequest("redirect_uri is required")
        client = self.clients.lookup(client_id)
        if client is None:
            raise InvalidClient("Unknown client_id")
        if redirect_uri not in client.redirect_uris:
            raise InvalidRequest("redirect_uri is not registered for this client")
        return client

    def ensure_authorizing_role(self, role: str | None) -> str:
        if role is None or not is_authorizing_role(role):
            raise AccessDenied("Only workspace owners and admins can authorize MCP access")
        return role

    def resolve_workspace(
        self,
        identity: IdentityContext,
        requested_workspace_id: str | None,
        selected_workspace_id: str | None = None,
    ) -> tuple[str, str]:
        """Pick the workspace being granted and return ``(workspace_id, role)``.

        A concrete workspace in the scope wins; otherwise the workspace the
        human selected on the consent page is used.
        """
        workspace_id = requested_workspace_id or selected_workspace_id
        if not workspace_id:
            raise InvalidRequest("A workspace must be selected")
        role = self.workspaces.get_member_role(workspace_id, identity.user_id)
        return workspace_id, self.ensure_authorizing_role(role)

    def authorizable_workspaces(
        self, identity: IdentityContext, requested_workspace_id: str | None
    ) -> list[dict]:
        """Workspaces to offer on the consent page, narrowed to the requested one if any."""
        workspaces = self.workspaces.list_authorizable_workspaces(identity.user_id)
        if requested_workspace_id:
            workspaces = [w for w in workspaces if w["id"] == requested_workspace_id]
        if not workspaces:
            raise AccessDenied("No authorizable workspace found for requested scope")
        return workspaces
