"""OAuth 2.1 Authorization Server endpoints for FlowTask MCP clients.

The server issues workspace- and tool-scoped tokens to MCP clients on behalf
of a signed-in FlowTask user:

1. Client registers dynamically (RFC 7591)
2. Client starts authorization with PKCE S256
3. The user, signed in to the web app, approves tools on a consent page
4. Server stores the consent and redirects back with a one-time code
5. Client exchanges the code for an access/refresh token pair
6. The MCP endpoint authenticates every request with the access token
"""

from __future__ import annotations

import html
import logging
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from starlette.datastructures import FormData
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from flowtask_mcp.auth import scopes
from flowtask_mcp.auth.authorize import AuthorizationRequestValidator
from flowtask_mcp.auth.clients import SUPPORTED_GRANT_TYPES, SUPPORTED_RESPONSE_TYPES, ClientRegistry
from flowtask_mcp.auth.codes import AuthorizationCodeService
from flowtask_mcp.auth.consents import ConsentService
from flowtask_mcp.auth.errors import (
    AccessDenied,
    InvalidClientMetadata,
    InvalidRequest,
    OAuthError,
    UnsupportedGrantType,
)
from flowtask_mcp.auth.identity import IdentityContext, SessionAuthenticator
from flowtask_mcp.auth.models import OAuthClient, TokenPair
from flowtask_mcp.auth.tokens import TokenService
from flowtask_mcp.tools.registry import SUPPORTED_TOOLS

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}

_PAGE_STYLE = """
        body {
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', system-ui, sans-serif;
            max-width: 560px;
            margin: 60px auto;
            padding: 0 20px;
            background: #f8fafc;
            color: #0f172a;
        }
        .card {
            background: white;
            border-radius: 12px;
            padding: 28px;
            box-shadow: 0 10px 30px rgba(15, 23, 42, 0.08);
        }
        h1 { font-size: 1.4rem; margin: 0 0 8px 0; }
        .muted { color: #475569; }
        .panel { background: #f1f5f9; border-radius: 8px; padding: 12px; margin: 12px 0; }
        .tool { display: flex; gap: 8px; align-items: center; margin: 6px 0; }
        .error { color: #dc2626; }
        select { width: 100%; padding: 8px; border-radius: 8px; border: 1px solid #cbd5e1; }
        .btns { display: flex; gap: 12px; margin-top: 24px; }
        button { border: 0; border-radius: 8px; padding: 10px 16px; font-weight: 600; cursor: pointer; }
        .approve { background: #0f766e; color: #fff; }
        .deny { background: #dc2626; color: #fff; }
"""


def _esc(value: Any) -> str:
    return html.escape(str(value or ""), quote=True)


def _with_query(uri: str, params: dict[str, str]) -> str:
    """Append query parameters to a URI, keeping any it already carries."""
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value)
    return urlunsplit(parts._replace(query=urlencode(query)))


def _form_value(form: FormData, key: str) -> str | None:
    value = form.get(key)
    if value is None or not isinstance(value, str):
        return None
    return value.strip() or None


class OAuthServer:
    """HTTP surface of the authorization server.

    Business rules live in the injected services; this class only maps
    requests onto them and renders the consent page.
    """

    def __init__(
        self,
        server_url: str,
        login_url: str,
        clients: ClientRegistry,
        validator: AuthorizationRequestValidator,
        consents: ConsentService,
        codes: AuthorizationCodeService,
        tokens: TokenService,
        sessions: SessionAuthenticator,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.login_url = login_url
        self.clients = clients
        self.validator = validator
        self.consents = consents
        self.codes = codes
        self.tokens = tokens
        self.sessions = sessions

    @property
    def resource_url(self) -> str:
        return f"{self.server_url}/mcp"

    @property
    def resource_metadata_url(self) -> str:
        return f"{self.server_url}/.well-known/oauth-protected-resource/mcp"

    # -- Metadata endpoints --

    async def protected_resource_metadata(self, request: Request) -> Response:
        """RFC 9728: Protected Resource Metadata."""
        return JSONResponse({
            "resource": self.resource_url,
            "authorization_servers": [self.server_url],
            "scopes_supported": scopes.supported_scopes(),
            "bearer_methods_supported": ["header"],
        })

    async def authorization_server_metadata(self, request: Request) -> Response:
        """RFC 8414: Authorization Server Metadata."""
        return JSONResponse({
            "issuer": self.server_url,
            "authorization_endpoint": f"{self.server_url}/oauth/authorize",
            "token_endpoint": f"{self.server_url}/oauth/token",
            "registration_endpoint": f"{self.server_url}/oauth/register",
            "revocation_endpoint": f"{self.server_url}/oauth/revoke",
            "scopes_supported": scopes.supported_scopes(),
            "response_types_supported": list(SUPPORTED_RESPONSE_TYPES),
            "grant_types_supported": list(SUPPORTED_GRANT_TYPES),
            "code_challenge_methods_supported": ["S256"],
            "token_endpoint_auth_methods_supported": ["none"],
        })

    # -- Dynamic Client Registration --

    async def register_client(self, request: Request) -> Response:
        """RFC 7591: Dynamic Client Registration."""
        try:
            body = await request.json()
        except ValueError as e:
            raise InvalidClientMetadata("Request body must be a JSON object") from e
        if not isinstance(body, dict):
            raise InvalidClientMetadata("Request body must be a JSON object")

        return JSONResponse(self.clients.register(body), status_code=201)

    # -- Authorization endpoint --

    async def authorize(self, request: Request) -> Response:
        """Render the consent page for a validated authorization request."""
        params = request.query_params
        client_id = params.get("client_id")
        redirect_uri = params.get("redirect_uri", "")
        state = params.get("state")

        try:
            client = self.validator.validate_client_redirect(client_id, redirect_uri)
        except OAuthError as e:
            return self._error_page(e)

        try:
            parsed = self.validator.validate(
                params.get("response_type"),
                client_id,
                redirect_uri,
                params.get("scope"),
                params.get("code_challenge"),
                params.get("code_challenge_method"),
            )

            identity = await self.sessions.authenticate(request)
            if identity is None:
                login = _with_query(self.login_url, {"redirect": str(request.url)})
                return RedirectResponse(login, status_code=302)

            workspaces = self.validator.authorizable_workspaces(
                identity, parsed.requested_workspace_id
            )
        except OAuthError as e:
            return self._error_redirect(redirect_uri, e, state)

        return HTMLResponse(
            self._consent_html(
                client=client,
                identity=identity,
                workspaces=workspaces,
                requested_workspace_id=parsed.requested_workspace_id,
                tool_names=parsed.tool_names,
                params={
                    "response_type": params.get("response_type", ""),
                    "client_id": client.client_id,
                    "redirect_uri": redirect_uri,
                    "scope": " ".join(parsed.scopes),
                    "state": state or "",
                    "code_challenge": parsed.code_challenge,
                    "code_challenge_method": params.get("code_challenge_method", ""),
                },
            ),
            headers=NO_STORE_HEADERS,
        )

    async def authorize_submit(self, request: Request) -> Response:
        """Handle the approve/deny decision posted by the consent page."""
        form = await request.form()
        client_id = _form_value(form, "client_id")
        redirect_uri = _form_value(form, "redirect_uri") or ""
        state = _form_value(form, "state")

        try:
            client = self.validator.validate_client_redirect(client_id, redirect_uri)
        except OAuthError as e:
            return self._error_page(e)

        if _form_value(form, "decision") != "approve":
            logger.info("User denied authorization for client %s", client.client_id)
            return self._error_redirect(
                redirect_uri, AccessDenied("User denied authorization"), state
            )

        try:
            parsed = self.validator.validate(
                _form_value(form, "response_type"),
                client_id,
                redirect_uri,
                _form_value(form, "scope"),
                _form_value(form, "code_challenge"),
                _form_value(form, "code_challenge_method"),
            )

            identity = await self.sessions.authenticate(request)
            if identity is None:
                raise AccessDenied("Authentication required", status_code=401)

            approved_tools = [
                name
                for name in form.getlist("approved_tools")
                if isinstance(name, str) and name in parsed.tool_names
            ]
            if not approved_tools:
                raise AccessDenied("At least one tool permission must be approved")

            workspace_id, role = self.validator.resolve_workspace(
                identity,
                parsed.requested_workspace_id,
                _form_value(form, "workspace_id"),
            )
            approved_scopes = scopes.build_scope_list(workspace_id, approved_tools)

            self.consents.upsert_consent(
                user_id=identity.user_id,
                workspace_id=workspace_id,
                client=client,
                approved_scopes=approved_scopes,
                granted_by_role=role,
            )
            code = self.codes.issue(
                client=client,
                user_id=identity.user_id,
                workspace_id=workspace_id,
                redirect_uri=redirect_uri,
                approved_scopes=approved_scopes,
                code_challenge=parsed.code_challenge,
            )
        except OAuthError as e:
            return self._error_redirect(redirect_uri, e, state)

        params = {"code": code}
        if state:
            params["state"] = state
        return RedirectResponse(_with_query(redirect_uri, params), status_code=302)

    def _error_redirect(self, redirect_uri: str, error: OAuthError, state: str | None) -> Response:
        logger.warning("Authorization request rejected: %s", error.error)
        params = {"error": error.error, "error_description": error.description}
        if state:
            params["state"] = state
        return RedirectResponse(_with_query(redirect_uri, params), status_code=302)

    def _error_page(self, error: OAuthError) -> Response:
        """Shown when the redirect URI itself cannot be trusted."""
        logger.warning("Authorization request rejected before redirect: %s", error.error)
        return HTMLResponse(
            f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>FlowTask MCP - Authorization Error</title>
    <style>{_PAGE_STYLE}</style>
</head>
<body>
    <div class="card">
        <h1>Authorization failed</h1>
        <p class="error"><code>{_esc(error.error)}</code></p>
        <p class="muted">{_esc(error.description)}</p>
    </div>
</body>
</html>""",
            status_code=error.status_code,
        )

    # -- Token endpoint --

    async def token(self, request: Request) -> Response:
        """Exchange an authorization code or a refresh token for a token pair."""
        form = await request.form()
        grant_type = _form_value(form, "grant_type")

        try:
            if grant_type == "authorization_code":
                pair = self._handle_auth_code_grant(form)
            elif grant_type == "refresh_token":
                pair = self._handle_refresh_grant(form)
            else:
                raise UnsupportedGrantType("Only authorization_code and refresh_token are supported")
        except OAuthError as e:
            logger.warning("Token request rejected: %s", e.error)
            return JSONResponse(e.to_dict(), status_code=e.status_code, headers=NO_STORE_HEADERS)

        return JSONResponse(pair.to_response(), headers=NO_STORE_HEADERS)

    def _handle_auth_code_grant(self, form: FormData) -> TokenPair:
        code = _form_value(form, "code")
        client_id = _form_value(form, "client_id")
        redirect_uri = _form_value(form, "redirect_uri")
        code_verifier = _form_value(form, "code_verifier")
        if not (code and client_id and redirect_uri and code_verifier):
            raise InvalidRequest(
                "code, client_id, redirect_uri, and code_verifier are required"
            )
        return self.codes.exchange(code, client_id, redirect_uri, code_verifier)

    def _handle_refresh_grant(self, form: FormData) -> TokenPair:
        refresh_token = _form_value(form, "refresh_token")
        client_id = _form_value(form, "client_id")
        if not (refresh_token and client_id):
            raise InvalidRequest("refresh_token and client_id are required")
        return self.tokens.refresh(refresh_token, client_id, _form_value(form, "scope"))

    # -- Revocation endpoint --

    async def revoke(self, request: Request) -> Response:
        """RFC 7009: always 200 unless the token parameter is missing."""
        form = await request.form()
        token = _form_value(form, "token")
        if not token:
            raise InvalidRequest("token is required")

        self.tokens.revoke(
            token,
            token_type_hint=_form_value(form, "token_type_hint"),
            client_id=_form_value(form, "client_id"),
        )
        return Response(status_code=200, headers=NO_STORE_HEADERS)

    # -- HTML consent page --

    def _consent_html(
        self,
        client: OAuthClient,
        identity: IdentityContext,
        workspaces: list[dict[str, Any]],
        requested_workspace_id: str | None,
        tool_names: list[str],
        params: dict[str, str],
    ) -> str:
        """Consent page: requested tools as checkboxes, plus a workspace picker when needed."""
        tool_options = "\n".join(
            f'<label class="tool"><input type="checkbox" name="approved_tools" '
            f'value="{_esc(name)}" checked> <code>{_esc(name)}</code> '
            f'<span class="muted">{_esc(SUPPORTED_TOOLS.get(name))}</span></label>'
            for name in tool_names
        )
        hidden_fields = "\n".join(
            f'<input type="hidden" name="{_esc(key)}" value="{_esc(value)}">'
            for key, value in params.items()
        )

        if requested_workspace_id:
            workspace = workspaces[0]
            workspace_html = (
                f'<div><strong>Workspace:</strong> {_esc(workspace["name"])} '
                f'({_esc(workspace["role"])})</div>'
                f'<input type="hidden" name="workspace_id" value="{_esc(workspace["id"])}">'
            )
        else:
            options = "\n".join(
                f'<option value="{_esc(w["id"])}">{_esc(w["name"])} ({_esc(w["role"])})</option>'
                for w in workspaces
            )
            workspace_html = (
                '<label for="workspace_id"><strong>Workspace:</strong></label>'
                f'<select id="workspace_id" name="workspace_id">{options}</select>'
            )

        signed_in_as = identity.email or identity.name or identity.user_id
        return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>FlowTask MCP Authorization</title>
    <style>{_PAGE_STYLE}</style>
</head>
<body>
    <div class="card">
        <h1>Authorize MCP Client</h1>
        <p class="muted"><strong>{_esc(client.client_name)}</strong> is requesting access to FlowTask MCP tools.</p>
        <form method="POST" action="/oauth/authorize">
            <div class="panel">
                <div><strong>Signed in as:</strong> {_esc(signed_in_as)}</div>
                {workspace_html}
            </div>
            <h3>Requested tool permissions</h3>
            {tool_options}
            {hidden_fields}
            <div class="btns">
                <button class="approve" type="submit" name="decision" value="approve">Approve</button>
                <button class="deny" type="submit" name="decision" value="deny">Deny</button>
            </div>
        </form>
    </div>
</body>
</html>"""

    # -- Starlette routes --

    def routes(self) -> list[Route]:
        """Return Starlette routes for the OAuth server."""
        return [
            Route("/.well-known/oauth-protected-resource", self.protected_resource_metadata),
            Route("/.well-known/oauth-protected-resource/mcp", self.protected_resource_metadata),
            Route("/.well-known/oauth-authorization-server", self.authorization_server_metadata),
            Route("/oauth/register", self.register_client, methods=["POST"]),
            Route("/oauth/authorize", self.authorize, methods=["GET"]),
            Route("/oauth/authorize", self.authorize_submit, methods=["POST"]),
            Route("/oauth/token", self.token, methods=["POST"]),
            Route("/oauth/revoke", self.revoke, methods=["POST"]),
        ]
