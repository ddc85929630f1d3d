"""E2E tests: the full authorization flow from registration to MCP access."""

from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

import httpx
from oauth_helpers import (
    ADMIN,
    CODE_CHALLENGE,
    CODE_VERIFIER,
    REDIRECT_URI,
    TEST_SERVER_URL,
    open_mcp_session,
    session_cookie,
)
from starlette.applications import Starlette

from flowtask_mcp.auth.identity import DEFAULT_SESSION_COOKIE


def _query(resp: httpx.Response) -> dict[str, str]:
    assert resp.status_code == 302
    location = resp.headers["location"]
    assert location.startswith(REDIRECT_URI)
    return {key: values[0] for key, values in parse_qs(urlsplit(location).query).items()}


class TestAuthorizationFlow:
    async def test_register_authorize_exchange_and_call(self, app: Starlette) -> None:
        transport = httpx.ASGITransport(app=app)  # type: ignore[arg-type]
        async with httpx.AsyncClient(
            transport=transport,
            base_url=TEST_SERVER_URL,
            cookies={DEFAULT_SESSION_COOKIE: session_cookie(ADMIN)},
        ) as http:
            # 1. Discovery
            resource = (await http.get("/.well-known/oauth-protected-resource/mcp")).json()
            assert resource["authorization_servers"] == [TEST_SERVER_URL]
            server = (await http.get("/.well-known/oauth-authorization-server")).json()
            assert server["registration_endpoint"] == f"{TEST_SERVER_URL}/oauth/register"

            # 2. Dynamic client registration
            resp = await http.post(
                "/oauth/register",
                json={
                    "client_name": "Flow Agent",
                    "redirect_uris": [REDIRECT_URI],
                    "token_endpoint_auth_method": "none",
                },
            )
            assert resp.status_code == 201
            client_id = resp.json()["client_id"]

            # 3. Consent page, with a workspace to pick
            params = {
                "response_type": "code",
                "client_id": client_id,
                "redirect_uri": REDIRECT_URI,
                "scope": "workspace:{workspaceId} tool:create_task tool:query_tasks tool:list_projects",
                "state": "s-123",
                "code_challenge": CODE_CHALLENGE,
                "code_challenge_method": "S256",
            }
            page = await http.get("/oauth/authorize", params=params)
            assert page.status_code == 200
            assert "Flow Agent" in page.text

            # 4. Approve two of the three tools for W1
            query = _query(
                await http.post(
                    "/oauth/authorize",
                    data={
                        **params,
                        "decision": "approve",
                        "workspace_id": "W1",
                        "approved_tools": ["query_tasks", "list_projects"],
                    },
                )
            )
            assert query["state"] == "s-123"

            # 5. Code exchange
            resp = await http.post(
                "/oauth/token",
                data={
                    "grant_type": "authorization_code",
                    "code": query["code"],
                    "client_id": client_id,
                    "redirect_uri": REDIRECT_URI,
                    "code_verifier": CODE_VERIFIER,
                },
            )
            assert resp.status_code == 200
            tokens = resp.json()
            assert tokens["scope"] == "workspace:W1 tool:list_projects tool:query_tasks"

            # 6. Rotation
            resp = await http.post(
                "/oauth/token",
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": tokens["refresh_token"],
                    "client_id": client_id,
                },
            )
            assert resp.status_code == 200
            rotated = resp.json()

            resp = await http.post(
                "/oauth/token",
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": tokens["refresh_token"],
                    "client_id": client_id,
                },
            )
            assert resp.status_code == 400
            assert resp.json()["error"] == "invalid_grant"

        # 7. MCP access with the rotated token
        async with open_mcp_session(app, rotated["access_token"]) as session:
            listed = await session.list_tools()
            assert sorted(t.name for t in listed.tools) == ["list_projects", "query_tasks"]
            result = await session.call_tool("list_projects", {})
            assert not result.isError

    async def test_revoked_token_loses_mcp_access(self, app: Starlette) -> None:
        transport = httpx.ASGITransport(app=app)  # type: ignore[arg-type]
        async with httpx.AsyncClient(
            transport=transport,
            base_url=TEST_SERVER_URL,
            cookies={DEFAULT_SESSION_COOKIE: session_cookie(ADMIN)},
        ) as http:
            client_id = (
                await http.post(
                    "/oauth/register",
                    json={"client_name": "Flow Agent", "redirect_uris": [REDIRECT_URI]},
                )
            ).json()["client_id"]
            params = {
                "response_type": "code",
                "client_id": client_id,
                "redirect_uri": REDIRECT_URI,
                "scope": "workspace:W1 tool:query_tasks",
                "code_challenge": CODE_CHALLENGE,
                "code_challenge_method": "S256",
                "decision": "approve",
                "approved_tools": "query_tasks",
            }
            code = _query(await http.post("/oauth/authorize", data=params))["code"]
            tokens = (
                await http.post(
                    "/oauth/token",
                    data={
                        "grant_type": "authorization_code",
                        "code": code,
                        "client_id": client_id,
                        "redirect_uri": REDIRECT_URI,
                        "code_verifier": CODE_VERIFIER,
                    },
                )
            ).json()

            resp = await http.post(
                "/oauth/revoke",
                data={"token": tokens["access_token"], "client_id": client_id},
            )
            assert resp.status_code == 200

            resp = await http.post(
                "/mcp",
                json={"jsonrpc": "2.0", "method": "initialize", "id": 1, "params": {}},
                headers={"Authorization": f"Bearer {tokens['access_token']}"},
            )
            assert resp.status_code == 401
