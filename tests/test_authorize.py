"""Tests for authorization request validation and workspace resolution."""

from __future__ import annotations

from typing import Any

import pytest
from oauth_helpers import ADMIN, CODE_CHALLENGE, MEMBER, OWNER, REDIRECT_URI

from flowtask_mcp.auth.authorize import AuthorizationRequestValidator
from flowtask_mcp.auth.errors import (
    AccessDenied,
    InvalidClient,
    InvalidRequest,
    InvalidScope,
    UnsupportedResponseType,
)
from flowtask_mcp.auth.identity import IdentityContext
from flowtask_mcp.auth.models import OAuthClient
from flowtask_mcp.server import AppServices


@pytest.fixture
def validator(services: AppServices, workspace: str) -> AuthorizationRequestValidator:
    return services.validator


def _params(**overrides: Any) -> dict[str, Any]:
    params: dict[str, Any] = {
        "response_type": "code",
        "client_id": "ft_mcp_client_x",
        "redirect_uri": REDIRECT_URI,
        "scope": "workspace:W1 tool:create_task tool:query_tasks",
        "code_challenge": CODE_CHALLENGE,
        "code_challenge_method": "S256",
    }
    params.update(overrides)
    return params


class TestValidate:
    def test_valid_request(self, validator: AuthorizationRequestValidator) -> None:
        request = validator.validate(**_params())
        assert request.requested_workspace_id == "W1"
        assert request.tool_names == ["create_task", "query_tasks"]

    def test_placeholder_workspace(self, validator: AuthorizationRequestValidator) -> None:
        request = validator.validate(**_params(scope="workspace:{workspaceId} tool:add_comment"))
        assert request.requested_workspace_id is None

    def test_response_type(self, validator: AuthorizationRequestValidator) -> None:
        with pytest.raises(UnsupportedResponseType):
            validator.validate(**_params(response_type="token"))

    @pytest.mark.parametrize("field", ["client_id", "redirect_uri", "code_challenge"])
    def test_required_fields(self, validator: AuthorizationRequestValidator, field: str) -> None:
        with pytest.raises(InvalidRequest):
            validator.validate(**_params(**{field: None}))

    @pytest.mark.parametrize("method", [None, "plain", "s256"])
    def test_only_s256(self, validator: AuthorizationRequestValidator, method: str | None) -> None:
        with pytest.raises(InvalidRequest):
            validator.validate(**_params(code_challenge_method=method))

    @pytest.mark.parametrize(
        "challenge",
        ["\u00e9" * 43, "a" * 42, "a" * 129, "a" * 42 + "=", "a" * 42 + "/"],
    )
    def test_malformed_challenge(
        self, validator: AuthorizationRequestValidator, challenge: str
    ) -> None:
        with pytest.raises(InvalidRequest):
            validator.validate(**_params(code_challenge=challenge))

    def test_challenge_length_bounds(self, validator: AuthorizationRequestValidator) -> None:
        for challenge in ("a" * 43, "A-._~" * 25 + "xyz"):
            request = validator.validate(**_params(code_challenge=challenge))
            assert request.code_challenge == challenge

    def test_bad_scope(self, validator: AuthorizationRequestValidator) -> None:
        with pytest.raises(InvalidScope):
            validator.validate(**_params(scope="workspace:W1 workspace:W2 tool:create_task"))


class TestClientRedirect:
    def test_registered_redirect(
        self, validator: AuthorizationRequestValidator, client: OAuthClient
    ) -> None:
        loaded = validator.validate_client_redirect(client.client_id, REDIRECT_URI)
        assert loaded.id == client.id

    def test_unknown_client(self, validator: AuthorizationRequestValidator) -> None:
        with pytest.raises(InvalidClient):
            validator.validate_client_redirect("ft_mcp_client_unknown", REDIRECT_URI)

    def test_unregistered_redirect(
        self, validator: AuthorizationRequestValidator, client: OAuthClient
    ) -> None:
        with pytest.raises(InvalidRequest):
            validator.validate_client_redirect(client.client_id, "https://evil.example/cb")

    def test_redirect_prefix_not_enough(
        self, validator: AuthorizationRequestValidator, client: OAuthClient
    ) -> None:
        with pytest.raises(InvalidRequest):
            validator.validate_client_redirect(client.client_id, f"{REDIRECT_URI}/extra")


class TestWorkspaceResolution:
    @pytest.mark.parametrize("role", [None, "member", "guest"])
    def test_ensure_authorizing_role_rejects(
        self, validator: AuthorizationRequestValidator, role: str | None
    ) -> None:
        with pytest.raises(AccessDenied):
            validator.ensure_authorizing_role(role)

    def test_ensure_authorizing_role_returns_role(
        self, validator: AuthorizationRequestValidator
    ) -> None:
        assert validator.ensure_authorizing_role("owner") == "owner"

    @pytest.mark.parametrize("user_id,role", [(ADMIN, "admin"), (OWNER, "owner")])
    def test_admin_and_owner_allowed(
        self, validator: AuthorizationRequestValidator, user_id: str, role: str
    ) -> None:
        assert validator.resolve_workspace(IdentityContext(user_id), "W1") == ("W1", role)

    def test_member_denied(self, validator: AuthorizationRequestValidator) -> None:
        with pytest.raises(AccessDenied):
            validator.resolve_workspace(IdentityContext(MEMBER), "W1")

    def test_non_member_denied(self, validator: AuthorizationRequestValidator) -> None:
        with pytest.raises(AccessDenied):
            validator.resolve_workspace(IdentityContext(OWNER), "W2")

    def test_selected_workspace_used_for_placeholder(
        self, validator: AuthorizationRequestValidator
    ) -> None:
        assert validator.resolve_workspace(IdentityContext(ADMIN), None, "W2") == ("W2", "owner")

    def test_requested_workspace_wins(self, validator: AuthorizationRequestValidator) -> None:
        assert validator.resolve_workspace(IdentityContext(ADMIN), "W1", "W2") == ("W1", "admin")

    def test_nothing_selected(self, validator: AuthorizationRequestValidator) -> None:
        with pytest.raises(InvalidRequest):
            validator.resolve_workspace(IdentityContext(ADMIN), None, None)

    def test_authorizable_workspaces(self, validator: AuthorizationRequestValidator) -> None:
        all_workspaces = validator.authorizable_workspaces(IdentityContext(ADMIN), None)
        assert [w["id"] for w in all_workspaces] == ["W1", "W2"]
        narrowed = validator.authorizable_workspaces(IdentityContext(ADMIN), "W2")
        assert narrowed == [{"id": "W2", "name": "Beta", "role": "owner"}]

    def test_member_has_no_authorizable_workspace(
        self, validator: AuthorizationRequestValidator
    ) -> None:
        with pytest.raises(AccessDenied):
            validator.authorizable_workspaces(IdentityContext(MEMBER), None)
