"""Pydantic models for OAuth records and wire payloads."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# -- Request models --


class ClientRegistrationRequest(BaseModel):
    """RFC 7591 registration body. Unknown metadata fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    client_name: str | None = None
    redirect_uris: list[str] | None = None
    grant_types: list[str] | None = None
    response_types: list[str] | None = None
    token_endpoint_auth_method: str | None = None
    scope: str | None = None
    client_uri: str | None = None
    logo_uri: str | None = None
    tos_uri: str | None = None
    policy_uri: str | None = None


class UpdateToolScopesRequest(BaseModel):
    """Body for PATCH .../mcp-connections/{consent_id}/scopes."""

    tool_scopes: list[str] = Field(min_length=1)


# -- Records --


class OAuthClient(BaseModel):
    """A registered public client. ``id`` is internal, ``client_id`` is public."""

    id: str
    client_id: str
    client_name: str
    redirect_uris: list[str]
    grant_types: list[str]
    response_types: list[str]
    token_endpoint_auth_method: str = "none"
    scope: str | None = None
    client_uri: str | None = None
    logo_uri: str | None = None
    tos_uri: str | None = None
    policy_uri: str | None = None
    created_at: datetime
    updated_at: datetime

    def to_registration_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "client_id": self.client_id,
            "client_id_issued_at": int(self.created_at.replace(tzinfo=UTC).timestamp()),
            "client_name": self.client_name,
            "redirect_uris": self.redirect_uris,
            "grant_types": self.grant_types,
            "response_types": self.response_types,
            "token_endpoint_auth_method": self.token_endpoint_auth_method,
        }
        for key in ("scope", "client_uri", "logo_uri", "tos_uri", "policy_uri"):
            value = getattr(self, key)
            if value:
                body[key] = value
        return body


class AuthorizationRequest(BaseModel):
    """A validated /authorize request."""

    scopes: list[str]
    requested_workspace_id: str | None
    tool_names: list[str]
    code_challenge: str


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    scope: str
    token_type: str = "Bearer"
    expires_in: int

    def to_response(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "refresh_token": self.refresh_token,
            "scope": self.scope,
        }


class AuthContext(BaseModel):
    """Who a bearer token acts for, and which tools it may call."""

    access_token_id: str
    user_id: str
    workspace_id: str
    scopes: list[str]
    tool_names: list[str]
    client_id: str


class GrantedBy(BaseModel):
    """Display identity of the human who approved a connection."""

    id: str
    email: str | None = None
    name: str | None = None


class Connection(BaseModel):
    """A consent as shown on the workspace settings page."""

    consent_id: str
    workspace_id: str
    client_id: str
    client_name: str
    granted_by_user_id: str
    granted_by: GrantedBy
    granted_by_role: str
    tool_scopes: list[str]
    created_at: datetime
    updated_at: datetime
    revoked_at: datetime | None = None
    last_activity_at: datetime | None = None
