"""RFC 7591 dynamic client registration for public, PKCE-only clients."""

from __future__ import annotations

import logging
import secrets
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any
from urllib.parse import urlsplit

from pydantic import ValidationError

from flowtask_mcp.auth.errors import InvalidClientMetadata, InvalidRedirectUri
from flowtask_mcp.auth.models import ClientRegistrationRequest, OAuthClient
from flowtask_mcp.storage.database import Database, utcnow

logger = logging.getLogger(__name__)

CLIENT_ID_PREFIX = "ft_mcp_client_"
SUPPORTED_GRANT_TYPES = ("authorization_code", "refresh_token")
SUPPORTED_RESPONSE_TYPES = ("code",)


def _is_absolute_uri(uri: Any) -> bool:
    if not isinstance(uri, str) or not uri:
        return False
    parts = urlsplit(uri)
    return bool(parts.scheme and parts.netloc) and not parts.fragment


class ClientRegistry:
    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.clock = clock

    def register(self, metadata: dict[str, Any]) -> dict[str, Any]:
        """Validate registration metadata, persist the client, return the RFC 7591 body.

        No client secret is ever generated: the only supported
        ``token_endpoint_auth_method`` is ``none``.
        """
        try:
            request = ClientRegistrationRequest.model_validate(metadata)
        except ValidationError as e:
            raise InvalidClientMetadata(
                f"Malformed client metadata: {e.error_count()} invalid field(s)"
            ) from e

        client_name = (request.client_name or "").strip()
        if not client_name:
            raise InvalidClientMetadata("client_name is required")

        if not request.redirect_uris:
            raise InvalidRedirectUri("redirect_uris must contain at least one URI")
        invalid = [uri for uri in request.redirect_uris if not _is_absolute_uri(uri)]
        if invalid:
            raise InvalidRedirectUri("redirect_uris must be absolute URIs without fragments")

        if (request.token_endpoint_auth_method or "none") != "none":
            raise InvalidClientMetadata("Only token_endpoint_auth_method=none is supported")

        if request.grant_types is not None and not set(request.grant_types) <= set(
            SUPPORTED_GRANT_TYPES
        ):
            raise InvalidClientMetadata("Unsupported grant_types requested")

        if request.response_types is not None and not set(request.response_types) <= set(
            SUPPORTED_RESPONSE_TYPES
        ):
            raise InvalidClientMetadata("Unsupported response_types requested")

        now = self.clock()
        client = OAuthClient(
            id=str(uuid.uuid4()),
            client_id=f"{CLIENT_ID_PREFIX}{secrets.token_urlsafe(24)}",
            client_name=client_name,
            redirect_uris=list(dict.fromkeys(request.redirect_uris)),
            grant_types=request.grant_types or list(SUPPORTED_GRANT_TYPES),
            response_types=request.response_types or list(SUPPORTED_RESPONSE_TYPES),
            token_endpoint_auth_method="none",
            scope=request.scope,
            client_uri=request.client_uri,
            logo_uri=request.logo_uri,
            tos_uri=request.tos_uri,
            policy_uri=request.policy_uri,
            created_at=now,
            updated_at=now,
        )
        self.db.insert_client(client.model_dump())
        logger.info("Registered MCP OAuth client %s (%s)", client.client_id, client.client_name)
        return client.to_registration_response()

    def lookup(self, client_id: str) -> OAuthClient | None:
        """Find a client by its public id."""
        row = self.db.get_client_by_public_id(client_id)
        return OAuthClient.model_validate(row) if row else None
