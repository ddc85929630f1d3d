"""OAuth error types shared by the authorization server and the MCP gate."""

from __future__ import annotations

import logging

import duckdb
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)


class OAuthError(Exception):
    """Base class for every client-facing OAuth failure.

    Carries the RFC 6749 error code, the HTTP status it maps to, and a
    human-readable description that is safe to show to the client.
    """

    error = "server_error"
    status_code = 500

    def __init__(self, description: str, status_code: int | None = None) -> None:
        super().__init__(description)
        self.description = description
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error, "error_description": self.description}


class InvalidRequest(OAuthError):
    error = "invalid_request"
    status_code = 400


class InvalidClient(OAuthError):
    error = "invalid_client"
    status_code = 401


class InvalidGrant(OAuthError):
    error = "invalid_grant"
    status_code = 400


class InvalidScope(OAuthError):
    error = "invalid_scope"
    status_code = 400


class UnsupportedResponseType(OAuthError):
    error = "unsupported_response_type"
    status_code = 400


class UnsupportedGrantType(OAuthError):
    error = "unsupported_grant_type"
    status_code = 400


class InvalidClientMetadata(OAuthError):
    error = "invalid_client_metadata"
    status_code = 400


class InvalidRedirectUri(OAuthError):
    error = "invalid_redirect_uri"
    status_code = 400


class InvalidToken(OAuthError):
    error = "invalid_token"
    status_code = 401


class InsufficientScope(OAuthError):
    error = "insufficient_scope"
    status_code = 403


class AccessDenied(OAuthError):
    error = "access_denied"
    status_code = 403


class ConnectionNotFound(OAuthError):
    error = "not_found"
    status_code = 404


class ServerError(OAuthError):
    error = "server_error"
    status_code = 500


# -- Starlette exception handlers --

async def oauth_error_handler(request: Request, exc: OAuthError) -> JSONResponse:
    """Render an OAuthError as an RFC 6749 error body."""
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.error, request.url.path, exc.description)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def store_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Store failures never leak their detail to the client."""
    logger.exception("Store failure on %s", request.url.path)
    return JSONResponse(
        ServerError("The authorization server encountered an internal error").to_dict(),
        status_code=500,
    )


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    return JSONResponse(
        ServerError("The authorization server encountered an internal error").to_dict(),
        status_code=500,
    )


EXCEPTION_HANDLERS = {
    OAuthError: oauth_error_handler,
    duckdb.Error: store_error_handler,
    Exception: unexpected_error_handler,
}
