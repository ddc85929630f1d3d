"""Interfaces to the human-facing collaborators: web session and workspace roles.

The authorization server never authenticates humans itself. It asks a
``SessionAuthenticator`` who is approving and a ``WorkspaceDirectory`` what
role they hold.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import jwt
from starlette.requests import Request

from flowtask_mcp.storage.database import Database

logger = logging.getLogger(__name__)

AUTHORIZING_ROLES = ("owner", "admin")
DEFAULT_SESSION_COOKIE = "flowtask_session"


@dataclass(frozen=True)
class IdentityContext:
    """The signed-in human approving a grant."""

    user_id: str
    email: str | None = None
    name: str | None = None


class SessionAuthenticator(Protocol):
    async def authenticate(self, request: Request) -> IdentityContext | None: ...


class WorkspaceDirectory(Protocol):
    def get_member_role(self, workspace_id: str, user_id: str) -> str | None: ...

    def list_authorizable_workspaces(self, user_id: str) -> list[dict[str, Any]]: ...

    def get_user(self, user_id: str) -> dict[str, Any] | None: ...


def is_authorizing_role(role: str | None) -> bool:
    return role in AUTHORIZING_ROLES


class JwtSessionAuthenticator:
    """Reads the web app's session cookie, an HS256 JWT with ``sub``/``email``/``name``.

    The web app signs the cookie with the shared ``secret``; an absent,
    expired or tampered cookie means "not signed in".
    """

    def __init__(self, secret: str, cookie_name: str = DEFAULT_SESSION_COOKIE) -> None:
        self.secret = secret
        self.cookie_name = cookie_name

    def decode(self, session_token: str) -> IdentityContext | None:
        try:
            claims = jwt.decode(
                session_token,
                self.secret,
                algorithms=["HS256"],
                options={"require": ["sub", "exp"]},
            )
        except jwt.ExpiredSignatureError:
            logger.debug("Session cookie expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.debug("Invalid session cookie: %s", e)
            return None
        return IdentityContext(
            user_id=str(claims["sub"]),
            email=claims.get("email"),
            name=claims.get("name"),
        )

    async def authenticate(self, request: Request) -> IdentityContext | None:
        session_token = request.cookies.get(self.cookie_name)
        if not session_token:
            return None
        return self.decode(session_token)


class DatabaseWorkspaceDirectory:
    """Roles and user profiles read from the local ``workspace_members``/``users`` tables."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def get_member_role(self, workspace_id: str, user_id: str) -> str | None:
        return self.db.get_member_role(workspace_id, user_id)

    def list_authorizable_workspaces(self, user_id: str) -> list[dict[str, Any]]:
        return self.db.list_member_workspaces(user_id, list(AUTHORIZING_ROLES))

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        return self.db.get_user(user_id)
