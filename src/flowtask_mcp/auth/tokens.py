"""Access/refresh token issuance, rotation, revocation and bearer authentication.

Tokens are opaque random values. Only their SHA-256 digests are stored, and
lookups are exact matches on the indexed digest column.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

import duckdb

from flowtask_mcp.auth import scopes
from flowtask_mcp.auth.errors import (
    InsufficientScope,
    InvalidClient,
    InvalidGrant,
    InvalidScope,
    InvalidToken,
)
from flowtask_mcp.auth.models import AuthContext, TokenPair
from flowtask_mcp.storage.database import Cursor, Database, utcnow

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TTL = 15 * 60  # 15 minutes
REFRESH_TOKEN_TTL = 30 * 24 * 60 * 60  # 30 days

ACCESS_TOKENS = "mcp_oauth_access_tokens"
REFRESH_TOKENS = "mcp_oauth_refresh_tokens"


def hash_secret(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def random_opaque_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)


class TokenService:
    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.clock = clock

    # -- Issuance --

    def mint_pair(
        self,
        cur: Cursor,
        client_internal_id: str,
        user_id: str,
        workspace_id: str,
        scope: str,
        now: datetime | None = None,
    ) -> tuple[TokenPair, str]:
        """Insert a fresh access/refresh pair inside the caller's transaction.

        Returns the pair and the id of the new refresh token row.
        """
        now = now or self.clock()
        access_token = random_opaque_token()
        refresh_token = random_opaque_token()
        access_id = str(uuid.uuid4())
        refresh_id = str(uuid.uuid4())

        self.db.insert_access_token(
            {
                "id": access_id,
                "client_id": client_internal_id,
                "user_id": user_id,
                "workspace_id": workspace_id,
                "token_hash": hash_secret(access_token),
                "scope": scope,
                "expires_at": now + timedelta(seconds=ACCESS_TOKEN_TTL),
                "created_at": now,
            },
            cur,
        )
        self.db.insert_refresh_token(
            {
                "id": refresh_id,
                "access_token_id": access_id,
                "client_id": client_internal_id,
                "user_id": user_id,
                "workspace_id": workspace_id,
                "token_hash": hash_secret(refresh_token),
                "scope": scope,
                "expires_at": now + timedelta(seconds=REFRESH_TOKEN_TTL),
                "created_at": now,
            },
            cur,
        )
        pair = TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            scope=scope,
            expires_in=ACCESS_TOKEN_TTL,
        )
        return pair, refresh_id

    # -- Rotation --

    def refresh(self, refresh_token: str, client_id: str, scope: str | None = None) -> TokenPair:
        """Exchange a refresh token for a new pair, revoking the old refresh token.

        Scope may only shrink. The old token is revoked with a guarded update
        in the same transaction as the mint, so a stale token never rotates
        twice even under concurrent use.
        """
        token_hash = hash_secret(refresh_token)
        now = self.clock()

        try:
            with self.db.transaction() as cur:
                row = self.db.get_refresh_token_by_hash(token_hash, cur)
                if row is None:
                    raise InvalidGrant("Invalid refresh token")
                if row["revoked_at"] is not None:
                    raise InvalidGrant("Refresh token has been revoked")
                if row["expires_at"] <= now:
                    raise InvalidGrant("Refresh token has expired")

                client = self.db.get_client(row["client_id"], cur)
                if client is None or client["client_id"] != client_id:
                    raise InvalidClient("Unknown client_id")

                current = scopes.split_scope_string(row["scope"])
                requested = scopes.split_scope_string(scope) if scope else current
                if not scopes.is_subset(requested, current):
                    raise InvalidScope("Requested scope must be a subset of granted scopes")
                parsed = scopes.parse_scopes(requested)
                if parsed.workspace_id != row["workspace_id"]:
                    raise InvalidScope("Workspace scope does not match the grant")

                pair, new_refresh_id = self.mint_pair(
                    cur,
                    row["client_id"],
                    row["user_id"],
                    row["workspace_id"],
                    parsed.scope_string,
                    now,
                )
                if not self.db.rotate_refresh_token(row["id"], new_refresh_id, now, cur):
                    raise InvalidGrant("Refresh token has been revoked")
        except duckdb.TransactionException as e:
            logger.warning("Rejected concurrent reuse of a refresh token")
            raise InvalidGrant("Refresh token has already been used") from e

        logger.info("Rotated refresh token for client %s", client_id)
        return pair

    # -- Revocation --

    def revoke(
        self,
        token: str,
        token_type_hint: str | None = None,
        client_id: str | None = None,
    ) -> None:
        """RFC 7009 revocation. Unknown tokens and foreign clients are silent no-ops."""
        token_hash = hash_secret(token)
        if token_type_hint == "access_token":
            tables: tuple[str, ...] = (ACCESS_TOKENS,)
        elif token_type_hint == "refresh_token":
            tables = (REFRESH_TOKENS,)
        else:
            tables = (ACCESS_TOKENS, REFRESH_TOKENS)

        for table in tables:
            owner = self.db.find_token_owner(table, token_hash)
            if owner is None:
                continue
            if client_id and owner["client_public_id"] != client_id:
                logger.info("Ignoring revocation request from a non-owning client")
                return
            self.db.revoke_token_by_id(table, owner["id"], self.clock())
            return

    def revoke_grant(
        self,
        cur: Cursor,
        user_id: str,
        client_internal_id: str,
        workspace_id: str,
        now: datetime,
    ) -> int:
        """Revoke every live token of a grant inside the caller's transaction."""
        return self.db.revoke_grant_tokens(user_id, client_internal_id, workspace_id, now, cur)

    def propagate_scope(
        self,
        cur: Cursor,
        user_id: str,
        client_internal_id: str,
        workspace_id: str,
        scope: str,
    ) -> int:
        """Rewrite the scope of every live token of a grant, effective on the next request."""
        return self.db.update_grant_token_scope(
            user_id, client_internal_id, workspace_id, scope, cur
        )

    def purge_expired(self, older_than: timedelta | None = None) -> dict[str, int]:
        """Delete expired codes and tokens. Storage hygiene only."""
        cutoff = self.clock() - (older_than or timedelta(0))
        counts = self.db.purge_expired(cutoff)
        logger.info("Purged expired OAuth rows: %s", counts)
        return counts

    # -- Authentication --

    def authenticate(self, token: str) -> AuthContext:
        """Resolve a bearer access token into the grant it carries.

        The stored scope is re-validated and its workspace scope must match
        the workspace the token was bound to at issuance.
        """
        row = self.db.get_live_access_token(hash_secret(token), self.clock())
        if row is None:
            raise InvalidToken("Access token is invalid or expired")

        try:
            parsed = scopes.parse(row["scope"])
        except InvalidScope as e:
            raise InvalidToken("Token has invalid scopes") from e

        if parsed.workspace_id is None or parsed.workspace_id != row["workspace_id"]:
            raise InvalidToken("Token workspace scope does not match token binding")

        return AuthContext(
            access_token_id=row["id"],
            user_id=row["user_id"],
            workspace_id=parsed.workspace_id,
            scopes=parsed.scopes,
            tool_names=parsed.tool_names,
            client_id=row["client_public_id"],
        )


def ensure_tool_allowed(context: AuthContext, tool_name: str) -> None:
    if tool_name not in context.tool_names:
        raise InsufficientScope(f"Token is missing scope for tool: {tool_name}")
