"""One-time authorization codes bound to a PKCE S256 challenge."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

import duckdb

from flowtask_mcp.auth import scopes
from flowtask_mcp.auth.errors import InvalidClient, InvalidGrant, InvalidScope
from flowtask_mcp.auth.models import OAuthClient, TokenPair
from flowtask_mcp.auth.tokens import TokenService, hash_secret, random_opaque_token
from flowtask_mcp.storage.database import Database, utcnow

logger = logging.getLogger(__name__)

AUTH_CODE_TTL = 5 * 60  # 5 minutes


def build_s256_code_challenge(code_verifier: str) -> str:
    """RFC 7636 S256: base64url(SHA256(verifier)) without padding."""
    return base64.urlsafe_b64encode(
        hashlib.sha256(code_verifier.encode()).digest()
    ).rstrip(b"=").decode()


class AuthorizationCodeService:
    def __init__(
        self,
        db: Database,
        tokens: TokenService,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.tokens = tokens
        self.clock = clock

    def issue(
        self,
        client: OAuthClient,
        user_id: str,
        workspace_id: str,
        redirect_uri: str,
        approved_scopes: list[str],
        code_challenge: str,
    ) -> str:
        """Persist a code for an approved grant and return the opaque value."""
        parsed = scopes.parse_scopes(approved_scopes)
        if parsed.workspace_id != workspace_id:
            raise InvalidScope("Workspace scope does not match the authorized workspace")

        code = random_opaque_token()
        now = self.clock()
        self.db.insert_authorization_code(
            {
                "id": str(uuid.uuid4()),
                "client_id": client.id,
                "user_id": user_id,
                "workspace_id": workspace_id,
                "code_hash": hash_secret(code),
                "redirect_uri": redirect_uri,
                "scope": parsed.scope_string,
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
                "expires_at": now + timedelta(seconds=AUTH_CODE_TTL),
                "created_at": now,
            }
        )
        return code

    def exchange(
        self,
        code: str,
        client_id: str,
        redirect_uri: str,
        code_verifier: str,
    ) -> TokenPair:
        """Redeem a code for a token pair in a single transaction.

        The code is consumed with a guarded update; a concurrent exchange of
        the same code hits a write conflict and fails with invalid_grant.
        """
        code_hash = hash_secret(code)
        now = self.clock()

        try:
            with self.db.transaction() as cur:
                auth_code = self.db.get_authorization_code_by_hash(code_hash, cur)
                if auth_code is None:
                    raise InvalidGrant("Authorization code is invalid")
                if auth_code["used_at"] is not None:
                    raise InvalidGrant("Authorization code has already been used")
                if auth_code["expires_at"] <= now:
                    raise InvalidGrant("Authorization code has expired")

                client = self.db.get_client(auth_code["client_id"], cur)
                if client is None or client["client_id"] != client_id:
                    raise InvalidClient("Unknown client_id")

                if auth_code["redirect_uri"] != redirect_uri:
                    raise InvalidGrant("redirect_uri mismatch")

                expected = build_s256_code_challenge(code_verifier).encode()
                if not hmac.compare_digest(expected, auth_code["code_challenge"].encode()):
                    raise InvalidGrant("Invalid code_verifier")

                if not self.db.mark_code_used(auth_code["id"], now, cur):
                    raise InvalidGrant("Authorization code has already been used")

                pair, _ = self.tokens.mint_pair(
                    cur,
                    auth_code["client_id"],
                    auth_code["user_id"],
                    auth_code["workspace_id"],
                    auth_code["scope"],
                    now,
                )
        except duckdb.TransactionException as e:
            logger.warning("Rejected concurrent exchange of an authorization code")
            raise InvalidGrant("Authorization code has already been used") from e

        logger.info("Exchanged authorization code for client %s", client_id)
        return pair
