"""Durable consents and the workspace-facing connection manager over them.

A consent outlives the tokens minted from it. Editing or revoking it cascades
into every live token of the same (user, client, workspace) triple. Callers
are responsible for checking that the acting user is an owner or admin.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

import duckdb

from flowtask_mcp.auth import scopes
from flowtask_mcp.auth.errors import (
    ConnectionNotFound,
    InvalidRequest,
    InvalidScope,
    ServerError,
)
from flowtask_mcp.auth.identity import WorkspaceDirectory
from flowtask_mcp.auth.models import Connection, GrantedBy, OAuthClient
from flowtask_mcp.auth.tokens import TokenService
from flowtask_mcp.storage.database import Database, utcnow

logger = logging.getLogger(__name__)


def _to_connection(row: dict[str, Any], profile: dict[str, Any] | None) -> Connection:
    profile = profile or {}
    return Connection(
        consent_id=row["consent_id"],
        workspace_id=row["workspace_id"],
        client_id=row["client_public_id"],
        client_name=row["client_name"],
        granted_by_user_id=row["user_id"],
        granted_by=GrantedBy(
            id=row["user_id"],
            email=profile.get("email"),
            name=profile.get("name"),
        ),
        granted_by_role=row["granted_by_role"],
        tool_scopes=scopes.tool_names(row["approved_scopes"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        revoked_at=row["revoked_at"],
        last_activity_at=row["last_activity_at"],
    )


class ConsentService:
    def __init__(
        self,
        db: Database,
        tokens: TokenService,
        workspaces: WorkspaceDirectory,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.tokens = tokens
        self.workspaces = workspaces
        self.clock = clock

    def upsert_consent(
        self,
        user_id: str,
        workspace_id: str,
        client: OAuthClient,
        approved_scopes: list[str],
        granted_by_role: str,
    ) -> dict[str, Any]:
        """Record an approval, reactivating and overwriting any earlier consent."""
        parsed = scopes.parse_scopes(approved_scopes)
        if parsed.workspace_id != workspace_id:
            raise InvalidScope("Workspace scope does not match the authorized workspace")

        now = self.clock()
        self.db.upsert_consent(
            {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "workspace_id": workspace_id,
                "client_id": client.id,
                "approved_scopes": parsed.scopes,
                "granted_by_role": granted_by_role,
                "created_at": now,
                "updated_at": now,
            }
        )
        consent = self.db.find_consent(user_id, workspace_id, client.id)
        if consent is None:
            raise ServerError("Failed to persist consent")
        logger.info(
            "Consent granted: client %s, workspace %s, tools %s",
            client.client_id,
            workspace_id,
            ",".join(parsed.tool_names),
        )
        return consent

    def list_workspace_connections(self, workspace_id: str) -> list[Connection]:
        """Connections of a workspace, newest change first, with grantor display identity."""
        rows = self.db.list_workspace_connections(workspace_id)
        profiles: dict[str, dict[str, Any] | None] = {}
        for row in rows:
            if row["user_id"] not in profiles:
                profiles[row["user_id"]] = self.workspaces.get_user(row["user_id"])
        return [_to_connection(row, profiles[row["user_id"]]) for row in rows]

    def get_connection(self, consent_id: str, workspace_id: str) -> Connection:
        for connection in self.list_workspace_connections(workspace_id):
            if connection.consent_id == consent_id:
                return connection
        raise ConnectionNotFound("OAuth connection not found")

    def update_consent_tool_scopes(
        self, consent_id: str, workspace_id: str, tool_names: list[str]
    ) -> Connection:
        """Replace the tools of a consent and rewrite live tokens to match.

        The workspace scope of the consent is kept as is.
        """
        names = scopes.validate_tool_names(tool_names)
        now = self.clock()

        try:
            with self.db.transaction() as cur:
                consent = self.db.get_consent(consent_id, workspace_id, cur)
                if consent is None:
                    raise ConnectionNotFound("OAuth connection not found")
                if consent["revoked_at"] is not None:
                    raise InvalidRequest("OAuth connection is revoked")

                workspace_tokens = scopes.workspace_scopes(consent["approved_scopes"])
                if len(workspace_tokens) != 1:
                    raise InvalidScope("Stored consent is missing workspace scope")
                next_scopes = scopes.build_scope_list(consent["workspace_id"], names)
                next_scope_string = scopes.build_scope_string(consent["workspace_id"], names)

                self.db.update_consent_scopes(consent["id"], next_scopes, now, cur)
                updated = self.tokens.propagate_scope(
                    cur,
                    consent["user_id"],
                    consent["client_id"],
                    consent["workspace_id"],
                    next_scope_string,
                )
        except duckdb.TransactionException as e:
            raise InvalidRequest("OAuth connection was modified concurrently") from e

        logger.info(
            "Consent %s updated to tools %s (%d live tokens rewritten)",
            consent_id,
            ",".join(names),
            updated,
        )
        return self.get_connection(consent_id, workspace_id)

    def revoke_consent(self, consent_id: str, workspace_id: str) -> None:
        """Revoke a consent and every live token minted under it. Idempotent."""
        now = self.clock()

        try:
            with self.db.transaction() as cur:
                consent = self.db.get_consent(consent_id, workspace_id, cur)
                if consent is None:
                    raise ConnectionNotFound("OAuth connection not found")
                if consent["revoked_at"] is None:
                    self.db.mark_consent_revoked(consent["id"], now, cur)
                revoked = self.tokens.revoke_grant(
                    cur,
                    consent["user_id"],
                    consent["client_id"],
                    consent["workspace_id"],
                    now,
                )
        except duckdb.TransactionException as e:
            raise InvalidRequest("OAuth connection was modified concurrently") from e

        logger.info("Consent %s revoked (%d live tokens revoked)", consent_id, revoked)
