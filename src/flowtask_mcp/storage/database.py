"""DuckDB connection management, schema initialization and OAuth queries."""

from __future__ import annotations

import contextlib
import importlib.resources
import logging
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import duckdb
import orjson

logger = logging.getLogger(__name__)

DEFAULT_DB_DIR = Path.home() / ".flowtask-mcp"
DEFAULT_DB_PATH = DEFAULT_DB_DIR / "oauth.duckdb"

Cursor = duckdb.DuckDBPyConnection


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every TIMESTAMP column."""
    return datetime.now(UTC).replace(tzinfo=None)


def _rows(cur: Cursor) -> list[dict[str, Any]]:
    results = cur.fetchall()
    columns = [desc[0] for desc in cur.description]
    return [dict(zip(columns, row)) for row in results]


def _row(cur: Cursor) -> dict[str, Any] | None:
    result = cur.fetchone()
    if not result:
        return None
    columns = [desc[0] for desc in cur.description]
    return dict(zip(columns, result))


def dumps_json(value: Any) -> str:
    return orjson.dumps(value).decode()


def loads_json(value: str | None) -> Any:
    return orjson.loads(value) if value else []


class Database:
    """DuckDB store for OAuth clients, consents, codes and tokens.

    Query helpers accept an optional cursor so that services can run several
    of them inside one ``transaction()``; without one they use the shared
    connection.
    """

    def __init__(self, db_path: Path | str | None = None) -> None:
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = duckdb.connect(str(self.db_path))
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        schema_file = (
            importlib.resources.files("flowtask_mcp.storage")
            / "schemas"
            / "oauth.sql"
        )
        self.conn.execute(schema_file.read_text())
        logger.info("Database schema initialized at %s", self.db_path)

    def close(self) -> None:
        self.conn.close()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[Cursor]:
        """Run a block atomically on a dedicated cursor.

        DuckDB uses optimistic concurrency: a write to a row that another
        open or later-committed transaction also wrote raises
        ``duckdb.TransactionException``. Callers map that to a domain error.
        """
        cur = self.conn.cursor()
        try:
            cur.begin()
            yield cur
            cur.commit()
        except BaseException:
            with contextlib.suppress(duckdb.TransactionException):
                cur.rollback()
            raise
        finally:
            cur.close()

    def _c(self, cur: Cursor | None) -> Cursor:
        return cur if cur is not None else self.conn

    # -- Clients --

    def insert_client(self, client: dict[str, Any]) -> None:
        self.conn.execute(
            """
            INSERT INTO mcp_oauth_clients (
                id, client_id, client_name, redirect_uris, grant_types, response_types,
                token_endpoint_auth_method, scope, client_uri, logo_uri, tos_uri, policy_uri,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                client["id"],
                client["client_id"],
                client["client_name"],
                dumps_json(client["redirect_uris"]),
                dumps_json(client["grant_types"]),
                dumps_json(client["response_types"]),
                client.get("token_endpoint_auth_method", "none"),
                client.get("scope"),
                client.get("client_uri"),
                client.get("logo_uri"),
                client.get("tos_uri"),
                client.get("policy_uri"),
                client["created_at"],
                client["updated_at"],
            ],
        )

    def _decode_client(self, row: dict[str, Any] | None) -> dict[str, Any] | None:
        if row is None:
            return None
        for key in ("redirect_uris", "grant_types", "response_types"):
            row[key] = loads_json(row[key])
        return row

    def get_client_by_public_id(
        self, client_id: str, cur: Cursor | None = None
    ) -> dict[str, Any] | None:
        """Look up a client by the id it was issued at registration."""
        c = self._c(cur)
        c.execute("SELECT * FROM mcp_oauth_clients WHERE client_id = ?", [client_id])
        return self._decode_client(_row(c))

    def get_client(self, internal_id: str, cur: Cursor | None = None) -> dict[str, Any] | None:
        c = self._c(cur)
        c.execute("SELECT * FROM mcp_oauth_clients WHERE id = ?", [internal_id])
        return self._decode_client(_row(c))

    # -- Authorization codes --

    def insert_authorization_code(self, code: dict[str, Any]) -> None:
        self.conn.execute(
            """
            INSERT INTO mcp_oauth_authorization_codes (
                id, client_id, user_id, workspace_id, code_hash, redirect_uri, scope,
                code_challenge, code_challenge_method, expires_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                code["id"],
                code["client_id"],
                code["user_id"],
                code["workspace_id"],
                code["code_hash"],
                code["redirect_uri"],
                code["scope"],
                code["code_challenge"],
                code["code_challenge_method"],
                code["expires_at"],
                code["created_at"],
            ],
        )

    def get_authorization_code_by_hash(
        self, code_hash: str, cur: Cursor | None = None
    ) -> dict[str, Any] | None:
        c = self._c(cur)
        c.execute(
            "SELECT * FROM mcp_oauth_authorization_codes WHERE code_hash = ?", [code_hash]
        )
        return _row(c)

    def mark_code_used(self, code_id: str, used_at: datetime, cur: Cursor | None = None) -> bool:
        """Consume a code. Returns False if it was already used."""
        c = self._c(cur)
        c.execute(
            """
            UPDATE mcp_oauth_authorization_codes SET used_at = ?
            WHERE id = ? AND used_at IS NULL
            RETURNING id
            """,
            [used_at, code_id],
        )
        return c.fetchone() is not None

    # -- Tokens --

    def insert_access_token(self, token: dict[str, Any], cur: Cursor | None = None) -> None:
        self._c(cur).execute(
            """
            INSERT INTO mcp_oauth_access_tokens (
                id, client_id, user_id, workspace_id, token_hash, scope, expires_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                token["id"],
                token["client_id"],
                token["user_id"],
                token["workspace_id"],
                token["token_hash"],
                token["scope"],
                token["expires_at"],
                token["created_at"],
            ],
        )

    def insert_refresh_token(self, token: dict[str, Any], cur: Cursor | None = None) -> None:
        self._c(cur).execute(
            """
            INSERT INTO mcp_oauth_refresh_tokens (
                id, access_token_id, client_id, user_id, workspace_id, token_hash, scope,
                expires_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                token["id"],
                token["access_token_id"],
                token["client_id"],
                token["user_id"],
                token["workspace_id"],
                token["token_hash"],
                token["scope"],
                token["expires_at"],
                token["created_at"],
            ],
        )

    def get_refresh_token_by_hash(
        self, token_hash: str, cur: Cursor | None = None
    ) -> dict[str, Any] | None:
        c = self._c(cur)
        c.execute("SELECT * FROM mcp_oauth_refresh_tokens WHERE token_hash = ?", [token_hash])
        return _row(c)

    def rotate_refresh_token(
        self,
        token_id: str,
        replaced_by: str,
        revoked_at: datetime,
        cur: Cursor | None = None,
    ) -> bool:
        """Revoke a refresh token in favour of its successor. False if already revoked."""
        c = self._c(cur)
        c.execute(
            """
            UPDATE mcp_oauth_refresh_tokens SET revoked_at = ?, replaced_by_token_id = ?
            WHERE id = ? AND revoked_at IS NULL
            RETURNING id
            """,
            [revoked_at, replaced_by, token_id],
        )
        return c.fetchone() is not None

    def find_token_owner(self, table: str, token_hash: str) -> dict[str, Any] | None:
        """Return ``{id, client_public_id}`` for a token hash in the given token table."""
        if table not in ("mcp_oauth_access_tokens", "mcp_oauth_refresh_tokens"):
            raise ValueError(f"Not a token table: {table}")
        self.conn.execute(
            f"""
            SELECT t.id, cl.client_id AS client_public_id
            FROM {table} t
            JOIN mcp_oauth_clients cl ON cl.id = t.client_id
            WHERE t.token_hash = ?
            """,
            [token_hash],
        )
        return _row(self.conn)

    def revoke_token_by_id(self, table: str, token_id: str, revoked_at: datetime) -> None:
        if table not in ("mcp_oauth_access_tokens", "mcp_oauth_refresh_tokens"):
            raise ValueError(f"Not a token table: {table}")
        self.conn.execute(
            f"UPDATE {table} SET revoked_at = ? WHERE id = ? AND revoked_at IS NULL",
            [revoked_at, token_id],
        )

    def get_live_access_token(self, token_hash: str, now: datetime) -> dict[str, Any] | None:
        """An access token that is neither revoked nor expired, with its client's public id."""
        self.conn.execute(
            """
            SELECT t.id, t.user_id, t.workspace_id, t.scope, cl.client_id AS client_public_id
            FROM mcp_oauth_access_tokens t
            JOIN mcp_oauth_clients cl ON cl.id = t.client_id
            WHERE t.token_hash = ? AND t.revoked_at IS NULL AND t.expires_at > ?
            """,
            [token_hash, now],
        )
        return _row(self.conn)

    def update_grant_token_scope(
        self,
        user_id: str,
        client_id: str,
        workspace_id: str,
        scope: str,
        cur: Cursor | None = None,
    ) -> int:
        """Rewrite the scope of every live token of a (user, client, workspace) grant."""
        c = self._c(cur)
        updated = 0
        for table in ("mcp_oauth_access_tokens", "mcp_oauth_refresh_tokens"):
            c.execute(
                f"""
                UPDATE {table} SET scope = ?
                WHERE user_id = ? AND client_id = ? AND workspace_id = ? AND revoked_at IS NULL
                RETURNING id
                """,
                [scope, user_id, client_id, workspace_id],
            )
            updated += len(c.fetchall())
        return updated

    def revoke_grant_tokens(
        self,
        user_id: str,
        client_id: str,
        workspace_id: str,
        revoked_at: datetime,
        cur: Cursor | None = None,
    ) -> int:
        """Revoke every live token of a (user, client, workspace) grant."""
        c = self._c(cur)
        revoked = 0
        for table in ("mcp_oauth_access_tokens", "mcp_oauth_refresh_tokens"):
            c.execute(
                f"""
                UPDATE {table} SET revoked_at = ?
                WHERE user_id = ? AND client_id = ? AND workspace_id = ? AND revoked_at IS NULL
                RETURNING id
                """,
                [revoked_at, user_id, client_id, workspace_id],
            )
            revoked += len(c.fetchall())
        return revoked

    def purge_expired(self, cutoff: datetime) -> dict[str, int]:
        """Delete codes and tokens that expired before ``cutoff``."""
        counts: dict[str, int] = {}
        for table in (
            "mcp_oauth_authorization_codes",
            "mcp_oauth_access_tokens",
            "mcp_oauth_refresh_tokens",
        ):
            deleted = self.conn.execute(
                f"DELETE FROM {table} WHERE expires_at <= ? RETURNING id", [cutoff]
            ).fetchall()
            counts[table] = len(deleted)
        return counts

    # -- Consents --

    def upsert_consent(self, consent: dict[str, Any]) -> None:
        """Insert a consent or reactivate the existing one for the same triple."""
        self.conn.execute(
            """
            INSERT INTO mcp_oauth_consents (
                id, user_id, workspace_id, client_id, approved_scopes, granted_by_role,
                revoked_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, NULL, ?, ?)
            ON CONFLICT (user_id, workspace_id, client_id) DO UPDATE SET
                approved_scopes = EXCLUDED.approved_scopes,
                granted_by_role = EXCLUDED.granted_by_role,
                revoked_at = NULL,
                updated_at = EXCLUDED.updated_at
            """,
            [
                consent["id"],
                consent["user_id"],
                consent["workspace_id"],
                consent["client_id"],
                dumps_json(consent["approved_scopes"]),
                consent["granted_by_role"],
                consent["created_at"],
                consent["updated_at"],
            ],
        )

    def _decode_consent(self, row: dict[str, Any] | None) -> dict[str, Any] | None:
        if row is not None:
            row["approved_scopes"] = loads_json(row["approved_scopes"])
        return row

    def get_consent(
        self, consent_id: str, workspace_id: str, cur: Cursor | None = None
    ) -> dict[str, Any] | None:
        c = self._c(cur)
        c.execute(
            "SELECT * FROM mcp_oauth_consents WHERE id = ? AND workspace_id = ?",
            [consent_id, workspace_id],
        )
        return self._decode_consent(_row(c))

    def find_consent(
        self, user_id: str, workspace_id: str, client_id: str
    ) -> dict[str, Any] | None:
        """Look up the consent for a (user, workspace, client) triple."""
        self.conn.execute(
            """
            SELECT * FROM mcp_oauth_consents
            WHERE user_id = ? AND workspace_id = ? AND client_id = ?
            """,
            [user_id, workspace_id, client_id],
        )
        return self._decode_consent(_row(self.conn))

    def update_consent_scopes(
        self,
        consent_id: str,
        approved_scopes: list[str],
        updated_at: datetime,
        cur: Cursor | None = None,
    ) -> None:
        self._c(cur).execute(
            "UPDATE mcp_oauth_consents SET approved_scopes = ?, updated_at = ? WHERE id = ?",
            [dumps_json(approved_scopes), updated_at, consent_id],
        )

    def mark_consent_revoked(
        self, consent_id: str, revoked_at: datetime, cur: Cursor | None = None
    ) -> None:
        self._c(cur).execute(
            "UPDATE mcp_oauth_consents SET revoked_at = ?, updated_at = ? WHERE id = ?",
            [revoked_at, revoked_at, consent_id],
        )

    def list_workspace_connections(self, workspace_id: str) -> list[dict[str, Any]]:
        """Consents of a workspace joined with their client and last token issuance."""
        self.conn.execute(
            """
            SELECT c.id AS consent_id, c.workspace_id, c.user_id, c.approved_scopes,
                   c.granted_by_role, c.created_at, c.updated_at, c.revoked_at,
                   cl.client_id AS client_public_id, cl.client_name,
                   a.last_activity_at
            FROM mcp_oauth_consents c
            JOIN mcp_oauth_clients cl ON cl.id = c.client_id
            LEFT JOIN (
                SELECT user_id, client_id, workspace_id, MAX(created_at) AS last_activity_at
                FROM mcp_oauth_access_tokens
                WHERE workspace_id = ?
                GROUP BY user_id, client_id, workspace_id
            ) a ON a.user_id = c.user_id
                AND a.client_id = c.client_id
                AND a.workspace_id = c.workspace_id
            WHERE c.workspace_id = ?
            ORDER BY c.updated_at DESC
            """,
            [workspace_id, workspace_id],
        )
        return [self._decode_consent(row) for row in _rows(self.conn)]  # type: ignore[misc]

    # -- Workspace membership --

    def upsert_workspace(self, workspace_id: str, name: str) -> None:
        self.conn.execute(
            """
            INSERT INTO workspaces (id, name) VALUES (?, ?)
            ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name
            """,
            [workspace_id, name],
        )

    def upsert_user(self, user_id: str, email: str | None = None, name: str | None = None) -> None:
        self.conn.execute(
            """
            INSERT INTO users (id, email, name) VALUES (?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET email = EXCLUDED.email, name = EXCLUDED.name
            """,
            [user_id, email, name],
        )

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        self.conn.execute("SELECT id, email, name FROM users WHERE id = ?", [user_id])
        return _row(self.conn)

    def set_member_role(self, workspace_id: str, user_id: str, role: str) -> None:
        self.conn.execute(
            """
            INSERT INTO workspace_members (workspace_id, user_id, role) VALUES (?, ?, ?)
            ON CONFLICT (workspace_id, user_id) DO UPDATE SET role = EXCLUDED.role
            """,
            [workspace_id, user_id, role],
        )

    def get_member_role(self, workspace_id: str, user_id: str) -> str | None:
        result = self.conn.execute(
            "SELECT role FROM workspace_members WHERE workspace_id = ? AND user_id = ?",
            [workspace_id, user_id],
        ).fetchone()
        return result[0] if result else None

    def list_member_workspaces(self, user_id: str, roles: list[str]) -> list[dict[str, Any]]:
        """Workspaces where the user holds one of ``roles``."""
        placeholders = ", ".join("?" for _ in roles)
        self.conn.execute(
            f"""
            SELECT w.id, w.name, m.role
            FROM workspace_members m
            JOIN workspaces w ON w.id = m.workspace_id
            WHERE m.user_id = ? AND m.role IN ({placeholders})
            ORDER BY w.name
            """,
            [user_id, *roles],
        )
        return _rows(self.conn)
