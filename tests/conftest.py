"""Shared fixtures: temp DuckDB store, controllable clock, seeded workspaces."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime
from pathlib import Path

import pytest
from oauth_helpers import (
    ADMIN,
    LOGIN_URL,
    MEMBER,
    OWNER,
    REDIRECT_URI,
    SESSION_SECRET,
    TEST_SERVER_URL,
    FakeClock,
    RecordingBackend,
)
from starlette.applications import Starlette

from flowtask_mcp.auth.identity import DatabaseWorkspaceDirectory, JwtSessionAuthenticator
from flowtask_mcp.auth.models import OAuthClient
from flowtask_mcp.server import AppServices, build_services, create_app
from flowtask_mcp.storage.database import Database


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, 0))


@pytest.fixture
def db(tmp_path: Path) -> Iterator[Database]:
    """Create a test database in a temp directory."""
    database = Database(db_path=tmp_path / "oauth.duckdb")
    yield database
    database.close()


@pytest.fixture
def workspace(db: Database) -> str:
    """Workspace W1 with an admin, an owner and a plain member; W2 owned by the admin."""
    db.upsert_workspace("W1", "Acme")
    db.upsert_workspace("W2", "Beta")
    db.set_member_role("W1", ADMIN, "admin")
    db.set_member_role("W1", OWNER, "owner")
    db.set_member_role("W1", MEMBER, "member")
    db.set_member_role("W2", ADMIN, "owner")
    db.upsert_user(ADMIN, "ada@acme.example", "Ada Admin")
    db.upsert_user(OWNER, "olga@acme.example", "Olga Owner")
    return "W1"


@pytest.fixture
def services(db: Database, clock: FakeClock) -> AppServices:
    return build_services(db, DatabaseWorkspaceDirectory(db), clock=clock)


@pytest.fixture
def client(services: AppServices) -> OAuthClient:
    """A registered public client."""
    registration = services.clients.register({
        "client_name": "Agent",
        "redirect_uris": [REDIRECT_URI],
        "token_endpoint_auth_method": "none",
    })
    registered = services.clients.lookup(registration["client_id"])
    assert registered is not None
    return registered


@pytest.fixture
def backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def app(db: Database, workspace: str, clock: FakeClock, backend: RecordingBackend) -> Starlette:
    """The full ASGI app, reading sessions signed with the test secret."""
    return create_app(
        db=db,
        sessions=JwtSessionAuthenticator(SESSION_SECRET),
        backend=backend,
        server_url=TEST_SERVER_URL,
        login_url=LOGIN_URL,
        clock=clock,
    )
