"""Shared test fixtures."""

from __future__ import annotations

import pytest

from txnsync.adapters.db.facade import DB


@pytest.fixture
def db() -> DB:
    """Fresh in-memory database with the schema created."""
    database = DB("sqlite:///:memory:")
    database.create_schema()
    return database


@pytest.fixture
def client_db(db: DB) -> DB:
    """In-memory database with client ``client_1`` and connection ``item_1``."""
    db.add_client("client_1", name="Client One")
    db.add_connection(
        connection_id="item_1",
        client_id="client_1",
        access_token="access-production-abc",
        institution_id="ins_1",
        institution_name="First Bank",
    )
    return db
