"""SQLite connection helpers for the route cache and tariff tables."""
from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from tripquote.config_store import DEFAULT_TENANT, ensure_pricing_schema
from tripquote.route_cache import ensure_route_cache_schema

DEFAULT_DB_PATH = os.environ.get("TRIPQUOTE_DB", os.environ.get("ROUTES_DB", "tripquote.db"))


def get_connection(db_path: Optional[str] = None) -> sqlite3.Connection:
    """Return a SQLite connection using WAL mode for better concurrency."""
    path = db_path or DEFAULT_DB_PATH
    conn = sqlite3.connect(path)
    conn.execute("PRAGMA journal_mode=WAL;")
    return conn


@contextmanager
def connection_scope(db_path: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Context manager that yields a SQLite connection and closes it afterwards."""
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def ensure_schema(conn: sqlite3.Connection, tenant: str = DEFAULT_TENANT) -> None:
    """Create the route cache and tariff tables and seed the default tariff."""
    ensure_route_cache_schema(conn)
    ensure_pricing_schema(conn, tenant)


__all__ = ["DEFAULT_DB_PATH", "connection_scope", "ensure_schema", "get_connection"]
