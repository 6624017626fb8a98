"""Persistent route cache keyed by a directional, rounded coordinate pair."""
from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from tripquote.models import Coordinates, RouteData

logger = logging.getLogger(__name__)

KEY_PRECISION = 5  # ~1 m

ROUTE_CACHE_SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS route_cache (
  route_key TEXT PRIMARY KEY,
  start_lat REAL NOT NULL,
  start_lon REAL NOT NULL,
  end_lat REAL NOT NULL,
  end_lon REAL NOT NULL,
  distance_km REAL NOT NULL CHECK(distance_km >= 0),
  duration_seconds INTEGER NOT NULL CHECK(duration_seconds >= 0),
  route_geometry TEXT NOT NULL,
  hit_count INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL,
  last_used_at TEXT
);
"""


def route_cache_key(
    origin: Coordinates, destination: Coordinates, precision: int = KEY_PRECISION
) -> str:
    """Build the cache key for origin -> destination.

    The key is directional: A->B and B->A are distinct entries since road
    networks are not symmetric.
    """
    return (
        f"{origin.latitude:.{precision}f},{origin.longitude:.{precision}f}"
        f">{destination.latitude:.{precision}f},{destination.longitude:.{precision}f}"
    )


@dataclass(frozen=True)
class CachedRoute:
    route: RouteData
    created_at: datetime
    hit_count: int = 0

    def age(self, now: datetime) -> timedelta:
        return now - self.created_at


class RouteCache(Protocol):
    def get(self, key: str) -> Optional[CachedRoute]:
        ...

    def put(self, key: str, origin: Coordinates, destination: Coordinates, route: RouteData) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def clear(self) -> int:
        ...


def ensure_route_cache_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(ROUTE_CACHE_SCHEMA_SQL)
    conn.commit()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SQLiteRouteCache:
    """Route cache on a SQLite table; every write is a single transaction."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        max_age: Optional[timedelta] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.conn = conn
        self.max_age = max_age
        self._clock = clock
        ensure_route_cache_schema(conn)

    def get(self, key: str) -> Optional[CachedRoute]:
        row = self.conn.execute(
            """
            SELECT distance_km, duration_seconds, route_geometry, hit_count, created_at
            FROM route_cache
            WHERE route_key = ?
            """,
            (key,),
        ).fetchone()
        if row is None:
            return None

        distance_km, duration_seconds, geometry_json, hit_count, created_raw = row
        created_at = datetime.fromisoformat(created_raw)
        now = self._clock()
        if self.max_age is not None and now - created_at > self.max_age:
            logger.debug("Route cache entry %s is older than %s", key, self.max_age)
            return None

        with self.conn:
            self.conn.execute(
                "UPDATE route_cache SET hit_count = hit_count + 1, last_used_at = ? WHERE route_key = ?",
                (now.isoformat(), key),
            )
        geometry = tuple(
            Coordinates(latitude=lat, longitude=lon) for lat, lon in json.loads(geometry_json)
        )
        route = RouteData(
            distance_km=float(distance_km),
            duration_sec=int(duration_seconds),
            geometry=geometry,
            from_cache=True,
        )
        return CachedRoute(route=route, created_at=created_at, hit_count=int(hit_count) + 1)

    def put(self, key: str, origin: Coordinates, destination: Coordinates, route: RouteData) -> None:
        if route.approximate:
            raise ValueError("Approximate routes must not be cached")
        geometry_json = json.dumps(
            [[point.latitude, point.longitude] for point in route.geometry],
            separators=(",", ":"),
        )
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO route_cache (
                    route_key, start_lat, start_lon, end_lat, end_lon,
                    distance_km, duration_seconds, route_geometry,
                    hit_count, created_at, last_used_at
                ) VALUES (?,?,?,?,?,?,?,?,0,?,NULL)
                ON CONFLICT(route_key) DO UPDATE SET
                    start_lat = excluded.start_lat,
                    start_lon = excluded.start_lon,
                    end_lat = excluded.end_lat,
                    end_lon = excluded.end_lon,
                    distance_km = excluded.distance_km,
                    duration_seconds = excluded.duration_seconds,
                    route_geometry = excluded.route_geometry,
                    hit_count = 0,
                    created_at = excluded.created_at,
                    last_used_at = NULL
                """,
                (
                    key,
                    origin.latitude,
                    origin.longitude,
                    destination.latitude,
                    destination.longitude,
                    route.distance_km,
                    route.duration_sec,
                    geometry_json,
                    self._clock().isoformat(),
                ),
            )

    def delete(self, key: str) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM route_cache WHERE route_key = ?", (key,))

    def clear(self) -> int:
        with self.conn:
            cur = self.conn.execute("DELETE FROM route_cache")
        removed = cur.rowcount if cur.rowcount is not None else 0
        logger.info("Route cache cleared (%d entries)", removed)
        return removed

    def __len__(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM route_cache").fetchone()[0]


__all__ = [
    "CachedRoute",
    "KEY_PRECISION",
    "ROUTE_CACHE_SCHEMA_SQL",
    "RouteCache",
    "SQLiteRouteCache",
    "ensure_route_cache_schema",
    "route_cache_key",
]
