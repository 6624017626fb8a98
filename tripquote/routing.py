"""Route resolution with a persistent cache and single-flight coalescing."""
from __future__ import annotations

import asyncio
import logging
import math
import sqlite3
from dataclasses import replace
from typing import Dict, Optional

from tripquote.errors import ProviderUnavailable, RouteUnavailable
from tripquote.models import Coordinates, RouteData
from tripquote.providers import RoutingProvider
from tripquote.route_cache import RouteCache, route_cache_key
from tripquote.throttle import ROUTER, RateLimitedClient

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0088
FALLBACK_SPEED_KMH = 40.0


def haversine_km(origin: Coordinates, destination: Coordinates) -> float:
    lat1_rad, lon1_rad = math.radians(origin.latitude), math.radians(origin.longitude)
    lat2_rad, lon2_rad = math.radians(destination.latitude), math.radians(destination.longitude)
    dlat = lat2_rad - lat1_rad
    dlon = lon2_rad - lon1_rad
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def approximate_route(origin: Coordinates, destination: Coordinates) -> RouteData:
    """Straight-line estimate, flagged ``approximate`` and never cached."""
    distance_km = haversine_km(origin, destination)
    duration_sec = int(round(distance_km / FALLBACK_SPEED_KMH * 3600)) if distance_km > 0 else 0
    return RouteData(
        distance_km=round(distance_km, 3),
        duration_sec=duration_sec,
        geometry=(origin, destination),
        from_cache=False,
        approximate=True,
    )


class _Flight:
    __slots__ = ("task", "waiters")

    def __init__(self, task: "asyncio.Future[RouteData]") -> None:
        self.task = task
        self.waiters = 0


class RouteResolver:
    def __init__(
        self,
        provider: RoutingProvider,
        throttle: RateLimitedClient,
        cache: RouteCache,
        *,
        allow_approximate: bool = False,
        provider_id: str = ROUTER,
    ) -> None:
        self.provider = provider
        self.throttle = throttle
        self.cache = cache
        self.allow_approximate = allow_approximate
        self.provider_id = provider_id
        self._inflight: Dict[str, _Flight] = {}

    async def resolve_route(
        self,
        origin: Coordinates,
        destination: Coordinates,
        use_cache: bool = True,
        allow_approximate: Optional[bool] = None,
    ) -> RouteData:
        """Return the driving route origin -> destination.

        With ``use_cache`` a stored route is returned as-is (``from_cache``).
        Without it the provider is always asked and the stored row for this
        pair is superseded by the fresh result.
        """
        key = route_cache_key(origin, destination)
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                logger.info("Route cache hit for %s", key)
                return cached.route

        approximate_ok = self.allow_approximate if allow_approximate is None else allow_approximate
        try:
            return await self._join_flight(key, origin, destination)
        except RouteUnavailable as exc:
            if not approximate_ok:
                raise
            logger.warning("Falling back to straight-line estimate for %s: %s", key, exc)
            return approximate_route(origin, destination)

    async def _join_flight(self, key: str, origin: Coordinates, destination: Coordinates) -> RouteData:
        flight = self._inflight.get(key)
        if flight is None or flight.task.cancelled():
            task = asyncio.ensure_future(self._fetch(key, origin, destination))
            flight = self._inflight[key] = _Flight(task)
            task.add_done_callback(lambda done, key=key, flight=flight: self._land(key, flight, done))
        else:
            logger.debug("Joining in-flight route request for %s", key)

        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        finally:
            flight.waiters -= 1
            if flight.waiters == 0 and not flight.task.done():
                # Every caller gave up; do not keep spending the provider budget.
                # Unmap first so a caller arriving before the task unwinds starts afresh.
                if self._inflight.get(key) is flight:
                    del self._inflight[key]
                flight.task.cancel()

    def _land(self, key: str, flight: _Flight, done: "asyncio.Future[RouteData]") -> None:
        if self._inflight.get(key) is flight:
            del self._inflight[key]
        if not done.cancelled():
            done.exception()

    async def _fetch(self, key: str, origin: Coordinates, destination: Coordinates) -> RouteData:
        logger.info("Fetching route %s from provider", key)
        try:
            route = await self.throttle.enqueue(
                self.provider_id, lambda: self.provider.route(origin, destination)
            )
        except ProviderUnavailable as exc:
            raise RouteUnavailable(f"Routing provider unavailable for {key}") from exc
        except Exception as exc:
            logger.error("Routing provider rejected %s: %s", key, exc)
            raise RouteUnavailable(f"Routing provider rejected request for {key}: {exc}") from exc
        if route is None:
            raise RouteUnavailable(f"No drivable route found for {key}")

        route = replace(route, from_cache=False, approximate=False)
        try:
            self.cache.put(key, origin, destination, route)
        except sqlite3.Error as exc:
            logger.warning("Could not store route %s in cache: %s", key, exc)
        return route

    def in_flight(self) -> int:
        return len(self._inflight)


__all__ = [
    "EARTH_RADIUS_KM",
    "FALLBACK_SPEED_KMH",
    "RouteResolver",
    "approximate_route",
    "haversine_km",
]
