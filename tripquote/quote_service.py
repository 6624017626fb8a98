"""Trip-cost engine: geocoding, route resolution and pricing behind one surface."""
from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import List, Mapping, Optional

from tripquote.config_store import (
    DEFAULT_TENANT,
    PricingConfigStore,
    SQLitePricingConfigRepository,
)
from tripquote.db import ensure_schema, get_connection
from tripquote.geocoding import Geocoder, pick_single
from tripquote.models import (
    Coordinates,
    LocationPoint,
    PriceCalculationInput,
    PriceEstimate,
    PricingConfig,
    QuickEstimate,
    RouteData,
    Timing,
    VehicleCondition,
    VehicleType,
)
from tripquote.pricing import estimate_price, format_price_estimate, is_weekend, quick_estimate
from tripquote.providers import OpenRouteServiceProvider, build_ors_client
from tripquote.route_cache import SQLiteRouteCache
from tripquote.routing import RouteResolver
from tripquote.throttle import RateLimitedClient

logger = logging.getLogger(__name__)


@dataclass
class QuoteRequest:
    origin: Coordinates
    destination: Coordinates
    vehicle_type: VehicleType = "sedan"
    vehicle_condition: VehicleCondition = "working"
    is_luxury: bool = False
    timing: Timing = "later"
    has_load: bool = False
    request_time: Optional[datetime] = None
    # None derives the flag from request_time.
    is_weekend: Optional[bool] = None
    use_cache: bool = True
    allow_approximate: Optional[bool] = None


@dataclass
class TripQuote:
    origin: LocationPoint
    destination: LocationPoint
    estimate: PriceEstimate
    summary_text: str = ""


def build_summary(quote: TripQuote) -> str:
    lines = [
        f"From: {quote.origin.address}",
        f"To:   {quote.destination.address}",
        "",
        format_price_estimate(quote.estimate),
    ]
    return "\n".join(lines)


def _weekend_flag(request: QuoteRequest) -> bool:
    if request.is_weekend is not None:
        return request.is_weekend
    if request.request_time is not None:
        return is_weekend(request.request_time)
    return False


class TripCostEngine:
    """The exposed surface used by the rest of the application."""

    def __init__(
        self,
        geocoder: Geocoder,
        resolver: RouteResolver,
        config_store: PricingConfigStore,
    ) -> None:
        self.geocoder = geocoder
        self.resolver = resolver
        self.config_store = config_store
        # One admin action drops the tariff memo and every cached route.
        self.config_store.on_clear(self.resolver.cache.clear)

    async def geocode(
        self, query: str, country_hint: Optional[str] = None, limit: Optional[int] = None
    ) -> List[LocationPoint]:
        return await self.geocoder.geocode(query, country_hint, limit)

    async def reverse_geocode(self, coords: Coordinates) -> Optional[str]:
        return await self.geocoder.reverse_geocode(coords)

    async def resolve_route(
        self,
        origin: Coordinates,
        destination: Coordinates,
        use_cache: bool = True,
        allow_approximate: Optional[bool] = None,
    ) -> RouteData:
        return await self.resolver.resolve_route(
            origin, destination, use_cache=use_cache, allow_approximate=allow_approximate
        )

    async def estimate(self, request: QuoteRequest) -> PriceEstimate:
        route = await self.resolve_route(
            request.origin,
            request.destination,
            use_cache=request.use_cache,
            allow_approximate=request.allow_approximate,
        )
        config = self.config_store.get_config()
        inputs = PriceCalculationInput(
            distance_km=route.distance_km,
            vehicle_type=request.vehicle_type,
            vehicle_condition=request.vehicle_condition,
            is_luxury=request.is_luxury,
            timing=request.timing,
            has_load=request.has_load,
            request_time=request.request_time,
            is_weekend=_weekend_flag(request),
        )
        estimate = estimate_price(inputs, route, config)
        logger.info(
            "Estimate %.1f km (cache=%s, approximate=%s): %d [%d-%d] with tariff #%s",
            route.distance_km,
            route.from_cache,
            route.approximate,
            estimate.final_price,
            estimate.min_price,
            estimate.max_price,
            config.id,
        )
        return estimate

    async def quote_addresses(
        self,
        origin_text: str,
        destination_text: str,
        *,
        country_hint: Optional[str] = None,
        **trip: object,
    ) -> TripQuote:
        """Geocode both addresses and price the trip.

        Raises :class:`~tripquote.errors.AmbiguousGeocode` or
        :class:`~tripquote.errors.NoGeocodeMatch` instead of guessing.
        """
        lookups = [
            asyncio.ensure_future(self.geocode(origin_text, country_hint)),
            asyncio.ensure_future(self.geocode(destination_text, country_hint)),
        ]
        try:
            origin_candidates, destination_candidates = await asyncio.gather(*lookups)
        except Exception:
            # One lookup failed; the other must not keep holding a geocoder slot.
            for lookup in lookups:
                lookup.cancel()
            raise
        origin = pick_single(origin_text, origin_candidates)
        destination = pick_single(destination_text, destination_candidates)
        request = QuoteRequest(origin=origin.coords, destination=destination.coords, **trip)  # type: ignore[arg-type]
        quote = TripQuote(origin=origin, destination=destination, estimate=await self.estimate(request))
        quote.summary_text = build_summary(quote)
        return quote

    def quick_estimate(self, distance_km: float) -> QuickEstimate:
        return quick_estimate(distance_km, self.config_store.get_config())

    def get_config(self) -> PricingConfig:
        return self.config_store.get_config()

    def update_config(self, patch: Mapping[str, object], updated_by: str) -> PricingConfig:
        return self.config_store.update_config(patch, updated_by)

    def clear_cache(self) -> None:
        self.config_store.clear_cache()


def build_engine(
    db_path: Optional[str] = None,
    api_key: Optional[str] = None,
    *,
    conn: Optional[sqlite3.Connection] = None,
    tenant: str = DEFAULT_TENANT,
    allow_approximate: bool = False,
) -> TripCostEngine:
    """Wire SQLite stores and the OpenRouteService adapter from the environment."""
    connection = conn if conn is not None else get_connection(db_path)
    ensure_schema(connection, tenant)

    provider = OpenRouteServiceProvider(build_ors_client(api_key))
    throttle = RateLimitedClient()
    geocoder = Geocoder(provider, throttle)
    resolver = RouteResolver(
        provider,
        throttle,
        SQLiteRouteCache(connection),
        allow_approximate=allow_approximate,
    )
    store = PricingConfigStore(SQLitePricingConfigRepository(connection, tenant))
    return TripCostEngine(geocoder, resolver, store)


__all__ = [
    "QuoteRequest",
    "TripCostEngine",
    "TripQuote",
    "build_engine",
    "build_summary",
]
