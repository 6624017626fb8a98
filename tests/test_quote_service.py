import asyncio
import sqlite3
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest
from openrouteservice import exceptions as ors_exceptions

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from tripquote.config_store import MULTIPLIER_FIELDS, PricingConfigStore, SQLitePricingConfigRepository
from tripquote.db import ensure_schema
from tripquote.errors import AmbiguousGeocode, InvalidConfig, NoGeocodeMatch, ProviderUnavailable
from tripquote.geocoding import Geocoder
from tripquote.models import Coordinates, LocationPoint, RouteData
from tripquote.quote_service import QuoteRequest, TripCostEngine
from tripquote.route_cache import SQLiteRouteCache
from tripquote.routing import RouteResolver
from tripquote.throttle import GEOCODER, ROUTER, ProviderPolicy, RateLimitedClient

BESIKTAS = LocationPoint(Coordinates(41.0422, 29.0083), "Beşiktaş, İstanbul, Türkiye")
SILE = LocationPoint(Coordinates(41.1744, 29.6125), "Şile, İstanbul, Türkiye")
KAVAK_A = LocationPoint(Coordinates(41.079, 36.043), "Kavak, Samsun, Türkiye")
KAVAK_B = LocationPoint(Coordinates(41.179, 29.074), "Kavak, Beykoz, İstanbul, Türkiye")

TIERED_TARIFF: Dict[str, object] = {
    "base_fee": 500,
    "short_distance_limit_km": 10,
    "medium_distance_limit_km": 40,
    "short_distance_rate": 20,
    "medium_distance_rate": 15,
    "long_distance_rate": 10,
    "price_flexibility_percent": 10,
    **{name: 1.0 for name in MULTIPLIER_FIELDS},
}


class FakeProvider:
    """Answers both geocoding and routing from canned data."""

    def __init__(self, places: Dict[str, List[LocationPoint]], distance_km: float = 60.0) -> None:
        self.places = places
        self.distance_km = distance_km
        self.search_calls: List[str] = []
        self.route_calls: List[tuple] = []

    def search(self, text: str, *, country: Optional[str], size: int) -> List[LocationPoint]:
        self.search_calls.append(text)
        return list(self.places.get(text, []))

    def reverse(self, coords: Coordinates) -> Optional[str]:
        return "Barbaros Blv., Beşiktaş"

    def route(self, origin: Coordinates, destination: Coordinates) -> Optional[RouteData]:
        self.route_calls.append((origin, destination))
        return RouteData(distance_km=self.distance_km, duration_sec=3600, geometry=(origin, destination))


async def run_inline(fn: Callable[[], Any]) -> Any:
    return fn()


def _engine(provider: FakeProvider) -> TripCostEngine:
    conn = sqlite3.connect(":memory:")
    ensure_schema(conn)
    throttle = RateLimitedClient(
        {
            GEOCODER: ProviderPolicy(min_interval=0.0, timeout=None),
            ROUTER: ProviderPolicy(min_interval=0.0, timeout=None),
        },
        run_blocking=run_inline,
    )
    engine = TripCostEngine(
        Geocoder(provider, throttle, country="TR"),
        RouteResolver(provider, throttle, SQLiteRouteCache(conn)),
        PricingConfigStore(SQLitePricingConfigRepository(conn)),
    )
    engine.update_config(TIERED_TARIFF, updated_by="tests")
    return engine


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider(
        {
            "Beşiktaş": [BESIKTAS],
            "Şile": [SILE],
            "Kavak": [KAVAK_A, KAVAK_B],
        }
    )


def test_estimate_composes_route_and_tariff(provider: FakeProvider) -> None:
    engine = _engine(provider)

    estimate = asyncio.run(engine.estimate(QuoteRequest(BESIKTAS.coords, SILE.coords)))

    assert estimate.subtotal == pytest.approx(1350.0)
    assert (estimate.min_price, estimate.final_price, estimate.max_price) == (1215, 1350, 1485)
    assert estimate.route is not None and estimate.route.from_cache is False
    assert len(provider.route_calls) == 1


def test_weekend_is_derived_from_request_time(provider: FakeProvider) -> None:
    engine = _engine(provider)
    saturday_noon = datetime(2024, 1, 6, 12, 0)

    derived = asyncio.run(
        engine.estimate(QuoteRequest(BESIKTAS.coords, SILE.coords, request_time=saturday_noon))
    )
    overridden = asyncio.run(
        engine.estimate(
            QuoteRequest(BESIKTAS.coords, SILE.coords, request_time=saturday_noon, is_weekend=False)
        )
    )

    assert "Weekend" in [m.name for m in derived.breakdown.applied_multipliers]
    assert "Weekend" not in [m.name for m in overridden.breakdown.applied_multipliers]
    assert overridden.route is not None and overridden.route.from_cache is True


def test_quote_addresses_builds_summary(provider: FakeProvider) -> None:
    engine = _engine(provider)

    quote = asyncio.run(engine.quote_addresses("Beşiktaş", "Şile", vehicle_type="suv", timing="now"))

    assert quote.origin == BESIKTAS
    assert quote.destination == SILE
    assert quote.summary_text.startswith("From: Beşiktaş, İstanbul, Türkiye")
    assert "To:   Şile, İstanbul, Türkiye" in quote.summary_text
    assert "Net price:" in quote.summary_text
    names = [m.name for m in quote.estimate.breakdown.applied_multipliers]
    assert names == ["SUV/4x4", "Urgent"]


def test_quote_addresses_surfaces_ambiguity(provider: FakeProvider) -> None:
    engine = _engine(provider)

    with pytest.raises(AmbiguousGeocode) as excinfo:
        asyncio.run(engine.quote_addresses("Kavak", "Şile"))
    assert excinfo.value.candidates == [KAVAK_A, KAVAK_B]
    assert provider.route_calls == []

    with pytest.raises(NoGeocodeMatch):
        asyncio.run(engine.quote_addresses("Beşiktaş", "Atlantis"))


def test_ambiguous_geocode_returns_both_places(provider: FakeProvider) -> None:
    engine = _engine(provider)
    assert asyncio.run(engine.geocode("Kavak")) == [KAVAK_A, KAVAK_B]


def test_clear_cache_drops_routes_and_tariff_memo(provider: FakeProvider) -> None:
    engine = _engine(provider)
    request = QuoteRequest(BESIKTAS.coords, SILE.coords)

    asyncio.run(engine.estimate(request))
    assert len(engine.resolver.cache) == 1

    engine.clear_cache()

    assert len(engine.resolver.cache) == 0
    asyncio.run(engine.estimate(request))
    assert len(provider.route_calls) == 2


def test_update_config_is_visible_to_next_estimate(provider: FakeProvider) -> None:
    engine = _engine(provider)
    request = QuoteRequest(BESIKTAS.coords, SILE.coords)
    before = asyncio.run(engine.estimate(request))

    engine.update_config({"base_fee": 600}, updated_by="ops")
    after = asyncio.run(engine.estimate(request))

    assert after.final_price == before.final_price + 100
    assert engine.get_config().updated_by == "ops"
    with pytest.raises(InvalidConfig):
        engine.update_config({"medium_distance_limit_km": 5}, updated_by="ops")


def test_quick_estimate_uses_current_tariff(provider: FakeProvider) -> None:
    preview = _engine(provider).quick_estimate(60.0)
    assert (preview.min_price, preview.max_price) == (1458, 1782)


def test_reverse_geocode(provider: FakeProvider) -> None:
    label = asyncio.run(_engine(provider).reverse_geocode(BESIKTAS.coords))
    assert label == "Barbaros Blv., Beşiktaş"


class RejectingProvider(FakeProvider):
    def __init__(self, places: Dict[str, List[LocationPoint]], rejected: Dict[str, Exception]) -> None:
        super().__init__(places)
        self.rejected = rejected

    def search(self, text: str, *, country: Optional[str], size: int) -> List[LocationPoint]:
        if text in self.rejected:
            self.search_calls.append(text)
            raise self.rejected[text]
        return super().search(text, country=country, size=size)


def test_failed_lookup_cancels_the_other_geocode() -> None:
    rejected = ors_exceptions.ApiError(403, {"error": "Access to this API has been disallowed"})
    provider = RejectingProvider({"Şile": [SILE]}, {"Boom": rejected})
    conn = sqlite3.connect(":memory:")
    ensure_schema(conn)
    # A long spacing keeps the second lookup parked on its slot.
    throttle = RateLimitedClient(
        {GEOCODER: ProviderPolicy(min_interval=60.0, timeout=None)},
        run_blocking=run_inline,
    )
    engine = TripCostEngine(
        Geocoder(provider, throttle, country="TR"),
        RouteResolver(provider, throttle, SQLiteRouteCache(conn)),
        PricingConfigStore(SQLitePricingConfigRepository(conn)),
    )

    async def scenario():
        with pytest.raises(ProviderUnavailable) as excinfo:
            await engine.quote_addresses("Boom", "Şile")
        for _ in range(3):
            await asyncio.sleep(0)
        pending = [task for task in asyncio.all_tasks() if task is not asyncio.current_task()]
        return excinfo.value, pending

    error, pending = asyncio.run(scenario())
    conn.close()

    assert error.original is rejected
    assert pending == []
    assert provider.search_calls == ["Boom"]
    assert provider.route_calls == []
