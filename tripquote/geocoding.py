"""Free-text address resolution that surfaces ambiguity to the caller."""
from __future__ import annotations

import logging
import os
from typing import Callable, List, Optional, Sequence, TypeVar

from tripquote.errors import (
    AmbiguousGeocode,
    InvalidQuery,
    NoGeocodeMatch,
    ProviderUnavailable,
    TripQuoteError,
)
from tripquote.models import Coordinates, LocationPoint
from tripquote.providers import GeocodingProvider
from tripquote.throttle import GEOCODER, RateLimitedClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

COUNTRY_DEFAULT = os.environ.get("TRIPQUOTE_COUNTRY", os.environ.get("ORS_COUNTRY", "TR"))
DEFAULT_MAX_RESULTS = 5
MAX_RESULTS_LIMIT = 40


def normalize_place(place: str) -> str:
    """Return a whitespace-normalised version of *place*."""

    return " ".join(place.strip().split())


def _dedupe(points: Sequence[LocationPoint]) -> List[LocationPoint]:
    seen = set()
    unique: List[LocationPoint] = []
    for point in points:
        marker = (
            point.address,
            round(point.coords.latitude, 5),
            round(point.coords.longitude, 5),
        )
        if marker in seen:
            continue
        seen.add(marker)
        unique.append(point)
    return unique


def pick_single(query: str, candidates: Sequence[LocationPoint]) -> LocationPoint:
    """Return the only candidate, or raise so the caller can ask the user."""

    if not candidates:
        raise NoGeocodeMatch(query)
    if len(candidates) > 1:
        raise AmbiguousGeocode(query, candidates)
    return candidates[0]


class Geocoder:
    def __init__(
        self,
        provider: GeocodingProvider,
        throttle: RateLimitedClient,
        *,
        country: Optional[str] = COUNTRY_DEFAULT,
        max_results: int = DEFAULT_MAX_RESULTS,
        provider_id: str = GEOCODER,
    ) -> None:
        self.provider = provider
        self.throttle = throttle
        self.country = country
        self.max_results = max_results
        self.provider_id = provider_id

    async def geocode(
        self,
        query: str,
        country_hint: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[LocationPoint]:
        """Return up to *limit* candidates for *query*; never picks one for you.

        An empty list means no match. More than one entry means the query is
        ambiguous (e.g. two towns with the same name) and the caller decides.
        """
        if not isinstance(query, str):
            raise InvalidQuery(f"Geocoding query must be text, got {type(query).__name__}")
        text = normalize_place(query)
        if not text:
            raise InvalidQuery("Geocoding query is empty")
        size = self.max_results if limit is None else limit
        if not 1 <= size <= MAX_RESULTS_LIMIT:
            raise InvalidQuery(f"Result limit must be between 1 and {MAX_RESULTS_LIMIT}: {size}")
        country = country_hint or self.country

        results = await self._call(lambda: self.provider.search(text, country=country, size=size))
        candidates = _dedupe(results)[:size]
        if not candidates:
            logger.info("No geocoding results for %r (country=%s)", text, country)
        elif len(candidates) > 1:
            logger.info("Geocoding %r is ambiguous: %d candidates", text, len(candidates))
        else:
            logger.debug("Geocoding %r -> %s", text, candidates[0].address)
        return candidates

    async def geocode_single(self, query: str, country_hint: Optional[str] = None) -> LocationPoint:
        return pick_single(query, await self.geocode(query, country_hint))

    async def reverse_geocode(self, coords: Coordinates) -> Optional[str]:
        return await self._call(lambda: self.provider.reverse(coords))

    async def _call(self, request_fn: Callable[[], T]) -> T:
        """Run *request_fn* through the throttle; provider rejections become ProviderUnavailable."""
        try:
            return await self.throttle.enqueue(self.provider_id, request_fn)
        except TripQuoteError:
            raise
        except Exception as exc:
            logger.error("Geocoding provider rejected request: %s", exc)
            raise ProviderUnavailable(self.provider_id, 1, exc) from exc


__all__ = [
    "COUNTRY_DEFAULT",
    "DEFAULT_MAX_RESULTS",
    "Geocoder",
    "MAX_RESULTS_LIMIT",
    "normalize_place",
    "pick_single",
]
