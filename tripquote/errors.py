"""Error kinds raised by the trip-cost estimation engine."""
from __future__ import annotations

from typing import Optional, Sequence, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - hints for type-checkers only
    from tripquote.models import LocationPoint


class TripQuoteError(Exception):
    """Base class for every error surfaced by :mod:`tripquote`."""


class InvalidQuery(TripQuoteError, ValueError):
    """Geocoding input was empty or malformed."""


class InvalidInput(TripQuoteError, ValueError):
    """Pricing or routing input failed validation (e.g. negative distance)."""


class InvalidConfig(TripQuoteError, ValueError):
    """A tariff update would break a pricing invariant."""


class NoGeocodeMatch(TripQuoteError, LookupError):
    """The geocoder returned no candidates for a query."""

    def __init__(self, query: str) -> None:
        super().__init__(f"No geocode found for: {query}")
        self.query = query


class AmbiguousGeocode(TripQuoteError, LookupError):
    """The geocoder returned several candidates; the caller must choose one."""

    def __init__(self, query: str, candidates: Sequence["LocationPoint"]) -> None:
        super().__init__(
            f"{len(candidates)} places match {query!r}; pick one of the candidates"
        )
        self.query = query
        self.candidates = list(candidates)


class ProviderUnavailable(TripQuoteError, RuntimeError):
    """An external provider kept failing after the retry budget was spent."""

    def __init__(
        self,
        provider: str,
        attempts: int,
        original: Optional[BaseException] = None,
    ) -> None:
        detail = f": {original}" if original is not None else ""
        super().__init__(
            f"Provider {provider!r} unavailable after {attempts} attempt(s){detail}"
        )
        self.provider = provider
        self.attempts = attempts
        self.original = original


class RouteUnavailable(TripQuoteError, RuntimeError):
    """No drivable route could be obtained for an origin/destination pair."""


__all__ = [
    "AmbiguousGeocode",
    "InvalidConfig",
    "InvalidInput",
    "InvalidQuery",
    "NoGeocodeMatch",
    "ProviderUnavailable",
    "RouteUnavailable",
    "TripQuoteError",
]
