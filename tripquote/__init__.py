"""Trip-cost estimation for roadside assistance quotes."""

# Re-export the public surface. Provider adapters and SQLite stores stay in
# their own modules; import them from there when wiring custom backends.
from .errors import (
    AmbiguousGeocode,
    InvalidConfig,
    InvalidInput,
    InvalidQuery,
    NoGeocodeMatch,
    ProviderUnavailable,
    RouteUnavailable,
    TripQuoteError,
)
from .models import Coordinates, LocationPoint, PriceEstimate, PricingConfig, RouteData
from .quote_service import QuoteRequest, TripCostEngine, TripQuote, build_engine

__all__ = [
    "AmbiguousGeocode",
    "Coordinates",
    "InvalidConfig",
    "InvalidInput",
    "InvalidQuery",
    "LocationPoint",
    "NoGeocodeMatch",
    "PriceEstimate",
    "PricingConfig",
    "ProviderUnavailable",
    "QuoteRequest",
    "RouteData",
    "RouteUnavailable",
    "TripCostEngine",
    "TripQuote",
    "TripQuoteError",
    "build_engine",
]
