"""Value types shared by the geocoder, route resolver and pricing engine."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Literal, Optional, Tuple

from tripquote.errors import InvalidInput

VehicleType = Literal["sedan", "suv", "minibus"]
VehicleCondition = Literal["working", "broken", "accident", "ditch"]
Timing = Literal["now", "week", "later"]

VEHICLE_TYPES: Tuple[str, ...] = ("sedan", "suv", "minibus")
VEHICLE_CONDITIONS: Tuple[str, ...] = ("working", "broken", "accident", "ditch")
TIMINGS: Tuple[str, ...] = ("now", "week", "later")


def validate_coordinates(latitude: float, longitude: float) -> bool:
    return (
        math.isfinite(latitude)
        and math.isfinite(longitude)
        and -90.0 <= latitude <= 90.0
        and -180.0 <= longitude <= 180.0
    )


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        try:
            lat, lon = float(self.latitude), float(self.longitude)
        except (TypeError, ValueError) as exc:
            raise InvalidInput(f"Coordinates must be numbers: {self.latitude!r}, {self.longitude!r}") from exc
        if not validate_coordinates(lat, lon):
            raise InvalidInput(f"Coordinates out of range: {lat}, {lon}")
        object.__setattr__(self, "latitude", lat)
        object.__setattr__(self, "longitude", lon)

    def as_lon_lat(self) -> List[float]:
        """Return ``[lon, lat]``, the order OpenRouteService expects."""
        return [self.longitude, self.latitude]


@dataclass(frozen=True)
class LocationPoint:
    coords: Coordinates
    address: str
    name: Optional[str] = None


@dataclass(frozen=True)
class RouteData:
    distance_km: float
    duration_sec: int
    geometry: Tuple[Coordinates, ...] = ()
    from_cache: bool = False
    approximate: bool = False


@dataclass(frozen=True)
class PricingConfig:
    """Admin-editable tariff. One active record per tenant."""

    base_fee: float
    short_distance_limit_km: float
    medium_distance_limit_km: float
    short_distance_rate: float
    medium_distance_rate: float
    long_distance_rate: float
    night_multiplier: float
    weekend_multiplier: float
    sedan_multiplier: float
    suv_multiplier: float
    minibus_multiplier: float
    luxury_multiplier: float
    broken_vehicle_multiplier: float
    accident_multiplier: float
    ditch_multiplier: float
    has_load_multiplier: float
    urgent_multiplier: float
    price_flexibility_percent: float
    id: Optional[int] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class PriceCalculationInput:
    distance_km: float
    vehicle_type: VehicleType = "sedan"
    vehicle_condition: VehicleCondition = "working"
    is_luxury: bool = False
    timing: Timing = "later"
    has_load: bool = False
    request_time: Optional[datetime] = None
    is_weekend: bool = False


@dataclass(frozen=True)
class DistanceBreakdown:
    short_km: float
    short_charge: float
    medium_km: float
    medium_charge: float
    long_km: float
    long_charge: float

    @property
    def total_charge(self) -> float:
        return self.short_charge + self.medium_charge + self.long_charge


@dataclass(frozen=True)
class AppliedMultiplier:
    name: str
    reason: str
    value: float


@dataclass(frozen=True)
class PriceBreakdown:
    base_fee: float
    distance_breakdown: DistanceBreakdown
    applied_multipliers: Tuple[AppliedMultiplier, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class PriceEstimate:
    subtotal: float
    total_multiplier: float
    final_price: int
    min_price: int
    max_price: int
    breakdown: PriceBreakdown
    route: Optional[RouteData] = None


@dataclass(frozen=True)
class QuickEstimate:
    min_price: int
    max_price: int


__all__ = [
    "AppliedMultiplier",
    "Coordinates",
    "DistanceBreakdown",
    "LocationPoint",
    "PriceBreakdown",
    "PriceCalculationInput",
    "PriceEstimate",
    "PricingConfig",
    "QuickEstimate",
    "RouteData",
    "TIMINGS",
    "Timing",
    "VEHICLE_CONDITIONS",
    "VEHICLE_TYPES",
    "VehicleCondition",
    "VehicleType",
    "validate_coordinates",
]
