"""Tiered distance pricing, multiplier stacking and related calculations.

Everything in this module is pure: no I/O, no clock reads. The only ambient
input is the timezone used to decide whether a timezone-aware request time
falls inside the night window.
"""
from __future__ import annotations

import math
import os
from datetime import datetime, tzinfo
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from tripquote.errors import InvalidInput
from tripquote.models import (
    TIMINGS,
    VEHICLE_CONDITIONS,
    VEHICLE_TYPES,
    AppliedMultiplier,
    DistanceBreakdown,
    PriceBreakdown,
    PriceCalculationInput,
    PriceEstimate,
    PricingConfig,
    QuickEstimate,
    RouteData,
)

LOCAL_TIMEZONE = os.environ.get("TRIPQUOTE_TIMEZONE", "Europe/Istanbul")
CURRENCY_SUFFIX = os.environ.get("TRIPQUOTE_CURRENCY", "TL")
NIGHT_START_HOUR = 22
NIGHT_END_HOUR = 6
# Average stacked multiplier assumed for the distance-only preview.
QUICK_ESTIMATE_MULTIPLIER = 1.2

VEHICLE_MULTIPLIERS = {
    "sedan": ("Sedan", "sedan_multiplier", "Standard passenger car tow"),
    "suv": ("SUV/4x4", "suv_multiplier", "Heavier vehicle"),
    "minibus": ("Minibus/Commercial", "minibus_multiplier", "Large vehicle"),
}

CONDITION_MULTIPLIERS = {
    "broken": ("Broken down", "broken_vehicle_multiplier", "Vehicle needs extra care"),
    "accident": ("Accident", "accident_multiplier", "Damage assessment on site"),
    "ditch": ("Off-road recovery", "ditch_multiplier", "Special recovery equipment"),
}


def round_currency(amount: float) -> int:
    """Round half-up to the whole currency unit.

    The float is converted through its shortest ``repr`` so that values such as
    ``2.5`` round to ``3`` regardless of binary representation noise.
    """
    return int(Decimal(repr(float(amount))).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_currency(amount: float) -> str:
    return f"{amount:,.0f} {CURRENCY_SUFFIX}"


@lru_cache(maxsize=None)
def _zone(name: str) -> tzinfo:
    return ZoneInfo(name)


def _local(moment: datetime, tz_name: Optional[str] = None) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(_zone(tz_name or LOCAL_TIMEZONE))


def is_night_time(moment: datetime, tz_name: Optional[str] = None) -> bool:
    hour = _local(moment, tz_name).hour
    return hour >= NIGHT_START_HOUR or hour < NIGHT_END_HOUR


def is_weekend(moment: datetime, tz_name: Optional[str] = None) -> bool:
    """Saturday or Sunday in local time."""
    return _local(moment, tz_name).weekday() >= 5


def _validate_distance(distance_km: float) -> float:
    try:
        value = float(distance_km)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"Distance must be a number: {distance_km!r}") from exc
    if not math.isfinite(value):
        raise InvalidInput(f"Distance must be finite: {distance_km!r}")
    if value < 0:
        raise InvalidInput(f"Distance must not be negative: {distance_km!r}")
    return value


def validate_input(inputs: PriceCalculationInput) -> None:
    _validate_distance(inputs.distance_km)
    if inputs.vehicle_type not in VEHICLE_TYPES:
        raise InvalidInput(f"Unknown vehicle type: {inputs.vehicle_type!r}")
    if inputs.vehicle_condition not in VEHICLE_CONDITIONS:
        raise InvalidInput(f"Unknown vehicle condition: {inputs.vehicle_condition!r}")
    if inputs.timing not in TIMINGS:
        raise InvalidInput(f"Unknown timing: {inputs.timing!r}")


def compute_distance_charge(distance_km: float, config: PricingConfig) -> DistanceBreakdown:
    d = _validate_distance(distance_km)
    short_limit = config.short_distance_limit_km
    medium_limit = config.medium_distance_limit_km

    short_km = min(d, short_limit)
    medium_km = min(max(d - short_limit, 0.0), medium_limit - short_limit)
    long_km = max(0.0, d - medium_limit)

    return DistanceBreakdown(
        short_km=short_km,
        short_charge=short_km * config.short_distance_rate,
        medium_km=medium_km,
        medium_charge=medium_km * config.medium_distance_rate,
        long_km=long_km,
        long_charge=long_km * config.long_distance_rate,
    )


def select_multipliers(
    inputs: PriceCalculationInput, config: PricingConfig
) -> List[AppliedMultiplier]:
    """Return the multipliers whose trigger holds, in a fixed order."""
    applied: List[AppliedMultiplier] = []

    if inputs.request_time is not None and is_night_time(inputs.request_time):
        applied.append(
            AppliedMultiplier(
                name="Night service",
                reason=f"Requested between {NIGHT_START_HOUR:02d}:00 and {NIGHT_END_HOUR:02d}:00",
                value=config.night_multiplier,
            )
        )

    if inputs.is_weekend:
        applied.append(
            AppliedMultiplier(
                name="Weekend",
                reason="Saturday/Sunday service",
                value=config.weekend_multiplier,
            )
        )

    label, attr, reason = VEHICLE_MULTIPLIERS[inputs.vehicle_type]
    applied.append(AppliedMultiplier(name=label, reason=reason, value=getattr(config, attr)))

    if inputs.is_luxury:
        applied.append(
            AppliedMultiplier(
                name="Luxury vehicle",
                reason="Special equipment required",
                value=config.luxury_multiplier,
            )
        )

    condition = CONDITION_MULTIPLIERS.get(inputs.vehicle_condition)
    if condition is not None:
        label, attr, reason = condition
        applied.append(AppliedMultiplier(name=label, reason=reason, value=getattr(config, attr)))

    if inputs.has_load:
        applied.append(
            AppliedMultiplier(
                name="Cargo on board",
                reason="Vehicle carried with its load",
                value=config.has_load_multiplier,
            )
        )

    if inputs.timing == "now":
        applied.append(
            AppliedMultiplier(
                name="Urgent",
                reason="Immediate dispatch",
                value=config.urgent_multiplier,
            )
        )

    return applied


def flexibility_band(final_price: int, config: PricingConfig) -> Tuple[int, int]:
    ratio = config.price_flexibility_percent / 100.0
    return round_currency(final_price * (1 - ratio)), round_currency(final_price * (1 + ratio))


def estimate_price(
    inputs: PriceCalculationInput,
    route: Optional[RouteData],
    config: PricingConfig,
) -> PriceEstimate:
    """Produce an itemised estimate for *inputs* over *route* with *config*.

    The route's distance wins over ``inputs.distance_km`` when a route is given.
    """
    validate_input(inputs)
    distance_km = route.distance_km if route is not None else inputs.distance_km
    distance = compute_distance_charge(distance_km, config)
    subtotal = config.base_fee + distance.total_charge

    multipliers = select_multipliers(inputs, config)
    total_multiplier = math.prod(m.value for m in multipliers)

    final_price = round_currency(subtotal * total_multiplier)
    min_price, max_price = flexibility_band(final_price, config)

    return PriceEstimate(
        subtotal=subtotal,
        total_multiplier=total_multiplier,
        final_price=final_price,
        min_price=min_price,
        max_price=max_price,
        breakdown=PriceBreakdown(
            base_fee=config.base_fee,
            distance_breakdown=distance,
            applied_multipliers=tuple(multipliers),
        ),
        route=route,
    )


def quick_estimate(distance_km: float, config: PricingConfig) -> QuickEstimate:
    """Cheap preview range from distance alone, before trip details are known."""
    distance = compute_distance_charge(distance_km, config)
    subtotal = config.base_fee + distance.total_charge
    average = round_currency(subtotal * QUICK_ESTIMATE_MULTIPLIER)
    low, high = flexibility_band(average, config)
    return QuickEstimate(min_price=low, max_price=high)


def format_price_estimate(estimate: PriceEstimate) -> str:
    breakdown = estimate.breakdown
    dist = breakdown.distance_breakdown
    lines = [
        f"Estimated price: {format_currency(estimate.min_price)} - {format_currency(estimate.max_price)}",
        "",
        "Breakdown:",
        f"  - Base fee: {format_currency(breakdown.base_fee)}",
    ]
    if estimate.route is not None:
        note = " (approximate)" if estimate.route.approximate else ""
        lines.insert(
            1,
            f"Route: {estimate.route.distance_km:.1f} km, "
            f"{estimate.route.duration_sec / 60:.0f} min{note}",
        )
    if dist.short_km > 0:
        lines.append(f"  - First {dist.short_km:g} km: {format_currency(dist.short_charge)}")
    if dist.medium_km > 0:
        lines.append(f"  - {dist.medium_km:g} km (medium): {format_currency(dist.medium_charge)}")
    if dist.long_km > 0:
        lines.append(f"  - {dist.long_km:g} km (long): {format_currency(dist.long_charge)}")
    lines.append(f"  - Subtotal: {format_currency(estimate.subtotal)}")

    if breakdown.applied_multipliers:
        lines.append("")
        lines.append("Multipliers:")
        for item in breakdown.applied_multipliers:
            lines.append(f"  - {item.name} (x{item.value:g}): {item.reason}")
        lines.append(f"  - Total multiplier: x{estimate.total_multiplier:.2f}")

    lines.append("")
    lines.append(f"Net price: {format_currency(estimate.final_price)}")
    return "\n".join(lines)


__all__ = [
    "CONDITION_MULTIPLIERS",
    "NIGHT_END_HOUR",
    "NIGHT_START_HOUR",
    "QUICK_ESTIMATE_MULTIPLIER",
    "VEHICLE_MULTIPLIERS",
    "compute_distance_charge",
    "estimate_price",
    "flexibility_band",
    "format_currency",
    "format_price_estimate",
    "is_night_time",
    "is_weekend",
    "quick_estimate",
    "round_currency",
    "select_multipliers",
    "validate_input",
]
