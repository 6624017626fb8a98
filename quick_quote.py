#!/usr/bin/env python3
"""Quick quote CLI for roadside assistance trips.

Collects pickup/drop-off addresses and trip details, geocodes both ends via
OpenRouteService (asking the operator to choose when an address matches several
places), resolves the driving route through the SQLite route cache and prints
an itemised price estimate.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime
from typing import Optional, Sequence

from tripquote.config_store import PricingConfigStore, SQLitePricingConfigRepository
from tripquote.db import connection_scope, ensure_schema
from tripquote.errors import AmbiguousGeocode, TripQuoteError
from tripquote.geocoding import COUNTRY_DEFAULT, pick_single
from tripquote.models import TIMINGS, VEHICLE_CONDITIONS, VEHICLE_TYPES, LocationPoint
from tripquote.pricing import format_currency, quick_estimate
from tripquote.quote_service import QuoteRequest, TripCostEngine, TripQuote, build_engine, build_summary

LOG_LEVEL = os.environ.get("TRIPQUOTE_LOG_LEVEL", "WARNING")


def prompt_input(prompt: str, default: Optional[str] = None) -> str:
    while True:
        suffix = f" [{default}]" if default else ""
        value = input(f"{prompt}{suffix}: ").strip()
        if not value and default is not None:
            return default
        if value:
            return value
        print("This field is required. Please enter a value.")


def prompt_choice(prompt: str, options: Sequence[str], default: str) -> str:
    while True:
        value = prompt_input(f"{prompt} ({'/'.join(options)})", default=default).lower()
        if value in options:
            return value
        print(f"Choose one of: {', '.join(options)}")


def prompt_yes_no(prompt: str, default: bool = False) -> bool:
    raw = input(f"{prompt} [{'Y/n' if default else 'y/N'}]: ").strip().lower()
    if not raw:
        return default
    return raw in ("y", "yes")


def choose_candidate(query: str, candidates: Sequence[LocationPoint]) -> LocationPoint:
    print(f"\nSeveral places match {query!r}:")
    for idx, point in enumerate(candidates, start=1):
        print(
            f"  [{idx}] {point.address} "
            f"({point.coords.latitude:.5f}, {point.coords.longitude:.5f})"
        )
    while True:
        raw = input("Selection: ").strip()
        if raw.isdigit() and 1 <= int(raw) <= len(candidates):
            return candidates[int(raw) - 1]
        print(f"Enter a number between 1 and {len(candidates)}.")


def parse_time(raw: str) -> datetime:
    return datetime.fromisoformat(raw)


def gather_details(args: argparse.Namespace) -> argparse.Namespace:
    if args.origin and args.destination:
        return args

    print("\n--- Quick Quote Entry ---")
    args.origin = args.origin or prompt_input("Pickup address")
    args.destination = args.destination or prompt_input("Drop-off address")
    args.vehicle = prompt_choice("Vehicle type", VEHICLE_TYPES, default=args.vehicle)
    args.condition = prompt_choice("Vehicle condition", VEHICLE_CONDITIONS, default=args.condition)
    args.timing = prompt_choice("When is the service needed", TIMINGS, default=args.timing)
    args.luxury = prompt_yes_no("Luxury vehicle?", default=args.luxury)
    args.load = prompt_yes_no("Cargo left in the vehicle?", default=args.load)
    return args


async def resolve_point(
    engine: TripCostEngine, query: str, country: Optional[str], interactive: bool
) -> LocationPoint:
    candidates = await engine.geocode(query, country)
    try:
        return pick_single(query, candidates)
    except AmbiguousGeocode as exc:
        if not interactive:
            raise
        return choose_candidate(query, exc.candidates)


async def run_quote(engine: TripCostEngine, args: argparse.Namespace) -> TripQuote:
    interactive = sys.stdin.isatty()
    origin = await resolve_point(engine, args.origin, args.country, interactive)
    destination = await resolve_point(engine, args.destination, args.country, interactive)
    request = QuoteRequest(
        origin=origin.coords,
        destination=destination.coords,
        vehicle_type=args.vehicle,
        vehicle_condition=args.condition,
        is_luxury=args.luxury,
        timing=args.timing,
        has_load=args.load,
        request_time=args.time or datetime.now().astimezone(),
        use_cache=not args.refresh,
        allow_approximate=args.approximate,
    )
    quote = TripQuote(origin=origin, destination=destination, estimate=await engine.estimate(request))
    quote.summary_text = build_summary(quote)
    return quote


def print_preview(db_path: Optional[str], distance_km: float) -> int:
    """Distance-only range; needs the tariff table but no routing key."""
    with connection_scope(db_path) as conn:
        ensure_schema(conn)
        store = PricingConfigStore(SQLitePricingConfigRepository(conn))
        try:
            preview = quick_estimate(distance_km, store.get_config())
        except TripQuoteError as exc:
            print(str(exc))
            return 1
    print(
        f"Estimated price for {distance_km:g} km: "
        f"{format_currency(preview.min_price)} - {format_currency(preview.max_price)}"
    )
    return 0


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Quick roadside assistance quote")
    parser.add_argument("--origin", help="Pickup address")
    parser.add_argument("--destination", help="Drop-off address")
    parser.add_argument("--vehicle", choices=VEHICLE_TYPES, default="sedan")
    parser.add_argument("--condition", choices=VEHICLE_CONDITIONS, default="working")
    parser.add_argument("--timing", choices=TIMINGS, default="later")
    parser.add_argument("--luxury", action="store_true")
    parser.add_argument("--load", action="store_true", help="Vehicle is carried with cargo")
    parser.add_argument("--time", type=parse_time, help="Request time (ISO 8601), defaults to now")
    parser.add_argument("--country", default=COUNTRY_DEFAULT)
    parser.add_argument(
        "--approximate",
        action="store_true",
        default=None,
        help="Fall back to a straight-line estimate when no route is available",
    )
    parser.add_argument("--refresh", action="store_true", help="Bypass the route cache")
    parser.add_argument(
        "--preview-km",
        type=float,
        dest="preview_km",
        help="Only print the distance-based price range for this many km",
    )
    parser.add_argument("--db", help="SQLite database path")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    logging.basicConfig(level=LOG_LEVEL.upper(), format="%(levelname)s %(name)s: %(message)s")

    if args.preview_km is not None:
        return print_preview(args.db, args.preview_km)

    try:
        engine = build_engine(args.db)
        quote = asyncio.run(run_quote(engine, gather_details(args)))
    except (TripQuoteError, RuntimeError) as exc:
        print(str(exc))
        return 1

    print("\n--- Quote Summary ---")
    print(quote.summary_text)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
