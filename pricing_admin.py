#!/usr/bin/env python3
"""Inspect and edit the active pricing tariff stored in SQLite."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sqlite3
import sys
from typing import Dict, List, Optional, Sequence

from tripquote.config_store import (
    DEFAULT_TENANT,
    EDITABLE_FIELDS,
    MULTIPLIER_FIELDS,
    PricingConfigStore,
    SQLitePricingConfigRepository,
    config_as_dict,
)
from tripquote.db import DEFAULT_DB_PATH, ensure_schema, get_connection
from tripquote.errors import TripQuoteError
from tripquote.models import PricingConfig
from tripquote.pricing import format_currency
from tripquote.route_cache import SQLiteRouteCache

LOG_LEVEL = os.environ.get("TRIPQUOTE_LOG_LEVEL", "INFO")


def parse_assignments(pairs: Sequence[str]) -> Dict[str, str]:
    patch: Dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name.strip():
            raise argparse.ArgumentTypeError(f"Expected field=value, got {pair!r}")
        patch[name.strip()] = value.strip()
    return patch


def describe_config(config: PricingConfig) -> List[str]:
    lines = [
        f"Tariff #{config.id} (updated {config.updated_at:%Y-%m-%d %H:%M} by {config.updated_by or '-'})"
        if config.updated_at
        else f"Tariff #{config.id}",
        f"  base_fee: {format_currency(config.base_fee)}",
        f"  short tier: 0-{config.short_distance_limit_km:g} km @ {config.short_distance_rate:g}/km",
        f"  medium tier: {config.short_distance_limit_km:g}-{config.medium_distance_limit_km:g} km"
        f" @ {config.medium_distance_rate:g}/km",
        f"  long tier: >{config.medium_distance_limit_km:g} km @ {config.long_distance_rate:g}/km",
        "  multipliers:",
    ]
    for name in MULTIPLIER_FIELDS:
        lines.append(f"    {name.replace('_multiplier', '')}: x{getattr(config, name):g}")
    lines.append(f"  price_flexibility_percent: {config.price_flexibility_percent:g}")
    if config.notes:
        lines.append(f"  notes: {config.notes}")
    return lines


def show(store: PricingConfigStore, as_json: bool = False) -> None:
    config = store.get_config()
    if as_json:
        print(json.dumps(config_as_dict(config), indent=2, sort_keys=True))
        return
    print("\n".join(describe_config(config)))


def history(repo: SQLitePricingConfigRepository, limit: int) -> None:
    rows = repo.history(limit)
    if not rows:
        print("No tariff history.")
        return
    for config in rows:
        stamp = config.updated_at.strftime("%Y-%m-%d %H:%M") if config.updated_at else "-"
        note = f" - {config.notes}" if config.notes else ""
        print(
            f"#{config.id:<4} {stamp}  {config.updated_by or '-':<12} "
            f"base {config.base_fee:g}  flex {config.price_flexibility_percent:g}%{note}"
        )


def cli(argv: Optional[Sequence[str]] = None) -> int:
    p = argparse.ArgumentParser(description="Pricing tariff administration")
    p.add_argument("--db", default=DEFAULT_DB_PATH, help="SQLite database path")
    p.add_argument("--tenant", default=DEFAULT_TENANT)
    sub = p.add_subparsers(dest="cmd", required=True)

    a_show = sub.add_parser("show")
    a_show.add_argument("--json", action="store_true", dest="as_json", help="Print the tariff as JSON")

    a_set = sub.add_parser("set", help=f"Update fields: {', '.join(EDITABLE_FIELDS)}")
    a_set.add_argument("assignments", nargs="+", metavar="field=value")
    a_set.add_argument("--by", required=True, dest="updated_by", help="Who is making the change")

    a_history = sub.add_parser("history")
    a_history.add_argument("--limit", type=int, default=20)

    sub.add_parser("clear-cache", help="Drop cached routes and the memoised tariff")

    args = p.parse_args(argv if argv is not None else sys.argv[1:])
    logging.basicConfig(level=LOG_LEVEL.upper(), format="%(levelname)s %(name)s: %(message)s")

    conn = get_connection(args.db)
    try:
        ensure_schema(conn, args.tenant)
        repo = SQLitePricingConfigRepository(conn, args.tenant)
        store = PricingConfigStore(repo)
        store.on_clear(SQLiteRouteCache(conn).clear)

        if args.cmd == "show":
            show(store, args.as_json)
        elif args.cmd == "set":
            try:
                patch = parse_assignments(args.assignments)
            except argparse.ArgumentTypeError as exc:
                print(str(exc))
                return 2
            saved = store.update_config(patch, args.updated_by)
            print(f"Saved tariff #{saved.id}.")
            show(store)
        elif args.cmd == "history":
            history(repo, args.limit)
        elif args.cmd == "clear-cache":
            store.clear_cache()
            print("Caches cleared.")
    except (TripQuoteError, sqlite3.Error) as exc:
        print(str(exc))
        return 1
    finally:
        conn.close()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(cli())
