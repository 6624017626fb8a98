"""Tariff persistence, validation and the invalidation-aware read cache."""
from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import asdict, fields, replace
from datetime import datetime, timezone
from typing import Callable, List, Mapping, Optional, Protocol, Sequence

from tripquote.errors import InvalidConfig
from tripquote.models import PricingConfig

logger = logging.getLogger(__name__)

DEFAULT_TENANT = "default"

_META_FIELDS = {"id", "updated_at", "updated_by", "notes"}
TARIFF_FIELDS: Sequence[str] = tuple(
    f.name for f in fields(PricingConfig) if f.name not in _META_FIELDS
)
MULTIPLIER_FIELDS: Sequence[str] = tuple(name for name in TARIFF_FIELDS if name.endswith("_multiplier"))
EDITABLE_FIELDS: Sequence[str] = (*TARIFF_FIELDS, "notes")

DEFAULT_PRICING_CONFIG = PricingConfig(
    base_fee=800.0,
    short_distance_limit_km=15.0,
    medium_distance_limit_km=100.0,
    short_distance_rate=0.0,
    medium_distance_rate=25.0,
    long_distance_rate=15.0,
    night_multiplier=1.15,
    weekend_multiplier=1.05,
    sedan_multiplier=1.0,
    suv_multiplier=1.10,
    minibus_multiplier=1.20,
    luxury_multiplier=1.15,
    broken_vehicle_multiplier=1.10,
    accident_multiplier=1.20,
    ditch_multiplier=2.0,
    has_load_multiplier=1.05,
    urgent_multiplier=1.20,
    price_flexibility_percent=5.0,
    notes="Default tariff",
)


def validate_config(config: PricingConfig) -> None:
    """Raise :class:`InvalidConfig` unless *config* satisfies every tariff invariant."""

    for name in TARIFF_FIELDS:
        value = getattr(config, name)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidConfig(f"{name} must be a number, got {value!r}")
        if not math.isfinite(value):
            raise InvalidConfig(f"{name} must be finite, got {value!r}")
        if value < 0:
            raise InvalidConfig(f"{name} must not be negative, got {value!r}")

    if not config.short_distance_limit_km < config.medium_distance_limit_km:
        raise InvalidConfig(
            "short_distance_limit_km must be below medium_distance_limit_km "
            f"({config.short_distance_limit_km} >= {config.medium_distance_limit_km})"
        )
    if config.price_flexibility_percent > 100:
        raise InvalidConfig(
            f"price_flexibility_percent must be within 0..100, got {config.price_flexibility_percent}"
        )


class PricingConfigRepository(Protocol):
    def load(self) -> Optional[PricingConfig]:
        ...

    def save(self, config: PricingConfig) -> PricingConfig:
        ...


def _pricing_schema_sql() -> str:
    columns = ",\n".join(f"  {name} REAL NOT NULL" for name in TARIFF_FIELDS)
    return f"""
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS pricing_config (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  tenant TEXT NOT NULL DEFAULT '{DEFAULT_TENANT}',
{columns},
  is_active INTEGER NOT NULL DEFAULT 1 CHECK(is_active IN (0,1)),
  notes TEXT,
  updated_at TEXT NOT NULL,
  updated_by TEXT,
  CHECK(short_distance_limit_km < medium_distance_limit_km),
  CHECK(price_flexibility_percent BETWEEN 0 AND 100)
);

CREATE INDEX IF NOT EXISTS idx_pricing_config_active
  ON pricing_config(tenant, is_active, updated_at);
"""


PRICING_SCHEMA_SQL = _pricing_schema_sql()
_SELECT_COLUMNS = ", ".join(("id", *TARIFF_FIELDS, "updated_at", "updated_by", "notes"))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_config(row: Sequence[object]) -> PricingConfig:
    values = dict(zip(("id", *TARIFF_FIELDS, "updated_at", "updated_by", "notes"), row))
    for name in TARIFF_FIELDS:
        values[name] = float(values[name])
    if values["updated_at"]:
        values["updated_at"] = datetime.fromisoformat(str(values["updated_at"]))
    return PricingConfig(**values)


class SQLitePricingConfigRepository:
    """Append-only tariff history; the newest active row is the live tariff."""

    def __init__(self, conn: sqlite3.Connection, tenant: str = DEFAULT_TENANT) -> None:
        self.conn = conn
        self.tenant = tenant

    def load(self) -> Optional[PricingConfig]:
        row = self.conn.execute(
            f"""
            SELECT {_SELECT_COLUMNS}
            FROM pricing_config
            WHERE tenant = ? AND is_active = 1
            ORDER BY updated_at DESC, id DESC
            LIMIT 1
            """,
            (self.tenant,),
        ).fetchone()
        return _row_to_config(tuple(row)) if row is not None else None

    def history(self, limit: int = 20) -> List[PricingConfig]:
        rows = self.conn.execute(
            f"""
            SELECT {_SELECT_COLUMNS}
            FROM pricing_config
            WHERE tenant = ?
            ORDER BY updated_at DESC, id DESC
            LIMIT ?
            """,
            (self.tenant, limit),
        ).fetchall()
        return [_row_to_config(tuple(row)) for row in rows]

    def save(self, config: PricingConfig) -> PricingConfig:
        updated_at = config.updated_at or _utcnow()
        placeholders = ",".join("?" for _ in range(len(TARIFF_FIELDS) + 4))
        with self.conn:
            self.conn.execute(
                "UPDATE pricing_config SET is_active = 0 WHERE tenant = ? AND is_active = 1",
                (self.tenant,),
            )
            cur = self.conn.execute(
                f"""
                INSERT INTO pricing_config (
                    tenant, {", ".join(TARIFF_FIELDS)}, notes, updated_at, updated_by
                ) VALUES ({placeholders})
                """,
                (
                    self.tenant,
                    *(float(getattr(config, name)) for name in TARIFF_FIELDS),
                    config.notes,
                    updated_at.isoformat(),
                    config.updated_by,
                ),
            )
        return replace(config, id=cur.lastrowid, updated_at=updated_at)


def ensure_pricing_schema(
    conn: sqlite3.Connection,
    tenant: str = DEFAULT_TENANT,
    default: PricingConfig = DEFAULT_PRICING_CONFIG,
) -> None:
    """Create the tariff table and seed *default* when the tenant has none."""
    conn.executescript(PRICING_SCHEMA_SQL)
    conn.commit()
    existing = conn.execute(
        "SELECT 1 FROM pricing_config WHERE tenant = ? LIMIT 1", (tenant,)
    ).fetchone()
    if existing is None:
        SQLitePricingConfigRepository(conn, tenant).save(
            replace(default, updated_by=default.updated_by or "system")
        )


def _coerce_patch_value(name: str, value: object) -> object:
    if name == "notes":
        return None if value is None else str(value)
    if isinstance(value, bool):
        raise InvalidConfig(f"{name} must be a number, got {value!r}")
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise InvalidConfig(f"{name} must be a number, got {value!r}") from exc


class PricingConfigStore:
    """Read-through cache over a :class:`PricingConfigRepository`.

    The memoised tariff is dropped on every successful update and on
    :meth:`clear_cache`, which also runs the registered invalidation hooks
    (the route cache registers its ``clear`` here).
    """

    def __init__(
        self,
        repository: PricingConfigRepository,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repository = repository
        self._clock = clock
        self._cached: Optional[PricingConfig] = None
        self._clear_hooks: List[Callable[[], object]] = []

    def on_clear(self, hook: Callable[[], object]) -> None:
        self._clear_hooks.append(hook)

    def get_config(self) -> PricingConfig:
        cached = self._cached
        if cached is not None:
            logger.debug("Using cached pricing config #%s", cached.id)
            return cached
        config = self.repository.load()
        if config is None:
            raise InvalidConfig("No active pricing config found")
        logger.debug("Loaded pricing config #%s (updated %s)", config.id, config.updated_at)
        self._cached = config
        return config

    def update_config(self, patch: Mapping[str, object], updated_by: str) -> PricingConfig:
        unknown = sorted(set(patch) - set(EDITABLE_FIELDS))
        if unknown:
            raise InvalidConfig(f"Unknown pricing fields: {', '.join(unknown)}")
        if not updated_by or not str(updated_by).strip():
            raise InvalidConfig("Pricing updates must name who made them (updated_by)")

        current = self.repository.load() or DEFAULT_PRICING_CONFIG
        changes = {name: _coerce_patch_value(name, value) for name, value in patch.items()}
        candidate = replace(
            current,
            **changes,
            id=None,
            updated_at=self._clock(),
            updated_by=str(updated_by).strip(),
        )
        validate_config(candidate)

        saved = self.repository.save(candidate)
        self._cached = None
        logger.info(
            "Pricing config #%s saved by %s (%s)",
            saved.id,
            saved.updated_by,
            ", ".join(sorted(changes)) or "no field changes",
        )
        return saved

    def clear_cache(self) -> None:
        self._cached = None
        for hook in list(self._clear_hooks):
            hook()
        logger.info("Pricing cache cleared")


def config_as_dict(config: PricingConfig) -> dict:
    data = asdict(config)
    if config.updated_at is not None:
        data["updated_at"] = config.updated_at.isoformat()
    return data


__all__ = [
    "DEFAULT_PRICING_CONFIG",
    "DEFAULT_TENANT",
    "EDITABLE_FIELDS",
    "MULTIPLIER_FIELDS",
    "PRICING_SCHEMA_SQL",
    "PricingConfigRepository",
    "PricingConfigStore",
    "SQLitePricingConfigRepository",
    "TARIFF_FIELDS",
    "config_as_dict",
    "ensure_pricing_schema",
    "validate_config",
]
