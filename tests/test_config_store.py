import sqlite3
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from tripquote.config_store import (
    DEFAULT_PRICING_CONFIG,
    PRICING_SCHEMA_SQL,
    PricingConfigStore,
    SQLitePricingConfigRepository,
    TARIFF_FIELDS,
    config_as_dict,
    ensure_pricing_schema,
    validate_config,
)
from tripquote.errors import InvalidConfig
from tripquote.models import PricingConfig


class CountingRepository:
    def __init__(self, inner: SQLitePricingConfigRepository) -> None:
        self.inner = inner
        self.loads = 0

    def load(self) -> Optional[PricingConfig]:
        self.loads += 1
        return self.inner.load()

    def save(self, config: PricingConfig) -> PricingConfig:
        return self.inner.save(config)


@pytest.fixture()
def conn() -> sqlite3.Connection:
    connection = sqlite3.connect(":memory:")
    ensure_pricing_schema(connection)
    yield connection
    connection.close()


def _active_rows(conn: sqlite3.Connection, tenant: str = "default") -> int:
    return conn.execute(
        "SELECT COUNT(*) FROM pricing_config WHERE tenant = ? AND is_active = 1", (tenant,)
    ).fetchone()[0]


def test_schema_seeds_default_tariff_once(conn: sqlite3.Connection) -> None:
    ensure_pricing_schema(conn)
    repo = SQLitePricingConfigRepository(conn)

    config = repo.load()

    assert config is not None
    assert config.id == 1
    assert config.updated_by == "system"
    for name in TARIFF_FIELDS:
        assert getattr(config, name) == pytest.approx(getattr(DEFAULT_PRICING_CONFIG, name))
    assert len(repo.history()) == 1


def test_default_tariff_is_valid() -> None:
    validate_config(DEFAULT_PRICING_CONFIG)


def test_update_appends_history_and_keeps_one_active_row(conn: sqlite3.Connection) -> None:
    repo = SQLitePricingConfigRepository(conn)
    store = PricingConfigStore(repo)

    saved = store.update_config({"base_fee": 950, "notes": "Summer rates"}, updated_by="ops")

    assert saved.id == 2
    assert saved.base_fee == pytest.approx(950.0)
    assert saved.updated_by == "ops"
    assert store.get_config().base_fee == pytest.approx(950.0)
    assert store.get_config().notes == "Summer rates"
    assert [c.id for c in repo.history()] == [2, 1]
    assert _active_rows(conn) == 1


def test_update_stamps_clock_time(conn: sqlite3.Connection) -> None:
    stamp = datetime(2030, 5, 1, 9, 30, tzinfo=timezone.utc)
    store = PricingConfigStore(SQLitePricingConfigRepository(conn), clock=lambda: stamp)

    saved = store.update_config({"urgent_multiplier": "1.3"}, updated_by="ops")

    assert saved.updated_at == stamp
    loaded = store.get_config()
    assert loaded.updated_at == stamp
    assert loaded.urgent_multiplier == pytest.approx(1.3)


@pytest.mark.parametrize(
    "patch, message",
    [
        ({"surge_multiplier": 2.0}, "Unknown"),
        ({"base_fee": -1}, "negative"),
        ({"short_distance_limit_km": 150}, "short_distance_limit_km"),
        ({"price_flexibility_percent": 150}, "price_flexibility_percent"),
        ({"night_multiplier": "nan"}, "finite"),
        ({"weekend_multiplier": "abc"}, "number"),
        ({"suv_multiplier": True}, "number"),
    ],
)
def test_invalid_update_is_rejected_and_not_saved(
    conn: sqlite3.Connection, patch: dict, message: str
) -> None:
    repo = SQLitePricingConfigRepository(conn)
    store = PricingConfigStore(repo)

    with pytest.raises(InvalidConfig, match=message):
        store.update_config(patch, updated_by="ops")

    assert len(repo.history()) == 1
    assert store.get_config().base_fee == pytest.approx(DEFAULT_PRICING_CONFIG.base_fee)


def test_update_requires_author(conn: sqlite3.Connection) -> None:
    store = PricingConfigStore(SQLitePricingConfigRepository(conn))
    with pytest.raises(InvalidConfig, match="updated_by"):
        store.update_config({"base_fee": 900}, updated_by="  ")


def test_get_config_is_memoised_until_update(conn: sqlite3.Connection) -> None:
    repo = CountingRepository(SQLitePricingConfigRepository(conn))
    store = PricingConfigStore(repo)

    first = store.get_config()
    second = store.get_config()
    assert first is second
    assert repo.loads == 1

    store.update_config({"base_fee": 1000}, updated_by="ops")
    loads_after_update = repo.loads
    assert store.get_config().base_fee == pytest.approx(1000.0)
    assert repo.loads == loads_after_update + 1


def test_clear_cache_drops_memo_and_runs_hooks(conn: sqlite3.Connection) -> None:
    repo = CountingRepository(SQLitePricingConfigRepository(conn))
    store = PricingConfigStore(repo)
    cleared: List[str] = []
    store.on_clear(lambda: cleared.append("routes"))

    store.get_config()
    store.clear_cache()
    store.get_config()

    assert cleared == ["routes"]
    assert repo.loads == 2


def test_missing_tariff_raises() -> None:
    conn = sqlite3.connect(":memory:")
    conn.executescript(PRICING_SCHEMA_SQL)

    with pytest.raises(InvalidConfig, match="No active pricing config"):
        PricingConfigStore(SQLitePricingConfigRepository(conn)).get_config()


def test_tenants_are_isolated(conn: sqlite3.Connection) -> None:
    ensure_pricing_schema(conn, "acme", replace(DEFAULT_PRICING_CONFIG, base_fee=1200.0))
    default_store = PricingConfigStore(SQLitePricingConfigRepository(conn))
    acme_store = PricingConfigStore(SQLitePricingConfigRepository(conn, "acme"))

    default_store.update_config({"base_fee": 700}, updated_by="ops")

    assert acme_store.get_config().base_fee == pytest.approx(1200.0)
    assert default_store.get_config().base_fee == pytest.approx(700.0)
    assert _active_rows(conn, "acme") == 1


def test_config_as_dict_serialises_timestamp(conn: sqlite3.Connection) -> None:
    data = config_as_dict(SQLitePricingConfigRepository(conn).load())
    assert isinstance(data["updated_at"], str)
    assert data["base_fee"] == pytest.approx(DEFAULT_PRICING_CONFIG.base_fee)
