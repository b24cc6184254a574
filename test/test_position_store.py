"""
Tests for the shared position store.
"""

import json
from decimal import Decimal

from conftest import TEST_CHAIN_ID, USER, WBTC, make_position
from flashliq.liquidation.position_store import PositionStore


def test_newer_update_replaces_older():
    store = PositionStore()
    assert store.upsert_position(make_position(updated_at=100.0))
    assert store.upsert_position(make_position(updated_at=200.0, health_factor=Decimal("0.8")))
    assert store.get(make_position().key).health_factor == Decimal("0.8")
    assert len(store) == 1


def test_stale_update_ignored():
    store = PositionStore()
    store.upsert_position(make_position(updated_at=200.0, health_factor=Decimal("0.8")))
    assert not store.upsert_position(make_position(updated_at=100.0))
    assert store.get(make_position().key).health_factor == Decimal("0.8")


def test_keys_compare_addresses_case_insensitively():
    store = PositionStore()
    store.upsert_position(make_position(user="0x" + "ab" * 20))
    store.upsert_position(make_position(user="0x" + "AB" * 20, updated_at=300.0))
    assert len(store) == 1


def test_range_query_sorted_by_health_factor():
    store = PositionStore()
    store.upsert_position(make_position(health_factor=Decimal("0.95")))
    store.upsert_position(make_position(collateral_asset=WBTC, health_factor=Decimal("0.80")))
    store.upsert_position(make_position(user="0x" + "77" * 20, health_factor=Decimal("1.50")))
    store.upsert_position(make_position(chain_id=10, health_factor=Decimal("0.90")))

    positions = store.get_positions_in_range(TEST_CHAIN_ID, Decimal("0.75"), Decimal("1.05"))
    assert [p.health_factor for p in positions] == [Decimal("0.80"), Decimal("0.95")]


def test_remove_user_drops_all_pairs():
    store = PositionStore()
    store.upsert_position(make_position())
    store.upsert_position(make_position(collateral_asset=WBTC))
    store.upsert_position(make_position(chain_id=10))
    assert store.remove_user(TEST_CHAIN_ID, USER) == 2
    assert [p.chain_id for p in store.all_positions()] == [10]


def test_save_and_load_state(tmp_path):
    path = str(tmp_path / "state" / "mainnet_positions.json")
    store = PositionStore()
    store.upsert_position(make_position())
    store.upsert_position(make_position(chain_id=10))
    store.save_state(path, TEST_CHAIN_ID)

    with open(path, encoding="utf-8") as f:
        state = json.load(f)
    assert state["version"] == 1
    assert len(state["positions"]) == 1

    restored = PositionStore()
    assert restored.load_state(path) == 1
    assert restored.get(make_position().key) == make_position()


def test_load_skips_malformed_entries(tmp_path):
    path = tmp_path / "positions.json"
    path.write_text(json.dumps({"version": 1, "positions": [{"user": "0x"}, make_position().to_dict()]}))
    store = PositionStore()
    assert store.load_state(str(path)) == 1


def test_load_missing_or_corrupt_file(tmp_path):
    store = PositionStore()
    assert store.load_state(str(tmp_path / "missing.json")) == 0
    corrupt = tmp_path / "corrupt.json"
    corrupt.write_text("{not json")
    assert store.load_state(str(corrupt)) == 0
