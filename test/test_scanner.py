"""
Tests for the position scanner.
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from web3 import Web3

from conftest import (
    TEST_CHAIN_ID,
    USDC,
    USDC_UNIT,
    USER,
    WAD,
    WBTC,
    WETH,
    make_position,
    usdc_entry,
    weth_entry,
)
from flashliq.liquidation.activity import ActivityLog
from flashliq.liquidation.classifier import OpportunityClass
from flashliq.liquidation.exceptions import DataQualityError
from flashliq.liquidation.position_store import PositionStore
from flashliq.liquidation.scanner import POOL_EVENT_TOPICS, PositionScanner, user_from_log

BORROW_TOPIC = Web3.to_hex(Web3.keccak(text="Borrow(address,address,address,uint256,uint8,uint256,uint16)"))
LIQUIDATION_TOPIC = Web3.to_hex(
    Web3.keccak(text="LiquidationCall(address,address,address,uint256,uint256,address,bool)")
)


def _topic(address):
    return "0x" + "0" * 24 + address[2:].lower()


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture()
def reader():
    mock = MagicMock()
    mock.fetch_user_entries.return_value = ([weth_entry()], [usdc_entry()])
    return mock


@pytest.fixture()
def store():
    return PositionStore()


@pytest.fixture()
def activity():
    return ActivityLog()


@pytest.fixture()
def orchestrator():
    return MagicMock()


@pytest.fixture()
def clock():
    return Clock()


@pytest.fixture()
def scanner(reader, store, settings, activity, orchestrator, clock):
    return PositionScanner(TEST_CHAIN_ID, reader, store, settings, activity=activity, orchestrator=orchestrator, clock=clock)


def test_watched_topics():
    assert POOL_EVENT_TOPICS[BORROW_TOPIC] == 2
    assert POOL_EVENT_TOPICS[LIQUIDATION_TOPIC] == 3
    assert len(POOL_EVENT_TOPICS) == 5


def test_user_from_borrow_log():
    log = {"topics": [BORROW_TOPIC, _topic(USDC), _topic(USER), "0x" + "0" * 64]}
    assert user_from_log(log) == Web3.to_checksum_address(USER)


def test_user_from_liquidation_log():
    log = {"topics": [LIQUIDATION_TOPIC, _topic(WETH), _topic(USDC), _topic(USER)]}
    assert user_from_log(log) == Web3.to_checksum_address(USER)


def test_bad_logs_rejected():
    with pytest.raises(DataQualityError):
        user_from_log({"topics": []})
    with pytest.raises(DataQualityError):
        user_from_log({"topics": ["0x" + "12" * 32, _topic(USER)]})
    with pytest.raises(DataQualityError):
        user_from_log({"topics": [LIQUIDATION_TOPIC, _topic(WETH)]})
    with pytest.raises(DataQualityError):
        user_from_log("not a log")


def test_underwater_user_submitted(scanner, store, orchestrator, activity):
    position = scanner.scan_user(USER)

    assert position.collateral_asset == WETH
    assert position.debt_asset == USDC
    assert position.is_liquidatable
    assert position.updated_at == 1000.0
    assert store.get(position.key) is position

    orchestrator.submit.assert_called_once()
    opportunity = orchestrator.submit.call_args.args[0]
    assert opportunity.position is position
    assert opportunity.max_liquidatable_debt == 18_000 * USDC_UNIT

    changed = activity.recent(kind="classification_changed")
    assert changed[0].data["current"] == OpportunityClass.IN_EXECUTION_RANGE.value


def test_healthy_user_stored_not_submitted(scanner, reader, store, orchestrator):
    reader.fetch_user_entries.return_value = ([weth_entry()], [usdc_entry(amount=5_000 * USDC_UNIT)])
    position = scanner.scan_user(USER)

    assert position.health_factor > 3
    assert len(store) == 1
    orchestrator.submit.assert_not_called()


def test_classification_event_only_on_change(scanner, clock, activity):
    scanner.scan_user(USER)
    clock.now += 1
    scanner.scan_user(USER)
    assert len(activity.recent(kind="classification_changed")) == 1


def test_repaid_user_removed(scanner, reader, store, clock, activity):
    scanner.scan_user(USER)
    reader.fetch_user_entries.return_value = ([weth_entry()], [])
    clock.now += 1

    assert scanner.scan_user(USER) is None
    assert len(store) == 0
    assert activity.recent(kind="position_closed")


def test_read_failure_skips_user(scanner, reader, store):
    reader.fetch_user_entries.return_value = None
    assert scanner.scan_user(USER) is None
    assert len(store) == 0


def test_unpriced_collateral_skips_user(scanner, reader, store, activity, orchestrator):
    # without the WBTC the user looks underwater, with it they are healthy
    reader.fetch_user_entries.return_value = (
        [weth_entry(), weth_entry(asset=WBTC, amount=100 * WAD, price=None)],
        [usdc_entry()],
    )

    assert scanner.scan_user(USER) is None
    assert len(store) == 0
    assert orchestrator.submit.call_count == 0
    assert activity.recent(kind="classification_changed") == []

    [event] = activity.recent(kind="data_quality")
    assert event.level == "warning"
    assert event.data["user"] == USER
    assert event.data["excluded_assets"] == [WBTC]


def test_stale_read_does_not_replace_newer(scanner, store, orchestrator):
    newer = make_position(updated_at=2000.0, health_factor=Decimal("1.5"))
    store.upsert_position(newer)

    assert scanner.scan_user(USER, source_timestamp=1500.0) is None
    assert store.get(newer.key).health_factor == Decimal("1.5")
    orchestrator.submit.assert_not_called()


def test_pair_switch_drops_old_pair(scanner, reader, store, clock):
    scanner.scan_user(USER)
    wbtc = weth_entry(asset=WBTC, amount=10**8, decimals=8, price="60000")
    reader.fetch_user_entries.return_value = ([weth_entry(), wbtc], [usdc_entry()])
    clock.now += 1

    position = scanner.scan_user(USER)
    assert position.collateral_asset == WBTC
    assert [p.collateral_asset for p in store.all_positions()] == [WBTC]


def test_block_rescans_monitoring_band_on_interval(scanner, store, reader, clock):
    store.upsert_position(make_position(updated_at=0.0))
    store.upsert_position(make_position(user="0x" + "77" * 20, health_factor=Decimal("2"), updated_at=0.0))

    scanner.handle_block({"number": "0x10"})
    assert scanner.latest_block == 16
    reader.fetch_user_entries.assert_called_once_with(USER)

    clock.now += 1
    scanner.handle_block({"number": "0x11"})
    assert reader.fetch_user_entries.call_count == 1

    clock.now += scanner.settings.scan_interval
    scanner.handle_block({"number": "0x12"})
    assert reader.fetch_user_entries.call_count == 2


def test_log_triggers_scan(scanner, reader):
    scanner.handle("log", {"topics": [BORROW_TOPIC, _topic(USDC), _topic(USER)]})
    reader.fetch_user_entries.assert_called_once_with(Web3.to_checksum_address(USER))


def test_unwatched_log_ignored(scanner, reader):
    scanner.handle_log({"topics": ["0x" + "12" * 32]})
    reader.fetch_user_entries.assert_not_called()


def test_worker_processes_queue_in_order(scanner, reader):
    scanner.start()
    scanner.track_users([USER, WETH])
    scanner.updates.join()
    scanner.stop()

    assert [c.args[0] for c in reader.fetch_user_entries.call_args_list] == [USER, WETH]
