from dataclasses import replace

import pytest

from constants import Q96, Q128, COLLECT
from errors import ConfigurationError, InvariantViolationError, PositionNotFoundError
from fakes import (
    CHAIN_ID, NFT_ID, TOKEN0, BASE_BLOCK, block_time, increase, decrease, collect
)
from ledger_sync import LedgerSyncManager
from position_database import PositionDatabase, make_position_id
from position_service import PositionService, get_ledger_summary, detect_closure
from sync_state import PositionSyncState, raw_event_to_missing_event
from utils import calculate_position_value


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock(2_000.0)


@pytest.fixture
def service(database, indexer, chain, apr_service, clock):
    ledger_sync = LedgerSyncManager(database, indexer, {CHAIN_ID: chain}, apr_service)
    return PositionService(database, ledger_sync, {CHAIN_ID: chain}, clock=clock)


def decrease_then_collect():
    return [
        increase(BASE_BLOCK + 1, 100, amount1=1000),
        decrease(BASE_BLOCK + 2, 40, amount1=450),
        collect(BASE_BLOCK + 3, amount1=465),
    ]


class TestCache:
    def test_fresh_row_is_returned_without_chain_reads(self, service, database, chain, clock, position_id):
        clock.now = 1_010.0
        database.update_position(position_id, updated_at=1_005.0)
        service.refresh(position_id)
        assert chain.record_reads == 0

    def test_new_position_is_not_cache_shielded(self, service, chain, clock, position_id):
        clock.now = 1_002.0
        service.refresh(position_id)
        assert chain.record_reads == 1

    def test_force_bypasses_cache(self, service, database, chain, clock, position_id):
        clock.now = 1_010.0
        database.update_position(position_id, updated_at=1_005.0)
        service.refresh(position_id, force=True)
        assert chain.record_reads == 1

    def test_cache_window(self, service, position_id, database):
        position = database.get_position(position_id)
        position.update(created_at=0.0, updated_at=100.0)
        assert service.is_cache_valid(position, 114.9)
        assert not service.is_cache_valid(position, 115.0)
        position.update(created_at=112.0)
        assert not service.is_cache_valid(position, 114.0)


class TestSyncTriggers:
    def test_liquidity_mismatch_syncs_and_recomputes(self, service, indexer, chain, position_id):
        indexer.events = decrease_then_collect()
        chain.record["liquidity"] = 60

        position = service.refresh(position_id)

        assert len(indexer.calls) == 1
        assert position["liquidity"] == 60
        assert position["cost_basis"] == 600
        assert position["realized_pnl"] == 50
        assert position["collected_fees"] == 15
        assert position["last_fees_collected_at"] == block_time(BASE_BLOCK + 3)
        assert position["position_opened_at"] == block_time(BASE_BLOCK + 1)
        value = calculate_position_value(60, Q96, -600, 600, False, 0, 0)
        assert position["current_value"] == value
        assert position["unrealized_pnl"] == value - 600
        assert position["is_active"] is True
        lower, upper = position["price_range_lower"], position["price_range_upper"]
        assert lower <= upper

    def test_collect_tail_rereads_checkpoints(self, service, indexer, chain, position_id):
        indexer.events = decrease_then_collect()
        chain.record["liquidity"] = 60
        service.refresh(position_id)
        assert chain.record_reads == 2

    def test_no_diff_skips_sync(self, service, indexer, chain, clock, position_id):
        indexer.events = decrease_then_collect()
        chain.record["liquidity"] = 60
        service.refresh(position_id)

        clock.now += 100
        service.refresh(position_id)
        assert len(indexer.calls) == 1

    def test_state_diff_syncs(self, service, indexer, chain, clock, position_id):
        indexer.events = decrease_then_collect()
        chain.record["liquidity"] = 60
        service.refresh(position_id)

        chain.record["tokens_owed1"] = 5
        clock.now += 100
        position = service.refresh(position_id)
        assert len(indexer.calls) == 2
        assert position["tokens_owed1"] == 5

    def test_pending_missing_event_forces_sync(self, service, database, indexer, chain, clock, position_id):
        indexer.events = decrease_then_collect()
        chain.record["liquidity"] = 60
        service.refresh(position_id)

        service.report_missing_event(
            position_id, raw_event_to_missing_event(collect(chain.finalized_block + 1, amount1=3))
        )
        clock.now += 100
        service.refresh(position_id)
        assert len(indexer.calls) == 2
        assert database.get_last_ledger_event(position_id).block_number == chain.finalized_block + 1

    @pytest.mark.parametrize("raw_event,changes", [
        (increase(BASE_BLOCK + 200, 100, amount1=10), {"liquidity": None}),
        (decrease(BASE_BLOCK + 200, 100), {"liquidity": None}),
        (collect(BASE_BLOCK + 200, amount1=5), {"amount1": -1}),
        (collect(BASE_BLOCK + 200), {"event_type": "SWAP"}),
    ])
    def test_invalid_reported_event_is_rejected(self, service, database, position_id, raw_event, changes):
        reported = replace(raw_event_to_missing_event(raw_event), **changes)
        with pytest.raises(InvariantViolationError):
            service.report_missing_event(position_id, reported)
        assert not PositionSyncState.load(database, position_id).has_missing_events()

    def test_valid_reported_event_is_stored(self, service, database, position_id):
        service.report_missing_event(position_id, raw_event_to_missing_event(collect(BASE_BLOCK + 200, amount1=5)))
        assert PositionSyncState.load(database, position_id).has_missing_events()

    def test_finalized_missing_event_is_pruned_without_sync(self, service, indexer, chain, clock, position_id):
        indexer.events = decrease_then_collect()
        chain.record["liquidity"] = 60
        service.refresh(position_id)

        service.report_missing_event(
            position_id, raw_event_to_missing_event(collect(BASE_BLOCK + 50, amount1=3))
        )
        clock.now += 100
        service.refresh(position_id)
        assert len(indexer.calls) == 1


class TestAggregates:
    def test_unclaimed_fees_from_pool_state(self, service, indexer, chain, position_id):
        indexer.events = [increase(BASE_BLOCK + 1, 100, amount1=1000)]
        chain.record["liquidity"] = 100
        chain.pool_state["fee_growth_global1_x128"] = Q128

        position = service.refresh(position_id)
        assert position["unclaimed_fees1"] == 100
        assert position["unclaimed_fees0"] == 0
        assert position["unclaimed_fees"] == 100

    def test_ledger_summary(self):
        assert get_ledger_summary([])["collected_fees"] == 0


class TestClosure:
    def closing_events(self):
        return [
            increase(BASE_BLOCK + 1, 100, amount1=1000),
            decrease(BASE_BLOCK + 2, 100, amount1=900),
            collect(BASE_BLOCK + 3, amount1=900),
        ]

    def test_collect_of_all_principal_closes(self, service, indexer, position_id):
        indexer.events = self.closing_events()
        position = service.reset(position_id)
        assert position["is_active"] is False
        assert position["position_closed_at"] == block_time(BASE_BLOCK + 3)
        assert position["realized_pnl"] == -100

    def test_closed_position_stays_closed(self, service, indexer, clock, position_id):
        indexer.events = self.closing_events()
        service.reset(position_id)
        clock.now += 100
        position = service.refresh(position_id, force=True)
        assert position["is_active"] is False
        assert position["position_closed_at"] == block_time(BASE_BLOCK + 3)

    def test_decrease_to_zero_alone_does_not_close(self, service, indexer, position_id):
        indexer.events = self.closing_events()[:2]
        position = service.reset(position_id)
        assert position["is_active"] is True

    def test_new_liquidity_reopens(self, service, indexer, chain, clock, position_id):
        indexer.events = self.closing_events()
        service.reset(position_id)

        indexer.events.append(increase(BASE_BLOCK + 4, 50, amount1=500))
        chain.record["liquidity"] = 50
        clock.now += 100
        position = service.refresh(position_id)
        assert position["is_active"] is True
        assert position["position_closed_at"] is None
        assert position["cost_basis"] == 500

    def test_detect_closure_rules(self, service, indexer, database, position_id):
        indexer.events = self.closing_events()
        service.reset(position_id)
        tail = database.get_last_ledger_event(position_id)
        assert tail.event_type == COLLECT
        assert detect_closure(tail, True) == (False, tail.timestamp)
        assert detect_closure(tail, False, tail.timestamp) == (False, tail.timestamp)
        assert detect_closure(None, True) == (True, None)


class TestLifecycle:
    def test_track_position(self, tmp_path, indexer, chain, apr_service):
        database = PositionDatabase(str(tmp_path / "track.db"))
        ledger_sync = LedgerSyncManager(database, indexer, {CHAIN_ID: chain}, apr_service)
        service = PositionService(database, ledger_sync, {CHAIN_ID: chain}, clock=Clock(5_000.0))
        indexer.events = [increase(BASE_BLOCK + 1, 100, amount1=1000)]
        chain.record["liquidity"] = 100

        position = service.track_position(CHAIN_ID, NFT_ID, quote_token=TOKEN0)

        assert position["id"] == make_position_id(CHAIN_ID, NFT_ID)
        assert position["token0_is_quote"] is True
        assert position["liquidity"] == 100
        assert position["cost_basis"] == 1000
        assert database.get_pool_row(CHAIN_ID, position["pool_address"]) is not None
        database.close()

    def test_track_rejects_foreign_quote(self, service):
        with pytest.raises(ConfigurationError):
            service.track_position(CHAIN_ID, NFT_ID, quote_token="0x00000000000000000000000000000000000000ff")

    def test_reset_runs_full_resync(self, service, indexer, position_id):
        indexer.events = decrease_then_collect()
        service.reset(position_id)
        assert indexer.calls[0][2] < BASE_BLOCK

    def test_unknown_position(self, service):
        with pytest.raises(PositionNotFoundError):
            service.refresh("uniswapv3-1-999")

    def test_refresh_positions_collects_failures(self, service, indexer, chain, position_id):
        indexer.events = decrease_then_collect()
        chain.record["liquidity"] = 60
        refreshed, failures = service.refresh_positions([position_id, "uniswapv3-1-999"])
        assert refreshed[position_id]["liquidity"] == 60
        assert isinstance(failures["uniswapv3-1-999"], PositionNotFoundError)
