import pytest

from constants import Q96, COLLECT, INCREASE_POSITION, DECREASE_POSITION
from errors import InvariantViolationError, PriceUnavailableError
from event_builder import (
    generate_input_hash, sort_raw_events, fold_ledger_events, iter_ledger_events, build_initial_state
)
from fakes import NFT_ID, BASE_BLOCK, increase, decrease, collect
from ledger_types import IncreasePayload, CollectPayload, LedgerState, PoolPriceSnapshot

POSITION_ID = "uniswapv3-1-4242"


def unit_price(raw_event):
    return PoolPriceSnapshot(block_number=raw_event.block_number, sqrt_price_x96=Q96, tick=0)


def scenario():
    return [
        increase(BASE_BLOCK + 1, 100, amount1=1000),
        decrease(BASE_BLOCK + 2, 40, amount1=450),
        collect(BASE_BLOCK + 3, amount1=465),
    ]


def test_input_hash_is_deterministic():
    assert generate_input_hash(1, 2, 3) == generate_input_hash(1, 2, 3)
    assert generate_input_hash(1, 2, 3) != generate_input_hash(1, 3, 2)
    assert len(generate_input_hash(1, 2, 3)) == 32


def test_sort_uses_ordering_tuple():
    events = [collect(5, log_index=2), collect(5, log_index=1), collect(4, transaction_index=9)]
    assert [e.ordering_key for e in sort_raw_events(events)] == [(4, 9, 0), (5, 0, 1), (5, 0, 2)]


def test_fold_partial_decrease_and_collect(pool):
    state, events = fold_ledger_events(scenario(), None, POSITION_ID, NFT_ID, pool, unit_price)

    assert [e.liquidity_after for e in events] == [100, 60, 60]
    assert [e.event_type for e in events] == [INCREASE_POSITION, DECREASE_POSITION, COLLECT]
    assert events[1].cost_basis_after == 600
    assert events[1].pnl_after == 450 - 400
    assert events[2].delta_pnl == 0
    assert events[2].reward_value == 15
    assert state == LedgerState(liquidity=60, cost_basis=600, pnl=50)


def test_events_form_a_linked_list(pool):
    _, events = fold_ledger_events(scenario(), None, POSITION_ID, NFT_ID, pool, unit_price)
    assert events[0].previous_id is None
    assert events[1].previous_id == events[0].id
    assert events[2].previous_id == events[1].id
    assert len({e.id for e in events}) == 3


def test_payloads_match_event_type(pool):
    _, events = fold_ledger_events(scenario(), None, POSITION_ID, NFT_ID, pool, unit_price)
    assert events[0].payload == IncreasePayload(100, 0, 1000)
    assert isinstance(events[2].payload, CollectPayload)
    assert events[2].payload.fees_collected1 == 15


def test_resume_from_last_event(pool):
    raw = scenario()
    _, first = fold_ledger_events(raw[:2], None, POSITION_ID, NFT_ID, pool, unit_price)
    _, rest = fold_ledger_events(raw[2:], first[-1], POSITION_ID, NFT_ID, pool, unit_price)
    _, whole = fold_ledger_events(raw, None, POSITION_ID, NFT_ID, pool, unit_price)
    assert first + rest == whole


def test_initial_state_without_history():
    assert build_initial_state(None) == LedgerState()


def test_out_of_order_events_are_rejected(pool):
    raw = list(reversed(scenario()))
    with pytest.raises(InvariantViolationError):
        fold_ledger_events(raw, None, POSITION_ID, NFT_ID, pool, unit_price)


def test_event_at_or_before_tail_is_rejected(pool):
    raw = scenario()
    _, events = fold_ledger_events(raw[:2], None, POSITION_ID, NFT_ID, pool, unit_price)
    with pytest.raises(InvariantViolationError):
        fold_ledger_events(raw[1:], events[-1], POSITION_ID, NFT_ID, pool, unit_price)


def test_foreign_token_is_rejected(pool):
    raw = [increase(BASE_BLOCK + 1, 10, amount1=10, token_id=NFT_ID + 1)]
    with pytest.raises(InvariantViolationError):
        fold_ledger_events(raw, None, POSITION_ID, NFT_ID, pool, unit_price)


def test_price_failure_stops_iteration(pool):
    def resolve(raw_event):
        if raw_event.block_number == BASE_BLOCK + 2:
            raise PriceUnavailableError("archive node missing block")
        return unit_price(raw_event)

    built = []
    with pytest.raises(PriceUnavailableError):
        for event in iter_ledger_events(scenario(), None, POSITION_ID, NFT_ID, pool, resolve):
            built.append(event)
    assert len(built) == 1


def test_prices_are_taken_at_each_event_block(pool):
    seen = []

    def resolve(raw_event):
        seen.append(raw_event.block_number)
        return PoolPriceSnapshot(raw_event.block_number, 2 * Q96, 0)

    _, events = fold_ledger_events(scenario()[:1], None, POSITION_ID, NFT_ID, pool, resolve)
    assert seen == [BASE_BLOCK + 1]
    assert events[0].pool_price == 4
    assert events[0].sqrt_price_x96 == 2 * Q96
