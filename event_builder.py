#!/usr/bin/env python3
"""
Event Builder for LP Ledger Sync
Turns sorted raw events into immutable ledger records.

For every raw event the builder resolves the pool price at the event's own
block, converts it to quote-per-base, dispatches to the matching processor,
and assembles a LedgerEvent whose id is a hash of the event's ordering tuple
and whose previous_id links to the event before it. The whole batch is a left
fold over the sorted events: state and the previous id thread through in
order, nothing runs in parallel.

Version: 2.0.0
Developer: 8roku8.hl
"""

import hashlib
from functools import reduce

from constants import LEDGER_EVENT_TYPES, INCREASE_LIQUIDITY, DECREASE_LIQUIDITY, ZERO_ADDRESS
from errors import InvariantViolationError
from event_processors import process_event
from ledger_types import (
    LedgerEvent, LedgerState, IncreasePayload, DecreasePayload, CollectPayload
)
from utils import calculate_pool_price_in_quote


def generate_input_hash(block_number, transaction_index, log_index):
    """Deterministic event id from the ordering tuple"""
    return hashlib.md5(f"{block_number}-{transaction_index}-{log_index}".encode()).hexdigest()


def sort_raw_events(raw_events):
    return sorted(raw_events, key=lambda event: event.ordering_key)


def build_initial_state(last_event):
    """State to resume from; zero state when the ledger is empty"""
    if last_event is None:
        return LedgerState()
    return last_event.to_state()


def extract_previous_event_id(last_event):
    return last_event.id if last_event is not None else None


def _build_payload(raw_event, result):
    if raw_event.event_type == INCREASE_LIQUIDITY:
        return IncreasePayload(raw_event.liquidity, raw_event.amount0, raw_event.amount1)
    if raw_event.event_type == DECREASE_LIQUIDITY:
        return DecreasePayload(raw_event.liquidity, raw_event.amount0, raw_event.amount1)
    return CollectPayload(
        raw_event.recipient or ZERO_ADDRESS,
        raw_event.amount0,
        raw_event.amount1,
        result.fees_collected0,
        result.fees_collected1,
    )


def build_event_input(raw_event, previous_state, pool, snapshot, previous_event_id, position_id):
    """Build one ledger record and the state that follows it"""
    result = process_event(previous_state, raw_event, pool, snapshot.sqrt_price_x96)
    pool_price = calculate_pool_price_in_quote(
        snapshot.sqrt_price_x96, pool.token0_is_quote, pool.token0_decimals, pool.token1_decimals
    )
    state = result.state

    event = LedgerEvent(
        id=generate_input_hash(raw_event.block_number, raw_event.transaction_index, raw_event.log_index),
        position_id=position_id,
        previous_id=previous_event_id,
        event_type=LEDGER_EVENT_TYPES[raw_event.event_type],
        timestamp=raw_event.block_timestamp,
        chain_id=raw_event.chain_id,
        nft_id=raw_event.token_id,
        block_number=raw_event.block_number,
        transaction_index=raw_event.transaction_index,
        log_index=raw_event.log_index,
        transaction_hash=raw_event.transaction_hash,
        pool_price=pool_price,
        sqrt_price_x96=snapshot.sqrt_price_x96,
        token0_amount=raw_event.amount0,
        token1_amount=raw_event.amount1,
        token_value=result.token_value,
        delta_liquidity=result.delta_liquidity,
        liquidity_after=state.liquidity,
        delta_cost_basis=result.delta_cost_basis,
        cost_basis_after=state.cost_basis,
        delta_pnl=result.delta_pnl,
        pnl_after=state.pnl,
        uncollected_principal0_after=state.uncollected_principal0,
        uncollected_principal1_after=state.uncollected_principal1,
        fee_growth_inside0_last_x128=snapshot.fee_growth_inside0_last_x128,
        fee_growth_inside1_last_x128=snapshot.fee_growth_inside1_last_x128,
        payload=_build_payload(raw_event, result),
        rewards=result.rewards,
    )
    return event, state


def iter_ledger_events(raw_events, last_event, position_id, nft_id, pool, resolve_price):
    """Yield ledger records one by one, threading state through the sorted events.

    resolve_price(raw_event) must return the PoolPriceSnapshot at the event's
    block; any exception it raises aborts the iteration. Events must already
    be sorted and strictly after last_event.
    """
    state = build_initial_state(last_event)
    previous_id = extract_previous_event_id(last_event)
    previous_key = last_event.ordering_key if last_event is not None else None

    for raw_event in raw_events:
        if raw_event.token_id != nft_id:
            raise InvariantViolationError(
                f"Event {raw_event.transaction_hash}:{raw_event.log_index} belongs to "
                f"token {raw_event.token_id}, expected {nft_id}"
            )
        if previous_key is not None and raw_event.ordering_key <= previous_key:
            raise InvariantViolationError(
                f"Event ordering violated: {raw_event.ordering_key} follows {previous_key}"
            )
        snapshot = resolve_price(raw_event)
        event, state = build_event_input(raw_event, state, pool, snapshot, previous_id, position_id)
        previous_id = event.id
        previous_key = event.ordering_key
        yield event


def fold_ledger_events(raw_events, last_event, position_id, nft_id, pool, resolve_price):
    """Left fold over raw events: returns (final_state, records)"""
    def step(acc, event):
        _, records = acc
        return event.to_state(), records + (event,)

    return reduce(
        step,
        iter_ledger_events(raw_events, last_event, position_id, nft_id, pool, resolve_price),
        (build_initial_state(last_event), ()),
    )
