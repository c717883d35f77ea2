#!/usr/bin/env python3
"""
Event Processors for LP Ledger Sync
One pure state transition per event type. Each takes the previous ledger
state, the raw event, pool metadata and the pool's sqrtPriceX96 at the
event's block, and returns a ProcessorResult.

Version: 2.0.0
Developer: 8roku8.hl
"""

from constants import INCREASE_LIQUIDITY, DECREASE_LIQUIDITY, COLLECT
from errors import InvariantViolationError
from ledger_types import CollectReward, ProcessorResult
from utils import (
    calculate_token_value_in_quote, calculate_proportional_cost_basis,
    separate_fees_from_principal
)


def _require_non_negative(raw_event, **values):
    for name, value in values.items():
        if value is None or value < 0:
            raise InvariantViolationError(
                f"{raw_event.event_type} at {raw_event.ordering_key} has invalid {name}: {value}"
            )


def _value(pool, sqrt_price_x96, amount0, amount1):
    return calculate_token_value_in_quote(
        amount0, amount1, sqrt_price_x96,
        pool.token0_is_quote, pool.token0_decimals, pool.token1_decimals
    )


def process_increase_liquidity(previous_state, raw_event, pool, sqrt_price_x96):
    """Deposit: cost basis grows by the deposited value, no PnL realized"""
    _require_non_negative(raw_event, liquidity=raw_event.liquidity,
                          amount0=raw_event.amount0, amount1=raw_event.amount1)

    token_value = _value(pool, sqrt_price_x96, raw_event.amount0, raw_event.amount1)
    state = previous_state.evolve(
        liquidity=previous_state.liquidity + raw_event.liquidity,
        cost_basis=previous_state.cost_basis + token_value,
    )
    return ProcessorResult(
        state=state,
        delta_liquidity=raw_event.liquidity,
        delta_cost_basis=token_value,
        delta_pnl=0,
        token_value=token_value,
    )


def process_decrease_liquidity(previous_state, raw_event, pool, sqrt_price_x96):
    """Withdrawal: release a proportional slice of cost basis and realize PnL.

    The withdrawn amounts stay in tokensOwed until collected, so they are
    tracked as uncollected principal.
    """
    _require_non_negative(raw_event, liquidity=raw_event.liquidity,
                          amount0=raw_event.amount0, amount1=raw_event.amount1)

    delta_liquidity = raw_event.liquidity
    released = calculate_proportional_cost_basis(
        previous_state.cost_basis, delta_liquidity, previous_state.liquidity
    )
    token_value = _value(pool, sqrt_price_x96, raw_event.amount0, raw_event.amount1)
    delta_pnl = token_value - released

    state = previous_state.evolve(
        liquidity=previous_state.liquidity - delta_liquidity,
        cost_basis=previous_state.cost_basis - released,
        pnl=previous_state.pnl + delta_pnl,
        uncollected_principal0=previous_state.uncollected_principal0 + raw_event.amount0,
        uncollected_principal1=previous_state.uncollected_principal1 + raw_event.amount1,
    )
    return ProcessorResult(
        state=state,
        delta_liquidity=-delta_liquidity,
        delta_cost_basis=-released,
        delta_pnl=delta_pnl,
        token_value=token_value,
    )


def process_collect(previous_state, raw_event, pool, sqrt_price_x96):
    """Collect: fee income becomes rewards, principal drains uncollected principal.

    Liquidity, cost basis and PnL are unchanged.
    """
    _require_non_negative(raw_event, amount0=raw_event.amount0, amount1=raw_event.amount1)

    split = separate_fees_from_principal(
        raw_event.amount0, raw_event.amount1,
        previous_state.uncollected_principal0, previous_state.uncollected_principal1
    )
    fee0, fee1 = split["fee_amount0"], split["fee_amount1"]

    rewards = []
    if fee0 > 0:
        rewards.append(CollectReward(pool.token0, fee0, _value(pool, sqrt_price_x96, fee0, 0)))
    if fee1 > 0:
        rewards.append(CollectReward(pool.token1, fee1, _value(pool, sqrt_price_x96, 0, fee1)))

    state = previous_state.evolve(
        uncollected_principal0=previous_state.uncollected_principal0 - split["principal_amount0"],
        uncollected_principal1=previous_state.uncollected_principal1 - split["principal_amount1"],
    )
    return ProcessorResult(
        state=state,
        delta_liquidity=0,
        delta_cost_basis=0,
        delta_pnl=0,
        token_value=_value(pool, sqrt_price_x96, raw_event.amount0, raw_event.amount1),
        fees_collected0=fee0,
        fees_collected1=fee1,
        rewards=tuple(rewards),
    )


PROCESSORS = {
    INCREASE_LIQUIDITY: process_increase_liquidity,
    DECREASE_LIQUIDITY: process_decrease_liquidity,
    COLLECT: process_collect,
}


def process_event(previous_state, raw_event, pool, sqrt_price_x96):
    """Dispatch to the processor matching the event type"""
    return PROCESSORS[raw_event.event_type](previous_state, raw_event, pool, sqrt_price_x96)
