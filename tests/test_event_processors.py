from dataclasses import replace

import pytest

from constants import Q96, COLLECT
from errors import InvariantViolationError
from event_processors import (
    process_increase_liquidity, process_decrease_liquidity, process_collect, process_event
)
from fakes import TOKEN1, increase, decrease, collect
from ledger_types import LedgerState


def test_increase_adds_cost_basis_without_pnl(pool):
    result = process_increase_liquidity(LedgerState(), increase(1, 100, amount1=1000), pool, Q96)
    assert result.state.liquidity == 100
    assert result.state.cost_basis == 1000
    assert result.delta_cost_basis == 1000
    assert result.delta_pnl == 0
    assert result.token_value == 1000


def test_decrease_releases_proportional_cost_basis(pool):
    before = LedgerState(liquidity=100, cost_basis=1000)
    result = process_decrease_liquidity(before, decrease(2, 40, amount1=450), pool, Q96)

    assert result.state.liquidity == 60
    assert result.state.cost_basis == 600
    assert result.delta_cost_basis == -400
    assert result.delta_pnl == 50
    assert result.state.pnl == 50
    assert result.delta_liquidity == -40
    assert result.state.uncollected_principal1 == 450


def test_decrease_to_zero_clears_cost_basis(pool):
    before = LedgerState(liquidity=3, cost_basis=1001)
    result = process_decrease_liquidity(before, decrease(2, 3, amount0=500), pool, Q96)
    assert result.state.liquidity == 0
    assert result.state.cost_basis == 0
    assert result.delta_pnl == 500 - 1001


def test_decrease_beyond_liquidity_is_rejected(pool):
    before = LedgerState(liquidity=10, cost_basis=100)
    with pytest.raises(InvariantViolationError):
        process_decrease_liquidity(before, decrease(2, 11), pool, Q96)


def test_collect_splits_fees_from_principal(pool):
    before = LedgerState(liquidity=60, cost_basis=600, pnl=50, uncollected_principal1=450)
    result = process_collect(before, collect(3, amount1=465), pool, Q96)

    assert result.state.liquidity == 60
    assert result.state.cost_basis == 600
    assert result.state.pnl == 50
    assert result.delta_cost_basis == 0
    assert result.delta_pnl == 0
    assert result.state.uncollected_principal1 == 0
    assert result.fees_collected1 == 15
    assert len(result.rewards) == 1
    assert result.rewards[0].token_address == TOKEN1
    assert result.rewards[0].token_amount == 15
    assert result.rewards[0].token_value == 15


def test_collect_of_principal_only_has_no_rewards(pool):
    before = LedgerState(uncollected_principal0=80, uncollected_principal1=20)
    result = process_collect(before, collect(3, amount0=30, amount1=20), pool, Q96)
    assert result.rewards == ()
    assert result.state.uncollected_principal0 == 50
    assert result.state.uncollected_principal1 == 0


def test_negative_amounts_are_invariant_violations(pool):
    with pytest.raises(InvariantViolationError):
        process_increase_liquidity(LedgerState(), increase(1, 10, amount0=-1), pool, Q96)


def test_missing_liquidity_is_rejected(pool):
    event = replace(increase(1, 10, amount1=10), liquidity=None)
    with pytest.raises(InvariantViolationError):
        process_increase_liquidity(LedgerState(), event, pool, Q96)


def test_dispatch_by_event_type(pool):
    result = process_event(LedgerState(uncollected_principal1=5), collect(3, amount1=5), pool, Q96)
    assert result.state.uncollected_principal1 == 0
    assert collect(3).event_type == COLLECT
