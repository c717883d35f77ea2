#!/usr/bin/env python3
"""
Fixed-Point Math Module for LP Ledger Sync
Integer replicas of the pool contracts' fee-growth, tick and amount math,
plus the quote-denominated valuation helpers used by the ledger.

Python ints are unbounded, so every subtraction the contracts perform in
unchecked uint256 arithmetic is reduced modulo 2**256 here. Never replace
these with float math: the fee accumulators are 256-bit values.

Version: 2.0.0
Developer: 8roku8.hl
"""

from constants import Q96, Q128, Q192, UINT256_MODULUS, MAX_UINT256, MIN_TICK, MAX_TICK
from errors import InvariantViolationError


def sub_uint256(a, b):
    """a - b with uint256 wraparound"""
    return (a - b) % UINT256_MODULUS


# ---------------------------------------------------------------------------
# Fee growth
# ---------------------------------------------------------------------------

def _fee_growth_inside(current_tick, tick_lower, tick_upper, fee_growth_global,
                       outside_lower, outside_upper):
    if current_tick >= tick_lower:
        below = outside_lower
    else:
        below = sub_uint256(fee_growth_global, outside_lower)

    if current_tick < tick_upper:
        above = outside_upper
    else:
        above = sub_uint256(fee_growth_global, outside_upper)

    return sub_uint256(sub_uint256(fee_growth_global, below), above)


def compute_fee_growth_inside(current_tick, tick_lower, tick_upper,
                              fee_growth_global0_x128, fee_growth_global1_x128,
                              outside_lower0_x128, outside_lower1_x128,
                              outside_upper0_x128, outside_upper1_x128):
    """Fee growth per unit of liquidity inside [tick_lower, tick_upper) for both tokens"""
    inside0 = _fee_growth_inside(current_tick, tick_lower, tick_upper, fee_growth_global0_x128,
                                 outside_lower0_x128, outside_upper0_x128)
    inside1 = _fee_growth_inside(current_tick, tick_lower, tick_upper, fee_growth_global1_x128,
                                 outside_lower1_x128, outside_upper1_x128)
    return inside0, inside1


def calculate_incremental_fees(fee_growth_inside_x128, fee_growth_inside_last_x128, liquidity):
    """Fees earned since the checkpoint, in token smallest units"""
    delta = sub_uint256(fee_growth_inside_x128, fee_growth_inside_last_x128)
    return (liquidity * delta) // Q128


def calculate_unclaimed_fees(liquidity, fee_growth_inside0_x128, fee_growth_inside1_x128,
                             fee_growth_inside0_last_x128, fee_growth_inside1_last_x128,
                             tokens_owed0, tokens_owed1,
                             uncollected_principal0, uncollected_principal1,
                             sqrt_price_x96, token0_is_quote, token0_decimals, token1_decimals):
    """Claimable fees = incremental since checkpoint + checkpointed tokensOwed minus principal.

    tokensOwed holds both checkpointed fees and principal released by a
    decrease that has not been collected yet; only the excess over the
    uncollected principal counts as fee income.
    """
    if liquidity == 0:
        return {"unclaimed_fees0": 0, "unclaimed_fees1": 0, "unclaimed_fees_value": 0}

    incremental0 = calculate_incremental_fees(fee_growth_inside0_x128, fee_growth_inside0_last_x128, liquidity)
    incremental1 = calculate_incremental_fees(fee_growth_inside1_x128, fee_growth_inside1_last_x128, liquidity)

    checkpointed0 = max(tokens_owed0 - uncollected_principal0, 0)
    checkpointed1 = max(tokens_owed1 - uncollected_principal1, 0)

    total0 = checkpointed0 + incremental0
    total1 = checkpointed1 + incremental1
    value = calculate_token_value_in_quote(
        total0, total1, sqrt_price_x96, token0_is_quote, token0_decimals, token1_decimals
    )
    return {"unclaimed_fees0": total0, "unclaimed_fees1": total1, "unclaimed_fees_value": value}


# ---------------------------------------------------------------------------
# Prices
# ---------------------------------------------------------------------------

def price_per_token0_in_token1(sqrt_price_x96, token0_decimals):
    """token1 smallest units per one whole token0"""
    return (sqrt_price_x96 * sqrt_price_x96 * 10 ** token0_decimals) // Q192


def price_per_token1_in_token0(sqrt_price_x96, token1_decimals):
    """token0 smallest units per one whole token1"""
    if sqrt_price_x96 == 0:
        raise InvariantViolationError("sqrtPriceX96 is zero")
    return (Q192 * 10 ** token1_decimals) // (sqrt_price_x96 * sqrt_price_x96)


def calculate_pool_price_in_quote(sqrt_price_x96, token0_is_quote, token0_decimals, token1_decimals):
    """Quote smallest units per one whole base token"""
    if token0_is_quote:
        return price_per_token1_in_token0(sqrt_price_x96, token1_decimals)
    return price_per_token0_in_token1(sqrt_price_x96, token0_decimals)


def calculate_token_value_in_quote(token0_amount, token1_amount, sqrt_price_x96,
                                   token0_is_quote, token0_decimals, token1_decimals):
    """Value of a token0/token1 pair in quote smallest units"""
    price = calculate_pool_price_in_quote(sqrt_price_x96, token0_is_quote, token0_decimals, token1_decimals)
    if token0_is_quote:
        return token0_amount + (token1_amount * price) // 10 ** token1_decimals
    return token1_amount + (token0_amount * price) // 10 ** token0_decimals


# ---------------------------------------------------------------------------
# Ledger arithmetic
# ---------------------------------------------------------------------------

def calculate_proportional_cost_basis(cost_basis, delta_liquidity, liquidity_before):
    """Slice of cost basis released when removing delta_liquidity (floor division)"""
    if delta_liquidity < 0:
        raise InvariantViolationError(f"Negative liquidity delta {delta_liquidity}")
    if delta_liquidity == 0:
        return 0
    if liquidity_before <= 0:
        raise InvariantViolationError("Cannot remove liquidity from an empty position")
    if delta_liquidity > liquidity_before:
        raise InvariantViolationError(
            f"Liquidity delta {delta_liquidity} exceeds position liquidity {liquidity_before}"
        )
    if delta_liquidity == liquidity_before:
        return cost_basis
    return (cost_basis * delta_liquidity) // liquidity_before


def separate_fees_from_principal(collected0, collected1, uncollected_principal0, uncollected_principal1):
    """Split collected amounts into principal (up to what is outstanding) and fees"""
    for name, value in (("collected0", collected0), ("collected1", collected1),
                        ("uncollected_principal0", uncollected_principal0),
                        ("uncollected_principal1", uncollected_principal1)):
        if value < 0:
            raise InvariantViolationError(f"{name} is negative: {value}")

    principal0 = min(collected0, uncollected_principal0)
    principal1 = min(collected1, uncollected_principal1)
    return {
        "principal_amount0": principal0,
        "principal_amount1": principal1,
        "fee_amount0": collected0 - principal0,
        "fee_amount1": collected1 - principal1,
    }


# ---------------------------------------------------------------------------
# Tick math
# ---------------------------------------------------------------------------

_TICK_RATIOS = (
    (0x2, 0xfff97272373d413259a46990580e213a),
    (0x4, 0xfff2e50f5f656932ef12357cf3c7fdcc),
    (0x8, 0xffe5caca7e10e4e61c3624eaa0941cd0),
    (0x10, 0xffcb9843d60f6159c9db58835c926644),
    (0x20, 0xff973b41fa98c081472e6896dfb254c0),
    (0x40, 0xff2ea16466c96a3843ec78b326b52861),
    (0x80, 0xfe5dee046a99a2a811c461f1969c3053),
    (0x100, 0xfcbe86c7900a88aedcffc83b479aa3a4),
    (0x200, 0xf987a7253ac413176f2b074cf7815e54),
    (0x400, 0xf3392b0822b70005940c7a398e4b70f3),
    (0x800, 0xe7159475a2c29b7443b29c7fa6e889d9),
    (0x1000, 0xd097f3bdfd2022b8845ad8f792aa5825),
    (0x2000, 0xa9f746462d870fdf8a65dc1f90e061e5),
    (0x4000, 0x70d869a156d2a1b890bb3df62baf32f7),
    (0x8000, 0x31be135f97d08fd981231505542fcfa6),
    (0x10000, 0x9aa508b5b7a84e1c677de54f3e99bc9),
    (0x20000, 0x5d6af8dedb81196699c329225ee604),
    (0x40000, 0x2216e584f5fa1ea926041bedfe98),
    (0x80000, 0x48a170391f7dc42444e8fa2),
)


def get_sqrt_ratio_at_tick(tick):
    """sqrt(1.0001^tick) as Q64.96, bit-exact with TickMath.getSqrtRatioAtTick"""
    if tick < MIN_TICK or tick > MAX_TICK:
        raise InvariantViolationError(f"Tick {tick} out of range")
    abs_tick = abs(tick)
    ratio = 0xfffcb933bd6fad37aa2d162d1a594001 if abs_tick & 0x1 else Q128
    for mask, multiplier in _TICK_RATIOS:
        if abs_tick & mask:
            ratio = (ratio * multiplier) >> 128
    if tick > 0:
        ratio = MAX_UINT256 // ratio
    return (ratio >> 32) + (0 if ratio % (1 << 32) == 0 else 1)


def get_amount0_for_liquidity(sqrt_ratio_a, sqrt_ratio_b, liquidity):
    if sqrt_ratio_a > sqrt_ratio_b:
        sqrt_ratio_a, sqrt_ratio_b = sqrt_ratio_b, sqrt_ratio_a
    return ((liquidity << 96) * (sqrt_ratio_b - sqrt_ratio_a) // sqrt_ratio_b) // sqrt_ratio_a


def get_amount1_for_liquidity(sqrt_ratio_a, sqrt_ratio_b, liquidity):
    if sqrt_ratio_a > sqrt_ratio_b:
        sqrt_ratio_a, sqrt_ratio_b = sqrt_ratio_b, sqrt_ratio_a
    return (liquidity * (sqrt_ratio_b - sqrt_ratio_a)) // Q96


def calculate_token_amounts(liquidity, sqrt_price_x96, tick_lower, tick_upper):
    """Token amounts held by liquidity at the given pool price"""
    sqrt_lower = get_sqrt_ratio_at_tick(tick_lower)
    sqrt_upper = get_sqrt_ratio_at_tick(tick_upper)

    if sqrt_price_x96 <= sqrt_lower:
        # All in token0
        return get_amount0_for_liquidity(sqrt_lower, sqrt_upper, liquidity), 0
    if sqrt_price_x96 < sqrt_upper:
        return (
            get_amount0_for_liquidity(sqrt_price_x96, sqrt_upper, liquidity),
            get_amount1_for_liquidity(sqrt_lower, sqrt_price_x96, liquidity),
        )
    # All in token1
    return 0, get_amount1_for_liquidity(sqrt_lower, sqrt_upper, liquidity)


def calculate_position_value(liquidity, sqrt_price_x96, tick_lower, tick_upper,
                             token0_is_quote, token0_decimals, token1_decimals):
    """Concentrated-liquidity position value in quote smallest units"""
    if liquidity == 0:
        return 0
    amount0, amount1 = calculate_token_amounts(liquidity, sqrt_price_x96, tick_lower, tick_upper)
    return calculate_token_value_in_quote(
        amount0, amount1, sqrt_price_x96, token0_is_quote, token0_decimals, token1_decimals
    )


def tick_to_price(tick, token0_is_quote, token0_decimals, token1_decimals):
    """Quote smallest units per one whole base token at a tick"""
    return calculate_pool_price_in_quote(
        get_sqrt_ratio_at_tick(tick), token0_is_quote, token0_decimals, token1_decimals
    )


def calculate_price_range(tick_lower, tick_upper, token0_is_quote, token0_decimals, token1_decimals):
    """(lower, upper) quote prices of the range; ordered low to high"""
    a = tick_to_price(tick_lower, token0_is_quote, token0_decimals, token1_decimals)
    b = tick_to_price(tick_upper, token0_is_quote, token0_decimals, token1_decimals)
    return min(a, b), max(a, b)
