#!/usr/bin/env python3
"""
Ledger Data Types for LP Ledger Sync

RawEvent is what the indexer (or a caller) reports. LedgerEvent is what gets
persisted: a shared envelope (ordering tuple, ids, financial snapshot) plus a
per-type payload (IncreasePayload, DecreasePayload or CollectPayload).
All token amounts, liquidity and quote values are integers in smallest units.

Version: 2.0.0
Developer: 8roku8.hl
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

from constants import (
    RAW_EVENT_TYPES,
    INCREASE_POSITION, DECREASE_POSITION, ZERO_ADDRESS
)


def parse_timestamp(value):
    """ISO string or datetime -> aware UTC datetime"""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_timestamp(value):
    return parse_timestamp(value).isoformat()


@dataclass(frozen=True)
class RawEvent:
    """A position event as reported by the indexer or a caller"""
    event_type: str
    token_id: int
    chain_id: int
    block_number: int
    transaction_index: int
    log_index: int
    transaction_hash: str
    block_timestamp: datetime
    amount0: int = 0
    amount1: int = 0
    liquidity: Optional[int] = None
    recipient: Optional[str] = None

    def __post_init__(self):
        if self.event_type not in RAW_EVENT_TYPES:
            raise ValueError(f"Unknown event type {self.event_type}")

    @property
    def ordering_key(self):
        return (self.block_number, self.transaction_index, self.log_index)


@dataclass(frozen=True)
class LedgerState:
    """Financial state carried from one ledger event to the next"""
    liquidity: int = 0
    cost_basis: int = 0
    pnl: int = 0
    uncollected_principal0: int = 0
    uncollected_principal1: int = 0

    def evolve(self, **changes):
        return replace(self, **changes)


@dataclass(frozen=True)
class CollectReward:
    token_address: str
    token_amount: int
    token_value: int

    def to_dict(self):
        return {
            "tokenAddress": self.token_address,
            "tokenAmount": str(self.token_amount),
            "tokenValue": str(self.token_value),
        }

    @classmethod
    def from_dict(cls, data):
        return cls(data["tokenAddress"], int(data["tokenAmount"]), int(data["tokenValue"]))


@dataclass(frozen=True)
class ProcessorResult:
    """Output of one event processor"""
    state: LedgerState
    delta_liquidity: int
    delta_cost_basis: int
    delta_pnl: int
    token_value: int
    fees_collected0: int = 0
    fees_collected1: int = 0
    rewards: Tuple[CollectReward, ...] = ()


@dataclass(frozen=True)
class IncreasePayload:
    liquidity: int
    amount0: int
    amount1: int

    def to_dict(self):
        return {"liquidity": str(self.liquidity), "amount0": str(self.amount0), "amount1": str(self.amount1)}


@dataclass(frozen=True)
class DecreasePayload:
    liquidity: int
    amount0: int
    amount1: int

    def to_dict(self):
        return {"liquidity": str(self.liquidity), "amount0": str(self.amount0), "amount1": str(self.amount1)}


@dataclass(frozen=True)
class CollectPayload:
    recipient: str
    amount0: int
    amount1: int
    fees_collected0: int
    fees_collected1: int

    def to_dict(self):
        return {
            "recipient": self.recipient,
            "amount0": str(self.amount0),
            "amount1": str(self.amount1),
            "feesCollected0": str(self.fees_collected0),
            "feesCollected1": str(self.fees_collected1),
        }


EventPayload = Union[IncreasePayload, DecreasePayload, CollectPayload]


def payload_from_dict(event_type, data):
    if event_type == INCREASE_POSITION:
        return IncreasePayload(int(data["liquidity"]), int(data["amount0"]), int(data["amount1"]))
    if event_type == DECREASE_POSITION:
        return DecreasePayload(int(data["liquidity"]), int(data["amount0"]), int(data["amount1"]))
    return CollectPayload(
        data.get("recipient") or ZERO_ADDRESS,
        int(data["amount0"]),
        int(data["amount1"]),
        int(data.get("feesCollected0", 0)),
        int(data.get("feesCollected1", 0)),
    )


@dataclass(frozen=True)
class LedgerEvent:
    """One persisted, immutable ledger entry"""
    id: str
    position_id: str
    previous_id: Optional[str]
    event_type: str
    timestamp: datetime
    chain_id: int
    nft_id: int
    block_number: int
    transaction_index: int
    log_index: int
    transaction_hash: str
    pool_price: int
    sqrt_price_x96: int
    token0_amount: int
    token1_amount: int
    token_value: int
    delta_liquidity: int
    liquidity_after: int
    delta_cost_basis: int
    cost_basis_after: int
    delta_pnl: int
    pnl_after: int
    uncollected_principal0_after: int
    uncollected_principal1_after: int
    fee_growth_inside0_last_x128: int
    fee_growth_inside1_last_x128: int
    payload: EventPayload
    rewards: Tuple[CollectReward, ...] = ()

    @property
    def ordering_key(self):
        return (self.block_number, self.transaction_index, self.log_index)

    @property
    def reward_value(self):
        return sum(reward.token_value for reward in self.rewards)

    def to_state(self):
        return LedgerState(
            liquidity=self.liquidity_after,
            cost_basis=self.cost_basis_after,
            pnl=self.pnl_after,
            uncollected_principal0=self.uncollected_principal0_after,
            uncollected_principal1=self.uncollected_principal1_after,
        )


@dataclass(frozen=True)
class PoolMetadata:
    address: str
    chain_id: int
    token0: str
    token1: str
    token0_decimals: int
    token1_decimals: int
    token0_is_quote: bool = False
    fee: int = 0
    token0_symbol: str = ""
    token1_symbol: str = ""

    @property
    def quote_token(self):
        return self.token0 if self.token0_is_quote else self.token1

    @property
    def base_token(self):
        return self.token1 if self.token0_is_quote else self.token0


@dataclass(frozen=True)
class PoolPriceSnapshot:
    """Pool price at one block; checkpoints are the position's at that block"""
    block_number: int
    sqrt_price_x96: int
    tick: int
    fee_growth_inside0_last_x128: int = 0
    fee_growth_inside1_last_x128: int = 0


@dataclass(frozen=True)
class SyncResult:
    events_added: int
    from_block: int
    finalized_block: int
    events: Tuple[LedgerEvent, ...] = field(default=(), repr=False)


__all__ = [
    "RawEvent", "LedgerState", "CollectReward", "ProcessorResult",
    "IncreasePayload", "DecreasePayload", "CollectPayload", "payload_from_dict",
    "LedgerEvent", "PoolMetadata", "PoolPriceSnapshot", "SyncResult",
    "parse_timestamp", "format_timestamp",
]
