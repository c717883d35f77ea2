"""
In-memory fakes and event factories for the ledger tests.

Pools use sqrtPriceX96 = 2**96 and zero decimals, so one base unit is worth
exactly one quote unit and values are simply amount0 + amount1.
"""

from datetime import datetime, timedelta, timezone

from constants import Q96, INCREASE_LIQUIDITY, DECREASE_LIQUIDITY, COLLECT
from errors import PriceUnavailableError
from ledger_types import PoolMetadata, PoolPriceSnapshot, RawEvent

CHAIN_ID = 1
NFT_ID = 4242
POOL_ADDRESS = "0x00000000000000000000000000000000000000aa"
TOKEN0 = "0x0000000000000000000000000000000000000001"
TOKEN1 = "0x0000000000000000000000000000000000000002"
OWNER = "0x00000000000000000000000000000000000000bb"
BASE_BLOCK = 20_000_000
BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def block_time(block_number):
    return BASE_TIME + timedelta(hours=block_number - BASE_BLOCK)


def make_raw_event(event_type, block_number, transaction_index=0, log_index=0, amount0=0, amount1=0,
                   liquidity=None, token_id=NFT_ID, tx_hash=None, recipient=None):
    if event_type != COLLECT and liquidity is None:
        liquidity = 0
    if event_type == COLLECT and recipient is None:
        recipient = OWNER
    return RawEvent(
        event_type=event_type,
        token_id=token_id,
        chain_id=CHAIN_ID,
        block_number=block_number,
        transaction_index=transaction_index,
        log_index=log_index,
        transaction_hash=tx_hash or f"0x{block_number:x}{transaction_index:02x}{log_index:02x}",
        block_timestamp=block_time(block_number),
        amount0=amount0,
        amount1=amount1,
        liquidity=liquidity,
        recipient=recipient,
    )


def increase(block_number, liquidity, amount0=0, amount1=0, **kwargs):
    return make_raw_event(INCREASE_LIQUIDITY, block_number, amount0=amount0, amount1=amount1,
                          liquidity=liquidity, **kwargs)


def decrease(block_number, liquidity, amount0=0, amount1=0, **kwargs):
    return make_raw_event(DECREASE_LIQUIDITY, block_number, amount0=amount0, amount1=amount1,
                          liquidity=liquidity, **kwargs)


def collect(block_number, amount0=0, amount1=0, **kwargs):
    return make_raw_event(COLLECT, block_number, amount0=amount0, amount1=amount1, **kwargs)


class FakeIndexer:
    """Returns its events that fall inside the requested block range"""

    def __init__(self, events=None):
        self.events = list(events or [])
        self.calls = []
        self.error = None

    def fetch_position_events(self, chain_id, nft_id, from_block, to_block):
        self.calls.append((chain_id, nft_id, from_block, to_block))
        if self.error is not None:
            raise self.error
        selected = [e for e in self.events
                    if e.token_id == nft_id and from_block <= e.block_number <= to_block]
        return sorted(selected, key=lambda e: e.ordering_key)


class FakeChain:
    """Chain reads backed by plain attributes"""

    def __init__(self, chain_id=CHAIN_ID, finalized_block=BASE_BLOCK + 100):
        self.chain_id = chain_id
        self.finalized_block = finalized_block
        self.sqrt_price_x96 = Q96
        self.failing_blocks = set()
        self.price_calls = []
        self.record = {
            "token0": TOKEN0,
            "token1": TOKEN1,
            "fee": 3000,
            "tick_lower": -600,
            "tick_upper": 600,
            "liquidity": 0,
            "fee_growth_inside0_last_x128": 0,
            "fee_growth_inside1_last_x128": 0,
            "tokens_owed0": 0,
            "tokens_owed1": 0,
        }
        self.owner = OWNER
        self.pool_state = {
            "sqrt_price_x96": Q96,
            "tick": 0,
            "fee_growth_global0_x128": 0,
            "fee_growth_global1_x128": 0,
        }
        self.tick_outside = {}
        self.record_reads = 0

    def get_last_finalized_block_number(self):
        return self.finalized_block

    def discover_pool_price(self, pool_address, block_number, nft_id=None):
        self.price_calls.append(block_number)
        if block_number in self.failing_blocks:
            raise PriceUnavailableError(f"no price at {block_number}")
        return PoolPriceSnapshot(block_number=block_number, sqrt_price_x96=self.sqrt_price_x96, tick=0)

    def get_position_record(self, nft_id):
        self.record_reads += 1
        return dict(self.record)

    def get_owner(self, nft_id):
        return self.owner

    def get_position_onchain_state(self, nft_id):
        state = self.get_position_record(nft_id)
        state["owner"] = self.get_owner(nft_id)
        return state

    def get_pool_state(self, pool_address):
        return dict(self.pool_state)

    def get_tick_fee_growth_outside(self, pool_address, tick):
        return self.tick_outside.get(tick, (0, 0))

    def get_pool_address(self, token0, token1, fee):
        return POOL_ADDRESS

    def get_pool_metadata(self, pool_address, token0_is_quote=False):
        return make_pool(token0_is_quote=token0_is_quote)


class FakeAprService:
    def __init__(self, error=None):
        self.error = error
        self.refreshed = []

    def refresh(self, position_id):
        self.refreshed.append(position_id)
        if self.error is not None:
            raise self.error
        return []


def make_pool(token0_is_quote=False, decimals0=0, decimals1=0):
    return PoolMetadata(
        address=POOL_ADDRESS,
        chain_id=CHAIN_ID,
        token0=TOKEN0,
        token1=TOKEN1,
        token0_decimals=decimals0,
        token1_decimals=decimals1,
        token0_is_quote=token0_is_quote,
        fee=3000,
        token0_symbol="WETH",
        token1_symbol="USDC",
    )
