#!/usr/bin/env python3
"""
Blockchain Interaction Module for LP Ledger Sync
Web3 reads against one chain: finalized block, historic pool prices,
position records on the NonfungiblePositionManager, pool fee growth and
tick data, and token metadata.

Each BlockchainManager is bound to one chain; services receive a dict of
them keyed by chain id.

Version: 2.0.0
Developer: 8roku8.hl
"""

import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor

from web3 import Web3
from web3.exceptions import BlockNotFound

from config import get_chain_config, get_configured_chain_ids, get_nfpm_address
from constants import POOL_ABI, TOKEN_ABI, POSITION_MANAGER_ABI, FACTORY_ABI, CHAIN_NAMES
from errors import ConfigurationError, PriceUnavailableError
from ledger_types import PoolMetadata, PoolPriceSnapshot
from logger import get_logger


class BlockchainManager:
    """Manages all blockchain interactions for one chain"""

    def __init__(self, chain_id, rpc_url, finality=None, debug_mode=False, rpm_limit=90, w3=None,
                 sleep=time.sleep, clock=time.monotonic):
        self.chain_id = chain_id
        self.rpc_url = rpc_url
        self.finality = finality or {"type": "blockTag"}
        self.debug_mode = debug_mode
        self.log = get_logger(f"Chain:{CHAIN_NAMES.get(chain_id, chain_id)}")
        self.token_cache = {}

        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
        self.position_manager = self.w3.eth.contract(
            address=Web3.to_checksum_address(get_nfpm_address(chain_id)),
            abi=POSITION_MANAGER_ABI
        )

        # Global RPC rate limiter (calls/minute)
        self._rpm_limit = rpm_limit
        self._rpc_call_times = deque()
        self._rpc_lock = threading.Lock()
        self._sleep = sleep
        self._clock = clock

    def _throttle_rpc(self):
        """Sliding-window limiter to keep under the rpm limit. Shared by worker threads."""
        if self._rpm_limit <= 0:
            return
        window = 60.0
        while True:
            with self._rpc_lock:
                now = self._clock()
                while self._rpc_call_times and (now - self._rpc_call_times[0]) > window:
                    self._rpc_call_times.popleft()
                if len(self._rpc_call_times) < self._rpm_limit:
                    self._rpc_call_times.append(now)
                    return
                sleep_for = window - (now - self._rpc_call_times[0]) + 0.05
            self._sleep(max(sleep_for, 0.05))

    def _rl_call(self, fn, *args, **kwargs):
        try:
            self._throttle_rpc()
            return fn(*args, **kwargs)
        except Exception as e:
            if 'rate limited' in str(e).lower():
                self.log.debug("Rate limited, waiting 5 seconds")
                self._sleep(5)
                return fn(*args, **kwargs)
            raise

    def _pool(self, pool_address):
        return self.w3.eth.contract(address=Web3.to_checksum_address(pool_address), abi=POOL_ABI)

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------

    def get_block_number(self):
        return int(self._rl_call(lambda: self.w3.eth.block_number))

    def get_last_finalized_block_number(self):
        """Finalized block per the chain's finality config, or None if unavailable"""
        finality_type = self.finality.get("type")
        if finality_type == "blockTag":
            try:
                block = self._rl_call(self.w3.eth.get_block, "finalized")
            except BlockNotFound:
                self.log.info("Finalized block tag not supported", chain_id=self.chain_id)
                return None
            return int(block["number"])
        if finality_type == "blockHeight":
            latest = self.get_block_number()
            finalized = latest - int(self.finality.get("min_block_height", 0))
            return finalized if finalized >= 0 else None
        self.log.info("No finality configured", chain_id=self.chain_id)
        return None

    # ------------------------------------------------------------------
    # Pool reads
    # ------------------------------------------------------------------

    def discover_pool_price(self, pool_address, block_number, nft_id=None):
        """Pool price at an exact historic block (needs an archive RPC).

        When nft_id is given, the position's fee-growth checkpoints at that
        block are read as well.
        """
        try:
            slot0 = self._rl_call(
                self._pool(pool_address).functions.slot0().call, block_identifier=int(block_number)
            )
            checkpoints = (0, 0)
            if nft_id is not None:
                record = self._rl_call(
                    self.position_manager.functions.positions(int(nft_id)).call,
                    block_identifier=int(block_number)
                )
                checkpoints = (int(record[8]), int(record[9]))
        except Exception as e:
            raise PriceUnavailableError(
                f"Could not read pool {pool_address} at block {block_number} on chain {self.chain_id}: {e}"
            ) from e

        sqrt_price_x96 = int(slot0[0])
        if sqrt_price_x96 == 0:
            raise PriceUnavailableError(f"Pool {pool_address} not initialized at block {block_number}")
        return PoolPriceSnapshot(
            block_number=int(block_number),
            sqrt_price_x96=sqrt_price_x96,
            tick=int(slot0[1]),
            fee_growth_inside0_last_x128=checkpoints[0],
            fee_growth_inside1_last_x128=checkpoints[1],
        )

    def get_pool_state(self, pool_address):
        """Current sqrtPriceX96, tick and global fee growth"""
        pool = self._pool(pool_address)
        slot0 = self._rl_call(pool.functions.slot0().call)
        return {
            "sqrt_price_x96": int(slot0[0]),
            "tick": int(slot0[1]),
            "fee_growth_global0_x128": int(self._rl_call(pool.functions.feeGrowthGlobal0X128().call)),
            "fee_growth_global1_x128": int(self._rl_call(pool.functions.feeGrowthGlobal1X128().call)),
        }

    def get_tick_fee_growth_outside(self, pool_address, tick):
        """(feeGrowthOutside0X128, feeGrowthOutside1X128) recorded at a tick"""
        data = self._rl_call(self._pool(pool_address).functions.ticks(int(tick)).call)
        return int(data[2]), int(data[3])

    def get_token_info(self, token_address):
        token_address = Web3.to_checksum_address(token_address)
        if token_address in self.token_cache:
            return self.token_cache[token_address]

        contract = self.w3.eth.contract(address=token_address, abi=TOKEN_ABI)
        decimals = int(self._rl_call(contract.functions.decimals().call))
        try:
            symbol = self._rl_call(contract.functions.symbol().call)
        except Exception:
            # Some tokens return bytes32 symbols
            symbol = f"TOKEN_{token_address[-6:]}"

        info = {"decimals": decimals, "symbol": symbol}
        self.token_cache[token_address] = info
        return info

    def get_pool_metadata(self, pool_address, token0_is_quote=False):
        pool = self._pool(pool_address)
        token0 = self._rl_call(pool.functions.token0().call)
        token1 = self._rl_call(pool.functions.token1().call)
        fee = int(self._rl_call(pool.functions.fee().call))
        info0 = self.get_token_info(token0)
        info1 = self.get_token_info(token1)
        return PoolMetadata(
            address=Web3.to_checksum_address(pool_address),
            chain_id=self.chain_id,
            token0=Web3.to_checksum_address(token0),
            token1=Web3.to_checksum_address(token1),
            token0_decimals=info0["decimals"],
            token1_decimals=info1["decimals"],
            token0_is_quote=token0_is_quote,
            fee=fee,
            token0_symbol=info0["symbol"],
            token1_symbol=info1["symbol"],
        )

    def get_pool_address(self, token0, token1, fee):
        factory_address = self._rl_call(self.position_manager.functions.factory().call)
        factory = self.w3.eth.contract(address=Web3.to_checksum_address(factory_address), abi=FACTORY_ABI)
        pool_address = self._rl_call(
            factory.functions.getPool(Web3.to_checksum_address(token0), Web3.to_checksum_address(token1), int(fee)).call
        )
        return Web3.to_checksum_address(pool_address)

    # ------------------------------------------------------------------
    # Position reads
    # ------------------------------------------------------------------

    def get_position_record(self, nft_id):
        """Decoded NFPM positions(tokenId) record"""
        data = self._rl_call(self.position_manager.functions.positions(int(nft_id)).call)
        return {
            "token0": data[2],
            "token1": data[3],
            "fee": int(data[4]),
            "tick_lower": int(data[5]),
            "tick_upper": int(data[6]),
            "liquidity": int(data[7]),
            "fee_growth_inside0_last_x128": int(data[8]),
            "fee_growth_inside1_last_x128": int(data[9]),
            "tokens_owed0": int(data[10]),
            "tokens_owed1": int(data[11]),
        }

    def get_owner(self, nft_id):
        return self._rl_call(self.position_manager.functions.ownerOf(int(nft_id)).call)

    def get_position_onchain_state(self, nft_id):
        """positions() and ownerOf() read in parallel"""
        with ThreadPoolExecutor(max_workers=2) as executor:
            record_future = executor.submit(self.get_position_record, nft_id)
            owner_future = executor.submit(self.get_owner, nft_id)
            state = record_future.result()
            state["owner"] = owner_future.result()
        if self.debug_mode:
            self.log.debug("On-chain position state", nft_id=nft_id, liquidity=state["liquidity"],
                           tokens_owed0=state["tokens_owed0"], tokens_owed1=state["tokens_owed1"])
        return state


def build_chain_managers(config, debug_mode=False):
    """One BlockchainManager per configured chain"""
    managers = {}
    rpm_limit = int(config.get("rpc_rate_limit_per_minute", 90))
    for chain_id in get_configured_chain_ids(config):
        chain_config = get_chain_config(config, chain_id)
        managers[chain_id] = BlockchainManager(
            chain_id,
            chain_config["rpc_url"],
            finality=chain_config.get("finality"),
            debug_mode=debug_mode,
            rpm_limit=rpm_limit,
        )
    if not managers:
        raise ConfigurationError("No chain has an RPC URL configured")
    return managers
