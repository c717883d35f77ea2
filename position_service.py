#!/usr/bin/env python3
"""
Position Service Module for LP Ledger Sync
Entry point for tracking and refreshing Uniswap V3 positions.

refresh() walks a short decision chain and stops at the first step that
applies:
  S0  cached row is fresh enough (and the position is not brand new)
  S1  caller-reported events are still pending after pruning -> sync
  S2  on-chain liquidity differs from the ledger tail -> sync
  S3  on-chain liquidity / tokensOwed / checkpoints differ from the stored row -> sync
After that the ledger tail decides liquidity and closure, and every derived
field (value, PnL, fees, price range) is recomputed and written in one update.

Version: 2.0.0
Developer: 8roku8.hl
"""

import time
from concurrent.futures import ThreadPoolExecutor, as_completed

from constants import COLLECT, CACHE_SECONDS, NEW_POSITION_SECONDS
from errors import ConfigurationError, PositionNotFoundError
from logger import get_logger
from sync_state import PositionSyncState, validate_missing_event
from utils import (
    compute_fee_growth_inside, calculate_unclaimed_fees,
    calculate_position_value, calculate_price_range
)

STATE_DIFF_FIELDS = (
    "liquidity", "tokens_owed0", "tokens_owed1",
    "fee_growth_inside0_last_x128", "fee_growth_inside1_last_x128",
)


def get_ledger_summary(events):
    """Cost basis, realized PnL and collected fees from ascending ledger events"""
    if not events:
        return {
            "cost_basis": 0,
            "realized_pnl": 0,
            "collected_fees": 0,
            "last_fees_collected_at": None,
            "position_opened_at": None,
        }

    latest = events[-1]
    collects = [event for event in events if event.event_type == COLLECT]
    return {
        "cost_basis": latest.cost_basis_after,
        "realized_pnl": latest.pnl_after,
        "collected_fees": sum(event.reward_value for event in collects),
        "last_fees_collected_at": collects[-1].timestamp if collects else None,
        "position_opened_at": events[0].timestamp,
    }


def detect_closure(last_event, is_active, closed_at=None):
    """New (is_active, closed_at) given the ledger tail.

    Closed once the tail is a COLLECT that leaves no liquidity and no
    uncollected principal behind. Only a tail with liquidity reopens it.
    """
    if last_event is None:
        return is_active, closed_at
    closed = (
        last_event.liquidity_after == 0
        and last_event.event_type == COLLECT
        and last_event.uncollected_principal0_after == 0
        and last_event.uncollected_principal1_after == 0
    )
    if is_active and closed:
        return False, last_event.timestamp
    if not is_active and last_event.liquidity_after > 0:
        return True, None
    return is_active, closed_at if not is_active else None


class PositionService:
    """Refresh state machine and position lifecycle"""

    def __init__(self, database, ledger_sync, chains, cache_seconds=CACHE_SECONDS,
                 new_position_seconds=NEW_POSITION_SECONDS, clock=time.time, max_workers=4):
        self.database = database
        self.ledger_sync = ledger_sync
        self.chains = chains
        self.cache_seconds = cache_seconds
        self.new_position_seconds = new_position_seconds
        self.clock = clock
        self.max_workers = max_workers
        self.log = get_logger("PositionService")

    def _get_chain(self, chain_id):
        chain = self.chains.get(chain_id)
        if chain is None:
            raise ConfigurationError(f"No chain manager configured for chain {chain_id}")
        return chain

    def _require_position(self, position_id):
        position = self.database.get_position(position_id)
        if position is None:
            raise PositionNotFoundError(position_id)
        return position

    def _require_pool(self, position):
        pool = self.database.get_pool_metadata(position)
        if pool is None:
            raise ConfigurationError(f"Pool {position['pool_address']} of {position['id']} is not stored")
        return pool

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def track_position(self, chain_id, nft_id, quote_token=None):
        """Store a position's config from chain and run its first refresh"""
        chain = self._get_chain(chain_id)
        onchain = chain.get_position_onchain_state(nft_id)
        token0, token1 = onchain["token0"], onchain["token1"]

        if quote_token is None or quote_token.lower() == token1.lower():
            token0_is_quote = False
        elif quote_token.lower() == token0.lower():
            token0_is_quote = True
        else:
            raise ConfigurationError(f"Quote token {quote_token} is not part of position {nft_id}")

        pool_address = chain.get_pool_address(token0, token1, onchain["fee"])
        pool = chain.get_pool_metadata(pool_address, token0_is_quote)
        self.database.upsert_pool(pool)

        position_id = self.database.create_position(
            chain_id, nft_id, pool_address, onchain["tick_lower"], onchain["tick_upper"],
            token0_is_quote, owner=onchain["owner"], now=self.clock()
        )
        self.log.info("Tracking position", position_id=position_id, pool=pool_address,
                      quote=pool.quote_token)
        return self.refresh(position_id, force=True)

    def report_missing_event(self, position_id, missing_event):
        """Record an event the indexer has not returned yet; the next refresh syncs it"""
        position = self._require_position(position_id)
        validate_missing_event(missing_event, position["chain_id"], position["nft_id"])
        sync_state = PositionSyncState.load(self.database, position_id)
        sync_state.add_missing_event(missing_event)
        sync_state.save(self.database)
        self.log.info("Missing event reported", position_id=position_id,
                      event_type=missing_event.event_type, block=missing_event.block_number,
                      tx=missing_event.transaction_hash, pending=len(sync_state))
        return sync_state

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def is_cache_valid(self, position, now):
        fresh = now - position["updated_at"] < self.cache_seconds
        settled = now - position["created_at"] >= self.new_position_seconds
        return fresh and settled

    def _sync_reason(self, position, chain, onchain):
        """Name of the first rule that calls for a sync, or None"""
        position_id = position["id"]

        finalized_block = chain.get_last_finalized_block_number()
        sync_state = PositionSyncState.load(self.database, position_id)
        if finalized_block is None:
            self.log.warning("Finalized block unavailable, missing events not pruned",
                             position_id=position_id)
        else:
            sync_state.prune_events(finalized_block)
            sync_state.save(self.database)
        if sync_state.has_missing_events():
            return "missing_events"

        last_event = self.database.get_last_ledger_event(position_id)
        ledger_liquidity = last_event.liquidity_after if last_event is not None else 0
        if ledger_liquidity != onchain["liquidity"]:
            return "liquidity_mismatch"

        for key in STATE_DIFF_FIELDS:
            if position[key] != onchain[key]:
                return "state_diff"
        return None

    def refresh(self, position_id, force=False):
        """Bring a position up to date; returns the stored row"""
        position = self._require_position(position_id)
        if not force and self.is_cache_valid(position, self.clock()):
            self.log.debug("Cache hit", position_id=position_id)
            return position

        chain_id, nft_id = position["chain_id"], position["nft_id"]
        chain = self._get_chain(chain_id)
        pool = self._require_pool(position)
        onchain = chain.get_position_onchain_state(nft_id)

        reason = self._sync_reason(position, chain, onchain)
        if reason is not None:
            self.log.info("Syncing ledger", position_id=position_id, reason=reason)
            self.ledger_sync.sync_ledger_events(position_id, chain_id, nft_id)

        last_event = self.database.get_last_ledger_event(position_id)
        checkpoints = onchain
        if reason is not None and last_event is not None and last_event.event_type == COLLECT:
            # collect() moves the on-chain checkpoints
            checkpoints = chain.get_position_record(nft_id)

        liquidity = last_event.liquidity_after if last_event is not None else onchain["liquidity"]
        if liquidity != onchain["liquidity"]:
            self.log.warning("Ledger liquidity differs from chain after sync", position_id=position_id,
                             ledger=liquidity, onchain=onchain["liquidity"])

        state = {
            "owner": onchain["owner"],
            "liquidity": liquidity,
            "fee_growth_inside0_last_x128": checkpoints["fee_growth_inside0_last_x128"],
            "fee_growth_inside1_last_x128": checkpoints["fee_growth_inside1_last_x128"],
            "tokens_owed0": checkpoints["tokens_owed0"],
            "tokens_owed1": checkpoints["tokens_owed1"],
        }
        aggregates = self.calculate_aggregates(position, pool, chain, state, last_event)
        state["unclaimed_fees0"] = aggregates.pop("unclaimed_fees0")
        state["unclaimed_fees1"] = aggregates.pop("unclaimed_fees1")

        self.database.update_position(position_id, state=state, aggregates=aggregates,
                                      updated_at=self.clock())
        if aggregates["is_active"] != position["is_active"]:
            self.log.info("Position closed" if not aggregates["is_active"] else "Position reopened",
                          position_id=position_id)
        return self.database.get_position(position_id)

    def calculate_aggregates(self, position, pool, chain, state, last_event):
        """Every derived field of a position, computed from ledger and pool state"""
        liquidity = state["liquidity"]
        pool_state = chain.get_pool_state(pool.address)
        sqrt_price_x96 = pool_state["sqrt_price_x96"]
        decimals = (pool.token0_decimals, pool.token1_decimals)

        current_value = calculate_position_value(
            liquidity, sqrt_price_x96, position["tick_lower"], position["tick_upper"],
            pool.token0_is_quote, *decimals
        )

        fees = {"unclaimed_fees0": 0, "unclaimed_fees1": 0, "unclaimed_fees_value": 0}
        if liquidity > 0:
            lower0, lower1 = chain.get_tick_fee_growth_outside(pool.address, position["tick_lower"])
            upper0, upper1 = chain.get_tick_fee_growth_outside(pool.address, position["tick_upper"])
            inside0, inside1 = compute_fee_growth_inside(
                pool_state["tick"], position["tick_lower"], position["tick_upper"],
                pool_state["fee_growth_global0_x128"], pool_state["fee_growth_global1_x128"],
                lower0, lower1, upper0, upper1
            )
            fees = calculate_unclaimed_fees(
                liquidity, inside0, inside1,
                state["fee_growth_inside0_last_x128"], state["fee_growth_inside1_last_x128"],
                state["tokens_owed0"], state["tokens_owed1"],
                last_event.uncollected_principal0_after if last_event else 0,
                last_event.uncollected_principal1_after if last_event else 0,
                sqrt_price_x96, pool.token0_is_quote, *decimals
            )

        price_lower, price_upper = calculate_price_range(
            position["tick_lower"], position["tick_upper"], pool.token0_is_quote, *decimals
        )
        summary = get_ledger_summary(self.database.get_ledger_events(position["id"], descending=False))
        is_active, closed_at = detect_closure(
            last_event, position["is_active"], position["position_closed_at"]
        )

        return {
            "current_value": current_value,
            "cost_basis": summary["cost_basis"],
            "realized_pnl": summary["realized_pnl"],
            "unrealized_pnl": current_value - summary["cost_basis"],
            "collected_fees": summary["collected_fees"],
            "last_fees_collected_at": summary["last_fees_collected_at"],
            "unclaimed_fees": fees["unclaimed_fees_value"],
            "unclaimed_fees0": fees["unclaimed_fees0"],
            "unclaimed_fees1": fees["unclaimed_fees1"],
            "price_range_lower": price_lower,
            "price_range_upper": price_upper,
            "is_active": is_active,
            "position_opened_at": summary["position_opened_at"],
            "position_closed_at": closed_at,
        }

    def reset(self, position_id):
        """Rebuild the whole ledger from the deployment block, then refresh"""
        position = self._require_position(position_id)
        self.log.info("Resetting position ledger", position_id=position_id)
        self.ledger_sync.sync_ledger_events(
            position_id, position["chain_id"], position["nft_id"], force_full_resync=True
        )
        return self.refresh(position_id, force=True)

    def refresh_positions(self, position_ids=None, force=False):
        """Refresh many positions concurrently.

        Returns (refreshed, failures): position rows and exceptions keyed by
        position id.
        """
        if position_ids is None:
            position_ids = [position["id"] for position in self.database.get_all_positions()]

        refreshed, failures = {}, {}
        if not position_ids:
            return refreshed, failures

        max_workers = min(self.max_workers, len(position_ids))
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {executor.submit(self.refresh, pid, force): pid for pid in position_ids}
            for future in as_completed(futures):
                position_id = futures[future]
                try:
                    refreshed[position_id] = future.result()
                except Exception as e:
                    self.log.error("Refresh failed", position_id=position_id, error=e)
                    failures[position_id] = e
        return refreshed, failures
