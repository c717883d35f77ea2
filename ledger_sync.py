#!/usr/bin/env python3
"""
Ledger Sync Module for LP Ledger Sync
Rebuilds the tail of a position's ledger from the event indexer.

A sync never looks past the chain's finalized block. It deletes every ledger
event from fromBlock onwards, refetches that range, merges in the events
callers reported but the indexer has not returned yet, and rebuilds the range
event by event. Each record is persisted as soon as it is built, so a failure
mid-batch leaves the ledger at the last good event and the next sync resumes
from there.

Syncs of the same position are serialized with a per-position lock; syncs of
different positions run independently.

Version: 2.0.0
Developer: 8roku8.hl
"""

import threading
import weakref

from config import get_nfpm_deployment_block
from errors import ConfigurationError, FinalizedBlockUnavailableError, PositionNotFoundError
from event_builder import iter_ledger_events
from ledger_types import SyncResult
from logger import get_logger
from sync_state import (
    PositionSyncState, convert_missing_event_to_raw_event,
    merge_events, find_confirmed_missing_events
)


class LedgerSyncManager:
    """Sync orchestrator for position ledgers"""

    def __init__(self, database, indexer, chains, apr_service=None):
        self.database = database
        self.indexer = indexer
        self.chains = chains
        self.apr_service = apr_service
        self.log = get_logger("LedgerSync")

        # entries vanish once no sync holds the lock
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _position_lock(self, position_id):
        with self._locks_guard:
            lock = self._locks.get(position_id)
            if lock is None:
                lock = self._locks[position_id] = threading.Lock()
            return lock

    def _get_chain(self, chain_id):
        chain = self.chains.get(chain_id)
        if chain is None:
            raise ConfigurationError(f"No chain manager configured for chain {chain_id}")
        return chain

    def _load_pool(self, position_id):
        position = self.database.get_position(position_id)
        if position is None:
            raise PositionNotFoundError(position_id)
        pool = self.database.get_pool_metadata(position)
        if pool is None:
            raise ConfigurationError(f"Pool {position['pool_address']} of {position_id} is not stored")
        return pool

    def compute_from_block(self, position_id, chain_id, finalized_block, force_full_resync=False):
        deployment_block = get_nfpm_deployment_block(chain_id)
        if force_full_resync:
            return deployment_block
        last_event = self.database.get_last_ledger_event(position_id)
        last_block = last_event.block_number if last_event is not None else deployment_block
        return min(last_block, finalized_block)

    def sync_ledger_events(self, position_id, chain_id, nft_id, force_full_resync=False):
        """Sync one position's ledger up to the finalized block; returns a SyncResult"""
        with self._position_lock(position_id):
            try:
                result = self._sync(position_id, chain_id, int(nft_id), force_full_resync)
            except Exception as e:
                self.log.error("Ledger sync failed", position_id=position_id, error=e)
                raise

        self._refresh_apr(position_id)
        return result

    def _sync(self, position_id, chain_id, nft_id, force_full_resync):
        chain = self._get_chain(chain_id)
        pool = self._load_pool(position_id)
        self.log.info("Starting ledger sync", position_id=position_id, chain_id=chain_id,
                      nft_id=nft_id, full_resync=force_full_resync)

        finalized_block = chain.get_last_finalized_block_number()
        if finalized_block is None:
            raise FinalizedBlockUnavailableError(chain_id)
        from_block = self.compute_from_block(position_id, chain_id, finalized_block, force_full_resync)
        self.log.debug("Sync range", position_id=position_id, from_block=from_block,
                       finalized_block=finalized_block)

        deleted = self.database.delete_ledger_events_from_block(position_id, from_block)
        self.log.debug("Deleted ledger tail", position_id=position_id, deleted=deleted)

        indexer_events = self.indexer.fetch_position_events(chain_id, nft_id, from_block, finalized_block)
        self.log.debug("Fetched indexer events", position_id=position_id, fetched=len(indexer_events))

        sync_state = PositionSyncState.load(self.database, position_id)
        pending = [event for event in sync_state.get_missing_events_sorted()
                   if event.block_number >= from_block]
        raw_events = merge_events(
            indexer_events,
            [convert_missing_event_to_raw_event(event, chain_id, nft_id) for event in pending],
        )

        # Several events can share a block
        snapshots = {}

        def resolve_price(raw_event):
            snapshot = snapshots.get(raw_event.block_number)
            if snapshot is None:
                snapshot = chain.discover_pool_price(pool.address, raw_event.block_number, nft_id)
                snapshots[raw_event.block_number] = snapshot
            return snapshot

        last_event = self.database.get_last_ledger_event(position_id)
        added = []
        for event in iter_ledger_events(raw_events, last_event, position_id, nft_id, pool, resolve_price):
            if self.database.add_ledger_event(event):
                added.append(event)

        for transaction_hash, log_index in find_confirmed_missing_events(indexer_events, pending):
            sync_state.remove_missing_event(transaction_hash, log_index)
        sync_state.prune_events(finalized_block)
        sync_state.save(self.database)

        self.log.info("Ledger sync complete", position_id=position_id, from_block=from_block,
                      finalized_block=finalized_block, deleted=deleted,
                      fetched=len(indexer_events), added=len(added))
        return SyncResult(
            events_added=len(added),
            from_block=from_block,
            finalized_block=finalized_block,
            events=tuple(added),
        )

    def _refresh_apr(self, position_id):
        if self.apr_service is None:
            return
        try:
            self.apr_service.refresh(position_id)
        except Exception as e:
            self.log.warning("APR refresh failed", position_id=position_id, error=e)
