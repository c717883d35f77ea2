#!/usr/bin/env python3
"""
Missing-Event Reconciliation Store for LP Ledger Sync

Callers (usually right after sending a transaction) can report position
events the indexer has not picked up yet. They are kept per position, keyed
by ordering tuple, merged into the next sync, and pruned once their block is
final: by then the indexer either has them or the chain never will.

Version: 2.0.0
Developer: 8roku8.hl
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from constants import COLLECT
from errors import InvariantViolationError
from ledger_types import RawEvent, format_timestamp, parse_timestamp
from logger import get_logger

log = get_logger("SyncState")


@dataclass(frozen=True)
class MissingEvent:
    event_type: str
    timestamp: datetime
    block_number: int
    transaction_index: int
    log_index: int
    transaction_hash: str
    amount0: int = 0
    amount1: int = 0
    liquidity: Optional[int] = None
    recipient: Optional[str] = None

    @property
    def ordering_key(self):
        return (self.block_number, self.transaction_index, self.log_index)

    def to_dict(self):
        data = {
            "eventType": self.event_type,
            "timestamp": format_timestamp(self.timestamp),
            "blockNumber": str(self.block_number),
            "transactionIndex": self.transaction_index,
            "logIndex": self.log_index,
            "transactionHash": self.transaction_hash,
            "amount0": str(self.amount0),
            "amount1": str(self.amount1),
        }
        if self.liquidity is not None:
            data["liquidity"] = str(self.liquidity)
        if self.recipient is not None:
            data["recipient"] = self.recipient
        return data

    @classmethod
    def from_dict(cls, data):
        liquidity = data.get("liquidity")
        return cls(
            event_type=data["eventType"],
            timestamp=parse_timestamp(data["timestamp"]),
            block_number=int(data["blockNumber"]),
            transaction_index=int(data["transactionIndex"]),
            log_index=int(data["logIndex"]),
            transaction_hash=data["transactionHash"],
            amount0=int(data.get("amount0", 0)),
            amount1=int(data.get("amount1", 0)),
            liquidity=int(liquidity) if liquidity is not None else None,
            recipient=data.get("recipient"),
        )


class PositionSyncState:
    """Per-position set of caller-reported events awaiting the indexer"""

    def __init__(self, position_id, missing_events=None, last_finalized_block=None):
        self.position_id = position_id
        self._events: Dict[Tuple[int, int, int], MissingEvent] = {}
        self.last_finalized_block = last_finalized_block
        for event in missing_events or []:
            self.add_missing_event(event)

    # ----- persistence ---------------------------------------------------

    @classmethod
    def load(cls, database, position_id):
        """Load from the database, or an empty state if none is stored"""
        raw = database.get_sync_state(position_id)
        if raw is None:
            return cls(position_id)
        return cls.from_json(position_id, raw)

    @classmethod
    def from_json(cls, position_id, raw):
        data = json.loads(raw)
        events = [MissingEvent.from_dict(item) for item in data.get("missingEvents", [])]
        return cls(position_id, events, data.get("lastFinalizedBlock"))

    def to_json(self):
        return json.dumps({
            "missingEvents": [event.to_dict() for event in self.get_missing_events_sorted()],
            "lastFinalizedBlock": self.last_finalized_block,
        })

    def save(self, database):
        database.save_sync_state(self.position_id, self.to_json())

    def delete(self, database):
        database.delete_sync_state(self.position_id)
        self._events.clear()

    # ----- mutation ------------------------------------------------------

    def add_missing_event(self, event):
        """Idempotent upsert keyed by the ordering tuple"""
        self._events[event.ordering_key] = event

    def add_missing_events(self, events):
        for event in events:
            self.add_missing_event(event)

    def remove_missing_event(self, transaction_hash, log_index):
        """Remove by (txHash, logIndex); returns True if something was removed"""
        for key, event in list(self._events.items()):
            if event.transaction_hash.lower() == transaction_hash.lower() and event.log_index == log_index:
                del self._events[key]
                return True
        return False

    def remove_missing_events_by_tx_hash(self, transaction_hash):
        keys = [key for key, event in self._events.items()
                if event.transaction_hash.lower() == transaction_hash.lower()]
        for key in keys:
            del self._events[key]
        return len(keys)

    def clear_missing_events(self):
        self._events.clear()

    def prune_events(self, finalized_block):
        """Drop entries at or below the finalized block; returns how many were dropped"""
        stale = [key for key, event in self._events.items() if event.block_number <= finalized_block]
        for key in stale:
            del self._events[key]
        self.last_finalized_block = finalized_block
        if stale:
            log.debug("Pruned finalized missing events", position_id=self.position_id,
                      pruned=len(stale), finalized_block=finalized_block)
        return len(stale)

    # ----- queries -------------------------------------------------------

    def get_missing_events_sorted(self) -> List[MissingEvent]:
        return [self._events[key] for key in sorted(self._events)]

    def has_missing_events(self):
        return bool(self._events)

    def __len__(self):
        return len(self._events)


# ---------------------------------------------------------------------------
# Reconciliation helpers
# ---------------------------------------------------------------------------

def convert_missing_event_to_raw_event(missing_event, chain_id, nft_id):
    return RawEvent(
        event_type=missing_event.event_type,
        token_id=int(nft_id),
        chain_id=chain_id,
        block_number=missing_event.block_number,
        transaction_index=missing_event.transaction_index,
        log_index=missing_event.log_index,
        transaction_hash=missing_event.transaction_hash,
        block_timestamp=missing_event.timestamp,
        amount0=missing_event.amount0,
        amount1=missing_event.amount1,
        liquidity=missing_event.liquidity,
        recipient=missing_event.recipient,
    )


def raw_event_to_missing_event(raw_event):
    return MissingEvent(
        event_type=raw_event.event_type,
        timestamp=raw_event.block_timestamp,
        block_number=raw_event.block_number,
        transaction_index=raw_event.transaction_index,
        log_index=raw_event.log_index,
        transaction_hash=raw_event.transaction_hash,
        amount0=raw_event.amount0,
        amount1=raw_event.amount1,
        liquidity=raw_event.liquidity,
        recipient=raw_event.recipient,
    )


def validate_missing_event(missing_event, chain_id, nft_id):
    """Reject a reported event that would fail the next sync; returns it as a RawEvent"""
    try:
        raw_event = convert_missing_event_to_raw_event(missing_event, chain_id, nft_id)
    except ValueError as e:
        raise InvariantViolationError(f"Invalid reported event: {e}") from e

    checked = {"block_number": raw_event.block_number, "transaction_index": raw_event.transaction_index,
               "log_index": raw_event.log_index, "amount0": raw_event.amount0, "amount1": raw_event.amount1}
    if raw_event.event_type != COLLECT:
        checked["liquidity"] = raw_event.liquidity
    for name, value in checked.items():
        if value is None or value < 0:
            raise InvariantViolationError(
                f"Reported {raw_event.event_type} at {raw_event.ordering_key} has invalid {name}: {value}"
            )
    if not raw_event.transaction_hash:
        raise InvariantViolationError(f"Reported {raw_event.event_type} has no transaction hash")
    return raw_event


def deduplicate_events(raw_events):
    """Keep the first occurrence of each ordering tuple, in input order"""
    seen = set()
    unique = []
    for event in raw_events:
        if event.ordering_key in seen:
            continue
        seen.add(event.ordering_key)
        unique.append(event)
    return unique


def merge_events(indexer_events, missing_raw_events):
    """Indexer events first (they win on duplicates), deduplicated and sorted.

    A reported event whose (txHash, logIndex) the indexer already returned is
    dropped even if its block or transaction index disagree.
    """
    indexer_events = list(indexer_events)
    indexed = {(event.transaction_hash.lower(), event.log_index) for event in indexer_events}
    pending = [
        event for event in missing_raw_events
        if (event.transaction_hash.lower(), event.log_index) not in indexed
    ]
    merged = deduplicate_events(indexer_events + pending)
    return sorted(merged, key=lambda event: event.ordering_key)


def find_confirmed_missing_events(indexer_events, missing_events):
    """Missing events the indexer now returns, as (txHash, logIndex) pairs"""
    indexed = {(event.transaction_hash.lower(), event.log_index) for event in indexer_events}
    return [
        (event.transaction_hash, event.log_index)
        for event in missing_events
        if (event.transaction_hash.lower(), event.log_index) in indexed
    ]
