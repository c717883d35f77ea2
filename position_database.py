#!/usr/bin/env python3
"""
Position Database Module for LP Ledger Sync
sqlite3 storage for pools, positions, ledger events, sync states and APR periods

Big integers (liquidity, X128 accumulators, token amounts, quote values) are
stored as TEXT and converted back to int on read.

Version: 2.0.0
Developer: 8roku8.hl
"""

import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Dict, List, Optional

from ledger_types import (
    CollectReward, LedgerEvent, PoolMetadata, payload_from_dict,
    format_timestamp, parse_timestamp
)

POSITION_INT_FIELDS = (
    "nft_id", "liquidity", "fee_growth_inside0_last_x128", "fee_growth_inside1_last_x128",
    "tokens_owed0", "tokens_owed1", "unclaimed_fees0", "unclaimed_fees1",
    "current_value", "cost_basis", "realized_pnl", "unrealized_pnl",
    "collected_fees", "unclaimed_fees", "price_range_lower", "price_range_upper",
)

POSITION_STATE_FIELDS = (
    "owner", "liquidity", "fee_growth_inside0_last_x128", "fee_growth_inside1_last_x128",
    "tokens_owed0", "tokens_owed1", "unclaimed_fees0", "unclaimed_fees1",
)

POSITION_AGGREGATE_FIELDS = (
    "current_value", "cost_basis", "realized_pnl", "unrealized_pnl", "collected_fees",
    "unclaimed_fees", "last_fees_collected_at", "price_range_lower", "price_range_upper",
    "is_active", "position_opened_at", "position_closed_at",
)

LEDGER_INT_FIELDS = (
    "pool_price", "sqrt_price_x96", "token0_amount", "token1_amount", "token_value",
    "delta_liquidity", "liquidity_after", "delta_cost_basis", "cost_basis_after",
    "delta_pnl", "pnl_after", "uncollected_principal0_after", "uncollected_principal1_after",
    "fee_growth_inside0_last_x128", "fee_growth_inside1_last_x128",
)


def make_position_id(chain_id, nft_id):
    return f"uniswapv3-{chain_id}-{nft_id}"


class PositionDatabase:
    """Persistence for positions and their ledgers"""

    def __init__(self, db_path="lp_ledger.db"):
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self._lock = threading.RLock()
        self.create_tables()

    def close(self):
        with self._lock:
            self.conn.close()

    @contextmanager
    def transaction(self):
        """Commit on success, roll back on any error"""
        with self._lock:
            try:
                yield self.conn
                self.conn.commit()
            except BaseException:
                self.conn.rollback()
                raise

    def create_tables(self):
        """Create database tables"""
        with self.transaction() as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS pools (
                    chain_id INTEGER NOT NULL,
                    address TEXT NOT NULL,
                    token0 TEXT NOT NULL,
                    token1 TEXT NOT NULL,
                    token0_decimals INTEGER NOT NULL,
                    token1_decimals INTEGER NOT NULL,
                    token0_symbol TEXT DEFAULT '',
                    token1_symbol TEXT DEFAULT '',
                    fee INTEGER DEFAULT 0,
                    PRIMARY KEY (chain_id, address)
                )
            ''')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS positions (
                    id TEXT PRIMARY KEY,

                    -- Immutable config
                    chain_id INTEGER NOT NULL,
                    nft_id TEXT NOT NULL,
                    pool_address TEXT NOT NULL,
                    tick_lower INTEGER NOT NULL,
                    tick_upper INTEGER NOT NULL,
                    token0_is_quote BOOLEAN NOT NULL,

                    -- On-chain state
                    owner TEXT DEFAULT '',
                    liquidity TEXT DEFAULT '0',
                    fee_growth_inside0_last_x128 TEXT DEFAULT '0',
                    fee_growth_inside1_last_x128 TEXT DEFAULT '0',
                    tokens_owed0 TEXT DEFAULT '0',
                    tokens_owed1 TEXT DEFAULT '0',
                    unclaimed_fees0 TEXT DEFAULT '0',
                    unclaimed_fees1 TEXT DEFAULT '0',

                    -- Derived aggregates (quote token smallest units)
                    current_value TEXT DEFAULT '0',
                    cost_basis TEXT DEFAULT '0',
                    realized_pnl TEXT DEFAULT '0',
                    unrealized_pnl TEXT DEFAULT '0',
                    collected_fees TEXT DEFAULT '0',
                    unclaimed_fees TEXT DEFAULT '0',
                    last_fees_collected_at TEXT,
                    price_range_lower TEXT DEFAULT '0',
                    price_range_upper TEXT DEFAULT '0',
                    is_active BOOLEAN DEFAULT 1,
                    position_opened_at TEXT,
                    position_closed_at TEXT,

                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    UNIQUE(chain_id, nft_id)
                )
            ''')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS ledger_events (
                    position_id TEXT NOT NULL,
                    id TEXT NOT NULL,
                    previous_id TEXT,
                    event_type TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    chain_id INTEGER NOT NULL,
                    nft_id TEXT NOT NULL,

                    -- Ordering tuple
                    block_number INTEGER NOT NULL,
                    transaction_index INTEGER NOT NULL,
                    log_index INTEGER NOT NULL,
                    transaction_hash TEXT NOT NULL,

                    -- Financial snapshot
                    pool_price TEXT NOT NULL,
                    sqrt_price_x96 TEXT NOT NULL,
                    token0_amount TEXT NOT NULL,
                    token1_amount TEXT NOT NULL,
                    token_value TEXT NOT NULL,
                    delta_liquidity TEXT NOT NULL,
                    liquidity_after TEXT NOT NULL,
                    delta_cost_basis TEXT NOT NULL,
                    cost_basis_after TEXT NOT NULL,
                    delta_pnl TEXT NOT NULL,
                    pnl_after TEXT NOT NULL,
                    uncollected_principal0_after TEXT NOT NULL,
                    uncollected_principal1_after TEXT NOT NULL,
                    fee_growth_inside0_last_x128 TEXT NOT NULL,
                    fee_growth_inside1_last_x128 TEXT NOT NULL,

                    payload TEXT NOT NULL,
                    rewards TEXT NOT NULL,

                    PRIMARY KEY (position_id, id)
                )
            ''')
            conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_ledger_events_order
                ON ledger_events (position_id, block_number, transaction_index, log_index)
            ''')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS position_sync_states (
                    position_id TEXT PRIMARY KEY,
                    state TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
            ''')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS apr_periods (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    position_id TEXT NOT NULL,
                    start_event_id TEXT NOT NULL,
                    end_event_id TEXT NOT NULL,
                    start_timestamp TEXT NOT NULL,
                    end_timestamp TEXT NOT NULL,
                    duration_seconds INTEGER NOT NULL,
                    cost_basis TEXT NOT NULL,
                    collected_fee_value TEXT NOT NULL,
                    apr_bps INTEGER NOT NULL,
                    event_count INTEGER NOT NULL
                )
            ''')

    # ------------------------------------------------------------------
    # Pools
    # ------------------------------------------------------------------

    def upsert_pool(self, pool: PoolMetadata):
        with self.transaction() as conn:
            conn.execute('''
                INSERT OR REPLACE INTO pools (
                    chain_id, address, token0, token1, token0_decimals, token1_decimals,
                    token0_symbol, token1_symbol, fee
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                pool.chain_id, pool.address.lower(), pool.token0, pool.token1,
                pool.token0_decimals, pool.token1_decimals,
                pool.token0_symbol, pool.token1_symbol, pool.fee
            ))

    def get_pool_row(self, chain_id, address) -> Optional[Dict]:
        with self._lock:
            row = self.conn.execute(
                'SELECT * FROM pools WHERE chain_id = ? AND address = ?',
                (chain_id, address.lower())
            ).fetchone()
        return dict(row) if row else None

    def get_pool_metadata(self, position) -> Optional[PoolMetadata]:
        """Pool metadata with the position's quote-token choice applied"""
        row = self.get_pool_row(position["chain_id"], position["pool_address"])
        if row is None:
            return None
        return PoolMetadata(
            address=row["address"],
            chain_id=row["chain_id"],
            token0=row["token0"],
            token1=row["token1"],
            token0_decimals=row["token0_decimals"],
            token1_decimals=row["token1_decimals"],
            token0_is_quote=bool(position["token0_is_quote"]),
            fee=row["fee"],
            token0_symbol=row["token0_symbol"],
            token1_symbol=row["token1_symbol"],
        )

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def create_position(self, chain_id, nft_id, pool_address, tick_lower, tick_upper,
                        token0_is_quote, owner="", now=None):
        """Insert the write-once position config; returns the position id.

        Creating an already known position is a no-op.
        """
        position_id = make_position_id(chain_id, nft_id)
        now = time.time() if now is None else now
        with self.transaction() as conn:
            conn.execute('''
                INSERT OR IGNORE INTO positions (
                    id, chain_id, nft_id, pool_address, tick_lower, tick_upper,
                    token0_is_quote, owner, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                position_id, chain_id, str(nft_id), pool_address.lower(),
                tick_lower, tick_upper, bool(token0_is_quote), owner, now, now
            ))
        return position_id

    def get_position(self, position_id) -> Optional[Dict]:
        with self._lock:
            row = self.conn.execute('SELECT * FROM positions WHERE id = ?', (position_id,)).fetchone()
        return self._position_from_row(row) if row else None

    def get_all_positions(self, active_only=False) -> List[Dict]:
        query = 'SELECT * FROM positions'
        if active_only:
            query += ' WHERE is_active = 1'
        query += ' ORDER BY chain_id, CAST(nft_id AS INTEGER)'
        with self._lock:
            rows = self.conn.execute(query).fetchall()
        return [self._position_from_row(row) for row in rows]

    def update_position(self, position_id, state=None, aggregates=None, updated_at=None):
        """Write state and aggregates in a single statement"""
        values = {}
        for key, value in (state or {}).items():
            if key not in POSITION_STATE_FIELDS:
                raise KeyError(f"Not a position state field: {key}")
            values[key] = value
        for key, value in (aggregates or {}).items():
            if key not in POSITION_AGGREGATE_FIELDS:
                raise KeyError(f"Not a position aggregate field: {key}")
            values[key] = value
        values["updated_at"] = time.time() if updated_at is None else updated_at

        columns = ", ".join(f"{key} = ?" for key in values)
        params = [self._to_db(key, value) for key, value in values.items()]
        with self.transaction() as conn:
            conn.execute(f'UPDATE positions SET {columns} WHERE id = ?', params + [position_id])

    def delete_position(self, position_id):
        with self.transaction() as conn:
            conn.execute('DELETE FROM ledger_events WHERE position_id = ?', (position_id,))
            conn.execute('DELETE FROM position_sync_states WHERE position_id = ?', (position_id,))
            conn.execute('DELETE FROM apr_periods WHERE position_id = ?', (position_id,))
            conn.execute('DELETE FROM positions WHERE id = ?', (position_id,))

    @staticmethod
    def _to_db(key, value):
        if value is None:
            return None
        if key in POSITION_INT_FIELDS:
            return str(int(value))
        if key in ("last_fees_collected_at", "position_opened_at", "position_closed_at"):
            return format_timestamp(value)
        if key == "is_active":
            return bool(value)
        return value

    @staticmethod
    def _position_from_row(row):
        position = dict(row)
        for key in POSITION_INT_FIELDS:
            if position.get(key) is not None:
                position[key] = int(position[key])
        for key in ("last_fees_collected_at", "position_opened_at", "position_closed_at"):
            if position.get(key):
                position[key] = parse_timestamp(position[key])
        position["is_active"] = bool(position["is_active"])
        position["token0_is_quote"] = bool(position["token0_is_quote"])
        return position

    # ------------------------------------------------------------------
    # Ledger events
    # ------------------------------------------------------------------

    def add_ledger_event(self, event: LedgerEvent):
        """Append one event; re-inserting the same id is a no-op. Returns True if inserted."""
        with self.transaction() as conn:
            cursor = conn.execute('''
                INSERT OR IGNORE INTO ledger_events (
                    position_id, id, previous_id, event_type, timestamp, chain_id, nft_id,
                    block_number, transaction_index, log_index, transaction_hash,
                    pool_price, sqrt_price_x96, token0_amount, token1_amount, token_value,
                    delta_liquidity, liquidity_after, delta_cost_basis, cost_basis_after,
                    delta_pnl, pnl_after, uncollected_principal0_after, uncollected_principal1_after,
                    fee_growth_inside0_last_x128, fee_growth_inside1_last_x128,
                    payload, rewards
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                event.position_id, event.id, event.previous_id, event.event_type,
                format_timestamp(event.timestamp), event.chain_id, str(event.nft_id),
                event.block_number, event.transaction_index, event.log_index, event.transaction_hash,
                *[str(getattr(event, key)) for key in LEDGER_INT_FIELDS],
                json.dumps(event.payload.to_dict()),
                json.dumps([reward.to_dict() for reward in event.rewards]),
            ))
            return cursor.rowcount == 1

    def delete_ledger_events_from_block(self, position_id, from_block):
        """Delete every event with block_number >= from_block; returns the count"""
        with self.transaction() as conn:
            cursor = conn.execute(
                'DELETE FROM ledger_events WHERE position_id = ? AND block_number >= ?',
                (position_id, from_block)
            )
            return cursor.rowcount

    def get_last_ledger_event(self, position_id) -> Optional[LedgerEvent]:
        with self._lock:
            row = self.conn.execute('''
                SELECT * FROM ledger_events WHERE position_id = ?
                ORDER BY block_number DESC, transaction_index DESC, log_index DESC
                LIMIT 1
            ''', (position_id,)).fetchone()
        return self._event_from_row(row) if row else None

    def get_ledger_events(self, position_id, descending=True) -> List[LedgerEvent]:
        """All events of a position, newest first by default"""
        order = "DESC" if descending else "ASC"
        with self._lock:
            rows = self.conn.execute(f'''
                SELECT * FROM ledger_events WHERE position_id = ?
                ORDER BY block_number {order}, transaction_index {order}, log_index {order}
            ''', (position_id,)).fetchall()
        return [self._event_from_row(row) for row in rows]

    def count_ledger_events(self, position_id):
        with self._lock:
            return self.conn.execute(
                'SELECT COUNT(*) FROM ledger_events WHERE position_id = ?', (position_id,)
            ).fetchone()[0]

    @staticmethod
    def _event_from_row(row):
        data = dict(row)
        return LedgerEvent(
            id=data["id"],
            position_id=data["position_id"],
            previous_id=data["previous_id"],
            event_type=data["event_type"],
            timestamp=parse_timestamp(data["timestamp"]),
            chain_id=data["chain_id"],
            nft_id=int(data["nft_id"]),
            block_number=data["block_number"],
            transaction_index=data["transaction_index"],
            log_index=data["log_index"],
            transaction_hash=data["transaction_hash"],
            payload=payload_from_dict(data["event_type"], json.loads(data["payload"])),
            rewards=tuple(CollectReward.from_dict(item) for item in json.loads(data["rewards"])),
            **{key: int(data[key]) for key in LEDGER_INT_FIELDS},
        )

    # ------------------------------------------------------------------
    # Sync states
    # ------------------------------------------------------------------

    def get_sync_state(self, position_id) -> Optional[str]:
        with self._lock:
            row = self.conn.execute(
                'SELECT state FROM position_sync_states WHERE position_id = ?', (position_id,)
            ).fetchone()
        return row["state"] if row else None

    def save_sync_state(self, position_id, state_json):
        with self.transaction() as conn:
            conn.execute('''
                INSERT OR REPLACE INTO position_sync_states (position_id, state, updated_at)
                VALUES (?, ?, ?)
            ''', (position_id, state_json, time.time()))

    def delete_sync_state(self, position_id):
        with self.transaction() as conn:
            conn.execute('DELETE FROM position_sync_states WHERE position_id = ?', (position_id,))

    # ------------------------------------------------------------------
    # APR periods
    # ------------------------------------------------------------------

    def replace_apr_periods(self, position_id, periods):
        """Swap all APR periods of a position in one transaction"""
        with self.transaction() as conn:
            conn.execute('DELETE FROM apr_periods WHERE position_id = ?', (position_id,))
            for period in periods:
                conn.execute('''
                    INSERT INTO apr_periods (
                        position_id, start_event_id, end_event_id, start_timestamp, end_timestamp,
                        duration_seconds, cost_basis, collected_fee_value, apr_bps, event_count
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    position_id, period["start_event_id"], period["end_event_id"],
                    format_timestamp(period["start_timestamp"]), format_timestamp(period["end_timestamp"]),
                    period["duration_seconds"], str(period["cost_basis"]),
                    str(period["collected_fee_value"]), period["apr_bps"], period["event_count"]
                ))

    def get_apr_periods(self, position_id) -> List[Dict]:
        """APR periods, newest first"""
        with self._lock:
            rows = self.conn.execute('''
                SELECT * FROM apr_periods WHERE position_id = ?
                ORDER BY start_timestamp DESC, id DESC
            ''', (position_id,)).fetchall()
        periods = []
        for row in rows:
            period = dict(row)
            period["cost_basis"] = int(period["cost_basis"])
            period["collected_fee_value"] = int(period["collected_fee_value"])
            period["start_timestamp"] = parse_timestamp(period["start_timestamp"])
            period["end_timestamp"] = parse_timestamp(period["end_timestamp"])
            periods.append(period)
        return periods
