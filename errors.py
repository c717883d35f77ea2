#!/usr/bin/env python3
"""
Exception types for LP Ledger Sync

Configuration errors are fatal and never retried. Indexer and RPC failures
surface to the caller of a sync. Invariant violations halt the sync of the
affected position instead of producing a wrong ledger.

Version: 2.0.0
Developer: 8roku8.hl
"""


class LedgerError(Exception):
    """Base class for all ledger errors"""


class ConfigurationError(LedgerError):
    """Unsupported chain, missing deployment block, missing credentials"""


class FinalizedBlockUnavailableError(LedgerError):
    """The chain reported no finalized block"""

    def __init__(self, chain_id):
        super().__init__(
            f"Failed to retrieve finalized block number for chain {chain_id}. "
            "Chain may not be supported or RPC endpoint may be unavailable."
        )
        self.chain_id = chain_id


class IndexerError(LedgerError):
    """Event indexer request or response failure"""


class EtherscanApiError(IndexerError):
    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class PriceUnavailableError(LedgerError):
    """Historic pool price could not be resolved"""


class InvariantViolationError(LedgerError):
    """Corrupt or inconsistent event data"""


class PositionNotFoundError(LedgerError):
    def __init__(self, position_id):
        super().__init__(f"Position {position_id} not found")
        self.position_id = position_id
