#!/usr/bin/env python3
"""
LP Ledger Sync - Main Entry Point
Command line interface for tracking Uniswap V3 positions and keeping their
ledgers in sync

Usage:
  main.py track <chain_id> <nft_id> [--quote TOKEN]
  main.py refresh [POSITION_ID ...] [--force]
  main.py reset <position_id>
  main.py sync <position_id> [--full]
  main.py report-event <position_id> --type TYPE --block N --tx-index N --log-index N --tx-hash HASH ...
  main.py ledger <position_id>
  main.py apr <position_id>

Version: 2.0.0
Developer: 8roku8.hl
"""

import argparse
import sys
from datetime import datetime, timezone

from apr_service import AprService
from blockchain import build_chain_managers
from config import load_config, validate_config, get_config_path
from constants import RAW_EVENT_TYPES
from display import (
    create_header_panel, create_positions_table, create_ledger_table,
    create_apr_table, format_bps
)
from errors import LedgerError, PositionNotFoundError
from etherscan_client import EtherscanClient
from ledger_sync import LedgerSyncManager
from logger import console, set_debug_mode
from position_database import PositionDatabase
from position_service import PositionService
from sync_state import MissingEvent
from ledger_types import parse_timestamp


class LedgerApp:
    """Services wired from one configuration"""

    def __init__(self, config):
        debug_mode = config.get("display_settings", {}).get("debug_mode", False)
        etherscan = config.get("etherscan", {})
        refresh = config.get("refresh", {})

        self.database = PositionDatabase(config.get("db_path", "lp_ledger.db"))
        self.chains = build_chain_managers(config, debug_mode=debug_mode)
        self.indexer = EtherscanClient(
            api_key=etherscan.get("api_key"),
            min_spacing_ms=etherscan.get("min_spacing_ms", 220),
            max_retries=etherscan.get("max_retries", 6),
        )
        self.apr = AprService(self.database)
        self.ledger_sync = LedgerSyncManager(self.database, self.indexer, self.chains, self.apr)
        self.positions = PositionService(
            self.database,
            self.ledger_sync,
            self.chains,
            cache_seconds=refresh.get("cache_seconds", 15),
            new_position_seconds=refresh.get("new_position_seconds", 5),
            max_workers=refresh.get("max_workers", 4),
        )

    def require_position(self, position_id):
        position = self.database.get_position(position_id)
        if position is None:
            raise PositionNotFoundError(position_id)
        return position

    def print_positions(self, positions):
        pools = {p["id"]: self.database.get_pool_metadata(p) for p in positions}
        console.print(create_positions_table(positions, pools))


def cmd_track(app, args):
    position = app.positions.track_position(args.chain_id, args.nft_id, quote_token=args.quote)
    app.print_positions([position])
    return 0


def cmd_refresh(app, args):
    refreshed, failures = app.positions.refresh_positions(args.position_ids or None, force=args.force)
    if refreshed:
        ordered = sorted(refreshed.values(), key=lambda p: (p["chain_id"], p["nft_id"]))
        app.print_positions(ordered)
    else:
        console.print("[yellow]No positions refreshed[/yellow]")
    for position_id, error in failures.items():
        console.print(f"[red]❌ {position_id}: {error}[/red]")
    return 1 if failures else 0


def cmd_reset(app, args):
    position = app.positions.reset(args.position_id)
    app.print_positions([position])
    return 0


def cmd_sync(app, args):
    position = app.require_position(args.position_id)
    result = app.ledger_sync.sync_ledger_events(
        position["id"], position["chain_id"], position["nft_id"], force_full_resync=args.full
    )
    console.print(
        f"[green]✅ {result.events_added} event(s) added[/green] "
        f"(blocks {result.from_block} → {result.finalized_block})"
    )
    return 0


def cmd_report_event(app, args):
    timestamp = parse_timestamp(args.timestamp) if args.timestamp else datetime.now(timezone.utc)
    event = MissingEvent(
        event_type=args.type,
        timestamp=timestamp,
        block_number=args.block,
        transaction_index=args.tx_index,
        log_index=args.log_index,
        transaction_hash=args.tx_hash,
        amount0=args.amount0,
        amount1=args.amount1,
        liquidity=args.liquidity,
        recipient=args.recipient,
    )
    sync_state = app.positions.report_missing_event(args.position_id, event)
    console.print(f"[green]✅ Event recorded[/green] ({len(sync_state)} pending for {args.position_id})")
    return 0


def cmd_ledger(app, args):
    position = app.require_position(args.position_id)
    events = app.database.get_ledger_events(position["id"], descending=not args.ascending)
    if not events:
        console.print("[yellow]Ledger is empty. Run 'refresh' or 'sync' first.[/yellow]")
        return 0
    console.print(create_ledger_table(events, app.database.get_pool_metadata(position)))
    return 0


def cmd_apr(app, args):
    position = app.require_position(args.position_id)
    periods = app.apr.get_apr_periods(position["id"])
    if not periods:
        console.print("[yellow]No APR periods yet[/yellow]")
        return 0
    console.print(create_apr_table(periods, app.database.get_pool_metadata(position)))
    console.print(
        f"Current APR: [cyan]{format_bps(app.apr.get_current_apr(position['id']))}[/cyan]  "
        f"Average APR: [cyan]{format_bps(app.apr.get_average_apr(position['id']))}[/cyan]"
    )
    return 0


def build_parser():
    parser = argparse.ArgumentParser(prog="lp-ledger", description="Uniswap V3 position ledger sync")
    parser.add_argument("--config", help="Path to the JSON config file")
    parser.add_argument("--debug", action="store_true", help="Print debug logs")
    sub = parser.add_subparsers(dest="command", required=True)

    track = sub.add_parser("track", help="Start tracking a position NFT")
    track.add_argument("chain_id", type=int)
    track.add_argument("nft_id", type=int)
    track.add_argument("--quote", help="Quote token address (defaults to token1)")
    track.set_defaults(handler=cmd_track)

    refresh = sub.add_parser("refresh", help="Refresh tracked positions")
    refresh.add_argument("position_ids", nargs="*")
    refresh.add_argument("--force", action="store_true", help="Bypass the refresh cache")
    refresh.set_defaults(handler=cmd_refresh)

    reset = sub.add_parser("reset", help="Rebuild a ledger from the deployment block")
    reset.add_argument("position_id")
    reset.set_defaults(handler=cmd_reset)

    sync = sub.add_parser("sync", help="Sync a ledger up to the finalized block")
    sync.add_argument("position_id")
    sync.add_argument("--full", action="store_true", help="Full resync from the deployment block")
    sync.set_defaults(handler=cmd_sync)

    report = sub.add_parser("report-event", help="Report an event the indexer has not seen yet")
    report.add_argument("position_id")
    report.add_argument("--type", required=True, choices=RAW_EVENT_TYPES)
    report.add_argument("--block", required=True, type=int)
    report.add_argument("--tx-index", required=True, type=int)
    report.add_argument("--log-index", required=True, type=int)
    report.add_argument("--tx-hash", required=True)
    report.add_argument("--timestamp", help="Block time, ISO 8601 (defaults to now)")
    report.add_argument("--amount0", type=int, default=0)
    report.add_argument("--amount1", type=int, default=0)
    report.add_argument("--liquidity", type=int, help="Required for INCREASE_LIQUIDITY and DECREASE_LIQUIDITY")
    report.add_argument("--recipient")
    report.set_defaults(handler=cmd_report_event)

    ledger = sub.add_parser("ledger", help="Show a position's ledger")
    ledger.add_argument("position_id")
    ledger.add_argument("--ascending", action="store_true", help="Oldest event first")
    ledger.set_defaults(handler=cmd_ledger)

    apr = sub.add_parser("apr", help="Show a position's APR periods")
    apr.add_argument("position_id")
    apr.set_defaults(handler=cmd_apr)
    return parser


def main(argv=None):
    """Parse arguments, wire services and run one command"""
    args = build_parser().parse_args(argv)
    console.print(create_header_panel())

    config = load_config(args.config)
    if config is None:
        return 1
    if not validate_config(config):
        console.print(f"[red]❌ Configuration validation failed ({args.config or get_config_path()})[/red]")
        return 1

    set_debug_mode(args.debug or config.get("display_settings", {}).get("debug_mode", False))

    try:
        app = LedgerApp(config)
        return args.handler(app, args)
    except KeyboardInterrupt:
        console.print("\n[yellow]👋 Stopped by user[/yellow]")
        return 130
    except LedgerError as e:
        console.print(f"[red]❌ {e}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
