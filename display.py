#!/usr/bin/env python3
"""
Display Module for LP Ledger Sync
Rich tables for positions, ledger events and APR periods

Version: 2.0.0
Developer: 8roku8.hl
"""

from rich import box
from rich.align import Align
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from constants import VERSION, DEVELOPER, CHAIN_NAMES, COLLECT


def format_units(value, decimals, places=4):
    """Smallest units -> human string, exact up to `places` decimals"""
    if value is None:
        return "-"
    sign = "-" if value < 0 else ""
    value = abs(int(value))
    whole, fraction = divmod(value, 10 ** decimals)
    if places == 0 or decimals == 0:
        return f"{sign}{whole:,}"
    fraction_str = str(fraction).rjust(decimals, "0")[:places]
    return f"{sign}{whole:,}.{fraction_str}"


def format_signed_units(value, decimals, places=4):
    """Colored +/- amount for PnL cells"""
    text = format_units(value, decimals, places)
    if value > 0:
        return f"[green]+{text}[/green]"
    if value < 0:
        return f"[red]{text}[/red]"
    return text


def format_bps(apr_bps):
    if apr_bps is None:
        return "-"
    return f"{apr_bps / 100:.2f}%"


def format_time(value):
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def create_header_panel():
    header_text = Text()
    header_text.append("LP LEDGER SYNC\n", style="bold cyan")
    header_text.append(f"Uniswap V3 position ledger v{VERSION}\n", style="bright_white")
    header_text.append(f"by {DEVELOPER}", style="italic dim")
    return Panel(Align.center(header_text), box=box.DOUBLE_EDGE, style="blue", padding=(1, 2))


def _pair_label(pool):
    if pool is None:
        return "?"
    return f"{pool.token0_symbol}/{pool.token1_symbol}"


def _quote_decimals(pool):
    if pool is None:
        return 18
    return pool.token0_decimals if pool.token0_is_quote else pool.token1_decimals


def _quote_symbol(pool):
    if pool is None:
        return ""
    return pool.token0_symbol if pool.token0_is_quote else pool.token1_symbol


def create_positions_table(positions, pools):
    """positions: stored rows; pools: {position_id: PoolMetadata}"""
    table = Table(
        title="LP Positions",
        box=box.ROUNDED,
        show_header=True,
        header_style="bold magenta",
        title_style="bold cyan",
        border_style="blue"
    )
    table.add_column("Position", style="cyan")
    table.add_column("Chain", style="white")
    table.add_column("Pair", style="yellow")
    table.add_column("Status", justify="center")
    table.add_column("Range", justify="center")
    table.add_column("Value", justify="right")
    table.add_column("Cost Basis", justify="right")
    table.add_column("Realized", justify="right")
    table.add_column("Unrealized", justify="right")
    table.add_column("Fees (collected / unclaimed)", justify="right", style="green")

    for position in positions:
        pool = pools.get(position["id"])
        decimals = _quote_decimals(pool)
        status = "[green]ACTIVE[/green]" if position["is_active"] else "[dim]CLOSED[/dim]"
        price_range = (
            f"{format_units(position['price_range_lower'], decimals, 2)} - "
            f"{format_units(position['price_range_upper'], decimals, 2)}"
        )
        table.add_row(
            str(position["nft_id"]),
            CHAIN_NAMES.get(position["chain_id"], str(position["chain_id"])),
            _pair_label(pool),
            status,
            price_range,
            f"{format_units(position['current_value'], decimals, 2)} {_quote_symbol(pool)}",
            format_units(position["cost_basis"], decimals, 2),
            format_signed_units(position["realized_pnl"], decimals, 2),
            format_signed_units(position["unrealized_pnl"], decimals, 2),
            f"{format_units(position['collected_fees'], decimals, 2)} / "
            f"{format_units(position['unclaimed_fees'], decimals, 2)}",
        )
    return table


def create_ledger_table(events, pool):
    """Ledger events, in the order given"""
    decimals = _quote_decimals(pool)
    table = Table(
        title="Position Ledger",
        box=box.ROUNDED,
        header_style="bold magenta",
        title_style="bold cyan",
        border_style="blue"
    )
    table.add_column("Time", style="white")
    table.add_column("Block", justify="right", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Liquidity", justify="right")
    table.add_column("Value", justify="right")
    table.add_column("Cost Basis", justify="right")
    table.add_column("PnL", justify="right")
    table.add_column("Fees", justify="right", style="green")

    for event in events:
        fees = format_units(event.reward_value, decimals, 2) if event.event_type == COLLECT else ""
        table.add_row(
            format_time(event.timestamp),
            f"{event.block_number}:{event.transaction_index}:{event.log_index}",
            event.event_type,
            f"{event.liquidity_after:,}",
            format_units(event.token_value, decimals, 2),
            format_units(event.cost_basis_after, decimals, 2),
            format_signed_units(event.pnl_after, decimals, 2),
            fees,
        )
    return table


def create_apr_table(periods, pool):
    decimals = _quote_decimals(pool)
    table = Table(title="APR Periods", box=box.SIMPLE, header_style="bold magenta")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Days", justify="right")
    table.add_column("Cost Basis", justify="right")
    table.add_column("Fees", justify="right", style="green")
    table.add_column("APR", justify="right", style="cyan")
    table.add_column("Events", justify="right", style="dim")

    for period in periods:
        table.add_row(
            format_time(period["start_timestamp"]),
            format_time(period["end_timestamp"]),
            f"{period['duration_seconds'] / 86400:.1f}",
            format_units(period["cost_basis"], decimals, 2),
            format_units(period["collected_fee_value"], decimals, 2),
            format_bps(period["apr_bps"]),
            str(period["event_count"]),
        )
    return table
