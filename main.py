#!/usr/bin/env python3
"""
PolySignal whale tracker administration

Usage:
    python main.py add-whale 0xabc... --label "Big Fish" --tier paid --min-usd 1000
    python main.py list-whales
    python main.py deactivate 0xabc...
    python main.py poll-once
    python main.py run
    python main.py report
"""
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from polysignal.config import MIN_USD_VALUE_OPTIONS, SUBSCRIPTION_TIERS, WHALE_CATEGORIES, load_config
from polysignal.db.connection import get_connection
from polysignal.db.whale_repo import WhaleRepo
from polysignal.shared.log_setup import setup_logging
from polysignal.tracking.report import copytrade_summary
from polysignal.tracking.service import TrackerService

logger = logging.getLogger("tracker")


def _setup(env_file: Optional[Path], verbose: bool):
    config = load_config(env_file)
    setup_logging("DEBUG" if verbose else config.log_level, config.log_dir)
    return config


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--env-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to a .env file (default: ./.env or the project root .env)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging (DEBUG level)")
@click.pass_context
def cli(ctx: click.Context, env_file: Optional[Path], verbose: bool):
    """Track Polymarket whales, surface their trades, and mirror them as copy trades."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = _setup(env_file, verbose)
    ctx.obj["verbose"] = verbose


@cli.command("add-whale")
@click.argument("wallet")
@click.option("--label", type=str, default=None, help="Display name")
@click.option("--category", type=click.Choice(WHALE_CATEGORIES), default="regular")
@click.option("--tier", type=click.Choice(SUBSCRIPTION_TIERS), default="free", help="Subscription tier")
@click.option(
    "--min-usd",
    type=click.Choice([str(v) for v in MIN_USD_VALUE_OPTIONS]),
    default="500",
    help="Minimum USD value for an initial buy to be stored",
)
@click.option("--frequency-limit", type=int, default=None, help="Override opens surfaced per window")
@click.option("--copytrade/--no-copytrade", default=False, help="Mirror this whale as simulated positions")
@click.option("--investment", type=float, default=None, help="Simulated investment per position (USD)")
@click.option("--partial-close-pct", type=float, default=None, help="Share of whale partial sells to mirror (0-100)")
@click.pass_context
def add_whale(
    ctx: click.Context,
    wallet: str,
    label: Optional[str],
    category: str,
    tier: str,
    min_usd: str,
    frequency_limit: Optional[int],
    copytrade: bool,
    investment: Optional[float],
    partial_close_pct: Optional[float],
):
    """Start tracking a wallet."""
    config = ctx.obj["config"]
    conn = get_connection(config.db_path)
    try:
        repo = WhaleRepo(conn)
        if repo.get_by_wallet(wallet) is not None:
            click.echo(f"Error: {wallet} is already tracked", err=True)
            sys.exit(1)
        whale = repo.add(
            wallet,
            label=label,
            category=category,
            subscription_type=tier,
            min_usd_value=int(min_usd),
            frequency_limit=frequency_limit,
            is_copytrade=copytrade,
            copytrade_investment=(
                investment if investment is not None else config.copytrade.default_investment
            ),
            partial_close_pct=(
                partial_close_pct if partial_close_pct is not None
                else config.copytrade.default_partial_close_pct
            ),
        )
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        conn.close()
    click.echo(f"Tracking #{whale.id} {whale.display_name} ({whale.category}, {whale.subscription_type})")


@cli.command("list-whales")
@click.option("--all", "show_all", is_flag=True, help="Include deactivated whales")
@click.pass_context
def list_whales(ctx: click.Context, show_all: bool):
    """List tracked wallets."""
    conn = get_connection(ctx.obj["config"].db_path)
    try:
        repo = WhaleRepo(conn)
        whales = repo.list_all() if show_all else repo.list_active()
    finally:
        conn.close()

    if not whales:
        click.echo("No whales tracked.")
        return
    click.echo(f"{'ID':>4}  {'Wallet':42}  {'Label':20}  {'Cat':7}  {'Tier':4}  {'MinUSD':>6}  {'Copy':4}  Active")
    for w in whales:
        click.echo(
            f"{w.id:>4}  {w.wallet_address:42}  {(w.label or '')[:20]:20}  {w.category:7}  "
            f"{w.subscription_type:4}  {w.min_usd_value:>6.0f}  {'yes' if w.is_copytrade else 'no':4}  "
            f"{'yes' if w.is_active else 'no'}"
        )


@cli.command()
@click.argument("wallet")
@click.pass_context
def deactivate(ctx: click.Context, wallet: str):
    """Stop tracking a wallet (history is kept)."""
    conn = get_connection(ctx.obj["config"].db_path)
    try:
        changed = WhaleRepo(conn).set_active(wallet, False)
    finally:
        conn.close()
    if not changed:
        click.echo(f"Error: {wallet} is not tracked", err=True)
        sys.exit(1)
    click.echo(f"Deactivated {wallet.lower()}")


async def _poll_once(service: TrackerService):
    try:
        return await service.run_pass()
    finally:
        await service.close()


@cli.command("poll-once")
@click.pass_context
def poll_once(ctx: click.Context):
    """Run a single reconciliation pass and exit."""
    service = TrackerService(ctx.obj["config"])
    try:
        results = asyncio.run(_poll_once(service)) or {}
    finally:
        service.conn.close()

    failed = 0
    for whale_id, result in results.items():
        if isinstance(result, BaseException):
            failed += 1
            click.echo(f"  #{whale_id}: FAILED ({result})", err=True)
        else:
            rejected = sum(result.rejected.values())
            click.echo(
                f"  #{whale_id}: {result.new} new, {result.admitted} admitted, {rejected} skipped, "
                f"{result.closed_external} closed externally, {result.notified} alerts"
            )
    click.echo(f"Pass complete: {len(results)} whale(s), {failed} failed")
    if failed:
        sys.exit(1)


@cli.command()
@click.pass_context
def run(ctx: click.Context):
    """Poll continuously until interrupted."""
    service = TrackerService(ctx.obj["config"])
    try:
        asyncio.run(service.run())
    except KeyboardInterrupt:
        click.echo("\nInterrupted", err=True)
    finally:
        service.conn.close()


@cli.command()
@click.pass_context
def report(ctx: click.Context):
    """Print the copy-trade performance summary."""
    conn = get_connection(ctx.obj["config"].db_path)
    try:
        summary = copytrade_summary(conn)
    finally:
        conn.close()

    if summary.empty:
        click.echo("No copy-trade positions yet.")
        return
    click.echo(summary.to_string(index=False))
    total_invested = summary["invested"].sum()
    total_pnl = summary["realized_pnl"].sum()
    roi = total_pnl / total_invested * 100 if total_invested else 0.0
    click.echo(f"\nTotal: ${total_invested:,.2f} invested, ${total_pnl:+,.2f} realized ({roi:+.2f}%)")


if __name__ == "__main__":
    cli()
