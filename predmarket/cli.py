"""CLI entry point for the prediction-market engine.

Commands:
  predmarket create-market  — Register a market (title, options, fee, expiry)
  predmarket markets        — List markets, optionally by status
  predmarket state          — Pot and per-option totals for a market
  predmarket bet            — Place a user's stake on an option
  predmarket resolve        — Settle a market (or --dry-run to preview)
  predmarket balance        — Show a user's balance and recent ledger rows
  predmarket grant          — Credit a user (admin grant / deposit)
  predmarket pools          — Show platform fee pool balances
  predmarket backup         — Snapshot the database
"""

from __future__ import annotations

import datetime as dt
from typing import Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from predmarket.config import EngineConfig, load_config
from predmarket.errors import MarketError
from predmarket.money import fmt, from_units
from predmarket.observability.logger import configure_logging
from predmarket.storage.models import MarketStatus, TransactionType

load_dotenv()

console = Console()


def _market(ctx: click.Context) -> Any:
    """Open the PredictionMarket once per invocation; closed on exit."""
    from predmarket.market.service import PredictionMarket

    if "market" not in ctx.obj:
        market = PredictionMarket.open(ctx.obj["config"])
        ctx.obj["market"] = market
        ctx.call_on_close(market.close)
    return ctx.obj["market"]


def _fail(ctx: click.Context, err: MarketError) -> None:
    console.print(f"[red]❌ {err.code}: {escape(str(err))}[/red]")
    ctx.exit(1)


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """Pari-mutuel prediction market engine."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    ctx.obj["config"] = cfg
    configure_logging(
        level=cfg.observability.log_level,
        fmt="console",  # CLI always uses console format
        log_file=cfg.observability.log_file,
        force=True,
    )


# ─── MARKETS ─────────────────────────────────────────────────────────

@cli.command("create-market")
@click.option("--title", required=True, help="Market question")
@click.option("--option", "options", multiple=True, required=True, help="Outcome label (repeat, ≥2)")
@click.option("--entry-fee", default=None, help="Minimum stake (default from config)")
@click.option("--fee-rate", default=None, help="Platform fee rate, e.g. 0.08")
@click.option("--ends-in-hours", default=24.0, type=float, help="Hours until betting closes")
@click.pass_context
def create_market(
    ctx: click.Context,
    title: str,
    options: tuple[str, ...],
    entry_fee: str | None,
    fee_rate: str | None,
    ends_in_hours: float,
) -> None:
    """Register a new market."""
    market = _market(ctx)
    ends_at = dt.datetime.now(dt.timezone.utc) + dt.timedelta(hours=ends_in_hours)
    try:
        prediction = market.registry.create(
            title, list(options), entry_fee=entry_fee, ends_at=ends_at, fee_rate=fee_rate
        )
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    console.print(f"[green]✅ Created market {prediction.id}[/green]")
    options_line = ", ".join(f"[{i}] {o}" for i, o in enumerate(prediction.options))
    console.print(f"  Options: {escape(options_line)}")
    console.print(f"  Entry fee: {fmt(prediction.entry_fee)}  Fee rate: {prediction.fee_rate:.2%}")
    console.print(f"  Ends at: {prediction.ends_at.isoformat()}")


@cli.command()
@click.option(
    "--status",
    type=click.Choice([s.value for s in MarketStatus]),
    default=None,
    help="Filter by status",
)
@click.option("--limit", default=20, help="Number of markets to list")
@click.pass_context
def markets(ctx: click.Context, status: str | None, limit: int) -> None:
    """List markets, newest first."""
    market = _market(ctx)
    rows = market.registry.list_markets(status=status, limit=limit)
    now = dt.datetime.now(dt.timezone.utc)

    table = Table(title=f"🔮 Markets ({len(rows)} found)")
    table.add_column("ID", style="dim", max_width=12)
    table.add_column("Title", max_width=40)
    table.add_column("Options", style="cyan")
    table.add_column("Pot", justify="right", style="green")
    table.add_column("Status", justify="center")
    table.add_column("Winner", style="yellow")

    for p in rows:
        table.add_row(
            p.id[:12],
            escape(p.title[:40]),
            escape(" / ".join(p.options)),
            fmt(p.pot),
            p.status(now).value,
            p.winning_option or "",
        )
    console.print(table)


@cli.command()
@click.argument("prediction_id")
@click.pass_context
def state(ctx: click.Context, prediction_id: str) -> None:
    """Show pot and per-option totals for a market."""
    market = _market(ctx)
    try:
        snapshot = market.get_market_state(prediction_id)
    except MarketError as e:
        _fail(ctx, e)
        return

    table = Table(title=f"📊 Market {prediction_id[:12]} — {snapshot.status.value}")
    table.add_column("Option", style="bold")
    table.add_column("Staked", justify="right")
    table.add_column("Share of pot", justify="right")
    for label, total in snapshot.per_option_totals.items():
        share = total / snapshot.pot if snapshot.pot else 0
        marker = " 🏆" if label == snapshot.winning_option else ""
        table.add_row(f"{escape(label)}{marker}", fmt(total), f"{share:.1%}")
    table.add_row("[bold]Pot[/bold]", f"[bold]{fmt(snapshot.pot)}[/bold]", "")
    console.print(table)
    console.print(f"  Bets: {snapshot.bets_count}")


# ─── WAGERS ──────────────────────────────────────────────────────────

@cli.command()
@click.option("--user", "user_id", required=True, help="User ID")
@click.option("--market", "prediction_id", required=True, help="Prediction ID")
@click.option("--option", "option_index", required=True, type=int, help="Option index (0-based)")
@click.option("--amount", required=True, help="Stake amount")
@click.pass_context
def bet(ctx: click.Context, user_id: str, prediction_id: str, option_index: int, amount: str) -> None:
    """Place a bet."""
    market = _market(ctx)
    try:
        placed = market.place_bet(user_id, prediction_id, option_index, amount)
    except MarketError as e:
        _fail(ctx, e)
        return
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--amount") from e

    console.print(
        f"[green]✅ Bet {placed.id} placed: {fmt(placed.amount)} on '{escape(placed.option)}'[/green]"
    )
    console.print(f"  Balance: {fmt(market.ledger.balance(user_id))}")


@cli.command()
@click.option("--market", "prediction_id", required=True, help="Prediction ID")
@click.option("--winner", "winner_index", required=True, type=int, help="Winning option index")
@click.option("--fee-rate", default=None, help="Override the market's fee rate")
@click.option("--dry-run", is_flag=True, help="Show the payout plan without applying it")
@click.pass_context
def resolve(
    ctx: click.Context,
    prediction_id: str,
    winner_index: int,
    fee_rate: str | None,
    dry_run: bool,
) -> None:
    """Resolve a market and distribute the pot."""
    market = _market(ctx)
    try:
        if dry_run:
            plan = market.settlement.preview(prediction_id, winner_index, fee_rate)
            summary = plan.to_dict()
        else:
            summary = market.resolve(prediction_id, winner_index, fee_rate).to_dict()
    except MarketError as e:
        _fail(ctx, e)
        return
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--fee-rate") from e

    title = "🧪 Settlement preview" if dry_run else "🏁 Market resolved"
    table = Table(title=title)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    for key in (
        "outcome", "total_pool", "platform_fee", "payout_pool",
        "winners_count", "total_payout", "refunds_count", "total_refund",
    ):
        table.add_row(key.replace("_", " ").title(), str(summary[key]))
    for pool_id, amount in summary.get("pool_allocation", {}).items():
        table.add_row(f"Pool: {pool_id}", amount)
    console.print(table)


# ─── BALANCES ────────────────────────────────────────────────────────

@cli.command()
@click.option("--user", "user_id", required=True, help="User ID")
@click.option("--history", default=10, help="Number of ledger rows to show")
@click.pass_context
def balance(ctx: click.Context, user_id: str, history: int) -> None:
    """Show a user's balance and recent ledger transactions."""
    market = _market(ctx)
    console.print(f"[bold]💰 Balance for {user_id}: {fmt(market.ledger.balance(user_id))}[/bold]")
    if history <= 0:
        return

    table = Table(title="Recent transactions")
    table.add_column("ID", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Amount", justify="right")
    table.add_column("Prediction", style="dim", max_width=12)
    table.add_column("When")
    for tx in market.ledger.history(user_id, limit=history):
        color = "green" if tx.amount > 0 else "red"
        table.add_row(
            str(tx.id),
            tx.type.value,
            f"[{color}]{fmt(tx.amount)}[/{color}]",
            str(tx.meta.get("prediction_id", ""))[:12],
            tx.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@cli.command()
@click.option("--user", "user_id", required=True, help="User ID")
@click.option("--amount", required=True, help="Amount to credit")
@click.option(
    "--type",
    "tx_type",
    type=click.Choice([TransactionType.ADMIN_GRANT.value, TransactionType.DEPOSIT.value]),
    default=TransactionType.ADMIN_GRANT.value,
)
@click.pass_context
def grant(ctx: click.Context, user_id: str, amount: str, tx_type: str) -> None:
    """Credit a user's balance."""
    market = _market(ctx)
    try:
        tx = market.ledger.grant(user_id, amount, TransactionType(tx_type))
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--amount") from e
    console.print(f"[green]✅ Credited {fmt(tx.amount)} to {user_id}[/green]")


@cli.command()
@click.pass_context
def pools(ctx: click.Context) -> None:
    """Show platform fee pool balances."""
    market = _market(ctx)
    table = Table(title="🏦 Fee pools")
    table.add_column("Pool", style="bold")
    table.add_column("Balance", justify="right", style="green")
    total = from_units(0)
    for pool_id, amount in market.pools.balances().items():
        table.add_row(pool_id, fmt(amount))
        total += amount
    table.add_row("[bold]Total[/bold]", f"[bold]{fmt(total)}[/bold]")
    console.print(table)


@cli.command()
@click.option("--tag", default="", help="Suffix for the backup file name")
@click.pass_context
def backup(ctx: click.Context, tag: str) -> None:
    """Snapshot the SQLite database."""
    from predmarket.storage.backup import backup_database

    cfg: EngineConfig = ctx.obj["config"]
    try:
        path = backup_database(cfg.storage, tag=tag)
    except FileNotFoundError as e:
        console.print(f"[red]❌ {escape(str(e))}[/red]")
        ctx.exit(1)
        return
    console.print(f"[green]✅ Backup written to {path}[/green]")


if __name__ == "__main__":
    cli()
