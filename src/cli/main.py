"""
CLI entry point: escrow relay | reconcile | orders | fills | transactions | health.

Every command loads config from --config (default config.yaml) and builds
the marketplace from it. Status changes are written to the journal.
"""

import logging
import sys

import click
from dotenv import load_dotenv

from config import load_config

load_dotenv()

logger = logging.getLogger("escrow")


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s  %(message)s",
        stream=sys.stderr,
    )


def _build(ctx: click.Context, *, events=None):
    from marketplace import build_marketplace

    cfg = load_config(ctx.obj["config_path"])
    return cfg, build_marketplace(cfg, events=events)


def _unwrap(outcome):
    """Outcome value, or a ClickException carrying the typed error."""
    from market_core.outcome import OutcomeError

    try:
        return outcome.unwrap()
    except OutcomeError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.option("--config", "config_path", default="config.yaml", help="Path to config file.")
@click.pass_context
def cli(ctx: click.Context, config_path: str) -> None:
    """escrow: voucher-backed token escrow, reconciled against the ledger."""
    _setup_logging()
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# ---------- escrow relay ----------


@cli.command()
@click.option("--once", is_flag=True, help="Run a single tick and exit.")
@click.option("--interval", default=None, type=float, help="Seconds between ticks (default: relay.interval_seconds).")
@click.pass_context
def relay(ctx: click.Context, once: bool, interval: float | None) -> None:
    """Run the reconciliation relay: advance orders and fills as ledger transactions settle."""
    from cli.output import format_tick_report
    from cli.scheduler import run_relay_loop
    from cli.structured_log import StructuredEventLogger

    cfg = load_config(ctx.obj["config_path"])
    events = StructuredEventLogger(
        enabled=cfg.alerting.structured_logs,
        webhook_url=cfg.alerting.webhook_url,
    )
    from marketplace import build_marketplace

    market = build_marketplace(cfg, events=events)

    if once:
        report = market.tick()
        click.echo(format_tick_report(report))
        return

    every = interval if interval is not None else cfg.relay.interval_seconds
    if every <= 0:
        raise click.BadParameter("interval must be positive", param_hint="--interval")
    run_relay_loop(market.tick, every, events=events)


# ---------- escrow reconcile ----------


@cli.command()
@click.argument("entity_id")
@click.pass_context
def reconcile(ctx: click.Context, entity_id: str) -> None:
    """Manually reconcile one order or fill (and retry a failed settlement)."""
    from cli.output import format_fill, format_order, format_tick_report

    _, market = _build(ctx)
    report = _unwrap(market.request_manual_reconciliation(entity_id))

    click.echo(format_tick_report(report))
    order = market.get_order(entity_id)
    if order.ok:
        click.echo(format_order(order.value))
    else:
        fill = market.get_fill(entity_id)
        if fill.ok:
            click.echo(format_fill(fill.value))


# ---------- escrow orders ----------


@cli.command()
@click.option("--kind", type=click.Choice(["buy", "sell"]), default=None, help="Only buy or sell orders.")
@click.option("--token", default="ALL", show_default=True, help="Token symbol or ALL.")
@click.option(
    "--status",
    type=click.Choice(["pending", "active", "filled", "cancelled", "expired", "ALL"], case_sensitive=False),
    default="active",
    show_default=True,
)
@click.option("--limit", default=10, show_default=True, type=int)
@click.option("--owner", default=None, help="Only orders owned by this address.")
@click.pass_context
def orders(ctx: click.Context, kind: str | None, token: str, status: str, limit: int, owner: str | None) -> None:
    """List orders, newest first."""
    from cli.output import format_order

    _, market = _build(ctx)
    found = _unwrap(market.list_orders(kind, token=token, status=status, limit=limit, owner=owner))
    if not found:
        click.echo("No orders match.")
        return
    for order in found:
        click.echo(format_order(order))


# ---------- escrow fills ----------


@cli.command()
@click.option("--order", "order_id", default=None, help="Only fills of this sell order.")
@click.pass_context
def fills(ctx: click.Context, order_id: str | None) -> None:
    """List fills, newest first."""
    from cli.output import format_fill

    _, market = _build(ctx)
    found = _unwrap(market.list_fills(order_id=order_id))
    if not found:
        click.echo("No fills match.")
        return
    for fill in found:
        click.echo(format_fill(fill))


# ---------- escrow transactions ----------


@cli.command()
@click.option(
    "--status",
    type=click.Choice(["pending", "confirmed", "completed", "rejected", "failed"]),
    default=None,
)
@click.pass_context
def transactions(ctx: click.Context, status: str | None) -> None:
    """Show the pending-transaction audit trail."""
    from cli.output import format_transaction

    _, market = _build(ctx)
    found = _unwrap(market.list_transactions(status=status))
    if not found:
        click.echo("No transactions recorded.")
        return
    for tx in found:
        click.echo(format_transaction(tx))


# ---------- escrow health ----------


@cli.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Check system health: config, market policy, store access.

    Exit code 0 = healthy, 1 = unhealthy. Designed for Docker HEALTHCHECK.
    """
    checks: list[tuple[str, bool, str]] = []

    try:
        cfg = load_config(ctx.obj["config_path"])
        checks.append(("config", True, f"loaded (store={cfg.store.backend}, ledger={cfg.ledger.client})"))
    except Exception as e:
        checks.append(("config", False, str(e)))
        _print_health(checks)
        raise SystemExit(1)

    try:
        from config.policy import load_policy

        policy = load_policy(cfg.policy.path or None, token=cfg.policy.token or None)
        checks.append(("policy", True, f"validated (tolerance {policy.tolerance_percent:g}%)"))
    except Exception as e:
        checks.append(("policy", False, str(e)))

    try:
        from store import sqlite_repositories

        if cfg.store.backend == "sqlite":
            repos = sqlite_repositories(cfg.store.path)
            checks.append(
                ("store", True, f"sqlite {cfg.store.path} ({len(repos.buy_orders)} buy, {len(repos.sell_orders)} sell orders)")
            )
        else:
            checks.append(("store", True, "memory (not persisted)"))
    except Exception as e:
        checks.append(("store", False, str(e)))

    _print_health(checks)
    healthy = all(ok for _, ok, _ in checks)
    raise SystemExit(0 if healthy else 1)


def _print_health(checks: list[tuple[str, bool, str]]) -> None:
    for name, ok, detail in checks:
        status = "OK" if ok else "FAIL"
        click.echo(f"  [{status}] {name}: {detail}")
    healthy = all(ok for _, ok, _ in checks)
    click.echo(f"\nHealth: {'HEALTHY' if healthy else 'UNHEALTHY'}")


if __name__ == "__main__":
    cli()
