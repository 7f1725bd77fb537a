"""nsepaper CLI."""

import asyncio
import logging
from datetime import date
from decimal import Decimal

import click

from nsepaper.app import PaperTradingApp, build_chains, build_context
from nsepaper.constants import LOG_FORMAT, InstrumentType, StrategyType, Underlying


@click.group()
def cli():
    """NSE options paper trading simulator."""
    pass


@cli.command()
@click.option(
    "--config",
    type=click.Path(exists=True),
    default="config/config.yaml",
    help="Path to configuration file",
)
@click.option("--log-level", help="Override log level")
@click.option("--capital", help="Override initial capital")
@click.option("--data-dir", help="Override data directory")
def run(config, log_level, capital, data_dir):
    """Start the simulator with the synthetic feed."""
    try:
        app = PaperTradingApp(config_path=config, log_level=log_level, initial_capital=capital, data_dir=data_dir)
        asyncio.run(app.run())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        click.echo(f"Fatal error: {e}", err=True)
        raise SystemExit(1) from e


@cli.command()
@click.option(
    "--config",
    type=click.Path(exists=True),
    default="config/config.yaml",
    help="Path to configuration file",
)
def smoke_test(config):
    """Initialize every component, pull a few ticks and run one cycle."""

    async def _smoke() -> dict:
        app = PaperTradingApp(config_path=config)
        ctx = await app.initialize()
        await ctx.feed.connect()
        for _ in range(3):
            await ctx.feed.step()
        await ctx.engine.run_cycle()
        await ctx.feed.disconnect()
        await app.close()
        return ctx.engine.status()

    try:
        status = asyncio.run(_smoke())
    except Exception as e:
        click.echo(f"Smoke test failed: {e}", err=True)
        raise SystemExit(1) from e
    click.echo("Smoke test passed: Components initialized successfully.")
    click.echo(f"  Positions: {status['positions']}  Available margin: {status['available_margin']}")


@cli.command()
@click.option(
    "--config",
    type=click.Path(exists=True),
    default="config/config.yaml",
    help="Path to configuration file",
)
@click.option(
    "--strategy",
    type=click.Choice([s.value for s in StrategyType if s != StrategyType.CUSTOM], case_sensitive=False),
    default=StrategyType.SHORT_STRADDLE.value,
    help="Strategy template to open",
)
@click.option(
    "--underlying",
    type=click.Choice([u.value for u in Underlying], case_sensitive=False),
    default=Underlying.NIFTY.value,
)
@click.option("--lots", default=1, help="Lots per leg")
@click.option("--cycles", default=60, help="Update cycles to simulate")
@click.option("--premium", is_flag=True, help="Open a premium-targeted monthly strangle instead of a template")
def simulate(config, strategy, underlying, lots, cycles, premium):
    """Open a strategy on simulated time and print its P&L path."""
    from nsepaper.config_loader import load_config
    from nsepaper.time.clock import SimulatedClock

    logging.basicConfig(level=logging.WARNING, format=LOG_FORMAT)
    cfg = load_config(config)
    cfg.persistence.enabled = False
    if underlying.upper() not in [u.value for u in cfg.instruments.underlyings]:
        cfg.instruments.underlyings.append(Underlying(underlying.upper()))

    async def _simulate() -> None:
        clock = SimulatedClock()
        ctx = build_context(cfg, clock)
        await ctx.feed.subscribe(build_chains(ctx))
        await ctx.feed.connect()
        await ctx.feed.step()

        under = Underlying(underlying.upper())
        expiry = ctx.session.next_expiries(1)[0]
        if premium:
            strat, orders = await ctx.engine.open_premium_strangle(under, lots)
        else:
            strat, orders = await ctx.engine.open_strategy(StrategyType(strategy.upper()), under, expiry, lots)
        for order in orders:
            click.echo(f"  {order.side.value:4} {order.quantity:5} {order.symbol:24} {order.status.value:9} "
                       f"{order.avg_fill_price or order.rejection_reason or ''}")

        interval = cfg.execution.sweep_interval_ms / 1000
        for i in range(cycles):
            clock.advance(interval)
            await ctx.feed.step()
            report = await ctx.engine.run_cycle()
            if i % 10 == 0 or report.kill_switch.triggered:
                click.echo(
                    f"  cycle {i:4}  spot {ctx.feed.spots[under]:>10}  pnl {report.pnl:>12.2f}  "
                    f"util {report.margin.utilization:.2%}"
                )
            if report.kill_switch.triggered:
                click.echo(f"  Kill switch: {report.kill_switch.message}")
                break

        status = ctx.engine.status()
        click.echo(f"\n{strat.name}: realized {status['realized_pnl']:.2f}, unrealized {status['unrealized_pnl']:.2f}")
        click.echo(f"Net delta {status['net_delta']:.2f}, theta {status['net_theta']:.2f}, vega {status['net_vega']:.2f}")

    asyncio.run(_simulate())


@cli.command()
@click.option(
    "--config",
    type=click.Path(exists=True),
    default="config/config.yaml",
    help="Path to configuration file",
)
@click.option("--recent", default=5, help="Recent trades to list")
def journal(config, recent):
    """Show trade journal performance."""
    from nsepaper.config_loader import load_config
    from nsepaper.journal.journaler import TradeJournal
    from nsepaper.numeric import format_inr

    cfg = load_config(config)

    async def _stats():
        j = TradeJournal(cfg.journal_path)
        try:
            await j.initialize()
            return await j.get_performance_stats(recent), await j.get_monthly_pnl()
        finally:
            await j.close()

    stats, monthly = asyncio.run(_stats())
    click.echo(
        f"Trades: {stats.total_trades} ({stats.open_trades} open, {stats.closed_trades} closed)  "
        f"Win rate: {stats.win_rate:.1f}%  Streak: {stats.current_streak:+d}"
    )
    click.echo(
        f"Total P&L: {format_inr(stats.total_pnl)}  Avg win: {format_inr(stats.avg_win)}  "
        f"Avg loss: {format_inr(stats.avg_loss)}  Profit factor: {stats.profit_factor:.2f}"
    )
    for m in monthly:
        click.echo(f"  {m.month}  {format_inr(m.pnl):>14}  {m.trades} trade(s)")
    for t in stats.last_trades:
        pnl = format_inr(t.realized_pnl) if t.realized_pnl is not None else "open"
        click.echo(f"  {t.entry_time:%Y-%m-%d %H:%M}  {t.strategy_type:16} {t.symbol:24} {pnl}")


@cli.command()
@click.option("--spot", required=True, type=str, help="Underlying price")
@click.option("--strike", required=True, type=str, help="Strike price")
@click.option("--days", default=7, help="Calendar days to expiry")
@click.option("--iv", default="20", help="Implied volatility in percent")
@click.option("--type", "option_type", type=click.Choice(["CE", "PE"], case_sensitive=False), default="CE")
@click.option("--premium", help="Solve IV from this market premium instead")
def price(spot, strike, days, iv, option_type, premium):
    """Price an option and show its Greeks."""
    from nsepaper.errors import IVCalculationError
    from nsepaper.pricing import BSParams, greeks, implied_volatility, option_price

    itype = InstrumentType(option_type.upper())
    t = Decimal(days) / Decimal(365)
    params = BSParams(
        spot=Decimal(spot), strike=Decimal(strike), time_to_expiry=t, volatility=Decimal(iv) / 100, option_type=itype
    )

    if premium:
        try:
            vol = implied_volatility(Decimal(premium), params.spot, params.strike, t, itype)
        except IVCalculationError as e:
            click.echo(f"IV solve failed: {e}", err=True)
            raise SystemExit(1) from e
        params = params.with_volatility(vol)
        click.echo(f"Implied volatility: {vol * 100:.2f}%")

    g = greeks(params)
    click.echo(f"{itype.value} {strike} @ spot {spot}, {days}d, IV {params.volatility * 100:.2f}% "
               f"(as of {date.today().isoformat()})")
    click.echo(f"  Price: {option_price(params):.2f}")
    click.echo(f"  Delta: {g.delta:.4f}  Gamma: {g.gamma:.6f}  Theta: {g.theta:.2f}  Vega: {g.vega:.2f}")


if __name__ == "__main__":
    cli()

# Alias for __main__.py
main = cli
