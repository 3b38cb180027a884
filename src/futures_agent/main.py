"""CLI 入口模块 - Futures Agent 命令行接口。"""

import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

import click

from futures_agent import __version__
from futures_agent.config import Settings, get_settings
from futures_agent.engine import build_clients, build_engine
from futures_agent.exchange.base import ExchangeError
from futures_agent.journal.store import JournalStore
from futures_agent.utils.logging import get_logger, setup_logging

EXCHANGE_CHOICE = click.Choice(["bybit", "mexc"])

DEPENDENCIES = [
    ("pydantic", "Configuration validation"),
    ("pydantic-settings", "Environment settings"),
    ("httpx", "Exchange and Telegram HTTP"),
    ("pandas", "Indicator math"),
    ("numpy", "Numerical computing"),
    ("structlog", "Structured logging"),
    ("click", "CLI framework"),
    ("tenacity", "Retry mechanism"),
]


def _load_checked_settings(exchange: str | None) -> Settings:
    """加载配置并校验，配置不完整时退出。"""
    settings = get_settings()
    if exchange:
        settings = settings.model_copy(update={"exchange": exchange})
    setup_logging(settings)
    logger = get_logger("futures_agent.main")

    problems = settings.validate_config()
    if problems:
        logger.error(
            "missing_required_config",
            missing_keys=problems,
            hint="请在 .env 文件中配置必要的 API 密钥",
        )
        sys.exit(1)
    return settings


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Futures Agent - 加密货币永续合约自动交易代理。

    扫描标的、按期望值排序信号、固定资金上限下单，关机时为所有持仓挂好止盈止损。
    """
    if version:
        click.echo(f"futures-agent version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option("--exchange", "-e", type=EXCHANGE_CHOICE, default=None, help="交易所")
@click.option("--testnet/--mainnet", default=None, help="是否使用测试网")
@click.option("--interval-sec", "-i", type=float, default=None, help="循环间隔（秒）")
def start(exchange: str | None, testnet: bool | None, interval_sec: float | None) -> None:
    """启动交易循环。

    SIGINT/SIGTERM 让循环退出后执行关机协议，未捕获异常直接触发。
    """
    settings = _load_checked_settings(exchange)
    logger = get_logger("futures_agent.main")

    engine = build_engine(settings, testnet=testnet, interval_sec=interval_sec)
    engine.shutdown.bind_signals()
    logger.info(
        "starting_engine",
        exchange=engine.config.exchange,
        symbols=len(engine.config.symbols),
        interval_sec=engine.config.signal_interval_sec,
    )

    try:
        engine.start()
    except Exception as e:
        logger.exception("engine_failed", error=str(e))
        engine.stop(f"Engine failure: {e}")
        sys.exit(1)

    # 信号处理器只置位停止事件，关机协议在这里正常路径上执行
    state = engine.stop(engine.shutdown.requested_reason or "Trading loop exited")
    logger.info("engine_stopped", shutdown_complete=state.shutdown_complete)


@cli.command()
@click.option("--exchange", "-e", type=EXCHANGE_CHOICE, default=None, help="交易所")
def once(exchange: str | None) -> None:
    """执行单次交易循环。

    采集信号 → 排序 → 风控定仓 → 下单 → 持仓监控
    """
    settings = _load_checked_settings(exchange)
    logger = get_logger("futures_agent.main")

    engine = build_engine(settings)
    try:
        engine.initialize()
        result = engine.run_cycle()
    except KeyboardInterrupt:
        logger.info("run_interrupted", message="User interrupted")
        sys.exit(0)
    except Exception as e:
        logger.exception("run_failed", error=str(e))
        sys.exit(1)

    logger.info(
        "run_completed",
        status=result.status,
        elapsed_ms=round(result.elapsed_ms, 2),
        signals=result.signals,
        orders=len(result.orders),
        warnings=result.warnings,
    )
    click.echo(f"Status: {result.status}")
    click.echo(f"Signals: {result.signals}")
    click.echo(f"Orders: {len(result.orders)}")
    for order in result.orders:
        click.echo(f"   - {order.get('symbol')} {order.get('side')} {order.get('status')}")


@cli.command()
@click.option("--reason", "-r", default="Manual shutdown", help="关机原因")
@click.option("--exchange", "-e", type=EXCHANGE_CHOICE, default=None, help="交易所")
def shutdown(reason: str, exchange: str | None) -> None:
    """对交易所当前持仓执行一次关机协议（重算并挂好止盈止损）。"""
    settings = _load_checked_settings(exchange)

    engine = build_engine(settings)
    state = engine.stop(reason)

    click.echo(f"Positions updated: {len(state.positions_updated)}")
    for position in state.positions_updated:
        click.echo(f"   - {position.symbol} TP {position.take_profit} SL {position.stop_loss}")
    if state.errors:
        click.echo(f"Errors: {len(state.errors)}")
        for error in state.errors:
            click.echo(f"   - {error}")
    click.echo(f"Complete: {'Yes' if state.shutdown_complete else 'No'}")


@cli.command()
def status() -> None:
    """显示系统状态和配置摘要。"""
    settings = get_settings()
    setup_logging(settings)

    click.echo("=" * 50)
    click.echo("Futures Agent - Status")
    click.echo("=" * 50)
    click.echo()

    network = "Testnet" if settings.testnet else "Mainnet"
    click.echo(f"[{settings.exchange.upper()}] Exchange: {settings.exchange} ({network})")
    click.echo()

    # API 配置状态
    click.echo("[API Configuration]")
    for label, key in (
        ("Bybit API", settings.bybit_api_key),
        ("MEXC API", settings.mexc_api_key),
        ("Telegram", settings.telegram_bot_token),
    ):
        click.echo(f"   {label}: {'[OK] Configured' if key else '[--] Not configured'}")
    click.echo()

    # 风控参数
    click.echo("[Risk Parameters]")
    click.echo(f"   Capital per trade: {settings.base_capital_usdt} USDT")
    click.echo(f"   Max leverage: {settings.max_leverage}x")
    click.echo(f"   TP / SL: {settings.tp_atr_multiplier} / {settings.sl_atr_multiplier} ATR")
    click.echo(f"   Min EV: {settings.min_ev_score} | Min Kelly: {settings.min_kelly_score}")
    click.echo(f"   Max open positions: {settings.max_open_positions}")
    click.echo(f"   Taker fee: {settings.taker_fee * 100:.3f}%")
    click.echo()

    click.echo("[Universe]")
    click.echo(f"   Symbols ({len(settings.target_symbols)}): {', '.join(settings.target_symbols)}")
    click.echo(f"   Interval: {settings.kline_interval} x {settings.kline_limit}")
    click.echo()

    # 日志配置
    click.echo("[Logging]")
    click.echo(f"   Log level: {settings.log_level}")
    click.echo(f"   Log format: {settings.log_format.value}")
    click.echo(f"   Journal dir: {settings.journal_dir}")
    click.echo()

    # 最近一次循环与关机记录
    if settings.journal_dir.is_dir():
        journal = JournalStore(settings.journal_dir)
        last_cycle = journal.last_event("cycle_end")
        last_shutdown = journal.last_event("shutdown")
        click.echo("[Journal]")
        if last_cycle:
            click.echo(f"   Last cycle: {last_cycle['payload'].get('status')} at {last_cycle['timestamp']}")
        else:
            click.echo("   Last cycle: none")
        if last_shutdown:
            payload = last_shutdown["payload"]
            click.echo(
                f"   Last shutdown: {payload.get('reason')} "
                f"({payload.get('positions_updated')}/{payload.get('positions')} updated, "
                f"{payload.get('errors')} errors)"
            )
        click.echo()

    problems = settings.validate_config()
    if problems:
        click.echo("[ERROR] Configuration incomplete:")
        for key in problems:
            click.echo(f"   - {key}")
    else:
        click.echo("[OK] Configuration complete")

    click.echo()
    click.echo("=" * 50)


@cli.command()
@click.option("--ping", is_flag=True, help="同时请求交易所余额以验证 API 密钥")
def check(ping: bool) -> None:
    """检查依赖、配置与日志目录，可选验证交易所连通性。"""
    settings = get_settings()
    setup_logging(settings)
    logger = get_logger("futures_agent.main")

    click.echo("Checking system dependencies...")
    all_ok = True
    for dist, desc in DEPENDENCIES:
        try:
            click.echo(f"  [OK] {dist} {version(dist)} - {desc}")
        except PackageNotFoundError:
            click.echo(f"  [MISSING] {dist} - {desc}")
            all_ok = False
    click.echo()

    env_state = "[OK] .env found" if Path(".env").exists() else "[WARN] .env not found (using environment)"
    click.echo(f"  {env_state}")
    problems = settings.validate_config()
    for key in problems:
        click.echo(f"  [ERROR] missing or invalid: {key}")
    all_ok = all_ok and not problems

    try:
        settings.ensure_directories()
        click.echo(f"  [OK] journal dir writable: {settings.journal_dir}")
    except OSError as e:
        click.echo(f"  [ERROR] journal dir: {e}")
        all_ok = False

    if ping and not problems:
        client = build_clients(settings, settings.exchange, settings.testnet)[settings.exchange]
        try:
            balance = client.get_balance()
            click.echo(f"  [OK] {settings.exchange} reachable, balance {balance:.2f} USDT")
        except ExchangeError as e:
            click.echo(f"  [ERROR] {settings.exchange} unreachable: {e}")
            all_ok = False
        finally:
            client.close()

    click.echo()
    click.echo("[OK] All checks passed" if all_ok else "[ERROR] Some checks failed")
    logger.info("system_check_completed", all_ok=all_ok, ping=ping)
    if not all_ok:
        sys.exit(1)


# 支持 python -m futures_agent.main 调用
if __name__ == "__main__":
    cli()
