import argparse
import asyncio
import atexit
import logging
import signal
import sys
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .bot import run_bot
from .broadcast import Broadcaster
from .config import EXIT_MODES, BotConfig, load_config
from .errors import ConfigError
from .gateway import BinanceGateway
from .retry import RetryPolicy
from .state import PositionStore, TradingSession


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Binance USDT-M futures scanner/trader")
    parser.add_argument("--env-file", default=None, help="Path to a .env file (default: search upwards)")
    parser.add_argument("--testnet", action="store_true", default=None, help="Trade on the futures testnet")
    parser.add_argument("--state-file", default=None, help="Where open positions are persisted")
    parser.add_argument("--log-file", default=None, help="Log file in addition to the console")
    parser.add_argument("--dashboard-port", type=int, default=None, help="Websocket push channel port (0 = off)")
    parser.add_argument("--exit-mode", choices=EXIT_MODES, default=None,
                        help="manual = PnL guard polling, protective = exchange TP/SL orders")
    return parser.parse_args(argv)


def setup_logging(log_file: str):
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )


def log_local_time(tz_name: str):
    try:
        now = datetime.now(ZoneInfo(tz_name))
    except ZoneInfoNotFoundError:
        logging.warning(f"⚠️ Unknown timezone {tz_name!r}")
        return
    logging.info(f"🕰️ Local time ({tz_name}): {now.strftime('%Y-%m-%d %H:%M:%S')}")


def print_banner(cfg: BotConfig):
    print("=" * 80)
    print("MULTI-INDICATOR FUTURES SCANNER - RSI / MACD / SMA / EMA + TREND FILTER")
    print("=" * 80)
    print(f"Market: {cfg.quote_asset} perpetuals{' (TESTNET)' if cfg.testnet else ''}, timeframe {cfg.timeframe}")
    print(f"Universe: top {cfg.top_volume_count} by volume -> up to {cfg.max_candidates} liquid pairs "
          f"(depth >= {cfg.min_book_depth:,.0f})")
    print(f"Entry: score >= {cfg.signal.min_score} on one side, beating the other, "
          f"with EMA{cfg.trend_ema_period} trend agreement")
    print(f"Size: {cfg.trade_amount} {cfg.quote_asset} per trade, leverage {cfg.leverage}x, "
          f"max {cfg.max_positions} positions")
    if cfg.protective_orders:
        print(f"Exit: exchange TP/SL orders (+{cfg.profit_target} / -{cfg.loss_limit} {cfg.quote_asset}), "
              f"force close if missing after {cfg.protection_grace_sec:.0f}s")
    else:
        print(f"Exit: PnL guard every cycle (+{cfg.profit_target} / -{cfg.loss_limit} {cfg.quote_asset}, "
              f"fee {cfg.fee_rate * 100:.2f}%/leg)")
    print(f"Stop: balance >= {cfg.target_balance} {cfg.quote_asset} with no open positions")
    print("=" * 80)


async def main_async(cfg: BotConfig):
    policy = RetryPolicy(cfg.retry_attempts, cfg.retry_delay)
    gateway = await BinanceGateway.create(cfg.api_key, cfg.api_secret, testnet=cfg.testnet, policy=policy)
    session = TradingSession(config=cfg, gateway=gateway, store=PositionStore(cfg.state_file))
    atexit.register(session.persist)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, session.stop_event.set)
        except (NotImplementedError, RuntimeError):
            pass

    if cfg.dashboard_port > 0:
        session.broadcaster = Broadcaster(port=cfg.dashboard_port)
        await session.broadcaster.start()

    try:
        await run_bot(session)
    finally:
        if session.broadcaster is not None:
            await session.broadcaster.stop()
        await gateway.close()


def main(argv=None):
    args = parse_args(argv)
    try:
        cfg = load_config(args.env_file).with_overrides(
            testnet=args.testnet,
            state_file=args.state_file,
            log_file=args.log_file,
            dashboard_port=args.dashboard_port,
            exit_mode=args.exit_mode,
        )
    except ConfigError as e:
        setup_logging(args.log_file or "bot.log")
        logging.error(f"❌ {e}")
        sys.exit(1)

    setup_logging(cfg.log_file)
    log_local_time(cfg.local_timezone)
    print_banner(cfg)
    try:
        asyncio.run(main_async(cfg))
    except KeyboardInterrupt:
        logging.info("🛑 Bot stopped")


if __name__ == "__main__":
    main()
