"""The polling loop: balance, reconcile, then scan and open."""
import asyncio
import logging
import time
from typing import Optional

from .analyzer import build_snapshot, evaluate
from .errors import BotError, InsufficientDataError, PermanentGatewayError
from .models import IndicatorSnapshot, Signal, is_valid_symbol, normalize_symbol
from .reconciler import reconcile
from .selector import select_candidates
from .sizing import EntryResult, open_position, order_quantity


async def fetch_indicators(session, symbol: str) -> Optional[IndicatorSnapshot]:
    """Candles + indicators for ``symbol``; None (and maybe blacklisted) when unusable."""
    cfg = session.config
    if not is_valid_symbol(symbol):
        logging.error(f"❌ Invalid symbol: {symbol}")
        session.blacklist.add(symbol)
        return None

    instrument = session.gateway.market(symbol)
    if instrument is None or not instrument.active:
        logging.error(f"❌ Symbol {symbol} unknown or not trading")
        session.blacklist.add(symbol)
        return None

    try:
        candles = await session.gateway.fetch_candles(symbol, cfg.timeframe, cfg.kline_limit)
        if len(candles) < cfg.min_candles:
            raise InsufficientDataError(f"only {len(candles)} candles")
        return build_snapshot(candles, cfg)
    except (InsufficientDataError, PermanentGatewayError) as e:
        logging.error(f"❌ Not enough usable data for {symbol}: {e}. Blacklisted.")
        session.blacklist.add(symbol)
    except BotError as e:
        logging.warning(f"⚠️ Indicator fetch failed for {symbol}: {e}")
    return None


async def evaluate_candidate(session, symbol: str) -> bool:
    """Analyze one instrument and open a position on a signal.

    True whenever an entry order was accepted, protected or not, so callers
    count it against max_positions.
    """
    cfg = session.config
    session.locks.add(symbol)
    try:
        snapshot = await fetch_indicators(session, symbol)
        if snapshot is None:
            return False

        result = evaluate(snapshot, cfg.signal)
        if result.signal is Signal.NONE:
            detail = result.rejected or f"long={result.long_score} short={result.short_score}"
            logging.info(f"ℹ️ No clear signal on {symbol} ({detail})")
            return False

        logging.info(f"📈 {symbol} signal {result.signal.value} "
                     f"(long={result.long_score}, short={result.short_score}: {', '.join(result.reasons)})")
        session.publish("signal", {"symbol": symbol, "signal": result.signal.value,
                                   "long_score": result.long_score, "short_score": result.short_score})

        ticker = await session.gateway.fetch_ticker(symbol)
        instrument = session.gateway.market(symbol)
        quantity = order_quantity(cfg.trade_amount, ticker.last, instrument.contract_size)
        if quantity <= 0:
            logging.warning(f"⚠️ Computed quantity invalid for {symbol}: {quantity}")
            return False

        if symbol in session.positions:
            logging.warning(f"⚠️ {symbol} already has a position right before opening. Skipping.")
            return False

        entry = await open_position(session, symbol, result.signal.side, ticker.last, quantity, cfg.leverage)
        if entry.entered:
            protected = entry is EntryResult.OPENED
            if not protected:
                logging.error(f"🚨 {symbol} is open without TP/SL; reconcile will close it after the grace period")
            session.publish("open", {"symbol": symbol, "side": result.signal.side, "price": ticker.last,
                                     "protected": protected})
            await session.sleep(cfg.open_cooldown)
        else:
            logging.error(f"❌ Opening failed for {symbol}")
        return entry.entered
    except BotError as e:
        logging.error(f"❌ Error evaluating {symbol}: {e}")
        return False
    finally:
        session.locks.discard(symbol)


async def scan_and_open(session) -> int:
    """One pass over the candidates; returns how many positions were opened."""
    cfg = session.config
    candidates = await select_candidates(session)
    opened = 0
    for raw in candidates:
        if session.stop_event.is_set():
            break
        symbol = normalize_symbol(raw)
        if symbol in session.blacklist:
            logging.info(f"⚠️ Skipping blacklisted symbol: {symbol}")
            continue
        if symbol in session.locks:
            logging.info(f"🔒 {symbol} is being processed, skipping.")
            continue
        if symbol in session.positions:
            logging.info(f"ℹ️ Already holding {symbol}, skipping.")
            continue

        if await evaluate_candidate(session, symbol):
            opened += 1
            # New fills only reach the table at the next reconcile.
            if len(session.positions) + opened >= cfg.max_positions:
                logging.info(f"⚠️ Max positions ({cfg.max_positions}) reached mid-scan.")
                break
    return opened


async def run_cycle(session) -> Optional[float]:
    """One loop iteration. Returns seconds to sleep, or None to stop for good."""
    cfg = session.config
    balance = await session.gateway.fetch_balance(cfg.quote_asset)
    session.balance = balance
    logging.info(f"💰 Balance: {balance} {cfg.quote_asset}")
    session.publish("balance", {"asset": cfg.quote_asset, "total": balance})

    await reconcile(session)
    session.publish("positions", {sym: pos.to_dict() for sym, pos in session.positions.items()})

    if balance >= cfg.target_balance:
        logging.info(f"🎯 Target balance {cfg.target_balance} {cfg.quote_asset} reached. Only watching positions.")
        if not session.positions:
            logging.info("✅ No open positions left. Stopping bot.")
            return None
        return cfg.target_interval

    if len(session.positions) >= cfg.max_positions:
        logging.info(f"⚠️ Max positions ({cfg.max_positions}) open. Only watching positions.")
        return cfg.cap_interval

    await scan_and_open(session)
    return cfg.poll_interval


async def run_bot(session):
    cfg = session.config
    logging.info("🚀 Starting trading bot...")
    session.restore()

    while not session.stop_event.is_set():
        logging.info(f"🕒 New cycle at {time.strftime('%Y-%m-%d %H:%M:%S')}")
        try:
            delay = await run_cycle(session)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logging.error(f"❌ Main loop error: {e}")
            delay = cfg.error_backoff
        if delay is None:
            break
        if await session.sleep(delay):
            break
    logging.info("🛑 Bot stopped")
