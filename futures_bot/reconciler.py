"""Keeps the position table in line with the exchange and enforces exits.

Exchange state always wins: reported positions are upserted, anything the
exchange no longer reports is dropped. Then every tracked position is held
to its exit rule, either the polled PnL envelope (``manual``) or the
presence of both protective orders (``protective``).
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from .errors import BotError
from .models import OpenOrder, Position, closing_side
from .state import utc_now, utc_now_iso

TAKE_PROFIT_REASON = "Take Profit (PnL)"
STOP_LOSS_REASON = "Stop Loss (PnL)"
MISSING_PROTECTION_REASON = "Missing protective order"


@dataclass(frozen=True)
class PnL:
    pnl: float
    roi: float


def compute_pnl(side: str, entry: float, current: float, amount: float, contract_size: float,
                leverage: float, fee_rate: float) -> PnL:
    """Net PnL after estimated entry and exit fees, and ROI on margin in percent."""
    entry_fee = amount * entry * contract_size * fee_rate
    exit_fee = amount * current * contract_size * fee_rate
    delta = current - entry if side == "long" else entry - current
    pnl = delta * amount * contract_size - entry_fee - exit_fee
    margin = (amount * entry * contract_size) / leverage if leverage else 0.0
    roi = (pnl / margin) * 100 if margin > 0 else 0.0
    return PnL(pnl, roi)


def exit_reason(pnl: float, profit_target: float, loss_limit: float) -> Optional[str]:
    if pnl >= profit_target:
        return TAKE_PROFIT_REASON
    if pnl <= -loss_limit:
        return STOP_LOSS_REASON
    return None


def position_age(position: Position, now: Optional[datetime] = None) -> float:
    """Seconds since the position was first seen; infinite when unreadable."""
    now = now or utc_now()
    try:
        opened = datetime.fromisoformat(position.opened_at)
    except (TypeError, ValueError):
        return float("inf")
    if opened.tzinfo is None:
        opened = opened.replace(tzinfo=timezone.utc)
    return (now - opened).total_seconds()


async def close_position_now(session, symbol: str, side: str, amount: float, reason: str) -> bool:
    """Cancel every open order, then flatten with a reduce-only market order."""
    gateway = session.gateway
    try:
        await gateway.cancel_all_orders(symbol)
        logging.info(f"🗑️ [{symbol}] Cancelled open orders before closing")
        await gateway.submit_market_order(symbol, closing_side(side), amount, {"reduceOnly": True})
    except BotError as e:
        logging.error(f"❌ Close failed for {symbol} ({reason}): {e}")
        return False

    logging.info(f"🛑 [{symbol}] Closed {side.upper()} {amount} at market ({reason})")
    session.positions.pop(symbol, None)
    session.persist()
    session.publish("close", {"symbol": symbol, "side": side, "amount": amount, "reason": reason})
    return True


def _sync_from_exchange(session, reports) -> bool:
    cfg = session.config
    positions = session.positions
    open_symbols = set()
    changed = False

    for r in reports:
        open_symbols.add(r.symbol)
        amount = abs(r.amount)
        existing = positions.get(r.symbol)
        leverage = r.leverage or (existing.leverage if existing else None) or cfg.leverage
        if existing is None:
            positions[r.symbol] = Position(
                symbol=r.symbol,
                side=r.side,
                entry=r.entry_price,
                amount=amount,
                opened_at=utc_now_iso(),
                leverage=leverage,
            )
            changed = True
        elif (existing.side, existing.entry, existing.amount, existing.leverage) != \
                (r.side, r.entry_price, amount, leverage):
            existing.side = r.side
            existing.entry = r.entry_price
            existing.amount = amount
            existing.leverage = leverage
            changed = True
        logging.info(f"📌 Position {r.symbol}: {r.amount} contracts, uPnL {r.unrealized_pnl}")

    for symbol in list(positions):
        if symbol not in open_symbols:
            logging.info(f"🟥 Position {symbol} is closed on the exchange. Removing it.")
            del positions[symbol]
            changed = True
    return changed


async def _check_protection(session, position: Position):
    orders: List[OpenOrder] = await session.gateway.fetch_open_orders(position.symbol)
    tp = next((o for o in orders if o.is_take_profit), None)
    sl = next((o for o in orders if o.is_stop_loss), None)

    tp_price = tp.stop_price if tp else None
    sl_price = sl.stop_price if sl else None
    if (position.take_profit, position.stop_loss) != (tp_price, sl_price):
        position.take_profit = tp_price
        position.stop_loss = sl_price
        session.persist()

    if tp and sl:
        logging.info(f"🛡️ {position.symbol} protected TP={tp_price} SL={sl_price}")
        return

    missing = " and ".join(name for name, o in (("take-profit", tp), ("stop-loss", sl)) if o is None)
    age = position_age(position)
    grace = session.config.protection_grace_sec
    if age < grace:
        logging.info(f"⏳ {position.symbol} missing {missing}, within {grace:.0f}s grace period")
        return

    logging.error(f"🚨 {position.symbol} has no {missing} order. Closing immediately.")
    closed = await close_position_now(session, position.symbol, position.side, position.amount,
                                      MISSING_PROTECTION_REASON)
    if closed:
        await asyncio.sleep(session.config.settle_delay)


async def _check_thresholds(session, position: Position):
    cfg = session.config
    instrument = session.gateway.market(position.symbol)
    contract_size = instrument.contract_size if instrument else 1.0
    ticker = await session.gateway.fetch_ticker(position.symbol)

    result = compute_pnl(position.side, position.entry, ticker.last, position.amount, contract_size,
                         position.leverage or cfg.leverage, cfg.fee_rate)
    reason = exit_reason(result.pnl, cfg.profit_target, cfg.loss_limit)
    session.publish("position", {"symbol": position.symbol, "side": position.side, "entry": position.entry,
                                 "price": ticker.last, "pnl": result.pnl, "roi": result.roi})
    if reason is None:
        logging.info(f"📊 {position.symbol} ROI: {result.roi:.2f}% - holding")
        return

    logging.info(f"🧮 {position.symbol} hit {reason}. PnL={result.pnl:.4f}, ROI={result.roi:.2f}%")
    closed = await close_position_now(session, position.symbol, position.side, position.amount, reason)
    if closed:
        await asyncio.sleep(cfg.settle_delay)
    else:
        logging.error(f"❌ Closing {position.symbol} failed. Will retry next cycle.")


async def reconcile(session):
    try:
        reports = await session.gateway.fetch_open_positions()
    except BotError as e:
        logging.error(f"❌ Position check failed: {e}")
        return

    if _sync_from_exchange(session, reports):
        session.persist()

    for symbol, position in list(session.positions.items()):
        try:
            if session.config.protective_orders:
                await _check_protection(session, position)
            else:
                await _check_thresholds(session, position)
        except BotError as e:
            logging.error(f"❌ Position check failed for {symbol}: {e}")
