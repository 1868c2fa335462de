"""Order sizing under exchange filters, and the entry path.

Quantities and prices are rounded with ``Decimal`` so that step and tick
multiples come out exact (``0.05`` rather than ``0.05000000000000001``).
"""
import logging
import math
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Tuple

from .errors import BotError, InvalidOrderError
from .models import Instrument, closing_side, order_side


# ========================= PRICE & QTY FILTERS =========================
def _dec(x) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x))


def decimals_from_step(step) -> int:
    text = format(_dec(step).normalize(), "f")
    if "." not in text:
        return 0
    return len(text.split(".")[1].rstrip("0"))


def floor_to_step(quantity: float, step: float) -> float:
    step_d = _dec(step)
    if step_d <= 0:
        return float(quantity)
    q = (_dec(quantity) / step_d).to_integral_value(rounding=ROUND_DOWN) * step_d
    return float(q)


def quantize_price(price: float, tick: float) -> float:
    tick_d = _dec(tick)
    if tick_d <= 0:
        return float(price)
    q = (_dec(price) / tick_d).to_integral_value(rounding=ROUND_HALF_UP) * tick_d
    return float(q)


def format_quantity(quantity: float, step: float) -> str:
    return f"{_dec(floor_to_step(quantity, step)):.{decimals_from_step(step)}f}"


def format_price(price: float, tick: float) -> str:
    return f"{_dec(quantize_price(price, tick)):.{decimals_from_step(tick)}f}"


def _is_positive(value) -> bool:
    try:
        return value is not None and math.isfinite(value) and value > 0
    except TypeError:
        return False


def adjust_quantity(price: float, quantity: float, min_notional: float, step: float) -> float:
    """Make ``quantity`` exchange-legal at ``price``.

    The result is a multiple of ``step`` with ``result * price >= min_notional``.
    Raises InvalidOrderError when the minimum notional needs less than one step.
    """
    if not _is_positive(price):
        raise InvalidOrderError(f"invalid price {price}")
    if not _is_positive(quantity):
        raise InvalidOrderError(f"invalid quantity {quantity}")
    step_d = _dec(step)
    price_d = _dec(price)
    min_d = _dec(min_notional)

    qty_d = _dec(floor_to_step(quantity, step))
    if qty_d * price_d >= min_d and qty_d >= step_d:
        return float(qty_d)

    qty_d = ((min_d / price_d) / step_d).to_integral_value(rounding=ROUND_DOWN) * step_d
    if qty_d < step_d:
        raise InvalidOrderError(
            f"adjusted quantity {qty_d} below minimum step {step} (min notional {min_notional} @ {price})")
    if qty_d * price_d < min_d:
        qty_d += step_d
    return float(qty_d)


def protective_prices(side: str, filled_price: float, quantity: float, contract_size: float,
                      profit_target: float, loss_limit: float, tick: float) -> Tuple[float, float]:
    """Take-profit / stop-loss trigger prices that realise the fixed PnL amounts."""
    exposure = quantity * contract_size
    if exposure <= 0:
        raise InvalidOrderError(f"cannot price protection for quantity {quantity}")
    tp_move = profit_target / exposure
    sl_move = loss_limit / exposure
    if side == "long":
        tp, sl = filled_price + tp_move, filled_price - sl_move
    else:
        tp, sl = filled_price - tp_move, filled_price + sl_move
    if sl <= 0 or tp <= 0:
        raise InvalidOrderError(f"protective price out of range tp={tp} sl={sl}")
    return quantize_price(tp, tick), quantize_price(sl, tick)


def order_quantity(trade_amount: float, price: float, contract_size: float = 1.0) -> float:
    """Contracts worth ``trade_amount`` quote units; step rounding happens in adjust_quantity."""
    if not _is_positive(price) or not _is_positive(contract_size):
        return 0.0
    return trade_amount / price / contract_size


# ========================= ENTRY =========================
class EntryResult(str, Enum):
    REJECTED = "rejected"
    OPENED = "opened"
    UNPROTECTED = "unprotected"  # filled, but TP/SL placement failed

    @property
    def entered(self) -> bool:
        return self is not EntryResult.REJECTED


async def open_position(session, symbol: str, side: str, reference_price: float,
                        requested_quantity: float, leverage: int) -> EntryResult:
    """Size and submit an entry order.

    Anything past REJECTED means the exchange holds exposure, whether or not
    the protective orders made it. The position table is left alone: the
    next reconcile records the fill.
    """
    if not _is_positive(reference_price):
        logging.error(f"❌ Invalid entry price for {symbol}: {reference_price}")
        return EntryResult.REJECTED
    if not _is_positive(requested_quantity):
        logging.error(f"❌ Invalid quantity for {symbol}: {requested_quantity}")
        return EntryResult.REJECTED
    if side not in ("long", "short"):
        logging.error(f"❌ Invalid side for {symbol}: {side}")
        return EntryResult.REJECTED

    cfg = session.config
    gateway = session.gateway
    instrument: Optional[Instrument] = gateway.market(symbol)
    if instrument is None:
        logging.error(f"❌ Market not found: {symbol}")
        return EntryResult.REJECTED

    min_notional = instrument.min_notional if instrument.min_notional > 0 else cfg.min_notional
    try:
        quantity = adjust_quantity(reference_price, requested_quantity, min_notional, instrument.step_size)
    except InvalidOrderError as e:
        logging.error(f"❌ {symbol} cannot meet exchange minimum: {e}")
        return EntryResult.REJECTED
    if quantity != requested_quantity:
        logging.warning(f"⚠️ Adjusted quantity for {symbol} from {requested_quantity} to {quantity} "
                        f"(min notional {min_notional})")

    logging.info(f"🚀 Opening {side.upper()} {symbol} @ {reference_price}, qty {quantity}, leverage {leverage}x")
    try:
        await gateway.set_leverage(symbol, leverage)
        ack = await gateway.submit_market_order(symbol, order_side(side), quantity)
    except BotError as e:
        logging.error(f"❌ Failed to open {side.upper()} {symbol}: {e}")
        return EntryResult.REJECTED

    filled_price = ack.average_price or reference_price
    if not cfg.protective_orders:
        logging.info(f"✅ Opened {side.upper()} {symbol} @ ~{filled_price} (exits managed by PnL guard)")
        return EntryResult.OPENED

    try:
        tp, sl = protective_prices(side, filled_price, quantity, instrument.contract_size,
                                   cfg.profit_target, cfg.loss_limit, instrument.tick_size)
        exit_side = closing_side(side)
        await gateway.submit_conditional_order(symbol, "TAKE_PROFIT_MARKET", exit_side, quantity, tp,
                                               {"reduceOnly": True})
        await gateway.submit_conditional_order(symbol, "STOP_MARKET", exit_side, quantity, sl,
                                               {"reduceOnly": True})
    except BotError as e:
        # Entry stands; the reconciler force-closes an unprotected position after the grace period.
        logging.error(f"❌ {symbol} protective orders failed after entry: {e}")
        return EntryResult.UNPROTECTED

    logging.info(f"✅ Opened {side.upper()} {symbol} @ ~{filled_price} TP={tp} SL={sl}")
    return EntryResult.OPENED
