"""Typed records exchanged between the gateway and the trading core."""
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, List, Tuple, Dict, Any

import numpy as np


class Signal(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    NONE = "NONE"

    @property
    def side(self) -> Optional[str]:
        if self is Signal.LONG:
            return "long"
        if self is Signal.SHORT:
            return "short"
        return None


def normalize_symbol(instrument_id: str) -> str:
    """'ETH/USDT:USDT' -> 'ETH/USDT'"""
    return instrument_id.split(":")[0]


def is_valid_symbol(symbol) -> bool:
    return isinstance(symbol, str) and "/" in symbol and not symbol.startswith("/") and not symbol.endswith("/")


def order_side(position_side: str) -> str:
    """Exchange order side that opens a position of ``position_side``."""
    return "BUY" if position_side == "long" else "SELL"


def closing_side(position_side: str) -> str:
    return "SELL" if position_side == "long" else "BUY"


@dataclass(frozen=True)
class Instrument:
    id: str                      # unified id, e.g. BTC/USDT:USDT
    exchange_symbol: str         # exchange id, e.g. BTCUSDT
    base: str
    quote: str
    settle: str
    active: bool = True
    perpetual: bool = True
    step_size: float = 0.001
    min_notional: float = 5.0
    contract_size: float = 1.0
    tick_size: float = 0.01
    price_precision: int = 2

    @property
    def symbol(self) -> str:
        return normalize_symbol(self.id)


@dataclass(frozen=True)
class Candle:
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class Ticker:
    symbol: str
    last: float
    quote_volume: float = 0.0


@dataclass(frozen=True)
class OrderBook:
    symbol: str
    bids: List[Tuple[float, float]] = field(default_factory=list)
    asks: List[Tuple[float, float]] = field(default_factory=list)

    def depth(self) -> float:
        """Sum of price * size across both sides."""
        bid_depth = sum(p * a for p, a in self.bids)
        ask_depth = sum(p * a for p, a in self.asks)
        return bid_depth + ask_depth


@dataclass(frozen=True)
class PositionReport:
    symbol: str
    amount: float                # signed: > 0 long, < 0 short
    entry_price: float
    unrealized_pnl: float = 0.0
    leverage: Optional[int] = None

    @property
    def side(self) -> str:
        return "long" if self.amount > 0 else "short"


@dataclass(frozen=True)
class OpenOrder:
    order_id: int
    symbol: str
    type: str
    side: str
    stop_price: float = 0.0
    reduce_only: bool = False

    @property
    def is_take_profit(self) -> bool:
        return self.type.startswith("TAKE_PROFIT")

    @property
    def is_stop_loss(self) -> bool:
        return self.type in ("STOP", "STOP_MARKET")


@dataclass(frozen=True)
class OrderAck:
    order_id: int
    symbol: str
    status: str = ""
    average_price: float = 0.0
    executed_qty: float = 0.0


@dataclass
class Position:
    symbol: str
    side: str                    # "long" / "short"
    entry: float
    amount: float
    opened_at: str               # ISO-8601 UTC, never overwritten once set
    leverage: Optional[int] = None
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("symbol")
        return data

    @classmethod
    def from_dict(cls, symbol: str, data: Dict[str, Any]) -> "Position":
        side = data["side"]
        if side not in ("long", "short"):
            raise ValueError(f"bad side {side!r}")
        lev = data.get("leverage")
        tp = data.get("take_profit")
        sl = data.get("stop_loss")
        return cls(
            symbol=symbol,
            side=side,
            entry=float(data["entry"]),
            amount=float(data["amount"]),
            opened_at=str(data["opened_at"]),
            leverage=int(lev) if lev is not None else None,
            take_profit=float(tp) if tp is not None else None,
            stop_loss=float(sl) if sl is not None else None,
        )


@dataclass(frozen=True)
class IndicatorSnapshot:
    closes: np.ndarray
    volumes: np.ndarray
    rsi: np.ndarray
    macd: np.ndarray
    macd_signal: np.ndarray
    macd_hist: np.ndarray
    sma: np.ndarray
    ema: np.ndarray
    trend_ema: np.ndarray
    volume_avg: float
    opens: Optional[np.ndarray] = None
