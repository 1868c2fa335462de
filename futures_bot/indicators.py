"""RSI / MACD / SMA / EMA over a closing-price series.

Each function returns a numpy array aligned to the tail of the input and
shorter than it by the indicator's warm-up, so ``out[-1]`` always belongs
to the latest candle. Too-short input gives an empty array.
"""
from typing import NamedTuple, Sequence

import numpy as np


class MACDResult(NamedTuple):
    macd: np.ndarray
    signal: np.ndarray
    histogram: np.ndarray


def _as_array(values: Sequence[float]) -> np.ndarray:
    return np.asarray(values, dtype=float)


def compute_sma(values: Sequence[float], period: int) -> np.ndarray:
    arr = _as_array(values)
    if period <= 0 or len(arr) < period:
        return np.empty(0)
    cumsum = np.cumsum(np.insert(arr, 0, 0.0))
    return (cumsum[period:] - cumsum[:-period]) / period


def compute_ema(values: Sequence[float], period: int) -> np.ndarray:
    """EMA seeded with the SMA of the first ``period`` values."""
    arr = _as_array(values)
    if period <= 0 or len(arr) < period:
        return np.empty(0)
    k = 2.0 / (period + 1)
    out = np.empty(len(arr) - period + 1)
    out[0] = arr[:period].mean()
    for i, price in enumerate(arr[period:], start=1):
        out[i] = (price - out[i - 1]) * k + out[i - 1]
    return out


def compute_rsi(values: Sequence[float], period: int = 14) -> np.ndarray:
    """Wilder RSI; one value per candle after the first ``period`` changes."""
    arr = _as_array(values)
    if period <= 0 or len(arr) <= period:
        return np.empty(0)
    deltas = np.diff(arr)
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    out = np.empty(len(deltas) - period + 1)
    out[0] = _rsi_value(avg_gain, avg_loss)
    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        out[i - period + 1] = _rsi_value(avg_gain, avg_loss)
    return out


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def compute_macd(values: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9) -> MACDResult:
    """MACD line, signal line and histogram, trimmed to where all three exist."""
    empty = MACDResult(np.empty(0), np.empty(0), np.empty(0))
    if fast <= 0 or slow <= 0 or signal <= 0 or fast >= slow:
        return empty
    fast_ema = compute_ema(values, fast)
    slow_ema = compute_ema(values, slow)
    if len(slow_ema) == 0:
        return empty
    macd_line = fast_ema[-len(slow_ema):] - slow_ema
    signal_line = compute_ema(macd_line, signal)
    if len(signal_line) == 0:
        return empty
    macd_line = macd_line[-len(signal_line):]
    return MACDResult(macd_line, signal_line, macd_line - signal_line)
