"""Entry signal from an indicator snapshot.

A trade needs several indicators to agree: every test adds a weight to the
long or the short side, the winning side must reach ``min_score``, beat
the other side outright and agree with the long-EMA trend filter.
"""
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from .config import BotConfig, SignalSettings
from .errors import InsufficientDataError
from .indicators import compute_ema, compute_macd, compute_rsi, compute_sma
from .models import Candle, IndicatorSnapshot, Signal


@dataclass(frozen=True)
class Evaluation:
    signal: Signal
    long_score: float = 0.0
    short_score: float = 0.0
    reasons: List[str] = field(default_factory=list)
    rejected: Optional[str] = None


def build_snapshot(candles: Sequence[Candle], cfg: BotConfig) -> IndicatorSnapshot:
    closes = np.array([c.close for c in candles], dtype=float)
    volumes = np.array([c.volume for c in candles], dtype=float)
    opens = np.array([c.open for c in candles], dtype=float)

    rsi = compute_rsi(closes, cfg.rsi_period)
    macd = compute_macd(closes, cfg.macd_fast, cfg.macd_slow, cfg.macd_signal)
    sma = compute_sma(closes, cfg.sma_period)
    ema = compute_ema(closes, cfg.ema_period)
    trend = compute_ema(closes, cfg.trend_ema_period)

    lengths = {"rsi": len(rsi), "macd": len(macd.histogram), "sma": len(sma), "ema": len(ema), "trend_ema": len(trend)}
    short = [name for name, n in lengths.items() if n < 2]
    if len(closes) < 3 or short:
        raise InsufficientDataError(f"indicator history too short ({', '.join(short) or 'closes'}) "
                                    f"from {len(closes)} candles")

    window = cfg.signal.volume_avg_window
    return IndicatorSnapshot(
        closes=closes,
        volumes=volumes,
        rsi=rsi,
        macd=macd.macd,
        macd_signal=macd.signal,
        macd_hist=macd.histogram,
        sma=sma,
        ema=ema,
        trend_ema=trend,
        volume_avg=float(volumes[-window:].sum() / window),
        opens=opens,
    )


def evaluate(snap: IndicatorSnapshot, settings: SignalSettings = SignalSettings()) -> Evaluation:
    s = settings
    derived = (snap.rsi, snap.macd_hist, snap.sma, snap.ema, snap.trend_ema)
    if len(snap.closes) < 3 or len(snap.volumes) < 1 or any(len(seq) < 2 for seq in derived):
        return Evaluation(Signal.NONE, rejected="insufficient data")

    latest_close = float(snap.closes[-1])
    previous_close = float(snap.closes[-2])
    if s.use_real_opens and snap.opens is not None and len(snap.opens) >= 2:
        latest_open = float(snap.opens[-1])
        previous_open = float(snap.opens[-2])
    else:
        # Synthetic opens: each candle opens at the previous close.
        latest_open = previous_close
        previous_open = float(snap.closes[-3])

    latest_rsi, previous_rsi = float(snap.rsi[-1]), float(snap.rsi[-2])
    latest_hist, previous_hist = float(snap.macd_hist[-1]), float(snap.macd_hist[-2])
    latest_sma = float(snap.sma[-1])
    latest_ema = float(snap.ema[-1])
    latest_trend = float(snap.trend_ema[-1])
    current_volume = float(snap.volumes[-1])
    volume_avg = snap.volume_avg

    body = abs(latest_close - previous_close)
    if body < latest_close * s.doji_ratio:
        return Evaluation(Signal.NONE, rejected="doji")
    if current_volume < volume_avg * s.low_volume_ratio:
        return Evaluation(Signal.NONE, rejected="low volume")
    if s.strong_candle_filter:
        candle_range = max(previous_close, latest_close) - min(previous_close, latest_close)
        if not body > candle_range * s.strong_body_ratio:
            return Evaluation(Signal.NONE, rejected="weak candle")

    long_score = 0.0
    short_score = 0.0
    reasons = []

    if latest_hist > 0 and previous_hist <= 0:
        long_score += s.macd_weight
        reasons.append("MACD cross up")
    if latest_hist < 0 and previous_hist >= 0:
        short_score += s.macd_weight
        reasons.append("MACD cross down")

    if latest_rsi < s.rsi_oversold and previous_rsi < s.rsi_oversold:
        long_score += s.rsi_weight
        reasons.append("RSI oversold")
    if latest_rsi > s.rsi_overbought and previous_rsi > s.rsi_overbought:
        short_score += s.rsi_weight
        reasons.append("RSI overbought")

    if current_volume > volume_avg * s.volume_breakout_ratio:
        if latest_rsi < s.rsi_midpoint:
            long_score += s.volume_weight
        else:
            short_score += s.volume_weight
        reasons.append("volume breakout")

    if latest_close > latest_sma:
        long_score += s.sma_weight
    else:
        short_score += s.sma_weight
    if latest_close > latest_ema:
        long_score += s.ema_weight
    else:
        short_score += s.ema_weight

    if s.use_engulfing:
        # Textbook engulfing; the strict open < prior close form never fires. Raises entry frequency.
        if (previous_close < previous_open and latest_close > latest_open
                and latest_close > previous_open and latest_open <= previous_close):
            long_score += s.engulfing_weight
            reasons.append("bullish engulfing")
        if (previous_close > previous_open and latest_close < latest_open
                and latest_close < previous_open and latest_open >= previous_close):
            short_score += s.engulfing_weight
            reasons.append("bearish engulfing")

    uptrend = latest_close > latest_trend
    downtrend = latest_close < latest_trend

    signal = Signal.NONE
    if long_score >= s.min_score and long_score > short_score and uptrend:
        signal = Signal.LONG
    elif short_score >= s.min_score and short_score > long_score and downtrend:
        signal = Signal.SHORT
    return Evaluation(signal, long_score, short_score, reasons)


def analyze(snap: IndicatorSnapshot, settings: SignalSettings = SignalSettings()) -> Signal:
    return evaluate(snap, settings).signal
