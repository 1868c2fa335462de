import os
from dataclasses import dataclass, field, replace
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigError

SUPPORTED_TIMEFRAMES = {
    "1m": 1, "3m": 3, "5m": 5, "15m": 15, "30m": 30,
    "1h": 60, "2h": 120, "4h": 240, "6h": 360, "8h": 480,
    "12h": 720, "1d": 1440
}

EXIT_MODES = ("manual", "protective")


@dataclass(frozen=True)
class SignalSettings:
    """Weights and thresholds of the entry scoring."""
    doji_ratio: float = 0.001
    low_volume_ratio: float = 0.5
    strong_candle_filter: bool = True
    strong_body_ratio: float = 0.5
    volume_avg_window: int = 20
    macd_weight: float = 0.5
    rsi_weight: float = 0.5
    volume_weight: float = 0.5
    sma_weight: float = 0.5
    ema_weight: float = 0.5
    engulfing_weight: float = 0.5
    use_engulfing: bool = True
    use_real_opens: bool = False
    rsi_oversold: float = 30.0
    rsi_overbought: float = 70.0
    rsi_midpoint: float = 50.0
    volume_breakout_ratio: float = 2.0
    min_score: float = 2.0


@dataclass(frozen=True)
class BotConfig:
    api_key: str = ""
    api_secret: str = ""
    testnet: bool = False

    quote_asset: str = "USDT"
    timeframe: str = "30m"
    max_positions: int = 4
    trade_amount: float = 20.0
    leverage: int = 10
    profit_target: float = 1.0
    loss_limit: float = 3.0
    target_balance: float = 1000.0
    exit_mode: str = "manual"
    fee_rate: float = 0.0004
    min_notional: float = 5.0

    # Instrument selection
    kline_limit: int = 250
    min_candles: int = 50
    top_volume_count: int = 30
    max_candidates: int = 20
    order_book_levels: int = 10
    min_book_depth: float = 100_000.0

    # Indicators
    rsi_period: int = 14
    sma_period: int = 50
    ema_period: int = 20
    trend_ema_period: int = 200
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9

    # Loop cadence (seconds)
    poll_interval: float = 15.0
    cap_interval: float = 30.0
    target_interval: float = 60.0
    error_backoff: float = 10.0
    open_cooldown: float = 2.0
    settle_delay: float = 0.5
    request_pause: float = 0.1
    protection_grace_sec: float = 10.0

    # Retry policy
    retry_attempts: int = 3
    retry_delay: float = 1.0

    state_file: str = "positions.json"
    log_file: str = "bot.log"
    dashboard_port: int = 0
    local_timezone: str = "Asia/Ho_Chi_Minh"

    signal: SignalSettings = field(default_factory=SignalSettings)

    @property
    def protective_orders(self) -> bool:
        return self.exit_mode == "protective"

    def with_overrides(self, **changes) -> "BotConfig":
        changes = {k: v for k, v in changes.items() if v is not None}
        return validate(replace(self, **changes))


def _get(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _int(name: str, default: str) -> int:
    raw = _get(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _float(name: str, default: str) -> float:
    raw = _get(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _bool(name: str, default: str) -> bool:
    raw = _get(name, default).lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be true/false, got {raw!r}")


def validate(cfg: BotConfig) -> BotConfig:
    if cfg.timeframe not in SUPPORTED_TIMEFRAMES:
        raise ConfigError(f"Invalid timeframe: {cfg.timeframe}")
    if cfg.exit_mode not in EXIT_MODES:
        raise ConfigError(f"EXIT_MODE must be one of {EXIT_MODES}, got {cfg.exit_mode!r}")
    if cfg.max_positions < 1:
        raise ConfigError("MAX_POSITIONS must be >= 1")
    if cfg.leverage < 1:
        raise ConfigError("LEVERAGE must be >= 1")
    if not (cfg.trade_amount > 0 and cfg.profit_target > 0 and cfg.loss_limit > 0):
        raise ConfigError("TRADE_AMOUNT, PROFIT_TARGET and LOSS_LIMIT must be positive numbers")
    if cfg.retry_attempts < 1:
        raise ConfigError("RETRY_ATTEMPTS must be >= 1")
    if cfg.min_candles > cfg.kline_limit:
        raise ConfigError("MIN_CANDLES cannot exceed KLINE_LIMIT")
    return cfg


def load_config(env_file: Optional[str] = None, require_credentials: bool = True) -> BotConfig:
    """Read the process configuration from the environment (and .env)."""
    load_dotenv(env_file)

    api_key = _get("BINANCE_API_KEY", "")
    api_secret = _get("BINANCE_API_SECRET", "")
    if require_credentials and (not api_key or not api_secret or api_key == "your_api_key_here"):
        raise ConfigError("Missing BINANCE_API_KEY or BINANCE_API_SECRET")

    signal = SignalSettings(
        doji_ratio=_float("SIGNAL_DOJI_RATIO", "0.001"),
        low_volume_ratio=_float("SIGNAL_LOW_VOLUME_RATIO", "0.5"),
        strong_candle_filter=_bool("SIGNAL_STRONG_CANDLE_FILTER", "true"),
        strong_body_ratio=_float("SIGNAL_STRONG_BODY_RATIO", "0.5"),
        volume_avg_window=_int("SIGNAL_VOLUME_AVG_WINDOW", "20"),
        macd_weight=_float("SIGNAL_MACD_WEIGHT", "0.5"),
        rsi_weight=_float("SIGNAL_RSI_WEIGHT", "0.5"),
        volume_weight=_float("SIGNAL_VOLUME_WEIGHT", "0.5"),
        sma_weight=_float("SIGNAL_SMA_WEIGHT", "0.5"),
        ema_weight=_float("SIGNAL_EMA_WEIGHT", "0.5"),
        engulfing_weight=_float("SIGNAL_ENGULFING_WEIGHT", "0.5"),
        use_engulfing=_bool("SIGNAL_USE_ENGULFING", "true"),
        use_real_opens=_bool("SIGNAL_USE_REAL_OPENS", "false"),
        rsi_oversold=_float("SIGNAL_RSI_OVERSOLD", "30"),
        rsi_overbought=_float("SIGNAL_RSI_OVERBOUGHT", "70"),
        rsi_midpoint=_float("SIGNAL_RSI_MIDPOINT", "50"),
        volume_breakout_ratio=_float("SIGNAL_VOLUME_BREAKOUT_RATIO", "2.0"),
        min_score=_float("SIGNAL_MIN_SCORE", "2.0"),
    )

    cfg = BotConfig(
        api_key=api_key,
        api_secret=api_secret,
        testnet=_bool("BINANCE_TESTNET", "false"),
        quote_asset=_get("QUOTE_ASSET", "USDT").upper(),
        timeframe=_get("TIMEFRAME", "30m"),
        max_positions=_int("MAX_POSITIONS", "4"),
        trade_amount=_float("TRADE_AMOUNT", "20"),
        leverage=_int("LEVERAGE", "10"),
        profit_target=_float("PROFIT_TARGET", "1"),
        loss_limit=_float("LOSS_LIMIT", "3"),
        target_balance=_float("TARGET_BALANCE", "1000"),
        exit_mode=_get("EXIT_MODE", "manual").lower(),
        fee_rate=_float("FEE_RATE", "0.0004"),
        min_notional=_float("MIN_NOTIONAL", "5"),
        kline_limit=_int("KLINE_LIMIT", "250"),
        min_candles=_int("MIN_CANDLES", "50"),
        top_volume_count=_int("TOP_VOLUME_COUNT", "30"),
        max_candidates=_int("MAX_CANDIDATES", "20"),
        order_book_levels=_int("ORDER_BOOK_LEVELS", "10"),
        min_book_depth=_float("MIN_BOOK_DEPTH", "100000"),
        rsi_period=_int("RSI_PERIOD", "14"),
        sma_period=_int("SMA_PERIOD", "50"),
        ema_period=_int("EMA_PERIOD", "20"),
        trend_ema_period=_int("TREND_EMA_PERIOD", "200"),
        macd_fast=_int("MACD_FAST", "12"),
        macd_slow=_int("MACD_SLOW", "26"),
        macd_signal=_int("MACD_SIGNAL", "9"),
        poll_interval=_float("POLL_INTERVAL", "15"),
        cap_interval=_float("CAP_INTERVAL", "30"),
        target_interval=_float("TARGET_INTERVAL", "60"),
        error_backoff=_float("ERROR_BACKOFF", "10"),
        open_cooldown=_float("OPEN_COOLDOWN", "2"),
        settle_delay=_float("SETTLE_DELAY", "0.5"),
        request_pause=_float("REQUEST_PAUSE", "0.1"),
        protection_grace_sec=_float("PROTECTION_GRACE_SEC", "10"),
        retry_attempts=_int("RETRY_ATTEMPTS", "3"),
        retry_delay=_float("RETRY_DELAY", "1.0"),
        state_file=_get("STATE_FILE", "positions.json"),
        log_file=_get("LOG_FILE", "bot.log"),
        dashboard_port=_int("DASHBOARD_PORT", "0"),
        local_timezone=_get("LOCAL_TIMEZONE", "Asia/Ho_Chi_Minh"),
        signal=signal,
    )
    return validate(cfg)
