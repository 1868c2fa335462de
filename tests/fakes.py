"""In-memory stand-ins for the exchange used across the test suite."""
from typing import Dict, List, Optional

from binance.exceptions import BinanceAPIException

from futures_bot.config import BotConfig, SignalSettings
from futures_bot.errors import PermanentGatewayError
from futures_bot.models import (Candle, Instrument, OpenOrder, OrderAck, OrderBook, PositionReport, Ticker,
                                normalize_symbol)
from futures_bot.state import PositionStore, TradingSession


def api_error(status, code, msg):
    return BinanceAPIException(None, status, f'{{"code":{code},"msg":"{msg}"}}')


FAST_SETTINGS = dict(
    poll_interval=0, cap_interval=0, target_interval=0, error_backoff=0,
    open_cooldown=0, settle_delay=0, request_pause=0, retry_delay=0,
)

# Short indicator windows so that a 30-candle history is enough.
SMALL_WINDOWS = dict(
    rsi_period=3, sma_period=5, ema_period=3, trend_ema_period=5,
    macd_fast=2, macd_slow=4, macd_signal=2,
    kline_limit=30, min_candles=10,
    signal=SignalSettings(volume_avg_window=5),
)


def make_config(**overrides) -> BotConfig:
    values = dict(api_key="key", api_secret="secret", **FAST_SETTINGS)
    values.update(overrides)
    return BotConfig(**values)


def make_instrument(symbol: str, step: float = 0.001, min_notional: float = 5.0, tick: float = 0.1,
                    active: bool = True, perpetual: bool = True, contract_size: float = 1.0) -> Instrument:
    base, quote = symbol.split("/")
    return Instrument(
        id=f"{symbol}:{quote}",
        exchange_symbol=f"{base}{quote}",
        base=base,
        quote=quote,
        settle=quote,
        active=active,
        perpetual=perpetual,
        step_size=step,
        min_notional=min_notional,
        contract_size=contract_size,
        tick_size=tick,
    )


def trending_candles(n: int = 30, start: float = 100.0, step: float = 1.0, volume: float = 100.0) -> List[Candle]:
    candles = []
    for i in range(n):
        close = start + i * step
        candles.append(Candle(open_time=i * 60_000, open=close - step, high=close + 0.5,
                              low=close - step - 0.5, close=close, volume=volume))
    return candles


class FakeGateway:
    """Records every call; orders change the reported positions like the exchange would."""

    def __init__(self, instruments: Optional[List[Instrument]] = None, balance: float = 100.0):
        self.markets: Dict[str, Instrument] = {i.symbol: i for i in instruments or []}
        self.balance = balance
        self.tickers: Dict[str, Ticker] = {}
        self.candles: Dict[str, List[Candle]] = {}
        self.books: Dict[str, OrderBook] = {}
        self.reports: List[PositionReport] = []
        self.orders: Dict[str, List[OpenOrder]] = {}
        self.failures: Dict[str, Exception] = {}
        self.fill_on_open = False
        self.calls: List[tuple] = []
        self._next_id = 1

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        error = self.failures.get(name)
        if error is not None:
            raise error

    def calls_named(self, name) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    def set_price(self, symbol: str, last: float, quote_volume: float = 0.0):
        self.tickers[symbol] = Ticker(symbol, last, quote_volume)

    def market(self, symbol: str) -> Optional[Instrument]:
        return self.markets.get(normalize_symbol(symbol))

    async def load_instruments(self) -> List[Instrument]:
        self._record("load_instruments")
        return list(self.markets.values())

    async def fetch_tickers(self) -> List[Ticker]:
        self._record("fetch_tickers")
        return list(self.tickers.values())

    async def fetch_ticker(self, symbol: str) -> Ticker:
        self._record("fetch_ticker", symbol)
        if symbol not in self.tickers:
            raise PermanentGatewayError("no ticker", "fetch_ticker", symbol)
        return self.tickers[symbol]

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        self._record("fetch_candles", symbol, timeframe, limit)
        error = self.failures.get(f"fetch_candles:{symbol}")
        if error is not None:
            raise error
        return self.candles.get(symbol, [])[-limit:]

    async def fetch_order_book(self, symbol: str, depth: int) -> OrderBook:
        self._record("fetch_order_book", symbol, depth)
        return self.books.get(symbol, OrderBook(symbol))

    async def fetch_balance(self, asset: str = "USDT") -> float:
        self._record("fetch_balance", asset)
        return self.balance

    async def fetch_open_positions(self) -> List[PositionReport]:
        self._record("fetch_open_positions")
        return list(self.reports)

    async def fetch_open_orders(self, symbol: str) -> List[OpenOrder]:
        self._record("fetch_open_orders", symbol)
        return list(self.orders.get(symbol, []))

    async def set_leverage(self, symbol: str, value: int):
        self._record("set_leverage", symbol, value)
        return {"symbol": symbol, "leverage": value}

    async def submit_market_order(self, symbol: str, direction: str, quantity: float, options=None) -> OrderAck:
        self._record("submit_market_order", symbol, direction, quantity, options)
        price = self.tickers[symbol].last if symbol in self.tickers else 0.0
        if options and options.get("reduceOnly"):
            self.reports = [r for r in self.reports if r.symbol != symbol]
        elif self.fill_on_open:
            signed = quantity if direction == "BUY" else -quantity
            self.reports.append(PositionReport(symbol, signed, price))
        return self._ack(symbol, price, quantity)

    async def submit_conditional_order(self, symbol: str, kind: str, direction: str, quantity: float,
                                       trigger_price: float, options=None) -> OrderAck:
        self._record("submit_conditional_order", symbol, kind, direction, quantity, trigger_price, options)
        ack = self._ack(symbol, 0.0, 0.0)
        self.orders.setdefault(symbol, []).append(
            OpenOrder(ack.order_id, symbol, kind, direction, trigger_price, reduce_only=True))
        return ack

    async def cancel_all_orders(self, symbol: str):
        self._record("cancel_all_orders", symbol)
        self.orders.pop(symbol, None)
        return {"code": 200}

    def _ack(self, symbol, price, quantity) -> OrderAck:
        ack = OrderAck(self._next_id, symbol, "FILLED", price, quantity)
        self._next_id += 1
        return ack


class FakePublisher:
    def __init__(self):
        self.events = []

    def publish(self, kind, payload):
        self.events.append((kind, payload))

    def kinds(self):
        return [k for k, _ in self.events]


def make_session(tmp_path, gateway, **overrides) -> TradingSession:
    cfg = make_config(state_file=str(tmp_path / "positions.json"), **overrides)
    return TradingSession(config=cfg, gateway=gateway, store=PositionStore(cfg.state_file))


EXCHANGE_INFO = {
    "symbols": [
        {
            "symbol": "BTCUSDT", "baseAsset": "BTC", "quoteAsset": "USDT", "marginAsset": "USDT",
            "status": "TRADING", "contractType": "PERPETUAL", "pricePrecision": 2,
            "filters": [
                {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
                {"filterType": "LOT_SIZE", "stepSize": "0.001"},
                {"filterType": "MARKET_LOT_SIZE", "stepSize": "0.001"},
                {"filterType": "MIN_NOTIONAL", "notional": "100"},
            ],
        },
        {
            "symbol": "ETHUSDT_250328", "baseAsset": "ETH", "quoteAsset": "USDT", "marginAsset": "USDT",
            "status": "TRADING", "contractType": "CURRENT_QUARTER", "pricePrecision": 2,
            "filters": [{"filterType": "PRICE_FILTER", "tickSize": "0.01"},
                        {"filterType": "LOT_SIZE", "stepSize": "0.001"}],
        },
        {
            "symbol": "XRPUSDT", "baseAsset": "XRP", "quoteAsset": "USDT", "marginAsset": "USDT",
            "status": "SETTLING", "contractType": "PERPETUAL", "pricePrecision": 4,
            "filters": [{"filterType": "PRICE_FILTER", "tickSize": "0.0001"},
                        {"filterType": "LOT_SIZE", "stepSize": "0.1"},
                        {"filterType": "MIN_NOTIONAL", "notional": "5"}],
        },
        {"symbol": "BROKEN"},
    ]
}


class FakeAsyncClient:
    """Mimics the python-binance AsyncClient futures endpoints the gateway uses."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.errors: Dict[str, List[Exception]] = {}
        self.closed = False
        self.placed: Dict[str, dict] = {}
        self.lost_acks = 0
        self.next_order_id = 98

    async def _respond(self, name, params, value):
        self.calls.append((name, params))
        pending = self.errors.get(name)
        if pending:
            raise pending.pop(0)
        return value

    async def futures_exchange_info(self, **params):
        return await self._respond("futures_exchange_info", params, EXCHANGE_INFO)

    async def futures_ticker(self, **params):
        if "symbol" in params:
            return await self._respond("futures_ticker", params,
                                       {"symbol": params["symbol"], "lastPrice": "42000.5", "quoteVolume": "1000"})
        return await self._respond("futures_ticker", params, [
            {"symbol": "BTCUSDT", "lastPrice": "42000.5", "quoteVolume": "9000000"},
            {"symbol": "XRPUSDT", "lastPrice": "0.5", "quoteVolume": "100"},
            {"symbol": "UNKNOWNUSDT", "lastPrice": "1", "quoteVolume": "1"},
        ])

    async def futures_klines(self, **params):
        rows = [[1700000000000 + i * 60000, "100", "101", "99", str(100 + i), "12.5", 0, "0", 10, "0", "0", "0"]
                for i in range(params.get("limit", 3))]
        return await self._respond("futures_klines", params, rows)

    async def futures_order_book(self, **params):
        return await self._respond("futures_order_book", params,
                                   {"bids": [["100", "2"], ["99", "1"]], "asks": [["101", "3"]]})

    async def futures_account_balance(self, **params):
        return await self._respond("futures_account_balance", params, [
            {"asset": "BNB", "balance": "1.0"},
            {"asset": "USDT", "balance": "250.75"},
        ])

    async def futures_position_information(self, **params):
        return await self._respond("futures_position_information", params, [
            {"symbol": "BTCUSDT", "positionAmt": "-0.010", "entryPrice": "42000", "unRealizedProfit": "1.5",
             "leverage": "10"},
            {"symbol": "XRPUSDT", "positionAmt": "0", "entryPrice": "0"},
            {"symbol": "UNKNOWNUSDT", "positionAmt": "5", "entryPrice": "1"},
        ])

    async def futures_get_open_orders(self, **params):
        if params.get("conditional"):
            return await self._respond("futures_get_open_orders", params, [
                {"algoId": 8, "orderType": "STOP_MARKET", "side": "BUY", "triggerPrice": "43000",
                 "reduceOnly": True},
            ])
        return await self._respond("futures_get_open_orders", params, [
            {"orderId": 7, "type": "TAKE_PROFIT_MARKET", "side": "BUY", "stopPrice": "41000", "reduceOnly": True},
        ])

    async def futures_change_leverage(self, **params):
        return await self._respond("futures_change_leverage", params, {"leverage": params["leverage"]})

    async def _place(self, name, params, client_id, ack):
        """Accept an order once per client id; ``lost_acks`` drops the response after placing."""
        await self._respond(name, params, None)
        if client_id in self.placed:
            raise api_error(400, -4116, "ClientOrderId is duplicated.")
        self.placed[client_id] = ack
        if self.lost_acks:
            self.lost_acks -= 1
            raise api_error(408, -1007, "Timeout waiting for response from backend server.")
        return ack

    async def futures_create_order(self, **params):
        self.next_order_id += 1
        return await self._place("futures_create_order", params, params.get("newClientOrderId"),
                                 {"orderId": self.next_order_id, "status": "FILLED", "avgPrice": "42001.0",
                                  "executedQty": params["quantity"],
                                  "clientOrderId": params.get("newClientOrderId")})

    async def futures_create_algo_order(self, **params):
        self.next_order_id += 1
        return await self._place("futures_create_algo_order", params, params.get("clientAlgoId"),
                                 {"algoId": self.next_order_id, "algoStatus": "NEW",
                                  "clientAlgoId": params.get("clientAlgoId")})

    async def _lookup(self, name, params, client_id):
        self.calls.append((name, params))
        if client_id not in self.placed:
            raise api_error(400, -2013, "Order does not exist.")
        return self.placed[client_id]

    async def futures_get_order(self, **params):
        return await self._lookup("futures_get_order", params, params.get("origClientOrderId"))

    async def futures_get_algo_order(self, **params):
        return await self._lookup("futures_get_algo_order", params, params.get("clientAlgoId"))

    async def futures_cancel_all_open_orders(self, **params):
        return await self._respond("futures_cancel_all_open_orders", params, {"code": 200})


    async def close_connection(self):
        self.closed = True
