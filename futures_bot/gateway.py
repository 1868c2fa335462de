"""Binance USDⓈ-M futures access through python-binance's AsyncClient.

Raw REST payloads are parsed into the records in ``models`` right here, so
nothing past this module sees exchange JSON. Instrument ids are unified
(``BTC/USDT``); the exchange symbol (``BTCUSDT``) is resolved from the
market table loaded by ``load_instruments``.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional

from binance import AsyncClient

from .errors import GatewayError, PermanentGatewayError, TransientGatewayError
from .models import (Candle, Instrument, OpenOrder, OrderAck, OrderBook, PositionReport, Ticker,
                     normalize_symbol)
from .retry import RetryPolicy
from .sizing import decimals_from_step, format_price, format_quantity

CONDITIONAL_ORDER_TYPES = ("TAKE_PROFIT_MARKET", "STOP_MARKET")
DUPLICATE_ORDER_CODES = {-4116}  # ClientOrderId is duplicated
CLIENT_ORDER_PREFIX = "fbot-"


def new_client_order_id() -> str:
    return CLIENT_ORDER_PREFIX + uuid.uuid4().hex[:24]


def _is_duplicate_order(error: GatewayError) -> bool:
    return error.code in DUPLICATE_ORDER_CODES or "duplicat" in str(error).lower()


def _float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _filter(filters: List[Dict[str, Any]], kind: str) -> Dict[str, Any]:
    return next((f for f in filters if f.get("filterType") == kind), {})


def parse_instrument(raw: Dict[str, Any]) -> Optional[Instrument]:
    """One ``exchangeInfo`` symbol entry -> Instrument (None when malformed)."""
    try:
        base = raw["baseAsset"]
        quote = raw["quoteAsset"]
        exchange_symbol = raw["symbol"]
    except (KeyError, TypeError):
        return None
    settle = raw.get("marginAsset") or quote
    filters = raw.get("filters") or []
    tick = _float(_filter(filters, "PRICE_FILTER").get("tickSize"))
    step = _float(_filter(filters, "MARKET_LOT_SIZE").get("stepSize")) \
        or _float(_filter(filters, "LOT_SIZE").get("stepSize"))
    notional_filter = _filter(filters, "MIN_NOTIONAL")
    min_notional = _float(notional_filter.get("notional", notional_filter.get("minNotional")))
    precision = raw.get("pricePrecision")
    if precision is None:
        precision = decimals_from_step(tick) if tick else 2
    return Instrument(
        id=f"{base}/{quote}:{settle}",
        exchange_symbol=exchange_symbol,
        base=base,
        quote=quote,
        settle=settle,
        active=raw.get("status") == "TRADING",
        perpetual=raw.get("contractType") == "PERPETUAL",
        step_size=step or 10 ** -int(raw.get("quantityPrecision", 3)),
        min_notional=min_notional,
        contract_size=_float(raw.get("contractSize"), 1.0) or 1.0,
        tick_size=tick or 10 ** -int(precision),
        price_precision=int(precision),
    )


def parse_candle(row) -> Candle:
    return Candle(
        open_time=int(row[0]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
    )


def _flag(value) -> bool:
    return value is True or str(value).lower() == "true"


def parse_open_order(symbol: str, row: Dict[str, Any]) -> OpenOrder:
    """Plain (``orderId``/``stopPrice``) and algo (``algoId``/``triggerPrice``) rows alike."""
    return OpenOrder(
        order_id=row.get("orderId", row.get("algoId")),
        symbol=symbol,
        type=row.get("origType") or row.get("orderType") or row.get("type", ""),
        side=row.get("side", ""),
        stop_price=_float(row.get("stopPrice") or row.get("triggerPrice")),
        reduce_only=_flag(row.get("reduceOnly")) or _flag(row.get("closePosition")),
    )


class BinanceGateway:
    def __init__(self, client: AsyncClient, policy: Optional[RetryPolicy] = None):
        self.client = client
        self.policy = policy or RetryPolicy()
        self.markets: Dict[str, Instrument] = {}
        self._by_exchange_symbol: Dict[str, Instrument] = {}

    @classmethod
    async def create(cls, api_key: str, api_secret: str, testnet: bool = False,
                     policy: Optional[RetryPolicy] = None) -> "BinanceGateway":
        client = await AsyncClient.create(api_key, api_secret, testnet=testnet)
        return cls(client, policy)

    async def close(self):
        await self.client.close_connection()

    async def _call(self, fn, operation: str, target: str = "", **params):
        result = await self.policy.run(fn, operation=operation, target=target, **params)
        return result.unwrap()

    # ================================================================ MARKETS
    async def load_instruments(self) -> List[Instrument]:
        info = await self._call(self.client.futures_exchange_info, "load_instruments")
        raw_symbols = info.get("symbols", []) if isinstance(info, dict) else []
        instruments = [i for i in (parse_instrument(raw) for raw in raw_symbols) if i is not None]
        # Dated contracts share the unified symbol with the perpetual; the perpetual wins.
        self.markets = {}
        for i in instruments:
            if i.perpetual or i.symbol not in self.markets:
                self.markets[i.symbol] = i
        self._by_exchange_symbol = {i.exchange_symbol: i for i in self.markets.values()}
        return instruments

    async def _ensure_markets(self):
        if not self.markets:
            await self.load_instruments()

    def market(self, symbol: str) -> Optional[Instrument]:
        return self.markets.get(normalize_symbol(symbol))

    def _exchange_symbol(self, symbol: str) -> str:
        inst = self.market(symbol)
        if inst is None:
            raise PermanentGatewayError(f"unknown market {symbol}", "resolve", symbol)
        return inst.exchange_symbol

    def _unified(self, exchange_symbol: str) -> Optional[str]:
        inst = self._by_exchange_symbol.get(exchange_symbol)
        return inst.symbol if inst else None

    # ============================================================ MARKET DATA
    async def fetch_tickers(self) -> List[Ticker]:
        """24h tickers for every known market in one request."""
        await self._ensure_markets()
        raw = await self._call(self.client.futures_ticker, "fetch_tickers")
        tickers = []
        for t in raw or []:
            symbol = self._unified(t.get("symbol", ""))
            if symbol is not None:
                tickers.append(Ticker(symbol, _float(t.get("lastPrice")), _float(t.get("quoteVolume"))))
        return tickers

    async def fetch_ticker(self, symbol: str) -> Ticker:
        await self._ensure_markets()
        raw = await self._call(self.client.futures_ticker, "fetch_ticker", symbol,
                               symbol=self._exchange_symbol(symbol))
        last = _float(raw.get("lastPrice"))
        if last <= 0:
            raise PermanentGatewayError(f"bad last price {raw.get('lastPrice')!r}", "fetch_ticker", symbol)
        return Ticker(symbol, last, _float(raw.get("quoteVolume")))

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        await self._ensure_markets()
        rows = await self._call(self.client.futures_klines, "fetch_candles", symbol,
                                symbol=self._exchange_symbol(symbol), interval=timeframe, limit=limit)
        try:
            return [parse_candle(r) for r in rows or []]
        except (IndexError, TypeError, ValueError) as e:
            raise PermanentGatewayError(f"malformed kline: {e}", "fetch_candles", symbol)

    async def fetch_order_book(self, symbol: str, depth: int) -> OrderBook:
        await self._ensure_markets()
        raw = await self._call(self.client.futures_order_book, "fetch_order_book", symbol,
                               symbol=self._exchange_symbol(symbol), limit=depth)
        try:
            bids = [(float(p), float(a)) for p, a in (raw.get("bids") or [])[:depth]]
            asks = [(float(p), float(a)) for p, a in (raw.get("asks") or [])[:depth]]
        except (TypeError, ValueError) as e:
            raise PermanentGatewayError(f"malformed order book: {e}", "fetch_order_book", symbol)
        return OrderBook(symbol, bids, asks)

    # ================================================================ ACCOUNT
    async def fetch_balance(self, asset: str = "USDT") -> float:
        rows = await self._call(self.client.futures_account_balance, "fetch_balance", asset)
        for row in rows or []:
            if row.get("asset") == asset:
                return _float(row.get("balance"))
        return 0.0

    async def fetch_open_positions(self) -> List[PositionReport]:
        """Every position with a non-zero amount."""
        await self._ensure_markets()
        rows = await self._call(self.client.futures_position_information, "fetch_open_positions")
        reports = []
        for row in rows or []:
            if not isinstance(row, dict):
                continue
            amount = _float(row.get("positionAmt"), None)
            entry = _float(row.get("entryPrice"), None)
            if amount is None or entry is None or amount == 0:
                continue
            symbol = self._unified(row.get("symbol", ""))
            if symbol is None:
                continue
            lev = row.get("leverage")
            reports.append(PositionReport(
                symbol=symbol,
                amount=amount,
                entry_price=entry,
                unrealized_pnl=_float(row.get("unRealizedProfit", row.get("unrealizedProfit"))),
                leverage=int(_float(lev)) if lev not in (None, "") else None,
            ))
        return reports

    async def fetch_open_orders(self, symbol: str) -> List[OpenOrder]:
        """Plain open orders plus the conditional (algo) ones, where TP/SL live."""
        await self._ensure_markets()
        exchange_symbol = self._exchange_symbol(symbol)
        rows = await self._call(self.client.futures_get_open_orders, "fetch_open_orders", symbol,
                                symbol=exchange_symbol)
        algo_rows = await self._call(self.client.futures_get_open_orders, "fetch_open_orders", symbol,
                                     symbol=exchange_symbol, conditional=True)
        return [parse_open_order(symbol, row) for row in list(rows or []) + list(algo_rows or [])
                if isinstance(row, dict)]

    # ================================================================= ORDERS
    async def set_leverage(self, symbol: str, value: int):
        await self._ensure_markets()
        return await self._call(self.client.futures_change_leverage, "set_leverage", symbol,
                                symbol=self._exchange_symbol(symbol), leverage=int(value))

    def _ack(self, symbol: str, raw) -> OrderAck:
        order_id = raw.get("orderId", raw.get("algoId")) if isinstance(raw, dict) else None
        if order_id is None:
            raise PermanentGatewayError(f"order not acknowledged: {raw!r}", "order", symbol)
        return OrderAck(
            order_id=order_id,
            symbol=symbol,
            status=raw.get("status") or raw.get("algoStatus", ""),
            average_price=_float(raw.get("avgPrice")),
            executed_qty=_float(raw.get("executedQty")),
        )

    async def _submit_order(self, create, operation: str, symbol: str, params: Dict[str, Any],
                            lookup, lookup_params: Dict[str, Any]):
        """Send an order whose client id is fixed across retries.

        A retry after a lost response comes back as a duplicate id, and an
        exhausted retry leaves the outcome unknown. In both cases the order
        is looked up by its client id before the failure is reported.
        """
        result = await self.policy.run(create, operation=operation, target=symbol, **params)
        if result.ok:
            return result.value
        error = result.error
        if isinstance(error, TransientGatewayError) or _is_duplicate_order(error):
            found = await self.policy.run(lookup, operation=f"{operation} lookup", target=symbol,
                                          **lookup_params)
            if found.ok and isinstance(found.value, dict) and found.value:
                logging.warning(f"⚠️ [{symbol}] Recovered order {lookup_params} after: {error}")
                return found.value
        raise error

    async def submit_market_order(self, symbol: str, direction: str, quantity: float,
                                  options: Optional[Dict[str, Any]] = None) -> OrderAck:
        await self._ensure_markets()
        exchange_symbol = self._exchange_symbol(symbol)
        inst = self.market(symbol)
        client_id = new_client_order_id()
        params = {
            "symbol": exchange_symbol,
            "side": direction.upper(),
            "type": "MARKET",
            "quantity": format_quantity(quantity, inst.step_size),
            "newOrderRespType": "RESULT",
            "newClientOrderId": client_id,
        }
        if options and options.get("reduceOnly"):
            params["reduceOnly"] = "true"
        raw = await self._submit_order(self.client.futures_create_order, "submit_market_order", symbol, params,
                                       self.client.futures_get_order,
                                       {"symbol": exchange_symbol, "origClientOrderId": client_id})
        return self._ack(symbol, raw)

    async def submit_conditional_order(self, symbol: str, kind: str, direction: str, quantity: float,
                                       trigger_price: float,
                                       options: Optional[Dict[str, Any]] = None) -> OrderAck:
        """TAKE_PROFIT_MARKET / STOP_MARKET through the algo order endpoint."""
        if kind not in CONDITIONAL_ORDER_TYPES:
            raise PermanentGatewayError(f"unsupported conditional order {kind}", "submit_conditional_order", symbol)
        await self._ensure_markets()
        exchange_symbol = self._exchange_symbol(symbol)
        inst = self.market(symbol)
        options = options or {}
        client_id = new_client_order_id()
        params = {
            "symbol": exchange_symbol,
            "side": direction.upper(),
            "type": kind,
            "algoType": "CONDITIONAL",
            "quantity": format_quantity(quantity, inst.step_size),
            "triggerPrice": format_price(trigger_price, inst.tick_size),
            "workingType": options.get("workingType", "MARK_PRICE"),
            "clientAlgoId": client_id,
        }
        if options.get("reduceOnly"):
            params["reduceOnly"] = "true"
        raw = await self._submit_order(self.client.futures_create_algo_order, "submit_conditional_order", symbol,
                                       params, self.client.futures_get_algo_order, {"clientAlgoId": client_id})
        return self._ack(symbol, raw)

    async def cancel_all_orders(self, symbol: str):
        await self._ensure_markets()
        exchange_symbol = self._exchange_symbol(symbol)
        await self._call(self.client.futures_cancel_all_open_orders, "cancel_all_orders", symbol,
                         symbol=exchange_symbol)
        return await self._call(self.client.futures_cancel_all_open_orders, "cancel_all_orders", symbol,
                                symbol=exchange_symbol, conditional=True)
