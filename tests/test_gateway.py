import asyncio

import aiohttp
import pytest

from futures_bot.errors import PermanentGatewayError, TransientGatewayError
from futures_bot.gateway import BinanceGateway, parse_instrument
from futures_bot.retry import RetryPolicy

from .fakes import EXCHANGE_INFO, FakeAsyncClient, api_error


@pytest.fixture
def client():
    return FakeAsyncClient()


@pytest.fixture
def gateway(client):
    return BinanceGateway(client, RetryPolicy(max_attempts=3, delay=0))


def test_parse_instrument_reads_filters():
    inst = parse_instrument(EXCHANGE_INFO["symbols"][0])
    assert inst.id == "BTC/USDT:USDT"
    assert inst.symbol == "BTC/USDT"
    assert inst.exchange_symbol == "BTCUSDT"
    assert (inst.step_size, inst.tick_size, inst.min_notional) == (0.001, 0.1, 100.0)
    assert inst.active and inst.perpetual


def test_parse_instrument_flags_and_malformed_entries():
    quarterly = parse_instrument(EXCHANGE_INFO["symbols"][1])
    settling = parse_instrument(EXCHANGE_INFO["symbols"][2])
    assert not quarterly.perpetual
    assert not settling.active
    assert parse_instrument({"symbol": "BROKEN"}) is None


@pytest.mark.asyncio
async def test_load_instruments_builds_market_table(gateway):
    instruments = await gateway.load_instruments()
    assert len(instruments) == 3
    assert gateway.market("BTC/USDT:USDT").exchange_symbol == "BTCUSDT"
    assert gateway.market("DOGE/USDT") is None


@pytest.mark.asyncio
async def test_tickers_are_unified_and_unknown_symbols_dropped(gateway):
    tickers = await gateway.fetch_tickers()
    assert [(t.symbol, t.quote_volume) for t in tickers] == [("BTC/USDT", 9000000.0), ("XRP/USDT", 100.0)]


@pytest.mark.asyncio
async def test_market_data_calls_use_exchange_symbol(gateway, client):
    ticker = await gateway.fetch_ticker("BTC/USDT")
    candles = await gateway.fetch_candles("BTC/USDT", "30m", 5)
    book = await gateway.fetch_order_book("BTC/USDT", 10)

    assert ticker.last == 42000.5
    assert len(candles) == 5 and candles[-1].close == 104.0 and candles[0].volume == 12.5
    assert book.depth() == pytest.approx(100 * 2 + 99 * 1 + 101 * 3)
    kline_call = [p for name, p in client.calls if name == "futures_klines"][0]
    assert kline_call == {"symbol": "BTCUSDT", "interval": "30m", "limit": 5}


@pytest.mark.asyncio
async def test_unknown_symbol_is_permanent(gateway):
    with pytest.raises(PermanentGatewayError):
        await gateway.fetch_ticker("DOGE/USDT")


@pytest.mark.asyncio
async def test_balance_positions_and_orders(gateway):
    assert await gateway.fetch_balance("USDT") == 250.75
    assert await gateway.fetch_balance("BUSD") == 0.0

    reports = await gateway.fetch_open_positions()
    assert len(reports) == 1
    assert (reports[0].symbol, reports[0].side, reports[0].amount, reports[0].leverage) == \
        ("BTC/USDT", "short", -0.01, 10)

    orders = await gateway.fetch_open_orders("BTC/USDT")
    assert [o.is_take_profit for o in orders] == [True, False]
    assert [o.is_stop_loss for o in orders] == [False, True]
    assert orders[1].stop_price == 43000.0


@pytest.mark.asyncio
async def test_market_order_parameters(gateway, client):
    await gateway.load_instruments()
    ack = await gateway.submit_market_order("BTC/USDT", "sell", 0.0129, {"reduceOnly": True})

    params = dict(client.calls[-1][1])
    assert params.pop("newClientOrderId").startswith("fbot-")
    assert params == {"symbol": "BTCUSDT", "side": "SELL", "type": "MARKET", "quantity": "0.012",
                      "newOrderRespType": "RESULT", "reduceOnly": "true"}
    assert (ack.order_id, ack.average_price, ack.executed_qty) == (99, 42001.0, 0.012)


@pytest.mark.asyncio
async def test_each_order_gets_its_own_client_id(gateway, client):
    await gateway.submit_market_order("BTC/USDT", "buy", 0.01)
    await gateway.submit_market_order("BTC/USDT", "buy", 0.01)

    ids = [p["newClientOrderId"] for name, p in client.calls if name == "futures_create_order"]
    assert len(set(ids)) == 2


@pytest.mark.asyncio
async def test_lost_entry_response_does_not_double_the_order(gateway, client):
    await gateway.load_instruments()
    client.lost_acks = 1

    ack = await gateway.submit_market_order("BTC/USDT", "buy", 0.01)

    attempts = [p for name, p in client.calls if name == "futures_create_order"]
    assert len(attempts) == 2
    assert attempts[0]["newClientOrderId"] == attempts[1]["newClientOrderId"]
    assert len(client.placed) == 1
    assert ack.order_id == 99
    lookup = [p for name, p in client.calls if name == "futures_get_order"]
    assert lookup == [{"symbol": "BTCUSDT", "origClientOrderId": attempts[0]["newClientOrderId"]}]


@pytest.mark.asyncio
async def test_order_missing_after_timeouts_is_reported(gateway, client):
    await gateway.load_instruments()
    client.errors["futures_create_order"] = [asyncio.TimeoutError()] * 3

    with pytest.raises(TransientGatewayError):
        await gateway.submit_market_order("BTC/USDT", "buy", 0.01)
    assert client.placed == {}
    assert len([c for c in client.calls if c[0] == "futures_get_order"]) == 1


@pytest.mark.asyncio
async def test_rejected_order_is_not_looked_up(gateway, client):
    await gateway.load_instruments()
    client.errors["futures_create_order"] = [api_error(400, -2019, "Margin is insufficient.")]

    with pytest.raises(PermanentGatewayError):
        await gateway.submit_market_order("BTC/USDT", "buy", 0.01)
    assert [c for c in client.calls if c[0] == "futures_get_order"] == []


@pytest.mark.asyncio
async def test_conditional_order_parameters(gateway, client):
    ack = await gateway.submit_conditional_order("BTC/USDT", "STOP_MARKET", "BUY", 0.01, 43000.04,
                                                 {"reduceOnly": True})

    name, params = client.calls[-1]
    assert name == "futures_create_algo_order"
    assert params["type"] == "STOP_MARKET"
    assert params["algoType"] == "CONDITIONAL"
    assert params["triggerPrice"] == "43000.0"
    assert params["workingType"] == "MARK_PRICE"
    assert params["reduceOnly"] == "true"
    assert params["clientAlgoId"].startswith("fbot-")
    assert (ack.order_id, ack.status) == (99, "NEW")


@pytest.mark.asyncio
async def test_lost_conditional_response_is_recovered_by_client_id(gateway, client):
    await gateway.load_instruments()
    client.lost_acks = 1

    ack = await gateway.submit_conditional_order("BTC/USDT", "TAKE_PROFIT_MARKET", "SELL", 0.01, 41000.0)

    attempts = [p["clientAlgoId"] for name, p in client.calls if name == "futures_create_algo_order"]
    assert len(attempts) == 2 and attempts[0] == attempts[1]
    assert len(client.placed) == 1
    assert ack.order_id == 99


@pytest.mark.asyncio
async def test_cancel_all_covers_plain_and_conditional_orders(gateway, client):
    await gateway.cancel_all_orders("BTC/USDT")

    cancels = [p for name, p in client.calls if name == "futures_cancel_all_open_orders"]
    assert cancels == [{"symbol": "BTCUSDT"}, {"symbol": "BTCUSDT", "conditional": True}]



@pytest.mark.asyncio
async def test_unsupported_conditional_order_is_rejected(gateway):
    with pytest.raises(PermanentGatewayError):
        await gateway.submit_conditional_order("BTC/USDT", "TRAILING_STOP_MARKET", "BUY", 0.01, 1.0)


@pytest.mark.asyncio
async def test_transient_failures_are_retried(gateway, client):
    await gateway.load_instruments()
    client.errors["futures_ticker"] = [aiohttp.ClientConnectionError("reset")]

    ticker = await gateway.fetch_ticker("BTC/USDT")
    assert ticker.last == 42000.5
    assert len([c for c in client.calls if c[0] == "futures_ticker"]) == 2


@pytest.mark.asyncio
async def test_retries_are_bounded(gateway, client):
    client.errors["futures_account_balance"] = [aiohttp.ClientConnectionError("reset")] * 3

    with pytest.raises(TransientGatewayError):
        await gateway.fetch_balance()
    assert len(client.calls) == 3


@pytest.mark.asyncio
async def test_close_releases_client(gateway, client):
    await gateway.close()
    assert client.closed
