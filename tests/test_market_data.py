#Description: Candle cache, REST adapter parsing and websocket message handling.

import json

import httpx
import pytest

from adapters.binance_common import BinanceRestAdapter
from adapters.binance_stream import BinanceMarketStream
from models.schemas import Candle
from services.market_data import MarketDataService


def _candle(t, close=100.0):
    return Candle(time=t, open=close, high=close + 1, low=close - 1, close=close, volume=5)


def test_add_candle_replaces_same_time():
    market = MarketDataService(adapter=object())
    market.add_candle("BTCUSDT", _candle(60, 100))
    market.add_candle("BTCUSDT", _candle(60, 101))
    market.add_candle("BTCUSDT", _candle(120, 102))
    assert [c.close for c in market.get_candles("BTCUSDT")] == [101, 102]


def test_cache_capped_and_evictions_counted():
    market = MarketDataService(adapter=object(), cache_size=3)
    for t in range(5):
        market.add_candle("BTCUSDT", _candle(t))
    assert [c.time for c in market.get_candles("BTCUSDT")] == [2, 3, 4]
    assert market.evicted_count("BTCUSDT") == 2
    market.set_candles("BTCUSDT", [_candle(t) for t in range(10)])
    assert len(market.get_candles("BTCUSDT")) == 3 and market.evicted_count("BTCUSDT") == 0


def test_price_change_pct():
    market = MarketDataService(adapter=object())
    assert market.price_change_pct("BTCUSDT", 100, 60) == 0.0
    market.set_candles("BTCUSDT", [_candle(t, 50.0 + t) for t in range(10)])
    assert market.price_change_pct("BTCUSDT", 110, 5) == pytest.approx((110 - 55) / 55 * 100)
    assert market.price_change_pct("BTCUSDT", 100, 1440) == pytest.approx(100.0)


class FakeAdapter:
    def fetch_klines(self, symbol, interval, limit, mode):
        if symbol == "BADUSDT":
            raise httpx.ConnectError("offline")
        return [_candle(t) for t in range(limit)]


def test_load_history_skips_failing_symbol():
    market = MarketDataService(adapter=FakeAdapter())
    market.load_history(["BTCUSDT", "BADUSDT", "ETHUSDT"], "5m", "spot", limit=20)
    assert len(market.get_candles("BTCUSDT")) == 20
    assert market.get_candles("BADUSDT") == []
    assert len(market.get_candles("ETHUSDT")) == 20


def test_rest_adapter_parses_klines_and_prices():
    seen = []

    def handler(request):
        seen.append(request.url)
        if request.url.path.endswith("/klines"):
            return httpx.Response(200, json=[[1_700_000_000_000, "1.0", "2.0", "0.5", "1.5", "10.0", 0]])
        if request.url.path.endswith("/premiumIndex"):
            return httpx.Response(200, json={"symbol": "BTCUSDT", "markPrice": "43000.1"})
        return httpx.Response(200, json={"symbol": "BTCUSDT", "price": "42999.9"})

    adapter = BinanceRestAdapter(client=httpx.Client(transport=httpx.MockTransport(handler)))
    candles = adapter.fetch_klines("BTCUSDT", "1m", 1, "futures")
    assert candles == [Candle(time=1_700_000_000, open=1.0, high=2.0, low=0.5, close=1.5, volume=10.0)]
    assert seen[0].host == "fapi.binance.com"
    assert adapter.fetch_price("BTCUSDT", "futures") == 43000.1
    assert adapter.fetch_price("BTCUSDT", "spot") == 42999.9
    assert seen[-1].host == "api.binance.com"


def _stream(mode, klines, prices):
    return BinanceMarketStream(mode, ["btcusdt", "ETHUSDT"], lambda s, c, closed: klines.append((s, c, closed)),
                               lambda s, p: prices.append((s, p)), interval="5m")


def test_stream_urls():
    futures = _stream("futures", [], [])
    assert futures.url.endswith("?streams=btcusdt@kline_5m/btcusdt@markPrice@1s/ethusdt@kline_5m/ethusdt@markPrice@1s")
    spot = _stream("spot", [], [])
    assert "btcusdt@miniTicker" in spot.url and spot.url.startswith("wss://stream.binance.com")


def test_stream_kline_message():
    klines, prices = [], []
    stream = _stream("futures", klines, prices)
    stream.handle_message(json.dumps({"stream": "btcusdt@kline_5m", "data": {
        "s": "BTCUSDT", "k": {"t": 1_700_000_100_000, "o": "1", "h": "3", "l": "0.5", "c": "2", "v": "7", "x": True}}}))
    symbol, candle, closed = klines[0]
    assert symbol == "BTCUSDT" and closed is True
    assert candle.time == 1_700_000_100 and candle.close == 2.0 and candle.volume == 7.0


def test_stream_price_messages():
    klines, prices = [], []
    futures = _stream("futures", klines, prices)
    futures.handle_message(json.dumps({"stream": "btcusdt@markPrice@1s", "data": {"s": "BTCUSDT", "p": "43000.5"}}))
    spot = _stream("spot", klines, prices)
    spot.handle_message(json.dumps({"stream": "ethusdt@miniTicker", "data": {"s": "ETHUSDT", "c": "2200.25"}}))
    assert prices == [("BTCUSDT", 43000.5), ("ETHUSDT", 2200.25)]


def test_stream_ignores_bad_messages():
    klines, prices = [], []
    stream = _stream("futures", klines, prices)
    stream.handle_message("not json")
    stream.handle_message(json.dumps({"result": None, "id": 1}))
    stream.handle_message(json.dumps({"stream": "btcusdt@kline_5m", "data": {"s": "BTCUSDT", "k": {"t": 1}}}))
    assert klines == [] and prices == []
