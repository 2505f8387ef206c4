#Description: Binance combined websocket stream delivering klines and mark/last prices, reconnecting on disconnect.
from __future__ import annotations

import json
import threading
from typing import Callable, Iterable

import websocket

from models.schemas import Candle
from utils.config import settings
from utils.logging import logger

KlineHandler = Callable[[str, Candle, bool], None]
PriceHandler = Callable[[str, float], None]


class BinanceMarketStream:
    """
    One combined stream per trading mode.

    Futures subscribes to `<sym>@kline_<interval>` and `<sym>@markPrice@1s`,
    spot to `<sym>@kline_<interval>` and `<sym>@miniTicker`. Handlers run on
    the stream thread.
    """

    def __init__(self, mode: str, symbols: Iterable[str], on_kline: KlineHandler,
                 on_price: PriceHandler, interval: str = "1m",
                 reconnect_delay: float | None = None):
        self.mode = mode
        self.symbols = [s.upper() for s in symbols]
        self.on_kline = on_kline
        self.on_price = on_price
        self.interval = interval
        self.reconnect_delay = settings.STREAM_RECONNECT_SECONDS if reconnect_delay is None else reconnect_delay
        self._ws: websocket.WebSocketApp | None = None
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    @property
    def url(self) -> str:
        base = settings.BINANCE_FUTURES_WS if self.mode == "futures" else settings.BINANCE_SPOT_WS
        streams = []
        for s in self.symbols:
            sym = s.lower()
            streams.append(f"{sym}@kline_{self.interval}")
            streams.append(f"{sym}@markPrice@1s" if self.mode == "futures" else f"{sym}@miniTicker")
        return f"{base}?streams={'/'.join(streams)}"

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name=f"ws_{self.mode}")
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._ws is not None:
            self._ws.close()
        if self._thread is not None:
            self._thread.join(timeout=5)

    def _run(self):
        while not self._stop.is_set():
            self._ws = websocket.WebSocketApp(
                self.url,
                on_open=lambda _ws: logger.info(f"Connected to Binance {self.mode} stream"),
                on_message=lambda _ws, message: self.handle_message(message),
                on_error=lambda _ws, error: logger.warning(f"WebSocket error on {self.mode} stream: {error}"),
                on_close=lambda _ws, code, reason: logger.info(f"Disconnected from {self.mode} stream ({code}): {reason}"),
            )
            self._ws.run_forever(ping_interval=20, ping_timeout=10)
            if self._stop.wait(self.reconnect_delay):
                break
            logger.info(f"Reconnecting {self.mode} stream")

    def handle_message(self, message: str):
        try:
            msg = json.loads(message)
        except json.JSONDecodeError:
            logger.warning(f"Invalid WS message on {self.mode} stream")
            return
        stream = msg.get("stream")
        data = msg.get("data")
        if not stream or not data:
            return
        try:
            if "@kline_" in stream:
                k = data["k"]
                candle = Candle(time=int(k["t"]) // 1000, open=float(k["o"]), high=float(k["h"]),
                                low=float(k["l"]), close=float(k["c"]), volume=float(k["v"]))
                self.on_kline(data["s"], candle, bool(k["x"]))
            elif self.mode == "futures" and "@markPrice" in stream:
                self.on_price(data["s"], float(data["p"]))
            elif self.mode == "spot" and "@miniTicker" in stream:
                self.on_price(data["s"], float(data["c"]))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Malformed {stream} payload: {e}")
