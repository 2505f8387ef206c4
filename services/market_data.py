#Description: Market data service: per-symbol candle cache fed by REST history and the websocket stream.

from threading import Lock
from typing import Dict, List, Optional

from adapters.binance_common import BinanceRestAdapter
from models.schemas import Candle
from utils.config import settings
from utils.logging import logger

class MarketDataService:
    _instance = None
    _lock = Lock()

    def __init__(self, adapter: BinanceRestAdapter | None = None, cache_size: int | None = None):
        self.adapter = adapter or BinanceRestAdapter()
        self.cache_size = cache_size or settings.CANDLE_CACHE_SIZE
        self._candles: Dict[str, List[Candle]] = {}
        self._evicted: Dict[str, int] = {}
        self._candles_lock = Lock()

    @classmethod
    def instance(cls):
        with cls._lock:
            if cls._instance is None:
                cls._instance = MarketDataService()
        return cls._instance

    def set_candles(self, symbol: str, candles: List[Candle]):
        with self._candles_lock:
            self._candles[symbol] = list(candles)[-self.cache_size:]
            self._evicted[symbol] = 0

    def add_candle(self, symbol: str, candle: Candle):
        """Replace the last candle when it has the same open time (still forming), else append."""
        with self._candles_lock:
            existing = self._candles.get(symbol, [])
            if existing and existing[-1].time == candle.time:
                updated = [*existing[:-1], candle]
            else:
                updated = [*existing, candle]
                if len(updated) > self.cache_size:
                    self._evicted[symbol] = self._evicted.get(symbol, 0) + len(updated) - self.cache_size
                    updated = updated[-self.cache_size:]
            self._candles[symbol] = updated

    def get_candles(self, symbol: str) -> List[Candle]:
        with self._candles_lock:
            return list(self._candles.get(symbol, []))

    def evicted_count(self, symbol: str) -> int:
        """Candles dropped from the front of the cache since the last full load."""
        with self._candles_lock:
            return self._evicted.get(symbol, 0)

    def price_change_pct(self, symbol: str, price: float, lookback: int) -> float:
        """Percent change of `price` against the close `lookback` candles back (or the oldest cached one)."""
        candles = self.get_candles(symbol)
        if not candles:
            return 0.0
        ref = candles[max(0, len(candles) - lookback)]
        return (price - ref.close) / ref.close * 100.0 if ref.close else 0.0

    def load_history(self, symbols: List[str], interval: str, mode: str, limit: Optional[int] = None):
        for symbol in symbols:
            try:
                candles = self.adapter.fetch_klines(symbol, interval, limit or settings.KLINE_HISTORY_LIMIT, mode)
                self.set_candles(symbol, candles)
                logger.info(f"Loaded {len(candles)} {interval} candles for {symbol} ({mode})")
            except Exception as e:
                logger.warning(f"Failed to load klines for {symbol}: {e}")
