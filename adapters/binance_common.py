#Description: Binance public REST adapter for klines and prices (spot and USDT-M futures).

import httpx

from models.schemas import Candle
from utils.config import settings

class BinanceRestAdapter:
    def __init__(self, client: httpx.Client | None = None):
        self.spot_url = settings.BINANCE_SPOT_URL
        self.futures_url = settings.BINANCE_FUTURES_URL
        self.client = client or httpx.Client(timeout=10)

    def _base(self, mode: str) -> str:
        return self.futures_url if mode == "futures" else self.spot_url

    def get(self, url: str, params: dict | None = None):
        r = self.client.get(url, params=params)
        r.raise_for_status()
        return r.json()

    def fetch_klines(self, symbol: str, interval: str = "1m", limit: int = 200, mode: str = "spot") -> list[Candle]:
        data = self.get(f"{self._base(mode)}/klines", params={"symbol": symbol, "interval": interval, "limit": int(limit)})
        # [open_time_ms, open, high, low, close, volume, close_time, ...]
        return [
            Candle(time=int(row[0]) // 1000, open=float(row[1]), high=float(row[2]),
                   low=float(row[3]), close=float(row[4]), volume=float(row[5]))
            for row in data
        ]

    def fetch_mark_price(self, symbol: str) -> float:
        data = self.get(f"{self.futures_url}/premiumIndex", params={"symbol": symbol})
        return float(data["markPrice"])

    def fetch_spot_price(self, symbol: str) -> float:
        data = self.get(f"{self.spot_url}/ticker/price", params={"symbol": symbol})
        return float(data["price"])

    def fetch_price(self, symbol: str, mode: str) -> float:
        return self.fetch_mark_price(symbol) if mode == "futures" else self.fetch_spot_price(symbol)
