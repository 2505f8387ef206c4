#Description: Pydantic settings loader with defaults, reading .env.
import os
import pathlib

from pydantic_settings import BaseSettings
from pydantic import Field
from dotenv import load_dotenv

env_path = pathlib.Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

class Settings(BaseSettings):
    APP_ENV: str = Field(default="development")
    DATABASE_URL: str = Field(default="sqlite:///./paper_trader.db")
    ENCRYPTION_KEY: str | None = Field(default=None)

    # Market data
    SYMBOLS: str = Field(default="BTCUSDT,ETHUSDT,SOLUSDT,BNBUSDT")
    TRADING_MODE: str = Field(default=os.getenv("TRADING_MODE", "spot"))  # spot|futures
    KLINE_INTERVAL: str = Field(default="5m")
    KLINE_HISTORY_LIMIT: int = Field(default=200)
    CANDLE_CACHE_SIZE: int = Field(default=500)
    STREAM_RECONNECT_SECONDS: float = Field(default=3.0)
    BINANCE_SPOT_URL: str = Field(default="https://api.binance.com/api/v3")
    BINANCE_FUTURES_URL: str = Field(default="https://fapi.binance.com/fapi/v1")
    BINANCE_SPOT_WS: str = Field(default="wss://stream.binance.com/stream")
    BINANCE_FUTURES_WS: str = Field(default="wss://fstream.binance.com/stream")

    # Paper account
    INITIAL_BALANCE: float = Field(default=10000.0)
    DEFAULT_LEVERAGE: int = Field(default=10)  # 1|10|20
    EQUITY_HISTORY_LIMIT: int = Field(default=200)
    SIGNAL_HISTORY_LIMIT: int = Field(default=50)

    # Advisory model (OpenAI-compatible endpoint)
    ADVISORY_API_KEY: str | None = None
    ADVISORY_BASE_URL: str = Field(default="https://open.bigmodel.cn/api/paas/v4/")
    ADVISORY_MODEL: str = Field(default="glm-4-flash")
    ADVISORY_TIMEOUT_SECONDS: float = Field(default=30.0)
    ADVISORY_CALL_TIMEOUT_SECONDS: float = Field(default=35.0)
    ADVISORY_MAX_ATTEMPTS: int = Field(default=3)
    ADVISORY_BACKOFF_SECONDS: float = Field(default=2.0)
    ADVISORY_REQUEST_DELAY_SECONDS: float = Field(default=0.8)

    # Auto trading
    AUTO_TRADE_ENABLED: bool = Field(default=True)
    TRADE_BALANCE_PCT: float = Field(default=0.10)
    MAX_TRADE_SIZE: float = Field(default=500.0)
    MIN_TRADE_SIZE: float = Field(default=10.0)

    # Notifications
    TELEGRAM_BOT_TOKEN: str | None = None
    TELEGRAM_CHAT_ID: str | None = None
    TELEGRAM_TIMEOUT_SECONDS: float = Field(default=8.0)

    SNAPSHOT_INTERVAL_SECONDS: int = Field(default=30)
    REPORT_INTERVAL_MINUTES: int = Field(default=10)

    class Config:
        env_file = ".env"
        extra = "allow"

    @property
    def symbol_list(self) -> list[str]:
        return [s.strip().upper() for s in self.SYMBOLS.split(",") if s.strip()]

settings = Settings()
