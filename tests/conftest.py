#Description: Shared fixtures: in-memory database, fresh services and candle builders.

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ADVISORY_API_KEY"] = ""
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["TELEGRAM_CHAT_ID"] = ""

import pytest

from models.db import engine, SessionLocal
from models.orm import Base
from models.schemas import Candle
from services.portfolio import PortfolioService


@pytest.fixture(autouse=True)
def setup_and_teardown_db():
    Base.metadata.create_all(engine)
    yield
    SessionLocal.remove()
    Base.metadata.drop_all(engine)


@pytest.fixture
def portfolio():
    return PortfolioService(initial_balance=10000.0)


@pytest.fixture
def make_candles():
    def _make(closes, volumes=None, start=1_700_000_000, step=60):
        volumes = volumes or [1.0] * len(closes)
        out = []
        prev = closes[0]
        for i, (close, vol) in enumerate(zip(closes, volumes)):
            out.append(Candle(time=start + i * step, open=prev, high=max(prev, close) + 0.5,
                              low=min(prev, close) - 0.5, close=close, volume=vol))
            prev = close
        return out
    return _make
