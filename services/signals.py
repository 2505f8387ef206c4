#Description: Signal detector scanning the latest candle for crossover/threshold events, with per-(symbol, type) cooldowns.
from __future__ import annotations

from threading import Lock
from typing import Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd

from models.schemas import Candle, IndicatorSnapshot, Signal
from services.indicators import (
    calc_atr, calc_bollinger_bands, calc_ema, calc_macd, calc_rsi, calc_volume_ratio,
)
from utils.logging import logger

MIN_CANDLES = 35
SIGNAL_COOLDOWN = 30  # candles
BB_BREAKOUT_VOLUME_RATIO = 1.5
VOLUME_SURGE_RATIO = 3.0
RSI_OVERSOLD = 30.0
RSI_OVERBOUGHT = 70.0

SIGNAL_LABELS: Dict[str, str] = {
    "golden_cross": "EMA7 crossed above EMA25 (short-term trend turning up)",
    "death_cross": "EMA7 crossed below EMA25 (short-term trend turning down)",
    "rsi_oversold": "RSI in oversold zone (<30), potential rebound",
    "rsi_overbought": "RSI in overbought zone (>70), potential pullback",
    "macd_bullish": "MACD crossed above its signal line, momentum turning bullish",
    "macd_bearish": "MACD crossed below its signal line, momentum turning bearish",
    "bb_breakout_up": "Price broke above the upper Bollinger band on volume",
    "bb_breakout_down": "Price broke below the lower Bollinger band on volume",
    "volume_surge": "Volume above 3x its 20-bar average",
}


class SignalDetectorState:
    """Cooldown bookkeeping: (symbol, signal type) -> candle index of the last firing."""

    def __init__(self, cooldown: int = SIGNAL_COOLDOWN):
        self.cooldown = cooldown
        self._last_fired: Dict[Tuple[str, str], int] = {}
        self._lock = Lock()

    def is_on_cooldown(self, symbol: str, signal_type: str, index: int) -> bool:
        with self._lock:
            last = self._last_fired.get((symbol, signal_type))
        if last is None:
            return False
        return index - last < self.cooldown

    def mark_fired(self, symbol: str, signal_type: str, index: int) -> None:
        with self._lock:
            self._last_fired[(symbol, signal_type)] = index

    def last_fired(self, symbol: str, signal_type: str) -> int | None:
        with self._lock:
            return self._last_fired.get((symbol, signal_type))


def _aligned(values: np.ndarray, n: int) -> np.ndarray:
    if len(values) == n:
        return values
    return np.full(n, np.nan)


def compute_features(candles: Sequence[Candle]) -> pd.DataFrame:
    """Indicator columns over the whole series, one row per candle."""
    n = len(candles)
    closes = [c.close for c in candles]
    volumes = [c.volume for c in candles]
    macd, macd_signal, macd_hist = calc_macd(closes)
    bb_upper, bb_middle, bb_lower, bb_width = calc_bollinger_bands(closes, 20, 2)
    return pd.DataFrame({
        "time": [c.time for c in candles],
        "close": closes,
        "volume": volumes,
        "ema7": _aligned(calc_ema(closes, 7), n),
        "ema25": _aligned(calc_ema(closes, 25), n),
        "rsi": _aligned(calc_rsi(closes, 14), n),
        "macd": macd,
        "macd_signal": macd_signal,
        "macd_hist": macd_hist,
        "bb_upper": bb_upper,
        "bb_middle": bb_middle,
        "bb_lower": bb_lower,
        "bb_width": bb_width,
        "atr": calc_atr(candles, 14),
        "volume_ratio": calc_volume_ratio(volumes, 20),
    })


def _or(value: float, default: float) -> float:
    return default if pd.isna(value) else float(value)


def _snapshot(row: pd.Series) -> IndicatorSnapshot:
    return IndicatorSnapshot(
        ema7=float(row["ema7"]),
        ema25=float(row["ema25"]),
        rsi=float(row["rsi"]),
        macd=_or(row["macd"], 0.0),
        macd_signal=_or(row["macd_signal"], 0.0),
        bb_upper=_or(row["bb_upper"], 0.0),
        bb_middle=_or(row["bb_middle"], 0.0),
        bb_lower=_or(row["bb_lower"], 0.0),
        atr=_or(row["atr"], 0.0),
        volume_ratio=_or(row["volume_ratio"], 1.0),
    )


def _triggered_types(cur: pd.Series, prev: pd.Series) -> List[str]:
    """Signal types whose condition holds at the latest candle, before cooldowns."""
    fired: List[str] = []
    e7, e25, pe7, pe25 = cur["ema7"], cur["ema25"], prev["ema7"], prev["ema25"]
    rsi = cur["rsi"]

    if pe7 < pe25 and e7 > e25:
        fired.append("golden_cross")
    if pe7 > pe25 and e7 < e25:
        fired.append("death_cross")

    if rsi < RSI_OVERSOLD:
        fired.append("rsi_oversold")
    if rsi > RSI_OVERBOUGHT:
        fired.append("rsi_overbought")

    macd_defined = not pd.isna([cur["macd"], cur["macd_signal"], prev["macd"], prev["macd_signal"]]).any()
    if macd_defined:
        if prev["macd"] < prev["macd_signal"] and cur["macd"] > cur["macd_signal"]:
            fired.append("macd_bullish")
        if prev["macd"] > prev["macd_signal"] and cur["macd"] < cur["macd_signal"]:
            fired.append("macd_bearish")

    vol_ratio = cur["volume_ratio"]
    vol_defined = not pd.isna(vol_ratio)
    if (vol_defined and not pd.isna(cur["bb_upper"]) and not pd.isna(prev["bb_upper"])
            and prev["close"] <= prev["bb_upper"] and cur["close"] > cur["bb_upper"]
            and vol_ratio > BB_BREAKOUT_VOLUME_RATIO):
        fired.append("bb_breakout_up")
    if (vol_defined and not pd.isna(cur["bb_lower"]) and not pd.isna(prev["bb_lower"])
            and prev["close"] >= prev["bb_lower"] and cur["close"] < cur["bb_lower"]
            and vol_ratio > BB_BREAKOUT_VOLUME_RATIO):
        fired.append("bb_breakout_down")

    if vol_defined and vol_ratio > VOLUME_SURGE_RATIO:
        fired.append("volume_surge")
    return fired


def detect_signals(symbol: str, candles: Sequence[Candle], state: SignalDetectorState,
                   index_offset: int = 0) -> List[Signal]:
    """
    Evaluate the latest candle of `candles` and return every signal that fires.

    Returns an empty list (never raises) while the series is too short for the
    indicators to warm up. Cooldowns are tracked by candle index in `state`;
    `index_offset` is the number of older candles already evicted from a capped
    cache, so indices keep growing once the cache is full.
    """
    if len(candles) < MIN_CANDLES:
        return []

    df = compute_features(candles)
    i = len(df) - 1
    cur, prev = df.iloc[i], df.iloc[i - 1]

    if pd.isna([cur["ema7"], cur["ema25"], prev["ema7"], prev["ema25"], cur["rsi"]]).any():
        return []

    snapshot = _snapshot(cur)
    time = int(cur["time"])
    price = float(cur["close"])

    signals: List[Signal] = []
    for signal_type in _triggered_types(cur, prev):
        if state.is_on_cooldown(symbol, signal_type, index_offset + i):
            continue
        state.mark_fired(symbol, signal_type, index_offset + i)
        signals.append(Signal(
            id=f"{symbol}_{signal_type}_{time}",
            symbol=symbol,
            type=signal_type,
            time=time,
            price=price,
            indicators=snapshot.model_copy(),
        ))

    if signals:
        logger.info(f"{symbol} signals @ {price:.4f}: {', '.join(s.type for s in signals)}")
    return signals
