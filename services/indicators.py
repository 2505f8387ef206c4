#Description: Technical indicators (EMA, RSI, MACD, Bollinger Bands, ATR, volume ratio) aligned to the input series.
"""
Every function returns a float numpy array with the same length as its input,
using NaN for the warm-up entries, so that index ``i`` of an indicator always
refers to candle ``i``. Signal detection relies on that alignment.
"""
from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from models.schemas import Candle


def _as_array(values: Sequence[float]) -> np.ndarray:
    return np.asarray(values, dtype=float)


def calc_ema(prices: Sequence[float], period: int) -> np.ndarray:
    """EMA seeded with the simple average of the first `period` values."""
    arr = _as_array(prices)
    if len(arr) < period:
        return np.array([], dtype=float)
    k = 2.0 / (period + 1)
    out = np.full(len(arr), np.nan)
    ema = arr[:period].sum() / period
    out[period - 1] = ema
    for i in range(period, len(arr)):
        ema = arr[i] * k + ema * (1 - k)
        out[i] = ema
    return out


def calc_rsi(prices: Sequence[float], period: int = 14) -> np.ndarray:
    """Wilder RSI. The first `period` entries are undefined; saturates at 100 when losses are zero."""
    arr = _as_array(prices)
    if len(arr) < period + 1:
        return np.array([], dtype=float)
    out = np.full(len(arr), np.nan)
    diffs = np.diff(arr)
    gains = np.where(diffs > 0, diffs, 0.0)
    losses = np.where(diffs < 0, -diffs, 0.0)

    avg_gain = gains[:period].sum() / period
    avg_loss = losses[:period].sum() / period
    out[period] = 100.0 if avg_loss == 0 else 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)

    for i in range(period + 1, len(arr)):
        avg_gain = (avg_gain * (period - 1) + gains[i - 1]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i - 1]) / period
        out[i] = 100.0 if avg_loss == 0 else 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)
    return out


def _value_at(series: np.ndarray, i: int) -> float:
    # shorter-than-period EMAs come back empty; treat missing entries as undefined
    return series[i] if i < len(series) else np.nan


def calc_macd(prices: Sequence[float], fast: int = 12, slow: int = 26,
              signal_period: int = 9) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    MACD line, signal line and histogram.

    The signal EMA runs over the defined tail of the MACD line only and is then
    shifted back onto the original indexing.
    """
    n = len(prices)
    ema_fast = calc_ema(prices, fast)
    ema_slow = calc_ema(prices, slow)

    macd_line = np.full(n, np.nan)
    for i in range(n):
        f, s = _value_at(ema_fast, i), _value_at(ema_slow, i)
        if not (np.isnan(f) or np.isnan(s)):
            macd_line[i] = f - s

    signal_full = np.full(n, np.nan)
    valid_idx = np.flatnonzero(~np.isnan(macd_line))
    if len(valid_idx):
        start = int(valid_idx[0])
        signal_tail = calc_ema(macd_line[valid_idx], signal_period)
        if len(signal_tail):
            signal_full[start:start + len(signal_tail)] = signal_tail

    histogram = macd_line - signal_full  # NaN wherever either side is undefined
    return macd_line, signal_full, histogram


def calc_bollinger_bands(prices: Sequence[float], period: int = 20, std_devs: float = 2
                         ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Rolling mean +/- `std_devs` population standard deviations; bandwidth in percent of the middle band."""
    arr = _as_array(prices)
    n = len(arr)
    upper = np.full(n, np.nan)
    middle = np.full(n, np.nan)
    lower = np.full(n, np.nan)
    bandwidth = np.full(n, np.nan)
    if n < period:
        return upper, middle, lower, bandwidth

    windows = sliding_window_view(arr, period)
    sma = windows.mean(axis=1)
    std = windows.std(axis=1)  # ddof=0
    up = sma + std_devs * std
    lo = sma - std_devs * std

    upper[period - 1:] = up
    middle[period - 1:] = sma
    lower[period - 1:] = lo
    with np.errstate(divide="ignore", invalid="ignore"):
        bandwidth[period - 1:] = np.where(sma > 0, (up - lo) / sma * 100.0, 0.0)
    return upper, middle, lower, bandwidth


def _true_range(candles: Sequence[Candle], i: int) -> float:
    c, prev = candles[i], candles[i - 1]
    return max(c.high - c.low, abs(c.high - prev.close), abs(c.low - prev.close))


def calc_atr(candles: Sequence[Candle], period: int = 14) -> np.ndarray:
    """ATR: mean of the first `period` true ranges at index `period`, Wilder-smoothed afterwards."""
    n = len(candles)
    out = np.full(n, np.nan)
    if n <= period:
        return out
    out[period] = sum(_true_range(candles, j) for j in range(1, period + 1)) / period
    for i in range(period + 1, n):
        out[i] = (out[i - 1] * (period - 1) + _true_range(candles, i)) / period
    return out


def calc_volume_ratio(volumes: Sequence[float], period: int = 20) -> np.ndarray:
    """Current volume over the trailing `period` average (window includes the current bar)."""
    arr = _as_array(volumes)
    n = len(arr)
    out = np.full(n, np.nan)
    if n < period:
        return out
    avg = sliding_window_view(arr, period).mean(axis=1)
    current = arr[period - 1:]
    with np.errstate(divide="ignore", invalid="ignore"):
        out[period - 1:] = np.where(avg > 0, current / avg, 1.0)
    return out
