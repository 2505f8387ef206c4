#Description: Indicator formulas and warm-up alignment.

import math

import numpy as np
import pytest

from models.schemas import Candle
from services.indicators import (
    calc_atr, calc_bollinger_bands, calc_ema, calc_macd, calc_rsi, calc_volume_ratio,
)


def test_ema_seeded_with_sma():
    out = calc_ema([1, 2, 3, 4, 5], 3)
    assert len(out) == 5
    assert np.isnan(out[:2]).all()
    assert out[2:] == pytest.approx([2.0, 3.0, 4.0])


def test_ema_shorter_than_period_is_empty():
    assert len(calc_ema([1, 2], 3)) == 0


def test_rsi_undefined_prefix_and_saturation():
    out = calc_rsi([float(i) for i in range(20)], 14)
    assert np.isnan(out[:14]).all()
    assert out[14:] == pytest.approx([100.0] * 6)
    assert len(calc_rsi([1.0] * 14, 14)) == 0


def test_rsi_wilder_smoothing():
    prices = [10.0] + [11.0, 10.0] * 7 + [12.0]
    out = calc_rsi(prices, 14)
    # first 14 diffs: seven +1 and seven -1
    assert out[14] == pytest.approx(50.0)
    avg_gain = (0.5 * 13 + 2.0) / 14
    avg_loss = (0.5 * 13) / 14
    assert out[15] == pytest.approx(100 - 100 / (1 + avg_gain / avg_loss))


def test_macd_alignment():
    prices = [100 + math.sin(i / 3) * 5 + i * 0.2 for i in range(60)]
    macd, signal, hist = calc_macd(prices)
    assert np.isnan(macd[:25]).all() and not np.isnan(macd[25])
    assert np.isnan(signal[:33]).all() and not np.isnan(signal[33])
    ema12, ema26 = calc_ema(prices, 12), calc_ema(prices, 26)
    assert macd[40] == pytest.approx(ema12[40] - ema26[40])
    assert hist[50] == pytest.approx(macd[50] - signal[50])
    assert np.isnan(hist[30])


def test_macd_short_series_all_undefined():
    macd, signal, hist = calc_macd([1.0] * 20)
    assert len(macd) == 20 and np.isnan(macd).all() and np.isnan(signal).all()


def test_bollinger_population_std():
    prices = [float(i) for i in range(1, 21)]
    upper, middle, lower, width = calc_bollinger_bands(prices, 20, 2)
    std = np.std(prices)
    assert np.isnan(middle[:19]).all()
    assert middle[19] == pytest.approx(10.5)
    assert upper[19] == pytest.approx(10.5 + 2 * std)
    assert lower[19] == pytest.approx(10.5 - 2 * std)
    assert width[19] == pytest.approx(4 * std / 10.5 * 100)


def test_bollinger_zero_middle_has_zero_width():
    _, _, _, width = calc_bollinger_bands([0.0] * 20, 20, 2)
    assert width[19] == 0.0


def test_atr_seed_and_wilder():
    candles = [Candle(time=i, open=100, high=101, low=99, close=100) for i in range(16)]
    candles.append(Candle(time=16, open=100, high=106, low=100, close=105))
    out = calc_atr(candles, 14)
    assert np.isnan(out[:14]).all()
    assert out[14] == pytest.approx(2.0)
    assert out[15] == pytest.approx(2.0)
    assert out[16] == pytest.approx((2.0 * 13 + 6.0) / 14)


def test_volume_ratio():
    vols = [1.0] * 19 + [21.0]
    out = calc_volume_ratio(vols, 20)
    assert np.isnan(out[:19]).all()
    assert out[19] == pytest.approx(21.0 / 2.0)
    assert calc_volume_ratio([0.0] * 20, 20)[19] == 1.0
