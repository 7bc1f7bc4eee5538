"""
Tests for the indicator engine.
"""

import pytest

from core.indicators import (
    atr,
    compute_indicators,
    ema,
    intraday_series,
    longer_term_context,
    macd,
    rsi,
)
from core.models import Candle


def _candles(closes, spread=1.0):
    return [
        Candle(open_time=i * 60_000, open=c, high=c + spread, low=c - spread, close=c,
               volume=10.0 + i, quote_volume=c * 10.0, trade_count=3)
        for i, c in enumerate(closes)
    ]


class TestEma:
    def test_seeded_with_first_price(self):
        assert ema([10.0], 20) == 10.0

    def test_smoothing(self):
        # k = 2/(3+1) = 0.5 -> 10, then 20*0.5 + 10*0.5 = 15
        assert ema([10.0, 20.0], 3) == pytest.approx(15.0)

    def test_empty(self):
        assert ema([], 20) == 0.0


class TestMacd:
    def test_zero_below_26_points(self):
        assert macd([float(i) for i in range(25)]) == 0.0

    def test_positive_in_uptrend(self):
        assert macd([float(i) for i in range(60)]) > 0


class TestRsi:
    def test_neutral_with_insufficient_data(self):
        assert rsi([1.0, 2.0, 3.0], 14) == 50.0

    def test_all_gains_is_100(self):
        assert rsi([float(i) for i in range(20)], 14) == 100.0

    def test_flat_is_neutral(self):
        assert rsi([5.0] * 20, 14) == 50.0

    def test_balanced_changes(self):
        prices = [10.0, 11.0, 10.0, 11.0, 10.0, 11.0, 10.0, 11.0]
        # last 7 changes: +1 -1 +1 -1 +1 -1 +1 -> gains 4, losses 3
        expected = 100.0 - 100.0 / (1.0 + (4 / 7) / (3 / 7))
        assert rsi(prices, 7) == pytest.approx(expected)

    def test_bounded(self):
        value = rsi([100.0 - i * 3 for i in range(30)], 14)
        assert 0.0 <= value <= 100.0
        assert value == 0.0


class TestAtr:
    def test_zero_until_period_plus_one(self):
        assert atr([1.0, 2.0, 3.0], [0.5, 1.5, 2.5], [1.0, 2.0, 3.0], 3) == 0.0

    def test_mean_true_range(self):
        highs = [11.0, 12.0, 13.0, 14.0]
        lows = [9.0, 10.0, 11.0, 12.0]
        closes = [10.0, 11.0, 12.0, 13.0]
        # each TR = max(2, |high - prev close| = 2, |low - prev close| = 0) = 2
        assert atr(highs, lows, closes, 3) == pytest.approx(2.0)


class TestComputeIndicators:
    def test_empty_candles(self):
        result = compute_indicators([])
        assert result.ema20 == 0.0
        assert result.rsi14 == 50.0

    def test_populates_volume_fields(self):
        candles = _candles([100.0 + i for i in range(60)])
        result = compute_indicators(candles)
        assert result.volume == candles[-1].volume
        assert result.avg_volume == pytest.approx(sum(c.volume for c in candles) / 60)
        assert result.trade_count == 3
        assert result.atr3 == pytest.approx(2.0)
        assert result.rsi14 == 100.0


class TestSeries:
    def test_intraday_last_ten_points(self):
        closes = [100.0 + i for i in range(30)]
        series = intraday_series(_candles(closes))
        assert series.mid_prices == closes[-10:]
        assert len(series.ema20) == 10
        assert len(series.rsi14) == 10

    def test_intraday_ema_falls_back_to_price_when_short(self):
        closes = [1.0, 2.0, 3.0]
        series = intraday_series(_candles(closes))
        assert series.ema20 == closes

    def test_longer_term_empty_below_26(self):
        context = longer_term_context(_candles([1.0] * 25))
        assert context.ema20 == 0.0
        assert context.macd == []

    def test_longer_term_populated(self):
        context = longer_term_context(_candles([100.0 + i for i in range(120)]))
        assert context.ema50 > 0
        assert len(context.macd) == 10
        assert len(context.rsi14) == 10
        assert context.current_volume == 10.0 + 119
