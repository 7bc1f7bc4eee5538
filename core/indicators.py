"""
perpguard Core: Indicator Engine

Pure functions over price and candle series. No I/O, no state.
"""

import math
from typing import List, Sequence

from core.models import Candle, IndicatorSet, IntradaySeries, LongerTermContext

INTRADAY_POINTS = 10


def _finite(value: float, default: float = 0.0) -> float:
    return value if math.isfinite(value) else default


def ema(prices: Sequence[float], period: int) -> float:
    """EMA seeded with the first price, smoothing k = 2/(period+1)."""
    if not prices:
        return 0.0
    k = 2.0 / (period + 1)
    value = prices[0]
    for price in prices[1:]:
        value = price * k + value * (1 - k)
    return _finite(value)


def macd(prices: Sequence[float]) -> float:
    """EMA12 - EMA26; 0 until 26 points exist."""
    if len(prices) < 26:
        return 0.0
    return _finite(ema(prices, 12) - ema(prices, 26))


def rsi(prices: Sequence[float], period: int) -> float:
    """
    Simple-average RSI over the last ``period`` changes.

    Returns 50 (neutral) when there are fewer than period+1 points, and when
    there were neither gains nor losses. A window with gains and no losses
    returns 100.
    """
    if len(prices) < period + 1:
        return 50.0

    gains = 0.0
    losses = 0.0
    for i in range(len(prices) - period, len(prices)):
        change = prices[i] - prices[i - 1]
        if change > 0:
            gains += change
        else:
            losses -= change

    avg_gain = gains / period
    avg_loss = losses / period
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0

    value = 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)
    if not math.isfinite(value):
        return 50.0
    return min(max(value, 0.0), 100.0)


def atr(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], period: int) -> float:
    """Mean true range over the last ``period`` bars; 0 until period+1 bars exist."""
    if min(len(highs), len(lows), len(closes)) < period + 1:
        return 0.0
    true_ranges = []
    for i in range(1, len(highs)):
        prev_close = closes[i - 1]
        true_ranges.append(max(
            highs[i] - lows[i],
            abs(highs[i] - prev_close),
            abs(lows[i] - prev_close),
        ))
    recent = true_ranges[-period:]
    return _finite(sum(recent) / len(recent))


def _closes(candles: Sequence[Candle]) -> List[float]:
    return [c.close for c in candles if math.isfinite(c.close)]


def compute_indicators(candles: Sequence[Candle]) -> IndicatorSet:
    """Indicator set for one timeframe. Candles must be sorted ascending."""
    if not candles:
        return IndicatorSet()
    closes = _closes(candles)
    if not closes:
        return IndicatorSet()

    highs = [c.high for c in candles]
    lows = [c.low for c in candles]
    volumes = [c.volume for c in candles]
    last = candles[-1]

    return IndicatorSet(
        ema20=ema(closes, 20),
        ema50=ema(closes, 50),
        macd=macd(closes),
        rsi7=rsi(closes, 7),
        rsi14=rsi(closes, 14),
        atr3=atr(highs, lows, closes, 3),
        atr14=atr(highs, lows, closes, 14),
        volume=last.volume,
        avg_volume=sum(volumes) / len(volumes),
        quote_volume=last.quote_volume,
        trade_count=last.trade_count,
    )


def intraday_series(candles: Sequence[Candle], points: int = INTRADAY_POINTS) -> IntradaySeries:
    """Rolling indicator values at each of the last ``points`` bars."""
    closes = _closes(candles)
    if not closes:
        return IntradaySeries()

    start = max(0, len(closes) - points)
    series = IntradaySeries(mid_prices=closes[start:])
    for i in range(start, len(closes)):
        history = closes[: i + 1]
        series.ema20.append(ema(history, 20) if len(history) >= 20 else history[-1])
        series.macd.append(macd(history))
        series.rsi7.append(rsi(history, 7))
        series.rsi14.append(rsi(history, 14))
    return series


def longer_term_context(candles: Sequence[Candle], points: int = INTRADAY_POINTS) -> LongerTermContext:
    """Higher-timeframe summary; empty until 26 bars exist."""
    if len(candles) < 26:
        return LongerTermContext()

    closes = _closes(candles)
    highs = [c.high for c in candles]
    lows = [c.low for c in candles]
    volumes = [c.volume for c in candles]

    context = LongerTermContext(
        ema20=ema(closes, 20),
        ema50=ema(closes, 50),
        atr3=atr(highs, lows, closes, 3),
        atr14=atr(highs, lows, closes, 14),
        current_volume=volumes[-1],
        avg_volume=sum(volumes) / len(volumes),
    )
    for i in range(len(closes) - min(points, len(closes)), len(closes)):
        history = closes[: i + 1]
        context.macd.append(macd(history))
        context.rsi14.append(rsi(history, 14))
    return context
