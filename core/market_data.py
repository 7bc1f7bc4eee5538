"""
perpguard Core: Market Data Pipeline

Collects ticker and multi-timeframe candles for every configured symbol,
computes indicators and runs data-quality checks. One symbol failing never
aborts the batch; it comes back as a snapshot with ``error`` set.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional, Sequence, Tuple

from core.context import TradingContext
from core.indicators import compute_indicators, intraday_series, longer_term_context
from core.models import Candle, MarketSnapshot, Ticker
from core.policy import MarketDataSettings
from core.retry import Backoff, RetryPolicy, retry_call

logger = logging.getLogger(__name__)

TICKER = "ticker"


def validate_market_data(ticker: Optional[Ticker], candles: Sequence[Candle],
                         settings: MarketDataSettings, now_ms: int) -> List[str]:
    """
    Data-quality findings for one symbol (1m candles, ascending).

    Returns human-readable issues. An empty list means clean data.
    """
    issues: List[str] = []

    if ticker is None or not ticker.last or ticker.last <= 0:
        issues.append("invalid last price")
        return issues
    if not ticker.mark_price or ticker.mark_price <= 0:
        issues.append("invalid mark price")
    else:
        deviation = abs(ticker.last - ticker.mark_price) / ticker.mark_price * 100.0
        if deviation > settings.max_price_deviation_percent:
            issues.append(
                f"last/mark deviation {deviation:.2f}% exceeds {settings.max_price_deviation_percent}%"
            )

    if not candles:
        issues.append("no recent candles")
        return issues

    latest = candles[-1]
    age_seconds = (now_ms - latest.open_time) / 1000.0
    if age_seconds > settings.max_candle_age_seconds:
        issues.append(f"latest candle is stale ({age_seconds:.0f}s old)")

    if latest.is_closed(now_ms) and not latest.is_active():
        issues.append("closed candle with no volume or trades")

    window = settings.inactive_candle_window
    closed = [c for c in candles if c.is_closed(now_ms)][-window:]
    if len(closed) >= window and not any(c.is_active() for c in closed):
        issues.append(f"no trading activity in last {window} closed candles")

    if not settings.is_testnet and (ticker.volume_24h <= 0 or ticker.quote_volume_24h <= 0):
        issues.append("zero 24h volume")

    return issues


def usable_symbols(snapshots: Dict[str, MarketSnapshot]) -> List[str]:
    return [symbol for symbol, snap in snapshots.items() if snap.usable]


class MarketDataPipeline:
    def __init__(self, ctx: TradingContext, retry_policy: Optional[RetryPolicy] = None):
        self.ctx = ctx
        self.settings = ctx.market_data
        self.retry_policy = retry_policy or RetryPolicy(
            attempts=self.settings.retry_attempts,
            base_delay=self.settings.retry_base_delay_seconds,
            backoff=Backoff.LINEAR,
        )

    def _fetch(self, symbol: str, kind: str):
        exchange = self.ctx.exchange
        if kind == TICKER:
            return retry_call(exchange.get_ticker, symbol, policy=self.retry_policy,
                              description=f"ticker {symbol}")
        limit = dict(self.settings.timeframes)[kind]
        candles = retry_call(exchange.get_candles, symbol, kind, limit, policy=self.retry_policy,
                             description=f"candles {symbol} {kind}")
        return sorted(candles, key=lambda c: c.open_time)

    def collect_market_data(self, symbols: Sequence[str]) -> Dict[str, MarketSnapshot]:
        """Snapshot per symbol, in the order given."""
        if not symbols:
            return {}

        kinds = [TICKER] + [tf for tf, _ in self.settings.timeframes]
        results: Dict[str, Dict[str, object]] = {s: {} for s in symbols}
        errors: Dict[str, str] = {}

        jobs: List[Tuple[str, str]] = [(s, k) for s in symbols for k in kinds]
        workers = max(1, min(self.settings.max_workers, len(jobs)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="market-data") as pool:
            futures = {pool.submit(self._fetch, symbol, kind): (symbol, kind) for symbol, kind in jobs}
            for future in as_completed(futures):
                symbol, kind = futures[future]
                try:
                    results[symbol][kind] = future.result()
                except Exception as e:
                    errors.setdefault(symbol, f"{kind}: {e}")

        snapshots: Dict[str, MarketSnapshot] = {}
        for symbol in symbols:
            if symbol in errors:
                logger.error(f"{symbol} market data fetch failed: {errors[symbol]}")
                snapshots[symbol] = MarketSnapshot(symbol=symbol, error=errors[symbol])
                continue
            snapshots[symbol] = self._build_snapshot(symbol, results[symbol])
        return snapshots

    def _build_snapshot(self, symbol: str, data: Dict[str, object]) -> MarketSnapshot:
        settings = self.settings
        ticker: Ticker = data[TICKER]  # type: ignore[assignment]
        candles: Dict[str, List[Candle]] = {tf: data[tf] for tf, _ in settings.timeframes}  # type: ignore[misc]

        snapshot = MarketSnapshot(
            symbol=symbol,
            ticker=ticker,
            candles=candles,
            indicators={tf: compute_indicators(series) for tf, series in candles.items()},
            intraday=intraday_series(candles.get(settings.intraday_timeframe, [])),
            context=longer_term_context(candles.get(settings.context_timeframe, [])),
        )

        now_ms = int(self.ctx.now().timestamp() * 1000)
        issues = validate_market_data(ticker, candles.get(settings.validation_timeframe, []), settings, now_ms)
        snapshot.warnings = issues

        if settings.is_testnet:
            for issue in issues:
                logger.debug(f"[testnet] {symbol}: {issue}")
            snapshot.is_valid = True
        else:
            for issue in issues:
                logger.warning(f"{symbol} data quality: {issue}")
            snapshot.is_valid = snapshot.last_price > 0
        return snapshot
