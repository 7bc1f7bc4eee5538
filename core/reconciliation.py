"""
perpguard Core: Reconciliation Engine

Makes the ledger's position rows mirror the exchange. The exchange decides
which positions exist and their size, side, entry and mark; the ledger keeps
only what the exchange does not report (peak PnL, opened-at, order ids,
stop/target levels).
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from core.context import TradingContext
from core.exceptions import CriticalDataUnavailable, ExchangeError
from core.models import ExchangePosition, Position, estimate_liquidation_price
from core.retry import RetryPolicy, retry_call
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)

POSITION_EPSILON = 1e-5


@dataclass
class ReconciliationReport:
    exchange_count: int
    ledger_count: int
    inserted: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    wiped: bool = False
    extra_pass: bool = False

    @property
    def in_sync(self) -> bool:
        return self.exchange_count == self.ledger_count


class ReconciliationEngine:
    def __init__(self, ctx: TradingContext, retry_policy: Optional[RetryPolicy] = None):
        self.ctx = ctx
        self.retry_policy = retry_policy or RetryPolicy(attempts=3, base_delay=1.0)

    def fetch_exchange_positions(self) -> List[ExchangePosition]:
        try:
            return retry_call(self.ctx.exchange.get_positions, policy=self.retry_policy,
                              description="get_positions")
        except ExchangeError as e:
            raise CriticalDataUnavailable("positions", e) from e

    def reconcile_positions(self, raw: Optional[List[ExchangePosition]] = None) -> ReconciliationReport:
        """
        Sync ledger rows to the exchange position list.

        ``raw`` reuses an already-fetched list. If the counts still disagree
        afterwards, one more pass runs against a fresh fetch; after that the
        cycle continues regardless.
        """
        report = self._reconcile_once(raw)
        ledger_count = self.ctx.ledger.count_positions()
        if ledger_count == report.exchange_count:
            return report

        logger.warning(
            f"Position count mismatch after reconciliation (ledger={ledger_count}, "
            f"exchange={report.exchange_count}); running one extra pass"
        )
        report = self._reconcile_once(None)
        report.extra_pass = True
        if not report.in_sync:
            logger.error(
                f"Position count still mismatched (ledger={report.ledger_count}, "
                f"exchange={report.exchange_count}); continuing"
            )
        return report

    def _reconcile_once(self, raw: Optional[List[ExchangePosition]]) -> ReconciliationReport:
        positions = raw if raw is not None else self.fetch_exchange_positions()
        live: Dict[str, ExchangePosition] = {}
        for pos in positions:
            if abs(pos.size) > POSITION_EPSILON:
                live[pos.symbol.upper()] = pos

        prior = {p.symbol: p for p in self.ctx.ledger.get_positions()}

        if not live and prior:
            logger.warning(
                f"Exchange reports no open positions but ledger holds {len(prior)}; clearing ledger"
            )
            self.ctx.alert(
                AlertSeverity.WARNING,
                "Ledger cleared by reconciliation",
                f"Exchange reports zero positions; removed {sorted(prior)}",
            )

        rows = [self._merge(symbol, pos, prior.get(symbol)) for symbol, pos in live.items()]
        diff = self.ctx.ledger.replace_positions(rows)
        ledger_count = self.ctx.ledger.count_positions()

        if diff["inserted"] or diff["removed"]:
            logger.info(
                f"Reconciled positions: +{diff['inserted']} -{diff['removed']} "
                f"(exchange={len(live)}, ledger={ledger_count})"
            )
        if self.ctx.metrics is not None:
            self.ctx.metrics.record_open_positions(ledger_count)

        return ReconciliationReport(
            exchange_count=len(live),
            ledger_count=ledger_count,
            inserted=diff["inserted"],
            updated=diff["updated"],
            removed=diff["removed"],
            wiped=not live and bool(prior),
        )

    def _fallback_price(self, symbol: str) -> float:
        try:
            ticker = retry_call(self.ctx.exchange.get_ticker, symbol, policy=self.retry_policy,
                                description=f"ticker {symbol}")
        except ExchangeError as e:
            logger.warning(f"{symbol}: ticker fallback failed: {e}")
            return 0.0
        return ticker.reference_price

    def _merge(self, symbol: str, pos: ExchangePosition, prior: Optional[Position]) -> Position:
        entry_price = pos.entry_price
        mark_price = pos.mark_price
        if entry_price <= 0 or mark_price <= 0:
            price = self._fallback_price(symbol)
            logger.warning(
                f"{symbol}: exchange reported zero price (entry={entry_price}, mark={mark_price}); "
                f"using ticker {price}"
            )
            if mark_price <= 0:
                mark_price = price
            if entry_price <= 0:
                entry_price = price
            if entry_price <= 0 and prior is not None:
                entry_price = prior.entry_price
            if mark_price <= 0 and prior is not None:
                mark_price = prior.current_price
            if mark_price <= 0 and entry_price > 0:
                logger.warning(f"{symbol}: no usable mark price; valuing at entry {entry_price} until next sync")
                mark_price = entry_price

        leverage = max(int(pos.leverage or 1), 1)
        liquidation = pos.liquidation_price
        if not liquidation or liquidation <= 0:
            liquidation = estimate_liquidation_price(entry_price, leverage, pos.side)

        position = Position(
            symbol=symbol,
            side=pos.side,
            quantity=pos.quantity,
            entry_price=entry_price,
            current_price=mark_price,
            leverage=leverage,
            liquidation_price=liquidation,
            unrealized_pnl=pos.unrealized_pnl,
            opened_at=self.ctx.now(),
            entry_order_id=f"synced-{symbol}-{int(self.ctx.now().timestamp() * 1000)}",
        )

        # A side flip on the same symbol is a new position; its metadata starts fresh.
        if prior is not None and prior.side is pos.side:
            position.peak_pnl_percent = prior.peak_pnl_percent
            position.opened_at = prior.opened_at
            position.stop_loss = prior.stop_loss
            position.profit_target = prior.profit_target
            position.entry_order_id = prior.entry_order_id or position.entry_order_id
            position.sl_order_id = prior.sl_order_id
            position.tp_order_id = prior.tp_order_id
        return position
