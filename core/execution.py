"""
perpguard Core: Execution Engine

Opens and closes perpetual positions with pre-trade checks, quantity
rounding to instrument constraints, fill confirmation, a slippage guard with
reversal, and fee-aware trade records.

Both the risk engine (forced closes) and the oracle tool dispatcher (opens
and discretionary closes) go through this engine. Writes are serialized.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, List, NamedTuple, Optional, Union

from core.account import AccountService
from core.context import TradingContext
from core.exceptions import CriticalDataUnavailable, ExchangeError
from core.models import (
    ExchangePosition,
    ExitReason,
    OrderResult,
    OrderStatus,
    Position,
    Side,
    Trade,
    TradeStatus,
    TradeType,
    estimate_liquidation_price,
    utcnow,
)
from core.retry import RetryPolicy, retry_call
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    """Result of an open or close"""
    success: bool
    symbol: str
    side: Optional[Side] = None
    order_id: Optional[str] = None
    quantity: float = 0.0
    price: float = 0.0
    leverage: int = 0
    fee: float = 0.0
    pnl: Optional[float] = None
    slippage_percent: float = 0.0
    error: Optional[str] = None
    rollback: Optional[str] = None  # "reversed" | "failed"
    timestamp: datetime = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "symbol": self.symbol,
            "side": self.side.value if self.side else None,
            "order_id": self.order_id,
            "quantity": self.quantity,
            "price": self.price,
            "leverage": self.leverage,
            "fee": round(self.fee, 6),
            "pnl": round(self.pnl, 6) if self.pnl is not None else None,
            "slippage_percent": round(self.slippage_percent, 4),
            "error": self.error,
            "rollback": self.rollback,
        }


class Fill(NamedTuple):
    price: float
    quantity: float
    status: OrderStatus
    confirmed: bool


def floor_to_step(quantity: float, step: float) -> float:
    """Round a quantity down to a whole number of ``step`` increments."""
    if step <= 0:
        return quantity
    steps = (Decimal(str(quantity)) / Decimal(str(step))).to_integral_value(rounding=ROUND_DOWN)
    return float(steps * Decimal(str(step)))


def slippage_percent(fill_price: float, reference_price: float) -> float:
    if reference_price <= 0:
        return 0.0
    return abs(fill_price - reference_price) / reference_price * 100.0


class ExecutionEngine:
    def __init__(self, ctx: TradingContext, account: Optional[AccountService] = None,
                 retry_policy: Optional[RetryPolicy] = None):
        self.ctx = ctx
        self.settings = ctx.execution
        self.account = account or AccountService(ctx)
        self.retry_policy = retry_policy or RetryPolicy(attempts=3, base_delay=1.0)
        self._write_lock = threading.Lock()
        self.block_new_opens = False
        self.block_reason: Optional[str] = None

    # ===== per-cycle state =====

    def begin_cycle(self) -> None:
        self.block_new_opens = False
        self.block_reason = None

    def block_opens(self, reason: str) -> None:
        if not self.block_new_opens:
            logger.warning(f"New opens blocked for this cycle: {reason}")
        self.block_new_opens = True
        self.block_reason = reason

    # ===== helpers =====

    def _fail(self, symbol: str, error: str, side: Optional[Side] = None, **kwargs) -> ExecutionResult:
        logger.warning(f"Execution rejected for {symbol}: {error}")
        return ExecutionResult(success=False, symbol=symbol, side=side, error=error, **kwargs)

    def _exchange_positions(self) -> List[ExchangePosition]:
        try:
            return retry_call(self.ctx.exchange.get_positions, policy=self.retry_policy,
                              description="get_positions")
        except ExchangeError as e:
            raise CriticalDataUnavailable("positions", e) from e

    def _sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)

    def _fee(self, quantity: float, price: float) -> float:
        return quantity * price * self.settings.fee_rate

    def _await_fill(self, order: OrderResult, expected_qty: float, reference_price: float) -> Fill:
        """Poll the order for its actual fill; fall back to the pre-trade estimate."""
        for attempt in range(1, self.settings.order_poll_attempts + 1):
            try:
                detail = self.ctx.exchange.get_order(order.order_id, order.symbol)
            except ExchangeError as e:
                logger.warning(
                    f"Order {order.order_id} lookup failed (attempt {attempt}/"
                    f"{self.settings.order_poll_attempts}): {e}"
                )
            else:
                if detail.status is OrderStatus.CANCELLED:
                    return Fill(detail.fill_price, detail.filled_qty, detail.status, True)
                if detail.is_filled or detail.fill_price > 0:
                    quantity = detail.filled_qty or abs(detail.size) or expected_qty
                    price = detail.fill_price or reference_price
                    return Fill(price, quantity, detail.status, True)
            if attempt < self.settings.order_poll_attempts:
                self._sleep(self.settings.order_poll_delay_seconds)

        logger.warning(f"Order {order.order_id} not confirmed; using pre-trade estimate")
        price = order.fill_price if order.fill_price > 0 else reference_price
        quantity = order.filled_qty if order.filled_qty > 0 else expected_qty
        return Fill(price, quantity, order.status, False)

    def _reverse(self, symbol: str, size: float, reduce_only: bool, context: str) -> Optional[OrderResult]:
        """Offsetting market order for a fill the slippage guard rejected."""
        try:
            order = self.ctx.exchange.place_order(symbol, size, reduce_only=reduce_only)
        except ExchangeError as e:
            logger.critical(
                f"ROLLBACK FAILED for {symbol} ({context}): {e}. Manual intervention required."
            )
            self.ctx.alert(
                AlertSeverity.CRITICAL,
                "Slippage rollback failed",
                f"{symbol} {context}: {e}",
                {"symbol": symbol, "size": size},
            )
            if self.ctx.metrics is not None:
                self.ctx.metrics.record_rollback("failed")
            return None
        logger.warning(f"Rolled back {symbol} ({context}) with order {order.order_id}")
        if self.ctx.metrics is not None:
            self.ctx.metrics.record_rollback("reversed")
        return order

    def _fetch_liquidation_price(self, symbol: str) -> float:
        for attempt in range(self.settings.liquidation_poll_attempts):
            try:
                for pos in self.ctx.exchange.get_positions():
                    if pos.symbol.upper() == symbol and pos.liquidation_price > 0:
                        return pos.liquidation_price
            except ExchangeError as e:
                logger.debug(f"Liquidation price lookup for {symbol} failed: {e}")
            if attempt < self.settings.liquidation_poll_attempts - 1:
                self._sleep(self.settings.liquidation_poll_delay_seconds * (attempt + 1))
        return 0.0

    # ===== open =====

    def open(self, symbol: str, side: Union[Side, str], leverage: int, margin_usdt: float,
             stop_loss: Optional[float] = None, profit_target: Optional[float] = None) -> ExecutionResult:
        """Open a new position of ``margin_usdt`` x ``leverage`` notional."""
        symbol = symbol.upper()
        try:
            side = Side(side)
        except ValueError:
            return self._fail(symbol, f"invalid side {side!r}")
        with self._write_lock:
            try:
                return self._open(symbol, side, leverage, margin_usdt, stop_loss, profit_target)
            except CriticalDataUnavailable as e:
                return self._fail(symbol, f"required data unavailable: {e.source}", side=side)

    def _open(self, symbol: str, side: Side, leverage: int, margin_usdt: float,
              stop_loss: Optional[float], profit_target: Optional[float]) -> ExecutionResult:
        policy = self.ctx.policy

        if self.block_new_opens:
            return self._fail(symbol, f"new opens blocked: {self.block_reason}", side=side)
        if not policy.allows_symbol(symbol):
            return self._fail(symbol, f"{symbol} is not in the trading whitelist", side=side)
        try:
            margin_usdt = float(margin_usdt)
        except (TypeError, ValueError):
            return self._fail(symbol, f"invalid margin {margin_usdt!r}", side=side)
        if not math.isfinite(margin_usdt) or margin_usdt <= 0:
            return self._fail(symbol, f"margin must be positive and finite, got {margin_usdt}", side=side)
        try:
            leverage = int(leverage)
        except (TypeError, ValueError):
            return self._fail(symbol, f"invalid leverage {leverage!r}", side=side)
        if leverage < policy.min_leverage or leverage > policy.max_leverage:
            return self._fail(
                symbol,
                f"leverage {leverage} outside [{policy.min_leverage}, {policy.max_leverage}]",
                side=side,
            )

        positions = self._exchange_positions()
        live = [p for p in positions if p.quantity > 0]
        if len(live) >= policy.max_positions:
            return self._fail(symbol, f"max positions reached ({len(live)}/{policy.max_positions})", side=side)
        if any(p.symbol.upper() == symbol for p in live):
            return self._fail(symbol, f"position already open in {symbol}", side=side)

        balance = self.account.fetch_balance()
        if balance.available <= 0:
            return self._fail(symbol, "no available balance", side=side)
        drawdown = self.account.drawdown_percent(balance.total)
        if drawdown >= policy.account_max_drawdown_percent:
            return self._fail(
                symbol,
                f"account drawdown {drawdown:.2f}% >= {policy.account_max_drawdown_percent}%",
                side=side,
            )
        existing_notional = sum(p.quantity * p.mark_price for p in live)
        max_notional = balance.total * policy.max_exposure_multiple
        if existing_notional + margin_usdt * leverage > max_notional:
            return self._fail(
                symbol,
                f"exposure {existing_notional + margin_usdt * leverage:.2f} exceeds "
                f"{policy.max_exposure_multiple}x account value ({max_notional:.2f})",
                side=side,
            )
        if balance.total > 0 and margin_usdt > balance.total * self.settings.large_margin_warn_percent / 100.0:
            logger.warning(
                f"{symbol}: margin {margin_usdt:.2f} is over {self.settings.large_margin_warn_percent}% "
                f"of account value {balance.total:.2f}"
            )

        exchange = self.ctx.exchange
        try:
            exchange.set_leverage(symbol, leverage)
            ticker = retry_call(exchange.get_ticker, symbol, policy=self.retry_policy,
                                description=f"ticker {symbol}")
            constraints = exchange.get_instrument_constraints(symbol)
        except ExchangeError as e:
            return self._fail(symbol, f"pre-trade setup failed: {e}", side=side)

        price = ticker.last if ticker.last > 0 else ticker.mark_price
        if price <= 0:
            return self._fail(symbol, "no usable price", side=side)

        quantity = floor_to_step(margin_usdt * leverage / price, constraints.step_size)
        quantity = min(max(quantity, constraints.min_qty), constraints.max_qty)
        if quantity * price / leverage > balance.available:
            quantity = floor_to_step(balance.available * leverage / price, constraints.step_size)
            quantity = min(quantity, constraints.max_qty)
            logger.warning(
                f"{symbol}: sized margin exceeds available "
                f"{balance.available:.2f}; sizing from available balance (qty={quantity})"
            )
            if quantity < constraints.min_qty or quantity <= 0:
                return self._fail(
                    symbol,
                    f"available balance {balance.available:.2f} cannot cover instrument minimum "
                    f"{constraints.min_qty}",
                    side=side,
                )
        if quantity <= 0:
            return self._fail(symbol, f"quantity rounds to zero (step {constraints.step_size})", side=side)

        logger.info(f"OPEN {side.value.upper()} {symbol} qty={quantity} lev={leverage}x ref={price}")
        try:
            order = exchange.place_order(symbol, quantity * side.sign)
        except ExchangeError as e:
            return self._fail(symbol, f"order rejected: {e}", side=side)

        self._sleep(self.settings.open_settle_seconds)
        fill = self._await_fill(order, quantity, price)

        if fill.status is OrderStatus.CANCELLED or fill.quantity <= 0:
            return self._fail(symbol, f"order {order.order_id} not filled ({fill.status.value})",
                              side=side, order_id=order.order_id)

        slip = slippage_percent(fill.price, price)
        if slip > self.settings.open_slippage_limit_percent:
            logger.error(
                f"{symbol}: open fill {fill.price} deviates {slip:.2f}% from {price} "
                f"(limit {self.settings.open_slippage_limit_percent}%); reversing"
            )
            reversal = self._reverse(symbol, -fill.quantity * side.sign, reduce_only=True,
                                     context=f"open slippage {slip:.2f}%")
            if reversal is not None:
                self._record_corrective(symbol, side.opposite, TradeType.CLOSE, fill, reversal, leverage)
                return self._fail(symbol, f"slippage {slip:.2f}% exceeded limit; open reversed",
                                  side=side, order_id=order.order_id, slippage_percent=slip,
                                  rollback="reversed")
            self.ctx.ledger.insert_trade(Trade(
                order_id=order.order_id, symbol=symbol, side=side, type=TradeType.OPEN,
                price=fill.price, quantity=fill.quantity, leverage=leverage,
                fee=self._fee(fill.quantity, fill.price),
                status=TradeStatus.FILLED if fill.confirmed else TradeStatus.PENDING,
            ))
            return self._fail(symbol, f"slippage {slip:.2f}% exceeded limit; rollback failed",
                              side=side, order_id=order.order_id, slippage_percent=slip,
                              rollback="failed")

        fee = self._fee(fill.quantity, fill.price)
        status = TradeStatus.FILLED if fill.status is OrderStatus.FILLED else TradeStatus.PENDING
        self.ctx.ledger.insert_trade(Trade(
            order_id=order.order_id, symbol=symbol, side=side, type=TradeType.OPEN,
            price=fill.price, quantity=fill.quantity, leverage=leverage, fee=fee, status=status,
        ))

        liquidation = self._fetch_liquidation_price(symbol)
        if liquidation <= 0:
            liquidation = estimate_liquidation_price(fill.price, leverage, side)

        self.ctx.ledger.upsert_position(Position(
            symbol=symbol,
            side=side,
            quantity=fill.quantity,
            entry_price=fill.price,
            current_price=fill.price,
            leverage=leverage,
            liquidation_price=liquidation,
            opened_at=self.ctx.now(),
            stop_loss=stop_loss,
            profit_target=profit_target,
            entry_order_id=order.order_id,
        ))
        logger.info(
            f"✅ Opened {side.value} {symbol} {fill.quantity} @ {fill.price} "
            f"(fee={fee:.4f}, liq={liquidation:.4f})"
        )
        return ExecutionResult(
            success=True, symbol=symbol, side=side, order_id=order.order_id,
            quantity=fill.quantity, price=fill.price, leverage=leverage, fee=fee,
            slippage_percent=slip,
        )

    # ===== close =====

    def close(self, symbol: str, percentage: float = 100.0,
              reason: Optional[ExitReason] = None) -> ExecutionResult:
        """Close ``percentage`` (1-100) of the exchange position in ``symbol``."""
        symbol = symbol.upper()
        with self._write_lock:
            try:
                return self._close(symbol, percentage, reason)
            except CriticalDataUnavailable as e:
                return self._fail(symbol, f"required data unavailable: {e.source}")

    def _close(self, symbol: str, percentage: float, reason: Optional[ExitReason]) -> ExecutionResult:
        try:
            percentage = float(percentage)
        except (TypeError, ValueError):
            return self._fail(symbol, f"invalid percentage {percentage!r}")
        if not math.isfinite(percentage) or percentage < 1 or percentage > 100:
            return self._fail(symbol, f"percentage must be within [1, 100], got {percentage}")

        pos = next((p for p in self._exchange_positions()
                    if p.symbol.upper() == symbol and p.quantity > 0), None)
        if pos is None:
            return self._fail(symbol, f"no open position in {symbol}")

        side = pos.side
        ledger_row = self.ctx.ledger.get_position(symbol)
        entry_price = pos.entry_price
        reference = pos.mark_price
        if entry_price <= 0 or reference <= 0:
            try:
                ticker = retry_call(self.ctx.exchange.get_ticker, symbol, policy=self.retry_policy,
                                    description=f"ticker {symbol}")
                fallback = ticker.reference_price
            except ExchangeError as e:
                logger.warning(f"{symbol}: ticker fallback failed during close: {e}")
                fallback = ledger_row.current_price if ledger_row else 0.0
            if reference <= 0:
                reference = fallback
            if entry_price <= 0:
                entry_price = ledger_row.entry_price if ledger_row and ledger_row.entry_price > 0 else reference

        full_close = percentage >= 100
        if full_close:
            quantity = pos.quantity
        else:
            raw = pos.quantity * percentage / 100.0
            try:
                step = self.ctx.exchange.get_instrument_constraints(symbol).step_size
            except ExchangeError:
                step = 10 ** -self.settings.close_quantity_decimals
            quantity = floor_to_step(raw, step)
        if quantity <= 0:
            return self._fail(symbol, f"close quantity rounds to zero ({percentage}%)", side=side)

        label = reason.value if reason else "manual"
        logger.info(f"CLOSE {side.value.upper()} {symbol} qty={quantity} ({percentage:.0f}%, reason={label})")
        try:
            order = self.ctx.exchange.place_order(symbol, -quantity * side.sign, reduce_only=True)
        except ExchangeError as e:
            return self._fail(symbol, f"close order rejected: {e}", side=side)

        self._sleep(self.settings.close_settle_seconds)
        fill = self._await_fill(order, quantity, reference)
        if fill.status is OrderStatus.CANCELLED or fill.quantity <= 0:
            return self._fail(symbol, f"close order {order.order_id} not filled ({fill.status.value})",
                              side=side, order_id=order.order_id)

        entry_fee = self._fee(fill.quantity, entry_price)
        exit_fee = self._fee(fill.quantity, fill.price)
        fee = entry_fee + exit_fee
        pnl = (fill.price - entry_price) * fill.quantity * side.sign - fee

        slip = slippage_percent(fill.price, reference)
        if slip > self.settings.close_slippage_limit_percent:
            logger.error(
                f"{symbol}: close fill {fill.price} deviates {slip:.2f}% from {reference} "
                f"(limit {self.settings.close_slippage_limit_percent}%); reversing"
            )
            reversal = self._reverse(symbol, fill.quantity * side.sign, reduce_only=False,
                                     context=f"close slippage {slip:.2f}%")
            if reversal is not None:
                self._record_corrective(symbol, side, TradeType.OPEN, fill, reversal, pos.leverage)
                return self._fail(symbol, f"slippage {slip:.2f}% exceeded limit; close reversed",
                                  side=side, order_id=order.order_id, slippage_percent=slip,
                                  rollback="reversed")
            result_error = f"slippage {slip:.2f}% exceeded limit; rollback failed"
        else:
            result_error = None

        status = TradeStatus.FILLED if fill.status is OrderStatus.FILLED else TradeStatus.PENDING
        self.ctx.ledger.insert_trade(Trade(
            order_id=order.order_id, symbol=symbol, side=side, type=TradeType.CLOSE,
            price=fill.price, quantity=fill.quantity, leverage=pos.leverage,
            fee=fee, pnl=pnl, status=status,
        ))

        if full_close:
            self._cancel_protective_orders(symbol, ledger_row)
            self.ctx.ledger.delete_position(symbol)

        if result_error is not None:
            return self._fail(symbol, result_error, side=side, order_id=order.order_id,
                              quantity=fill.quantity, price=fill.price, fee=fee, pnl=pnl,
                              slippage_percent=slip, rollback="failed")

        logger.info(
            f"✅ Closed {side.value} {symbol} {fill.quantity} @ {fill.price} "
            f"(pnl={pnl:+.4f}, fees={fee:.4f})"
        )
        return ExecutionResult(
            success=True, symbol=symbol, side=side, order_id=order.order_id,
            quantity=fill.quantity, price=fill.price, leverage=pos.leverage, fee=fee,
            pnl=pnl, slippage_percent=slip,
        )

    def _cancel_protective_orders(self, symbol: str, row: Optional[Position]) -> None:
        if row is None:
            return
        for order_id in (row.sl_order_id, row.tp_order_id):
            if not order_id:
                continue
            try:
                self.ctx.exchange.cancel_order(order_id, symbol)
                logger.info(f"Cancelled protective order {order_id} for {symbol}")
            except ExchangeError as e:
                logger.warning(f"Could not cancel order {order_id} for {symbol}: {e}")

    def _record_corrective(self, symbol: str, side: Side, trade_type: TradeType, bad_fill: Fill,
                           reversal: OrderResult, leverage: int) -> None:
        """One CORRECTIVE row for the rejected fill plus its reversal; both legs' fees."""
        price = reversal.fill_price if reversal.fill_price > 0 else bad_fill.price
        quantity = reversal.filled_qty if reversal.filled_qty > 0 else bad_fill.quantity
        fee = self._fee(bad_fill.quantity, bad_fill.price) + self._fee(quantity, price)
        self.ctx.ledger.insert_trade(Trade(
            order_id=reversal.order_id, symbol=symbol, side=side, type=trade_type,
            price=price, quantity=quantity, leverage=leverage, fee=fee,
            status=TradeStatus.CORRECTIVE,
        ))
