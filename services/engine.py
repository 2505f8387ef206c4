#Description: Pure paper-trading engine: liquidation/PnL math, open/close, order placement and per-tick evaluation.
"""
Nothing in this module holds state. Every operation takes the account and
positions explicitly and returns new objects; the portfolio service is the
only caller that writes the results back.
"""
from __future__ import annotations

import time
import uuid
from typing import Iterable, Optional, Tuple

from models.schemas import (
    AccountInfo, EquityPoint, OpenPositionParams, Order, OrderFill, PlaceOrderParams,
    Position, PositionClose, StopLossUpdate, TickResult, Trade,
)

MAINTENANCE_MARGIN_BUFFER = 0.004
BREAKEVEN_ATR_MULT = 1.0
BREAKEVEN_OFFSET_ATR_MULT = 0.1
TRAIL_START_ATR_MULT = 2.0
TRAIL_DISTANCE_ATR_MULT = 1.5


def gen_id() -> str:
    return uuid.uuid4().hex[:12]


def now_ms() -> int:
    return int(time.time() * 1000)


def calc_liquidation_price(entry_price: float, direction: str, leverage: float, mode: str) -> float:
    if mode == "spot":
        return 0.0
    if direction == "long":
        return entry_price * (1 - 1 / leverage + MAINTENANCE_MARGIN_BUFFER)
    return entry_price * (1 + 1 / leverage - MAINTENANCE_MARGIN_BUFFER)


def calc_unrealized_pnl(direction: str, entry_price: float, mark_price: float,
                        size: float, leverage: float) -> float:
    # size is margin; leverage scales the move linearly
    if direction == "long":
        return (mark_price - entry_price) / entry_price * size * leverage
    return (entry_price - mark_price) / entry_price * size * leverage


def open_position(params: OpenPositionParams, account: AccountInfo) -> Optional[Tuple[Position, AccountInfo]]:
    """Debit the margin and build the position, or return None when the balance cannot cover `size`."""
    if account.balance < params.size:
        return None

    position = Position(
        id=gen_id(),
        symbol=params.symbol,
        mode=params.mode,
        direction=params.direction,
        size=params.size,
        leverage=params.leverage,
        entry_price=params.entry_price,
        mark_price=params.entry_price,
        liquidation_price=calc_liquidation_price(params.entry_price, params.direction,
                                                 params.leverage, params.mode),
        stop_loss=params.stop_loss,
        take_profit=params.take_profit,
        trailing_stop=params.trailing_stop,
        open_time=now_ms(),
    )
    balance = account.balance - params.size
    used_margin = account.used_margin + params.size
    updated = account.model_copy(update={
        "balance": balance,
        "used_margin": used_margin,
        "equity": balance + used_margin + account.unrealized_pnl,
    })
    return position, updated


def close_position(position: Position, exit_price: float, reason: str,
                   account: AccountInfo) -> Tuple[Trade, AccountInfo]:
    """Realise PnL at `exit_price`. A loss larger than the margin returns nothing, never a negative amount."""
    pnl = calc_unrealized_pnl(position.direction, position.entry_price, exit_price,
                              position.size, position.leverage)
    closed_at = now_ms()
    trade = Trade(
        id=gen_id(),
        symbol=position.symbol,
        mode=position.mode,
        direction=position.direction,
        entry_price=position.entry_price,
        exit_price=exit_price,
        size=position.size,
        leverage=position.leverage,
        realized_pnl=pnl,
        realized_pnl_pct=pnl / position.size * 100 if position.size else 0.0,
        open_time=position.open_time,
        close_time=closed_at,
        close_reason=reason,
    )

    returned_margin = max(0.0, position.size + pnl)
    balance = account.balance + returned_margin
    used_margin = max(0.0, account.used_margin - position.size)
    unrealized = account.unrealized_pnl - position.unrealized_pnl
    equity = balance + used_margin + unrealized
    updated = account.model_copy(update={
        "balance": balance,
        "used_margin": used_margin,
        "unrealized_pnl": unrealized,
        "equity": equity,
        "equity_history": [*account.equity_history, EquityPoint(time=closed_at, equity=equity)],
    })
    return trade, updated


def place_order(params: PlaceOrderParams) -> Order:
    # no margin is reserved for pending orders; see PortfolioService._fill_order
    return Order(
        id=gen_id(),
        symbol=params.symbol,
        mode=params.mode,
        type=params.type,
        direction=params.direction,
        price=params.price,
        trigger_price=params.trigger_price,
        size=params.size,
        leverage=params.leverage,
        status="pending",
        created_at=now_ms(),
        position_id=params.position_id,
    )


def _order_fill_price(order: Order, mark_price: float) -> Optional[float]:
    is_long = order.direction == "long"
    if order.type == "limit" and order.price is not None:
        triggered = mark_price <= order.price if is_long else mark_price >= order.price
        return order.price if triggered else None
    if order.type in ("stop_market", "take_profit_market") and order.trigger_price is not None:
        if order.type == "stop_market":
            triggered = mark_price <= order.trigger_price if is_long else mark_price >= order.trigger_price
        else:
            triggered = mark_price >= order.trigger_price if is_long else mark_price <= order.trigger_price
        return mark_price if triggered else None
    return None


def trailing_stop_level(position: Position, mark_price: float) -> Optional[float]:
    """
    New stop loss implied by the ATR trail, or None when the stop should stay.

    Past 2x ATR of profit the stop trails 1.5x ATR behind the mark; past 1x ATR
    it moves to breakeven plus 0.1x ATR. The stop only ever tightens.
    """
    atr = position.trailing_stop
    if position.stop_loss is None or atr is None or atr <= 0:
        return None
    is_long = position.direction == "long"
    profit_dist = mark_price - position.entry_price if is_long else position.entry_price - mark_price

    if profit_dist >= atr * TRAIL_START_ATR_MULT:
        candidate = (mark_price - atr * TRAIL_DISTANCE_ATR_MULT if is_long
                     else mark_price + atr * TRAIL_DISTANCE_ATR_MULT)
    elif profit_dist >= atr * BREAKEVEN_ATR_MULT:
        candidate = (position.entry_price + atr * BREAKEVEN_OFFSET_ATR_MULT if is_long
                     else position.entry_price - atr * BREAKEVEN_OFFSET_ATR_MULT)
    else:
        return None

    if is_long and candidate > position.stop_loss:
        return candidate
    if not is_long and candidate < position.stop_loss:
        return candidate
    return None


def _breached(direction: str, mark_price: float, level: float, adverse: bool) -> bool:
    # adverse: the level sits against the position (stop/liquidation); otherwise it is a target
    if direction == "long":
        return mark_price <= level if adverse else mark_price >= level
    return mark_price >= level if adverse else mark_price <= level


def process_tick(symbol: str, mark_price: float, positions: Iterable[Position],
                 orders: Iterable[Order]) -> TickResult:
    """
    Evaluate one price update for `symbol` and return the effects to apply.

    Pending orders are checked first, then each position in order: liquidation,
    trailing-stop recompute, stop loss (against the recomputed stop), take
    profit. At most one closure is queued per position.
    """
    result = TickResult()

    for order in orders:
        if order.symbol != symbol or order.status != "pending":
            continue
        fill_price = _order_fill_price(order, mark_price)
        if fill_price is not None:
            result.orders_to_fill.append(OrderFill(order_id=order.id, fill_price=fill_price))

    for pos in positions:
        if pos.symbol != symbol:
            continue

        if pos.liquidation_price > 0 and _breached(pos.direction, mark_price, pos.liquidation_price, adverse=True):
            result.positions_to_close.append(
                PositionClose(position_id=pos.id, exit_price=mark_price, reason="liquidation"))
            continue

        stop_loss = pos.stop_loss
        new_stop = trailing_stop_level(pos, mark_price)
        if new_stop is not None:
            result.stop_loss_updates.append(StopLossUpdate(position_id=pos.id, new_stop_loss=new_stop))
            stop_loss = new_stop

        if stop_loss is not None and _breached(pos.direction, mark_price, stop_loss, adverse=True):
            result.positions_to_close.append(
                PositionClose(position_id=pos.id, exit_price=mark_price, reason="stop_loss"))
            continue

        if pos.take_profit is not None and _breached(pos.direction, mark_price, pos.take_profit, adverse=False):
            result.positions_to_close.append(
                PositionClose(position_id=pos.id, exit_price=mark_price, reason="take_profit"))

    return result
