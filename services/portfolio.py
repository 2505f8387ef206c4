#Description: Portfolio service owning the paper account ledger: balances, equity, positions, orders, trades, signals, events.
import pandas as pd
from datetime import datetime, timezone
from threading import Lock, RLock
from typing import Optional

from utils.logging import logger
from utils.config import settings
from models.db import get_session
from models.orm import Alert, StateSnapshot
from models.schemas import (
    AccountInfo, AiAnalysis, EquityPoint, OpenPositionParams, Order, PersistedState,
    PlaceOrderParams, PortfolioState, Position, Preferences, Signal, StrategyReport, Trade,
)
from services import engine

# order types that exit a linked position when they fill
_EXIT_REASONS = {"stop_market": "stop_loss", "take_profit_market": "take_profit", "limit": "manual"}


class PortfolioService:
    """
    Single writer for the account ledger.

    Every mutation takes `self._lock`, so price ticks from the stream thread,
    decisions from the advisory worker and snapshots from the scheduler never
    interleave halfway through an update.
    """
    _instance = None
    _instance_lock = Lock()

    def __init__(self, initial_balance: float | None = None):
        balance = settings.INITIAL_BALANCE if initial_balance is None else initial_balance
        self._lock = RLock()
        self._account = AccountInfo(
            balance=balance, equity=balance, total_deposited=balance,
            equity_history=[EquityPoint(time=engine.now_ms(), equity=balance)],
        )
        self._positions: list[Position] = []
        self._orders: list[Order] = []
        self._trades: list[Trade] = []
        self._signals: list[Signal] = []
        self._mark_prices: dict[str, float] = {}
        self._preferences = Preferences(
            trading_mode=settings.TRADING_MODE,
            selected_interval=settings.KLINE_INTERVAL,
            selected_leverage=settings.DEFAULT_LEVERAGE,
            auto_trade_enabled=settings.AUTO_TRADE_ENABLED,
            report_interval_min=settings.REPORT_INTERVAL_MINUTES,
        )
        self._events: list[dict] = []

    @classmethod
    def instance(cls):
        with cls._instance_lock:
            if not cls._instance:
                cls._instance = PortfolioService()
        return cls._instance

    # -----------------------
    # Events
    # -----------------------
    def log_event(self, level: str, message: str, context: dict | None = None):
        evt = {"ts": datetime.now().isoformat(timespec="seconds"), "level": level, "message": message, "context": context or {}}
        self._events.append(evt)
        logger.log("WARNING" if level == "WARN" else level, message)
        try:
            with get_session() as s:
                s.add(Alert(level=level, message=message, context=context or {}))
                s.commit()
        except Exception as e:
            logger.warning(f"Alert persistence failed: {e}")

    def get_recent_events(self, limit=20) -> list[dict]:
        return self._events[-limit:]

    # -----------------------
    # Read access
    # -----------------------
    def get_account(self) -> AccountInfo:
        with self._lock:
            return self._account.model_copy(deep=True)

    def get_positions(self) -> list[Position]:
        with self._lock:
            return [p.model_copy() for p in self._positions]

    def get_orders(self) -> list[Order]:
        with self._lock:
            return [o.model_copy() for o in self._orders]

    def get_trades(self) -> list[Trade]:
        with self._lock:
            return list(self._trades)

    def get_mark_price(self, symbol: str) -> float | None:
        return self._mark_prices.get(symbol)

    def find_position(self, symbol: str, mode: str) -> Optional[Position]:
        with self._lock:
            for p in self._positions:
                if p.symbol == symbol and p.mode == mode:
                    return p.model_copy()
        return None

    def get_state(self) -> PortfolioState:
        with self._lock:
            return PortfolioState(
                account=self._account.model_copy(deep=True),
                positions=[p.model_copy() for p in self._positions],
                trading_mode=self._preferences.trading_mode,
                strategy_report=self._preferences.strategy_report,
            )

    def get_equity_curve(self) -> pd.DataFrame:
        with self._lock:
            points = list(self._account.equity_history)
        if not points:
            return pd.DataFrame({"ts": [], "equity": []})
        return pd.DataFrame([{"ts": pd.to_datetime(p.time, unit="ms", utc=True), "equity": p.equity} for p in points])

    # -----------------------
    # Preferences
    # -----------------------
    @property
    def preferences(self) -> Preferences:
        return self._preferences.model_copy()

    def update_preferences(self, **changes) -> Preferences:
        with self._lock:
            self._preferences = self._preferences.model_copy(update=changes)
            return self._preferences.model_copy()

    def set_auto_trade(self, enabled: bool):
        self.update_preferences(auto_trade_enabled=enabled)

    def set_strategy_report(self, report: StrategyReport):
        self.update_preferences(strategy_report=report)

    # -----------------------
    # Account mutations
    # -----------------------
    def _refresh_account(self):
        unrealized = sum(p.unrealized_pnl for p in self._positions)
        self._account = self._account.model_copy(update={
            "unrealized_pnl": unrealized,
            "equity": self._account.balance + self._account.used_margin + unrealized,
        })

    def deposit(self, amount: float):
        if amount <= 0:
            return
        with self._lock:
            self._account = self._account.model_copy(update={
                "balance": self._account.balance + amount,
                "total_deposited": self._account.total_deposited + amount,
            })
            self._refresh_account()

    def withdraw(self, amount: float) -> bool:
        with self._lock:
            if amount <= 0 or self._account.balance < amount:
                return False
            self._account = self._account.model_copy(update={
                "balance": self._account.balance - amount,
                "total_withdrawn": self._account.total_withdrawn + amount,
            })
            self._refresh_account()
            return True

    def open_position(self, params: OpenPositionParams) -> str | None:
        with self._lock:
            result = engine.open_position(params, self._account)
            if result is None:
                self.log_event("WARN", f"Insufficient balance for {params.symbol} {params.direction} size={params.size:.2f}")
                return None
            position, self._account = result
            self._positions.append(position)
            self._refresh_account()
        self.log_event("INFO", f"OPEN {position.mode.upper()} {position.direction.upper()} {position.symbol} "
                               f"size={position.size:.2f} lev={position.leverage}x @ {position.entry_price:.6f}",
                       {"position_id": position.id})
        return position.id

    def close_position_by_id(self, position_id: str, reason: str = "manual", exit_price: float | None = None):
        with self._lock:
            position = next((p for p in self._positions if p.id == position_id), None)
            if position is None:
                logger.debug(f"Close ignored, unknown position {position_id}")
                return
            price = exit_price or self._mark_prices.get(position.symbol) or position.entry_price
            trade, self._account = engine.close_position(position, price, reason, self._account)
            self._positions = [p for p in self._positions if p.id != position_id]
            self._trades.append(trade)
            self._orders = [
                o.model_copy(update={"status": "cancelled"})
                if o.position_id == position_id and o.status == "pending" else o
                for o in self._orders
            ]
            self._refresh_account()
            self._account = self._account.model_copy(update={
                "equity_history": self._account.equity_history[-settings.EQUITY_HISTORY_LIMIT:]})
        self.log_event("INFO", f"CLOSE {trade.symbol} {trade.direction.upper()} ({reason}) @ {price:.6f} "
                               f"pnl={trade.realized_pnl:.2f} ({trade.realized_pnl_pct:.2f}%)",
                       {"trade_id": trade.id})

    def place_order(self, params: PlaceOrderParams) -> str:
        order = engine.place_order(params)
        with self._lock:
            self._orders.append(order)
            mark = self._mark_prices.get(order.symbol)
            if order.type == "market" and mark:
                self._fill_order(order.id, mark)
        return order.id

    def cancel_order(self, order_id: str):
        with self._lock:
            for i, o in enumerate(self._orders):
                if o.id == order_id and o.status == "pending":
                    self._orders[i] = o.model_copy(update={"status": "cancelled"})
                    return

    def _fill_order(self, order_id: str, fill_price: float):
        idx = next((i for i, o in enumerate(self._orders) if o.id == order_id), None)
        if idx is None or self._orders[idx].status != "pending":
            return
        order = self._orders[idx]
        if order.position_id is None:
            # pending orders hold no margin, so the fill has to be funded now
            opened = self.open_position(OpenPositionParams(
                symbol=order.symbol, mode=order.mode, direction=order.direction,
                size=order.size, leverage=order.leverage, entry_price=fill_price,
            ))
            if opened is None:
                self._orders[idx] = order.model_copy(update={"status": "cancelled"})
                self.log_event("WARN", f"Order {order.id} cancelled on fill: insufficient balance")
                return
        self._orders[idx] = order.model_copy(update={
            "status": "filled", "filled_at": engine.now_ms(), "filled_price": fill_price,
        })
        if order.position_id is not None:
            self.close_position_by_id(order.position_id, _EXIT_REASONS[order.type], exit_price=fill_price)

    def update_mark_price(self, symbol: str, price: float):
        with self._lock:
            self._mark_prices[symbol] = price

    def tick_engine(self, symbol: str, price: float):
        """
        Apply one price update for `symbol` as a single transaction.

        Positions are marked to market, the engine evaluates a snapshot of the
        ledger, and the resulting diff is applied in order: stop-loss updates,
        order fills, then closures.
        """
        with self._lock:
            self._mark_prices[symbol] = price
            marked = []
            for p in self._positions:
                if p.symbol == symbol:
                    pnl = engine.calc_unrealized_pnl(p.direction, p.entry_price, price, p.size, p.leverage)
                    p = p.model_copy(update={
                        "mark_price": price,
                        "unrealized_pnl": pnl,
                        "unrealized_pnl_pct": pnl / p.size * 100 if p.size else 0.0,
                    })
                marked.append(p)
            self._positions = marked
            self._refresh_account()

            result = engine.process_tick(symbol, price, list(self._positions), list(self._orders))

            if result.stop_loss_updates:
                updates = {u.position_id: u.new_stop_loss for u in result.stop_loss_updates}
                self._positions = [
                    p.model_copy(update={"stop_loss": updates[p.id]}) if p.id in updates else p
                    for p in self._positions
                ]
                for u in result.stop_loss_updates:
                    logger.info(f"Trailing stop {symbol} {u.position_id} -> {u.new_stop_loss:.6f}")

            for fill in result.orders_to_fill:
                self._fill_order(fill.order_id, fill.fill_price)

            for close in result.positions_to_close:
                self.close_position_by_id(close.position_id, close.reason, exit_price=close.exit_price)

    # -----------------------
    # Signals
    # -----------------------
    def add_signal(self, signal: Signal):
        with self._lock:
            self._signals = [signal, *self._signals][:settings.SIGNAL_HISTORY_LIMIT]

    def update_signal_analysis(self, signal_id: str, analysis: AiAnalysis):
        with self._lock:
            self._signals = [
                s.model_copy(update={"ai_analysis": analysis}) if s.id == signal_id else s
                for s in self._signals
            ]

    def get_signal(self, signal_id: str) -> Optional[Signal]:
        with self._lock:
            return next((s for s in self._signals if s.id == signal_id), None)

    def recent_signals(self, limit: int = 50) -> list[Signal]:
        with self._lock:
            return self._signals[:limit]

    # -----------------------
    # Persistence
    # -----------------------
    def snapshot(self) -> PersistedState:
        with self._lock:
            return PersistedState(
                account=self._account.model_copy(deep=True),
                positions=list(self._positions),
                orders=list(self._orders),
                trades=list(self._trades),
                preferences=self._preferences.model_copy(),
            )

    def restore(self, state: PersistedState):
        with self._lock:
            self._account = state.account.model_copy(deep=True)
            self._positions = list(state.positions)
            self._orders = list(state.orders)
            self._trades = list(state.trades)
            self._preferences = state.preferences.model_copy()
            self._refresh_account()
        logger.info(f"Portfolio restored: balance={self._account.balance:.2f} positions={len(self._positions)} "
                    f"orders={len(self._orders)} trades={len(self._trades)}")

    def save_snapshot(self):
        state = self.snapshot()
        with get_session() as s:
            s.add(StateSnapshot(ts=datetime.now(timezone.utc), equity=state.account.equity,
                                payload=state.model_dump(mode="json")))
            s.commit()

    @staticmethod
    def load_latest_snapshot() -> Optional[PersistedState]:
        with get_session() as s:
            row = s.query(StateSnapshot).order_by(StateSnapshot.id.desc()).first()
            payload = row.payload if row else None
        if payload is None:
            return None
        return PersistedState.model_validate(payload)
