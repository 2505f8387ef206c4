#Description: Trading orchestrator wiring market events to signal detection, the advisory queue and auto trading.
from __future__ import annotations

import queue
import re
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Callable, Optional

from ai.advisor import SignalAdvisor
from ai.strategy_report import strategy_context
from models.db import get_session
from models.orm import SignalRecord
from models.schemas import AiAnalysis, Candle, OpenPositionParams, Signal
from services.decision import decide_trade, sanitize_levels, trade_size, ATR_FALLBACK_PCT
from services.market_data import MarketDataService
from services.notifier import TelegramNotifier
from services.portfolio import PortfolioService
from services.signals import SignalDetectorState, detect_signals
from utils.config import settings
from utils.logging import logger

SEEN_SIGNAL_LIMIT = 1000

_INTERVAL_MINUTES = {"m": 1, "h": 60, "d": 1440, "w": 10080}


def interval_minutes(interval: str) -> int:
    m = re.fullmatch(r"(\d+)([mhdw])", interval)
    if not m:
        return 1
    return int(m.group(1)) * _INTERVAL_MINUTES[m.group(2)]


def lookback_candles(minutes: int, interval: str) -> int:
    """Number of candles of `interval` covering `minutes` (at least one)."""
    return max(1, minutes // interval_minutes(interval))


class TradingOrchestrator:
    """
    Drives the pipeline: klines -> signals -> advisory queue -> decision -> ledger.

    Kline and price callbacks run on the stream thread and only touch the
    candle cache, the detector state and the ledger (which has its own lock).
    Advisory requests are consumed one at a time by a single worker thread.
    """

    def __init__(self, portfolio: PortfolioService | None = None, market: MarketDataService | None = None,
                 advisor: SignalAdvisor | None = None, notifier: TelegramNotifier | None = None,
                 detector_state: SignalDetectorState | None = None,
                 request_delay: float | None = None, call_timeout: float | None = None,
                 sleep: Callable[[float], None] = time.sleep, seen_limit: int = SEEN_SIGNAL_LIMIT):
        self.portfolio = portfolio or PortfolioService.instance()
        self.market = market or MarketDataService.instance()
        self.call_timeout = call_timeout or settings.ADVISORY_CALL_TIMEOUT_SECONDS
        self.advisor = advisor or SignalAdvisor(budget=self.call_timeout)
        self.notifier = notifier or TelegramNotifier()
        self.detector_state = detector_state or SignalDetectorState()
        self.request_delay = settings.ADVISORY_REQUEST_DELAY_SECONDS if request_delay is None else request_delay
        self._sleep = sleep
        self._queue: "queue.Queue[Signal]" = queue.Queue()
        self._seen: set[str] = set()
        self._seen_order: deque[str] = deque()
        self._seen_limit = seen_limit
        self._seen_lock = threading.Lock()
        self._executor = self._new_executor()
        self._stop = threading.Event()
        self._worker: threading.Thread | None = None

    # -----------------------
    # Market events
    # -----------------------
    def on_kline(self, symbol: str, candle: Candle, is_closed: bool):
        try:
            self.market.add_candle(symbol, candle)
            if not is_closed:
                return
            candles = self.market.get_candles(symbol)
            signals = detect_signals(symbol, candles, self.detector_state,
                                     index_offset=self.market.evicted_count(symbol))
            for sig in signals:
                self.portfolio.add_signal(sig)
                self.enqueue_signal(sig)
        except Exception:
            logger.exception(f"Kline handling failed for {symbol}")

    def on_price(self, symbol: str, price: float):
        try:
            self.portfolio.update_mark_price(symbol, price)
            self.portfolio.tick_engine(symbol, price)
        except Exception:
            logger.exception(f"Price tick failed for {symbol}")

    # -----------------------
    # Advisory queue
    # -----------------------
    def enqueue_signal(self, signal: Signal) -> bool:
        with self._seen_lock:
            if signal.id in self._seen:
                return False
            self._seen.add(signal.id)
            self._seen_order.append(signal.id)
            if len(self._seen_order) > self._seen_limit:
                self._seen.discard(self._seen_order.popleft())
        self._queue.put(signal)
        return True

    def pending(self) -> int:
        return self._queue.qsize()

    def process_next(self, timeout: float | None = None) -> bool:
        """Take one signal off the queue and run it through the pipeline. False if none arrived."""
        try:
            signal = self._queue.get(timeout=timeout) if timeout else self._queue.get_nowait()
        except queue.Empty:
            return False
        try:
            self.handle_signal(signal)
        except Exception:
            logger.exception(f"Signal processing failed for {signal.id}")
        finally:
            self._queue.task_done()
        return True

    def _worker_loop(self):
        while not self._stop.is_set():
            self.process_next(timeout=0.5)

    def start(self):
        if self._worker and self._worker.is_alive():
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self._worker_loop, daemon=True, name="advisory_worker")
        self._worker.start()
        logger.info("Advisory worker started.")

    def stop(self):
        self._stop.set()
        if self._worker is not None:
            self._worker.join(timeout=5)
        self._executor.shutdown(wait=False, cancel_futures=True)

    # -----------------------
    # Pipeline
    # -----------------------
    def build_context(self, signal: Signal) -> tuple[float, float, Optional[str]]:
        interval = self.portfolio.preferences.selected_interval
        change_1h = self.market.price_change_pct(signal.symbol, signal.price, lookback_candles(60, interval))
        change_24h = self.market.price_change_pct(signal.symbol, signal.price, lookback_candles(1440, interval))
        prefs = self.portfolio.preferences
        context = None
        if prefs.strategy_report is not None:
            context = strategy_context(prefs.strategy_report, prefs.trading_mode, prefs.selected_leverage)
        return change_1h, change_24h, context

    @staticmethod
    def _new_executor() -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=1, thread_name_prefix="advisory")

    def request_analysis(self, signal: Signal) -> Optional[AiAnalysis]:
        change_1h, change_24h, context = self.build_context(signal)
        future = self._executor.submit(self.advisor.analyze, signal, change_1h, change_24h, context)
        try:
            return future.result(timeout=self.call_timeout)
        except FutureTimeout:
            logger.warning(f"Advisory call for {signal.id} timed out after {self.call_timeout:g}s")
            # The abandoned call still holds the old thread; later signals get a free one.
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = self._new_executor()
            return None

    def handle_signal(self, signal: Signal):
        if self.request_delay > 0:
            self._sleep(self.request_delay)
        analysis = self.request_analysis(signal)
        if analysis is None:
            return
        analysis = analysis.model_copy(update={"auto_traded": False})
        self.portfolio.update_signal_analysis(signal.id, analysis)

        if not self.portfolio.preferences.auto_trade_enabled:
            self.record(signal, analysis)
            return

        decision = decide_trade(analysis, signal, self.portfolio.get_state())
        if decision.action == "skip":
            final = analysis.model_copy(update={"decision_note": decision.note, "decision_action": "skip"})
            self.portfolio.update_signal_analysis(signal.id, final)
            self.record(signal, final)
            logger.info(f"Skip {signal.symbol}: {decision.note}")
            return

        prefs = self.portfolio.preferences
        if decision.action == "close_and_open":
            existing = self.portfolio.find_position(signal.symbol, prefs.trading_mode)
            if existing is not None:
                self.portfolio.close_position_by_id(existing.id, "manual")

        size = trade_size(self.portfolio.get_account().balance)
        if size is None or analysis.direction == "hold":
            self.record(signal, analysis)
            return

        entry = self.portfolio.get_mark_price(signal.symbol) or analysis.entry_price
        atr = signal.indicators.atr or entry * ATR_FALLBACK_PCT
        stop_loss, take_profit, sanitize_note = sanitize_levels(analysis, entry, atr)
        leverage = 1 if prefs.trading_mode == "spot" else prefs.selected_leverage
        position_id = self.portfolio.open_position(OpenPositionParams(
            symbol=signal.symbol, mode=prefs.trading_mode, direction=analysis.direction,
            size=size, leverage=leverage, entry_price=entry,
            stop_loss=stop_loss, take_profit=take_profit, trailing_stop=atr,
        ))

        note = decision.note + (f" ({sanitize_note})" if sanitize_note else "")
        final = analysis.model_copy(update={
            "entry_price": entry,
            "stop_loss": stop_loss or 0.0,
            "take_profit": take_profit or 0.0,
            "auto_traded": position_id is not None,
            "decision_note": note,
            "decision_action": decision.action if position_id else "skip",
        })
        self.portfolio.update_signal_analysis(signal.id, final)
        self.record(signal, final)
        self.notifier.send(signal, final)

    def record(self, signal: Signal, analysis: AiAnalysis):
        try:
            with get_session() as s:
                s.add(SignalRecord(
                    signal_id=signal.id, symbol=signal.symbol, signal_type=signal.type, price=signal.price,
                    direction=analysis.direction, confidence=analysis.confidence,
                    decision_action=analysis.decision_action, decision_note=analysis.decision_note or "",
                    indicators=signal.indicators.model_dump(),
                ))
                s.commit()
        except Exception as e:
            logger.warning(f"Signal record persistence failed for {signal.id}: {e}")
