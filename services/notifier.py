#Description: Telegram notifier posting analysed signals; fire-and-forget, failures only logged.

import threading
from datetime import datetime, timezone

import httpx

from models.schemas import AiAnalysis, Signal
from utils.config import settings
from utils.logging import logger
from utils.security import resolve_credential

SHORT_LABELS = {
    "golden_cross": "EMA golden cross",
    "death_cross": "EMA death cross",
    "rsi_oversold": "RSI oversold",
    "rsi_overbought": "RSI overbought",
    "macd_bullish": "MACD bullish cross",
    "macd_bearish": "MACD bearish cross",
    "bb_breakout_up": "BB upper breakout",
    "bb_breakout_down": "BB lower breakdown",
    "volume_surge": "Volume surge",
}
DIRECTION_MARKS = {"long": "🟢", "short": "🔴", "hold": "🟡"}
ACTION_LABELS = {"open": "✅ Opened", "close_and_open": "🔄 Reversed"}
TIMEFRAME_LABELS = {"short": "scalp", "medium": "swing", "long": "position"}


class TelegramNotifier:
    def __init__(self, token: str | None = None, chat_id: str | None = None,
                 client: httpx.Client | None = None, timeout: float | None = None):
        self.token = token or resolve_credential(settings.TELEGRAM_BOT_TOKEN, "telegram", field="key")
        self.chat_id = chat_id or resolve_credential(settings.TELEGRAM_CHAT_ID, "telegram", field="secret")
        self.timeout = timeout or settings.TELEGRAM_TIMEOUT_SECONDS
        self.client = client

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.chat_id)

    @staticmethod
    def format_message(signal: Signal, analysis: AiAnalysis) -> str:
        ind = signal.indicators
        rr = f" | R:R {analysis.risk_reward:.1f}" if analysis.risk_reward else ""
        confluence = f" | confluence {analysis.confluence}/5" if analysis.confluence is not None else ""
        timeframe = f" | {TIMEFRAME_LABELS[analysis.timeframe]}" if analysis.timeframe else ""
        action = ACTION_LABELS.get(analysis.decision_action or "", "⏸ Skipped")
        note = f" - {analysis.decision_note}" if analysis.decision_note else ""
        volume = f"{ind.volume_ratio:.1f}x" if ind.volume_ratio > 0 else "N/A"
        ema = "bullish" if ind.ema7 > ind.ema25 else "bearish"
        when = datetime.fromtimestamp(signal.time, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")

        lines = [
            f"{DIRECTION_MARKS[analysis.direction]} *{signal.symbol}* - {SHORT_LABELS.get(signal.type, signal.type)}",
            "",
            f"💰 Price: `${signal.price:,.2f}`",
            f"📊 Confidence: {analysis.confidence:g}/10{rr}{confluence}{timeframe}",
            "",
            f"📈 Entry: `${analysis.entry_price:.2f}`",
            f"🛑 Stop: `${analysis.stop_loss:.2f}`",
            f"🎯 Target: `${analysis.take_profit:.2f}`",
            "",
            f"📉 RSI: {ind.rsi:.1f} | Vol: {volume} | EMA: {ema}",
            "",
            f"🤖 Analysis: {analysis.reasoning}",
            "",
            f"{action}{note}",
            "",
            f"🕐 {when}",
        ]
        return "\n".join(lines)

    def post(self, text: str):
        url = f"https://api.telegram.org/bot{self.token}/sendMessage"
        payload = {"chat_id": self.chat_id, "text": text, "parse_mode": "Markdown"}
        try:
            if self.client is not None:
                r = self.client.post(url, json=payload, timeout=self.timeout)
            else:
                r = httpx.post(url, json=payload, timeout=self.timeout)
            r.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Telegram notification failed: {e}")

    def send(self, signal: Signal, analysis: AiAnalysis, background: bool = True):
        if not self.enabled:
            return
        text = self.format_message(signal, analysis)
        if background:
            threading.Thread(target=self.post, args=(text,), daemon=True, name="telegram").start()
        else:
            self.post(text)
