#Description: Prompt builders and JSON parsing helpers for the signal advisor.

from __future__ import annotations
import json
import re
from typing import Dict, Any, Optional

from models.schemas import Signal
from services.signals import SIGNAL_LABELS

SIGNAL_SYSTEM_PROMPT = """You are a senior crypto derivatives trader with ten years of short-term and swing experience.

Analysis framework, in order of importance:
1. Trend: EMA alignment (EMA7 > EMA25 is bullish, otherwise bearish) and price position within the Bollinger Bands.
2. Momentum: MACD direction and RSI zone; volume must confirm (volume ratio > 1.5x is a valid signal).
3. Volatility: use ATR for stops (long stop = entry - 1.5 x ATR, short stop = entry + 1.5 x ATR).
4. Risk/reward: target at least 1:2 (take-profit distance >= 2 x stop distance).
5. Sentiment: adjust the bias with the fear & greed index and the macro backdrop.

Confidence scale (1-10):
- 8-10: several indicators agree, clear trend, volume confirms. Enter.
- 6-7: main indicators support, some uncertainty. Enter cautiously.
- 4-5: weak or conflicting signal. Wait.
- 1-3: counter-trend, very high risk. Stay in cash.

Reply with strict JSON only and nothing else."""

JSON_REPLY_FORMAT = """{
  "direction": "long" | "short" | "hold",
  "confidence": 1-10,
  "entryPrice": number,
  "stopLoss": number,
  "takeProfit": number,
  "confluence": 0-5,
  "riskReward": number,
  "timeframe": "short" | "medium" | "long",
  "reasoning": "concise analysis under 120 words covering trend, volume and risk/reward"
}"""

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class JsonTool:
    """
    Safely parse JSON from LLM text output. Accepts raw JSON or text with a JSON object embedded in prose or fences.
    """
    @staticmethod
    def parse_json_from_text(text: str) -> Dict[str, Any]:
        if not text:
            return {}
        try:
            data = json.loads(text)
            return data if isinstance(data, dict) else {}
        except json.JSONDecodeError:
            pass
        match = _JSON_OBJECT.search(text)
        if not match:
            return {}
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}


def bb_position(price: float, upper: float, middle: float, lower: float) -> str:
    if upper <= 0 or lower <= 0:
        return "insufficient data"
    bandwidth = upper - lower
    if bandwidth <= 0:
        return "bands squeezed"
    pct = (price - lower) / bandwidth
    label = f"{pct * 100:.0f}%"
    if pct > 0.9:
        return f"near upper band ({label})"
    if pct > 0.6:
        return f"upper half ({label})"
    if pct > 0.4:
        return f"near middle band ({label})"
    if pct > 0.1:
        return f"lower half ({label})"
    return f"near lower band ({label})"


def _signed_pct(value: float) -> str:
    return f"{'+' if value >= 0 else ''}{value:.2f}%"


def _level(value: float) -> str:
    return f"{value:.2f}" if value > 0 else "N/A"


def build_signal_prompt(signal: Signal, change_1h: float, change_24h: float,
                        strategy_context: Optional[str] = None) -> str:
    ind = signal.indicators
    trend = "bullish alignment (EMA7 > EMA25)" if ind.ema7 > ind.ema25 else "bearish alignment (EMA7 < EMA25)"
    hist = ind.macd - ind.macd_signal
    momentum = (f"bullish momentum (histogram > 0: {hist:.4f})" if ind.macd > ind.macd_signal
                else f"bearish momentum (histogram < 0: {hist:.4f})")
    if ind.volume_ratio > 0:
        tone = "expanding" if ind.volume_ratio > 2 else "mild expansion" if ind.volume_ratio > 1.2 else "contracting"
        volume = f"{ind.volume_ratio:.1f}x average ({tone})"
    else:
        volume = "insufficient data"
    rsi_zone = "oversold" if ind.rsi < 30 else "overbought" if ind.rsi > 70 else "neutral zone"
    atr = f"{ind.atr:.2f} USDT" if ind.atr > 0 else "insufficient data"
    sl_long = f"{signal.price - ind.atr * 1.5:.2f}" if ind.atr > 0 else "N/A"
    sl_short = f"{signal.price + ind.atr * 1.5:.2f}" if ind.atr > 0 else "N/A"

    lines = [
        "== Pair ==",
        f"Symbol: {signal.symbol} | Price: {signal.price:.2f} USDT",
        f"Trigger: {SIGNAL_LABELS.get(signal.type, signal.type)}",
        "",
        "== Indicators ==",
        f"Trend: {trend}",
        f"  - EMA7: {ind.ema7:.2f} | EMA25: {ind.ema25:.2f}",
        f"  - Bollinger: upper={_level(ind.bb_upper)} | middle={_level(ind.bb_middle)} | lower={_level(ind.bb_lower)}",
        f"  - Price position: {bb_position(signal.price, ind.bb_upper, ind.bb_middle, ind.bb_lower)}",
        "Momentum:",
        f"  - RSI(14): {ind.rsi:.1f} {rsi_zone}",
        f"  - MACD: {momentum}",
        "Volume and volatility:",
        f"  - Volume ratio: {volume}",
        f"  - ATR(14): {atr}",
        f"  - ATR reference stop: long={sl_long} | short={sl_short}",
        "Price change:",
        f"  - 1h: {_signed_pct(change_1h)}",
        f"  - 24h: {_signed_pct(change_24h)}",
    ]
    if strategy_context:
        lines += ["", "== Market context ==", strategy_context]
    lines += [
        "",
        "== Requirements ==",
        "1. Check whether the signal agrees with the trend.",
        "2. Confirm that volume supports the signal.",
        "3. Place a dynamic stop from ATR (1.5 x ATR suggested).",
        "4. Keep risk/reward at 1:2 or better.",
        "5. Report confluence as the number of agreeing indicators (0-5).",
        "",
        "Reply strictly in this JSON format:",
        JSON_REPLY_FORMAT,
    ]
    return "\n".join(lines)
