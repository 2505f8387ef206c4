#Description: Rule-based auto-trade policy turning an advisory recommendation into open / reverse / skip.
from __future__ import annotations

from typing import Optional, Tuple

from models.schemas import AiAnalysis, PortfolioState, Signal, TradeDecision
from utils.config import settings

MIN_CONFIDENCE = 6
HIGH_RISK_MIN_CONFIDENCE = 8
EXTREME_RISK_MIN_CONFIDENCE = 9
MIN_RISK_REWARD = 1.5
MARGIN_SOFT_CAP_PCT = 60.0
MARGIN_HARD_CAP_PCT = 80.0
REVERSAL_MIN_CONFIDENCE = 8
REVERSAL_MIN_CONFLUENCE = 3

SL_MIN_ATR_MULT = 0.5
TP_MIN_ATR_MULT = 1.0
ATR_FALLBACK_PCT = 0.005


def _fmt_conf(confidence: float) -> str:
    return f"{confidence:g}/10"


def margin_utilization_pct(state: PortfolioState) -> float:
    equity = state.account.equity
    return state.account.used_margin / equity * 100 if equity > 0 else 0.0


def decide_trade(analysis: AiAnalysis, signal: Signal, state: PortfolioState) -> TradeDecision:
    """First matching rule wins; the order of the checks is part of the policy."""
    conf = analysis.confidence
    side = analysis.direction
    risk_level = state.strategy_report.risk_level if state.strategy_report else "medium"

    if side == "hold":
        return TradeDecision(action="skip", note="Advisor says hold, no entry")

    if risk_level == "extreme" and conf < EXTREME_RISK_MIN_CONFIDENCE:
        return TradeDecision(action="skip",
                             note=f"Extreme market risk, confidence {_fmt_conf(conf)} below 9")
    if risk_level == "high" and conf < HIGH_RISK_MIN_CONFIDENCE:
        return TradeDecision(action="skip",
                             note=f"High market risk, confidence {_fmt_conf(conf)} below 8")

    if conf < MIN_CONFIDENCE:
        return TradeDecision(action="skip", note=f"Confidence {_fmt_conf(conf)} too low")

    rr = analysis.risk_reward or 0.0
    if 0 < rr < MIN_RISK_REWARD:
        return TradeDecision(action="skip", note=f"R:R {rr:.1f}:1 below {MIN_RISK_REWARD}:1")

    margin_pct = margin_utilization_pct(state)
    if margin_pct > MARGIN_HARD_CAP_PCT:
        return TradeDecision(action="skip",
                             note=f"Margin hard cap: {margin_pct:.0f}% of equity in use, no new entries")
    if margin_pct > MARGIN_SOFT_CAP_PCT and conf < HIGH_RISK_MIN_CONFIDENCE:
        return TradeDecision(action="skip",
                             note=f"Margin at {margin_pct:.0f}% of equity, needs confidence >= 8 to add")

    existing = next((p for p in state.positions
                     if p.symbol == signal.symbol and p.mode == state.trading_mode), None)
    if existing is not None:
        if existing.direction == side:
            pnl = existing.unrealized_pnl
            pnl_str = f"+${pnl:.2f}" if pnl >= 0 else f"-${abs(pnl):.2f}"
            return TradeDecision(action="skip",
                                 note=f"Already {existing.direction} ({pnl_str}), letting it run")
        confluence = analysis.confluence or 0
        if conf >= REVERSAL_MIN_CONFIDENCE and confluence >= REVERSAL_MIN_CONFLUENCE:
            return TradeDecision(action="close_and_open",
                                 note=f"Strong reversal ({_fmt_conf(conf)}, {confluence} indicators agree), "
                                      f"closing {existing.direction} and going {side}")
        return TradeDecision(action="skip",
                             note=f"Opposite {side} signal too weak to reverse "
                                  f"(confidence {_fmt_conf(conf)}, confluence {confluence}/5), keeping position")

    rr_str = f" R:R {rr:.1f}" if rr > 0 else ""
    confluence_str = f" confluence {analysis.confluence}/5" if analysis.confluence is not None else ""
    return TradeDecision(action="open", note=f"Open {side}, confidence {_fmt_conf(conf)}{rr_str}{confluence_str}")


def sanitize_levels(analysis: AiAnalysis, entry_price: float,
                    atr: float) -> Tuple[Optional[float], Optional[float], str]:
    """
    Validate the advisor's stop loss and take profit against the live entry.

    A level on the wrong side of the entry, or closer than the minimum ATR
    distance, is discarded rather than clamped. Returns (stop_loss, take_profit,
    note) where the note lists what was dropped.
    """
    atr = atr if atr and atr > 0 else entry_price * ATR_FALLBACK_PCT
    is_long = analysis.direction == "long"

    sl = analysis.stop_loss
    sl_distance = entry_price - sl if is_long else sl - entry_price
    valid_sl = sl > 0 and sl_distance >= atr * SL_MIN_ATR_MULT

    tp = analysis.take_profit
    tp_distance = tp - entry_price if is_long else entry_price - tp
    valid_tp = tp > 0 and tp_distance >= atr * TP_MIN_ATR_MULT

    dropped = []
    if not valid_sl and sl > 0:
        dropped.append("invalid SL ignored")
    if not valid_tp and tp > 0:
        dropped.append("invalid TP ignored")
    return (sl if valid_sl else None), (tp if valid_tp else None), ", ".join(dropped)


def trade_size(balance: float) -> Optional[float]:
    """Margin for an auto trade: 10% of free balance capped at 500, None when below the 10 minimum."""
    size = min(balance * settings.TRADE_BALANCE_PCT, settings.MAX_TRADE_SIZE)
    return size if size >= settings.MIN_TRADE_SIZE else None
