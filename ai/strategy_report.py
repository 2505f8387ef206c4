#Description: Periodic market strategy report from the fear & greed index and the advisory model.

from __future__ import annotations
from typing import Optional

import httpx
from pydantic import ValidationError

from ai.advisor import AdvisoryError, SignalAdvisor
from ai.tools import JsonTool
from models.schemas import FearGreed, StrategyReport
from services.engine import now_ms
from utils.logging import logger

FEAR_GREED_URL = "https://api.alternative.me/fng/"

REPORT_SYSTEM_PROMPT = (
    "You are a top crypto derivatives trader and market analyst focused on futures trading and macro "
    "research. Combine sentiment, positioning and macro conditions into a professional trading plan. "
    "Reply with strict JSON only."
)


def fear_greed_reading(value: int) -> str:
    if value <= 25:
        return "extreme fear, historically a bottoming zone but wait for stabilisation"
    if value <= 45:
        return "fear, pessimism is heavy, be careful adding longs"
    if value <= 55:
        return "neutral, direction unclear, wait for a catalyst"
    if value <= 75:
        return "greed, market is euphoric, watch for topping risk"
    return "extreme greed, market overheated, cut exposure or consider shorts"


def build_report_prompt(fear_greed: FearGreed) -> str:
    return "\n".join([
        "Produce today's trading strategy report from the data below.",
        "",
        "## Sentiment",
        f"Fear & greed index: {fear_greed.value}/100 ({fear_greed.classification})",
        f"Reading: {fear_greed_reading(fear_greed.value)}",
        "",
        "Reply strictly in this JSON format:",
        "{",
        '  "sentiment": "bullish" | "bearish" | "neutral",',
        '  "riskLevel": "low" | "medium" | "high" | "extreme",',
        '  "keyEvents": ["most important event", "second event", "third event"],',
        '  "macroFactors": "macro analysis under 120 words",',
        '  "tradingBias": "today\'s bias under 60 words, direction and focus coins",',
        '  "summary": "overall view under 250 words with trend, risks and concrete plan"',
        "}",
    ])


class StrategyReportService:
    def __init__(self, advisor: SignalAdvisor | None = None, client: httpx.Client | None = None):
        self.advisor = advisor or SignalAdvisor()
        self.client = client or httpx.Client(timeout=10)

    def fetch_fear_greed(self) -> FearGreed:
        try:
            r = self.client.get(FEAR_GREED_URL)
            r.raise_for_status()
            item = r.json()["data"][0]
            return FearGreed(value=int(item["value"]), classification=item["value_classification"],
                             timestamp=int(item["timestamp"]) * 1000)
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning(f"Fear & greed fetch failed: {e}")
            return FearGreed(timestamp=now_ms())

    def generate(self) -> Optional[StrategyReport]:
        if not self.advisor.enabled:
            return None
        fear_greed = self.fetch_fear_greed()
        try:
            text = self.advisor.complete(REPORT_SYSTEM_PROMPT, build_report_prompt(fear_greed), max_tokens=1200)
        except AdvisoryError as e:
            logger.warning(f"Strategy report generation failed: {e}")
            return None
        data = JsonTool.parse_json_from_text(text)
        if not data:
            logger.warning("Strategy report reply had no JSON")
            return None
        ts = now_ms()
        try:
            report = StrategyReport(
                id=f"report-{ts}",
                generated_at=ts,
                sentiment=data.get("sentiment") or "neutral",
                risk_level=data.get("riskLevel") or "medium",
                key_events=[str(e) for e in (data.get("keyEvents") or [])],
                macro_factors=str(data.get("macroFactors") or ""),
                trading_bias=str(data.get("tradingBias") or ""),
                summary=str(data.get("summary") or ""),
                fear_greed=fear_greed,
            )
        except ValidationError as e:
            logger.warning(f"Strategy report rejected: {e.error_count()} invalid field(s)")
            return None
        logger.info(f"Strategy report: {report.sentiment}, risk {report.risk_level}")
        return report


def strategy_context(report: StrategyReport, trading_mode: str, leverage: int) -> str:
    """One-line market context appended to signal prompts."""
    mode = "spot (no leverage)" if trading_mode == "spot" else f"futures ({leverage}x leverage)"
    fg = report.fear_greed
    return (f"Trading mode: {mode}, sentiment: {report.sentiment}, risk level: {report.risk_level}, "
            f"fear & greed: {fg.value}/100 ({fg.classification}), bias: {report.trading_bias}, "
            f"macro: {report.macro_factors}")
