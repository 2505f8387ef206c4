#Description: Strategy report generation and the scheduler jobs that feed the ledger.

import httpx
import pytest

from ai.advisor import AdvisoryError
from ai.strategy_report import StrategyReportService, build_report_prompt, fear_greed_reading, strategy_context
from models.db import get_session
from models.orm import StateSnapshot
from models.schemas import FearGreed, StrategyReport
from services import scheduler
from services.portfolio import PortfolioService


class FakeAdvisor:
    def __init__(self, reply=None, error=None, enabled=True):
        self.reply = reply
        self.error = error
        self.enabled = enabled
        self.prompts = []

    def complete(self, system, user, max_tokens=None):
        self.prompts.append(user)
        if self.error:
            raise self.error
        return self.reply


def _fng_client(status=200):
    payload = {"data": [{"value": "22", "value_classification": "Extreme Fear", "timestamp": "1700000000"}]}
    return httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(status, json=payload)))


REPLY = ('{"sentiment": "bearish", "riskLevel": "high", "keyEvents": ["CPI beat"], '
         '"macroFactors": "Dollar strength", "tradingBias": "Short alts", "summary": "Stay defensive"}')


def test_fear_greed_fetch_and_fallback():
    assert StrategyReportService(FakeAdvisor(), _fng_client()).fetch_fear_greed() == FearGreed(
        value=22, classification="Extreme Fear", timestamp=1_700_000_000_000)
    fallback = StrategyReportService(FakeAdvisor(), _fng_client(status=503)).fetch_fear_greed()
    assert fallback.value == 50 and fallback.classification == "Neutral"


def test_generate_report():
    advisor = FakeAdvisor(REPLY)
    report = StrategyReportService(advisor, _fng_client()).generate()
    assert report.sentiment == "bearish" and report.risk_level == "high"
    assert report.key_events == ["CPI beat"] and report.fear_greed.value == 22
    assert "22/100 (Extreme Fear)" in advisor.prompts[0]


@pytest.mark.parametrize("advisor", [
    FakeAdvisor(enabled=False),
    FakeAdvisor(error=AdvisoryError("down")),
    FakeAdvisor("no json"),
    FakeAdvisor('{"riskLevel": "catastrophic"}'),
])
def test_generate_failures_return_none(advisor):
    assert StrategyReportService(advisor, _fng_client()).generate() is None


def test_missing_fields_default():
    report = StrategyReportService(FakeAdvisor("{}  "), _fng_client()).generate()
    assert report is None
    report = StrategyReportService(FakeAdvisor('{"summary": "ok"}'), _fng_client()).generate()
    assert report.sentiment == "neutral" and report.risk_level == "medium"


def test_prompt_and_context_text():
    assert fear_greed_reading(10).startswith("extreme fear")
    assert fear_greed_reading(90).startswith("extreme greed")
    assert "riskLevel" in build_report_prompt(FearGreed())
    report = StrategyReport(id="r", generated_at=0, sentiment="bullish", risk_level="low", trading_bias="Long BTC")
    assert strategy_context(report, "futures", 20).startswith("Trading mode: futures (20x leverage)")
    assert "spot (no leverage)" in strategy_context(report, "spot", 10)


@pytest.fixture
def fresh_singleton(monkeypatch, portfolio):
    monkeypatch.setattr(PortfolioService, "_instance", portfolio)
    return portfolio


def test_report_job_sets_strategy_report(fresh_singleton, monkeypatch):
    monkeypatch.setattr(scheduler, "_report_service", StrategyReportService(FakeAdvisor(REPLY), _fng_client()))
    scheduler.report_job()
    assert fresh_singleton.preferences.strategy_report.risk_level == "high"


def test_snapshot_job_writes_row(fresh_singleton):
    scheduler.snapshot_job()
    with get_session() as s:
        row = s.query(StateSnapshot).one()
        assert row.equity == pytest.approx(10000.0)
