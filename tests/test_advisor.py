#Description: Advisor prompt building, reply parsing and retry policy against a fake chat client.

from types import SimpleNamespace

import httpx
import openai
import pytest

from ai.advisor import AdvisoryError, AdvisoryResponseError, SignalAdvisor
from ai.tools import JsonTool, bb_position, build_signal_prompt
from models.schemas import IndicatorSnapshot, Signal

SIGNAL = Signal(id="ETHUSDT_rsi_oversold_1", symbol="ETHUSDT", type="rsi_oversold", time=1, price=2000.0,
                indicators=IndicatorSnapshot(ema7=1990, ema25=2010, rsi=25, macd=-1.5, macd_signal=-1.0,
                                             bb_upper=2100, bb_middle=2050, bb_lower=2000, atr=12, volume_ratio=1.8))

REPLY = """Here is my view:
```json
{"direction": "long", "confidence": 7, "entryPrice": 2000, "stopLoss": 1982, "takeProfit": 2040,
 "confluence": 3, "riskReward": 2.2, "timeframe": "short", "reasoning": "Oversold bounce", "autoTraded": true}
```"""


def _status_error(cls, status):
    response = httpx.Response(status, request=httpx.Request("POST", "https://llm.test/chat/completions"))
    return cls(f"HTTP {status}", response=response, body=None)


class FakeCompletions:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=outcome))])


def _advisor(*outcomes):
    completions = FakeCompletions(outcomes)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    sleeps = []
    return SignalAdvisor(client=client, model="test-model", sleep=sleeps.append), completions, sleeps


def test_json_tool_variants():
    assert JsonTool.parse_json_from_text('{"a": 1}') == {"a": 1}
    assert JsonTool.parse_json_from_text('prefix {"a": {"b": 2}} suffix') == {"a": {"b": 2}}
    assert JsonTool.parse_json_from_text("no json here") == {}
    assert JsonTool.parse_json_from_text("[1, 2]") == {}
    assert JsonTool.parse_json_from_text("{broken") == {}
    assert JsonTool.parse_json_from_text("") == {}


def test_bb_position_labels():
    assert bb_position(2095, 2100, 2050, 2000).startswith("near upper band")
    assert bb_position(2050, 2100, 2050, 2000).startswith("near middle band")
    assert bb_position(2001, 2100, 2050, 2000).startswith("near lower band")
    assert bb_position(10, 0, 0, 0) == "insufficient data"
    assert bb_position(10, 10, 10, 10) == "bands squeezed"


def test_signal_prompt_contents():
    prompt = build_signal_prompt(SIGNAL, 1.234, -3.5, "Trading mode: spot")
    assert "ETHUSDT" in prompt and "2000.00 USDT" in prompt
    assert "RSI(14): 25.0 oversold" in prompt
    assert "long=1982.00" in prompt and "short=2018.00" in prompt
    assert "1h: +1.23%" in prompt and "24h: -3.50%" in prompt
    assert "== Market context ==" in prompt
    assert "== Market context ==" not in build_signal_prompt(SIGNAL, 0, 0)


def test_analyze_parses_reply():
    advisor, completions, _ = _advisor(REPLY)
    analysis = advisor.analyze(SIGNAL, 1.0, 2.0)
    assert analysis.direction == "long" and analysis.confidence == 7
    assert analysis.stop_loss == 1982 and analysis.take_profit == 2040 and analysis.risk_reward == 2.2
    assert analysis.auto_traded is False
    req = completions.requests[0]
    assert req["model"] == "test-model" and req["messages"][0]["role"] == "system"


@pytest.mark.parametrize("reply", [
    "I cannot help with that",
    '{"direction": "sideways", "confidence": 5}',
    '{"direction": "long", "confidence": 15}',
    '{"confidence": 5}',
])
def test_malformed_reply_yields_none(reply):
    advisor, _, _ = _advisor(reply)
    assert advisor.analyze(SIGNAL, 0, 0) is None


def test_parse_analysis_raises_response_error():
    advisor, _, _ = _advisor()
    with pytest.raises(AdvisoryResponseError):
        advisor.parse_analysis("nothing")


def test_retries_rate_limit_then_succeeds():
    advisor, completions, sleeps = _advisor(
        _status_error(openai.RateLimitError, 429),
        _status_error(openai.InternalServerError, 503),
        REPLY,
    )
    assert advisor.analyze(SIGNAL, 0, 0) is not None
    assert len(completions.requests) == 3
    assert sleeps == [2.0, 4.0]


def test_gives_up_after_max_attempts():
    advisor, completions, sleeps = _advisor(*[_status_error(openai.InternalServerError, 500)] * 3)
    assert advisor.analyze(SIGNAL, 0, 0) is None
    assert len(completions.requests) == 3 and sleeps == [2.0, 4.0]


def test_retries_stop_at_budget():
    completions = FakeCompletions([_status_error(openai.RateLimitError, 429), REPLY])
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    sleeps = []
    advisor = SignalAdvisor(client=client, model="test-model", sleep=sleeps.append, budget=1.0)
    with pytest.raises(AdvisoryError, match="budget"):
        advisor.complete("sys", "user")
    assert len(completions.requests) == 1 and sleeps == []
    assert completions.requests[0]["timeout"] <= 1.0


def test_client_error_not_retried():
    advisor, completions, sleeps = _advisor(_status_error(openai.BadRequestError, 400))
    with pytest.raises(AdvisoryError):
        advisor.complete("sys", "user")
    assert len(completions.requests) == 1 and sleeps == []
