# Description: SignalAdvisor asks an OpenAI-compatible chat model for a trade recommendation on a detected signal.
from __future__ import annotations
import time
from typing import Any, Callable, Optional

from openai import OpenAI, APIConnectionError, APIStatusError, APITimeoutError
from pydantic import ValidationError

from utils.config import settings
from utils.logging import logger
from utils.security import resolve_credential
from models.schemas import AiAnalysis, Signal
from ai.tools import JsonTool, SIGNAL_SYSTEM_PROMPT, build_signal_prompt


class AdvisoryError(Exception):
    """Advisory call failed (transport, HTTP status or exhausted retries)."""


class AdvisoryResponseError(AdvisoryError):
    """The model replied but the payload is not a usable recommendation."""


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, APIStatusError):
        return exc.status_code == 429 or exc.status_code >= 500
    return isinstance(exc, (APIConnectionError, APITimeoutError))


class SignalAdvisor:
    """
    Chat-completions client for signal analysis.

    Works against any OpenAI-compatible endpoint (`ADVISORY_BASE_URL`). The SDK's
    own retries are disabled; 429 and 5xx replies are retried here with a linear
    backoff (2s, 4s) up to `ADVISORY_MAX_ATTEMPTS` attempts. Attempts and backoff
    share one `budget` (the outer call timeout): each attempt gets the time that
    is left, and no retry starts once its backoff would run past the budget.
    """
    def __init__(self, client: Any | None = None, model: str | None = None,
                 max_attempts: int | None = None, backoff: float | None = None,
                 sleep: Callable[[float], None] = time.sleep, budget: float | None = None,
                 temperature: float = 0.3, max_tokens: int = 800):
        self.model = model or settings.ADVISORY_MODEL
        self.max_attempts = max_attempts or settings.ADVISORY_MAX_ATTEMPTS
        self.backoff = settings.ADVISORY_BACKOFF_SECONDS if backoff is None else backoff
        self.budget = budget or settings.ADVISORY_CALL_TIMEOUT_SECONDS
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._sleep = sleep
        self._client = client
        if self._client is None:
            api_key = resolve_credential(settings.ADVISORY_API_KEY, "advisory")
            if api_key:
                self._client = OpenAI(api_key=api_key, base_url=settings.ADVISORY_BASE_URL,
                                      timeout=settings.ADVISORY_TIMEOUT_SECONDS, max_retries=0)
            else:
                logger.warning("No advisory API key configured, signal analysis disabled")

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def complete(self, system: str, user: str, max_tokens: int | None = None) -> str:
        """Run one chat completion with retry, returning the raw reply text."""
        if self._client is None:
            raise AdvisoryError("advisory client not configured")
        deadline = time.monotonic() + self.budget
        attempt = 1
        while True:
            remaining = deadline - time.monotonic()
            try:
                resp = self._client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                    temperature=self.temperature,
                    max_tokens=max_tokens or self.max_tokens,
                    timeout=max(0.1, min(settings.ADVISORY_TIMEOUT_SECONDS, remaining)),
                )
                return (resp.choices[0].message.content or "").strip()
            except (APIStatusError, APIConnectionError, APITimeoutError) as e:
                if attempt >= self.max_attempts or not _retryable(e):
                    raise AdvisoryError(f"advisory request failed after {attempt} attempt(s): {e}") from e
                delay = attempt * self.backoff
                if time.monotonic() + delay >= deadline:
                    raise AdvisoryError(f"advisory retry budget of {self.budget:g}s spent after "
                                        f"{attempt} attempt(s): {e}") from e
                logger.warning(f"Advisory attempt {attempt} failed ({e}), retrying in {delay:.1f}s")
                self._sleep(delay)
                attempt += 1

    def parse_analysis(self, text: str) -> AiAnalysis:
        data = JsonTool.parse_json_from_text(text)
        if not data:
            raise AdvisoryResponseError(f"no JSON object in reply: {text[:200]}")
        data.pop("autoTraded", None)
        data.pop("auto_traded", None)
        try:
            return AiAnalysis.model_validate(data)
        except ValidationError as e:
            raise AdvisoryResponseError(f"invalid recommendation: {e.error_count()} error(s)") from e

    def analyze(self, signal: Signal, change_1h: float, change_24h: float,
                strategy_context: Optional[str] = None) -> Optional[AiAnalysis]:
        if self._client is None:
            return None
        prompt = build_signal_prompt(signal, change_1h, change_24h, strategy_context)
        logger.info(f"Querying advisor for {signal.symbol} {signal.type}")
        try:
            text = self.complete(SIGNAL_SYSTEM_PROMPT, prompt)
            logger.debug(f"Advisor reply for {signal.id}: {text}")
            analysis = self.parse_analysis(text)
        except AdvisoryError as e:
            logger.warning(f"Advisory analysis failed for {signal.id}: {e}")
            return None
        logger.info(f"Advisor on {signal.symbol}: {analysis.direction} confidence {analysis.confidence:g}/10")
        return analysis
