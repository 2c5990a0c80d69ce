"""
AI Judgment Adapter: ask a language model whether code satisfies a control.

Some rules cannot be decided by pattern matching alone (is authorization
actually enforced? is data at rest actually protected?). Those rules build
a JudgmentRequest from file excerpts and hand it to the adapter.

Each provider is wrapped in its own CircuitBreaker. The adapter tries
providers in order, skipping any whose breaker is open, and raises
CircuitOpenError when every breaker is open so callers can stop asking.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from app.config import Settings
from app.errors import CircuitOpenError, ExternalServiceError
from app.middleware.metrics import ai_calls_total, circuit_breaker_state, CIRCUIT_STATE_VALUES
from app.services.circuit_breaker import CircuitBreaker, CircuitState

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a software compliance auditor reviewing source code excerpts.\n"
    "Decide whether the excerpts show that the described control is implemented.\n"
    'Respond with JSON only: {"verdict": "pass" | "fail", "rationale": "<one paragraph>", '
    '"confidence": <0.0-1.0>}'
)

MAX_EXCERPT_CHARS = 4000


@dataclass
class JudgmentRequest:
    rule_id: str
    question: str
    excerpts: list[dict] = field(default_factory=list)  # [{"path": ..., "snippet": ...}]


@dataclass
class Judgment:
    verdict: str  # "pass" | "fail"
    rationale: str
    confidence: float
    model: str


class JudgmentProvider(Protocol):
    name: str
    model: str

    async def judge(self, request: JudgmentRequest) -> Judgment: ...


def build_prompt(request: JudgmentRequest) -> str:
    parts = [f"Control question ({request.rule_id}): {request.question}", ""]
    for excerpt in request.excerpts:
        snippet = excerpt.get("snippet", "")[:MAX_EXCERPT_CHARS]
        parts.append(f"--- {excerpt.get('path', '?')} ---\n{snippet}")
    if not request.excerpts:
        parts.append("(no relevant code excerpts were found)")
    return "\n".join(parts)


def parse_judgment(content: str, model: str) -> Judgment:
    """Parse the model's JSON reply. Raises ValueError if it is unusable."""
    clean = re.sub(r"<think>.*?</think>\s*", "", content, flags=re.DOTALL).strip()
    if clean.startswith("```"):
        clean = clean.split("\n", 1)[1].rsplit("```", 1)[0]
    match = re.search(r"\{.*\}", clean, flags=re.DOTALL)
    if not match:
        raise ValueError("no JSON object in model response")
    parsed = json.loads(match.group())

    verdict = str(parsed.get("verdict", "")).lower()
    if verdict not in ("pass", "fail"):
        raise ValueError(f"unexpected verdict {verdict!r}")
    confidence = min(max(float(parsed.get("confidence", 0.5)), 0.0), 1.0)
    return Judgment(
        verdict=verdict,
        rationale=str(parsed.get("rationale", ""))[:2000],
        confidence=confidence,
        model=model,
    )


class OllamaProvider:
    """Judgment provider backed by an Ollama /api/chat endpoint."""

    def __init__(self, base_url: str, model: str, name: str = "ollama", timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.name = name
        self.timeout = timeout

    async def judge(self, request: JudgmentRequest) -> Judgment:
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_prompt(request)},
        ]
        timeout = httpx.Timeout(connect=10.0, read=self.timeout, write=10.0, pool=10.0)
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/api/chat",
                    json={
                        "model": self.model,
                        "messages": messages,
                        "stream": False,
                        "format": "json",
                        "options": {"temperature": 0.1, "num_predict": 1024},
                    },
                )
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Ollama request failed: {e}", provider=self.name) from e

        if resp.status_code != 200:
            raise ExternalServiceError(
                f"Ollama returned HTTP {resp.status_code}", provider=self.name,
            )

        try:
            content = resp.json().get("message", {}).get("content", "")
            return parse_judgment(content, self.model)
        except (ValueError, TypeError, AttributeError) as e:
            raise ExternalServiceError(f"Unparseable judgment from Ollama: {e}", provider=self.name) from e


def _record_state_change(name: str, old: CircuitState, new: CircuitState) -> None:
    circuit_breaker_state.labels(provider=name).set(CIRCUIT_STATE_VALUES[new.value])


class AIJudgmentAdapter:
    """Routes judgment requests to providers, each guarded by its own breaker."""

    def __init__(self, providers: list[JudgmentProvider], breakers: dict[str, CircuitBreaker], enabled: bool = True):
        self.providers = providers
        self.breakers = breakers
        self.enabled = enabled and bool(providers)

    @classmethod
    def from_settings(cls, config: Settings, providers: list[JudgmentProvider] | None = None) -> "AIJudgmentAdapter":
        if providers is None:
            providers = [OllamaProvider(
                config.ollama_url,
                config.llm_model,
                timeout=config.ai_breaker_request_timeout_ms / 1000,
            )]
        breakers = {
            p.name: CircuitBreaker(
                p.name,
                failure_threshold=config.ai_breaker_failure_threshold,
                reset_timeout_ms=config.ai_breaker_reset_timeout_ms,
                success_threshold=config.ai_breaker_success_threshold,
                request_timeout_ms=config.ai_breaker_request_timeout_ms,
                on_state_change=_record_state_change,
            )
            for p in providers
        }
        return cls(providers, breakers, enabled=config.ai_enabled)

    @property
    def all_open(self) -> bool:
        return all(self.breakers[p.name].is_open for p in self.providers)

    async def judge(self, request: JudgmentRequest) -> Judgment:
        """
        Ask the first available provider.

        Raises CircuitOpenError when every provider's breaker is open, and
        ExternalServiceError when every available provider failed.
        """
        if not self.enabled:
            raise ExternalServiceError("AI judgment is disabled", provider="none")

        last_error: ExternalServiceError | None = None
        for provider in self.providers:
            breaker = self.breakers[provider.name]
            if breaker.is_open:
                ai_calls_total.labels(provider=provider.name, outcome="short_circuited").inc()
                continue
            try:
                judgment = await breaker.call(provider.judge, request)
            except CircuitOpenError as e:
                ai_calls_total.labels(provider=provider.name, outcome="short_circuited").inc()
                last_error = e
                continue
            except ExternalServiceError as e:
                ai_calls_total.labels(provider=provider.name, outcome="error").inc()
                logger.warning("AI provider %s failed on %s: %s", provider.name, request.rule_id, e.message)
                last_error = e
                continue
            ai_calls_total.labels(provider=provider.name, outcome="success").inc()
            return judgment

        if self.all_open:
            raise CircuitOpenError("All AI judgment providers are unavailable", provider="all")
        raise last_error or ExternalServiceError("No AI judgment provider available", provider="none")

    def stats(self) -> list[dict]:
        return [b.stats() for b in self.breakers.values()]


class JudgmentUnavailable(Exception):
    """No judgment could be obtained; the rule degrades to needs_review."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class RunJudgmentGate:
    """
    Per-run view of the adapter.

    Once any call reports every breaker open, the gate latches and all
    later requests in the same run fail fast without reaching a provider.
    """

    def __init__(self, adapter: AIJudgmentAdapter | None):
        self.adapter = adapter
        self.latched = False
        self.calls = 0
        self.degraded = 0

    async def judge(self, request: JudgmentRequest) -> Judgment:
        if self.adapter is None or not self.adapter.enabled:
            self.degraded += 1
            raise JudgmentUnavailable("AI judgment is disabled")
        if self.latched or self.adapter.all_open:
            self.latched = True
            self.degraded += 1
            raise JudgmentUnavailable("AI provider circuit is open")

        self.calls += 1
        try:
            return await self.adapter.judge(request)
        except CircuitOpenError as e:
            self.latched = True
            self.degraded += 1
            raise JudgmentUnavailable(e.message) from e
        except ExternalServiceError as e:
            self.degraded += 1
            raise JudgmentUnavailable(e.message) from e
