"""Optional LLM re-ranking of the top Variant-B candidates.

The ranker is advisory: any timeout, HTTP error, unparseable reply or
exhausted budget leaves the candidate's effective score untouched.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

import httpx

from arbiter.config import RerankerSettings
from arbiter.errors import ExternalServiceFailure
from arbiter.models import Variant, utc_now
from arbiter.store import ArbStore

from .scorer import ScoredCandidate

LOGGER = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")

SYSTEM_PROMPT = "You are a quantitative trading ranking assistant."


def extract_score(text: str) -> Optional[float]:
    match = _NUMBER_RE.search(text or "")
    if match is None:
        return None
    value = float(match.group(0))
    return value if value == value and abs(value) != float("inf") else None


@dataclass(frozen=True)
class RerankOutcome:
    consulted: int
    applied: int
    remaining: int


class LlmRanker:
    def __init__(
        self,
        settings: RerankerSettings,
        store: ArbStore,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._client = client or httpx.AsyncClient(base_url=settings.base_url, timeout=settings.timeout_seconds)

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    def _payload(self, meta: Dict[str, Any]) -> Dict[str, Any]:
        prompt = {
            "objective": "Rank opportunity for max profit with low drawdown risk.",
            "instructions": "Return a single numeric score where lower is better. Use features only. Do not explain.",
            "features": meta,
        }
        return {
            "model": self._settings.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": json.dumps(prompt, default=str)},
            ],
            "temperature": 0.2,
            "max_tokens": 20,
        }

    async def score(self, candidate: ScoredCandidate) -> float:
        """One chat-completions call; raises ExternalServiceFailure on any failure."""
        try:
            response = await self._client.post(
                "/chat/completions",
                json=self._payload(candidate.meta),
                headers={"Authorization": f"Bearer {self._settings.api_key}"},
                timeout=self._settings.timeout_seconds,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as exc:
            raise ExternalServiceFailure("reranker timeout") from exc
        except httpx.HTTPStatusError as exc:
            raise ExternalServiceFailure(f"reranker http_{exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalServiceFailure(f"reranker error: {exc}") from exc

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ExternalServiceFailure("reranker reply missing content") from exc
        value = extract_score(str(content))
        if value is None:
            raise ExternalServiceFailure(f"reranker reply not numeric: {content!r}")
        return value

    async def rerank(
        self,
        candidates: Sequence[ScoredCandidate],
        account_id: str,
        now: Optional[datetime] = None,
    ) -> RerankOutcome:
        """Consult the ranker for the top Variant-B candidates, in place."""
        day = (now or utc_now()).date().isoformat()
        budget = self._settings.daily_budget
        if not self.enabled:
            return RerankOutcome(0, 0, max(0, budget - self._store.ai_calls_used(day, account_id)))

        consulted = applied = 0
        for candidate in candidates:
            if candidate.variant is not Variant.B:
                continue
            if consulted >= self._settings.max_calls_per_tick:
                break
            if not self._store.try_consume_ai_call(day, account_id, budget):
                LOGGER.info("reranker daily budget exhausted (%d calls)", budget)
                break
            consulted += 1
            try:
                value = await self.score(candidate)
            except ExternalServiceFailure as exc:
                LOGGER.warning("reranker fallback for opportunity %s: %s", candidate.opportunity.id, exc)
                continue
            candidate.score_llm = value
            candidate.score_effective = value
            applied += 1

        remaining = max(0, budget - self._store.ai_calls_used(day, account_id))
        return RerankOutcome(consulted=consulted, applied=applied, remaining=remaining)

    async def aclose(self) -> None:
        await self._client.aclose()
