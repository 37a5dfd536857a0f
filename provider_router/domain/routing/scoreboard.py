# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Per-process provider scoreboard.

Tracks call outcomes and a rolling p95 latency per provider as reported
through ``RoutingService.record_outcome``. Callers read it back via
``RoutingService.scoreboard`` (``summary`` and ``ranked_providers``); the
rankers never consult it. State lives only in memory and resets with the
process.
"""

from __future__ import annotations

import math
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..models import OutcomeType, utcnow

LATENCY_WINDOW = 20
MIN_P95_SAMPLES = 3
DEFAULT_P95_MS = 1200.0
LATENCY_PENALTY_START_MS = 2000.0
LATENCY_PENALTY_SPAN_MS = 8000.0
NO_CALLS_SCORE = 0.9


@dataclass
class ProviderScore:
    provider: str
    total_calls: int = 0
    successes: int = 0
    schema_invalids: int = 0
    timeouts: int = 0
    failures: int = 0
    p95_latency_ms: float = DEFAULT_P95_MS
    recent_latencies: deque[float] = field(default_factory=lambda: deque(maxlen=LATENCY_WINDOW))
    last_updated: datetime = field(default_factory=utcnow)

    def rank_score(self) -> float:
        if self.total_calls == 0:
            return NO_CALLS_SCORE
        success_rate = self.successes / self.total_calls
        schema_invalid_rate = self.schema_invalids / self.total_calls
        timeout_rate = self.timeouts / self.total_calls
        latency_penalty = min(1.0, max(0.0, (self.p95_latency_ms - LATENCY_PENALTY_START_MS) / LATENCY_PENALTY_SPAN_MS))
        return success_rate * 0.60 - schema_invalid_rate * 0.25 - timeout_rate * 0.10 - latency_penalty * 0.05


class ProviderScoreboard:
    def __init__(self) -> None:
        self._scores: dict[str, ProviderScore] = {}

    def _score(self, provider: str) -> ProviderScore:
        if provider not in self._scores:
            self._scores[provider] = ProviderScore(provider)
        return self._scores[provider]

    def record(self, provider: str, outcome: OutcomeType, latency_ms: float, now: datetime | None = None) -> None:
        score = self._score(provider)
        score.total_calls += 1
        score.last_updated = now or utcnow()
        if outcome is OutcomeType.SUCCESS:
            score.successes += 1
        elif outcome is OutcomeType.SCHEMA_INVALID:
            score.schema_invalids += 1
        elif outcome is OutcomeType.TIMEOUT:
            score.timeouts += 1
        else:
            score.failures += 1

        score.recent_latencies.append(latency_ms)
        if len(score.recent_latencies) >= MIN_P95_SAMPLES:
            ordered = sorted(score.recent_latencies)
            index = min(math.floor(len(ordered) * 0.95), len(ordered) - 1)
            score.p95_latency_ms = ordered[index]

    def rank_score(self, provider: str) -> float:
        score = self._scores.get(provider)
        return score.rank_score() if score else NO_CALLS_SCORE

    def ranked_providers(self, providers: Iterable[str]) -> list[str]:
        """Order providers best first; equal scores keep the given order."""
        return sorted(providers, key=self.rank_score, reverse=True)

    def summary(self) -> dict[str, dict[str, Any]]:
        result = {}
        for provider, score in self._scores.items():
            result[provider] = {
                "rank": round(score.rank_score(), 3),
                "total_calls": score.total_calls,
                "success_rate": round(score.successes / score.total_calls * 100) if score.total_calls else 100,
                "p95_latency_ms": score.p95_latency_ms,
            }
        return result

    def reset(self) -> None:
        self._scores.clear()
