"""
Process-wide usage counters.

This is a side channel for observability: the optimisation loop records into
it but never reads from it.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Mapping


@dataclass
class RoleUsage:
    requests: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass
class UsageSnapshot:
    roles: Dict[str, RoleUsage] = field(default_factory=dict)
    models: Dict[str, RoleUsage] = field(default_factory=dict)
    correct: int = 0
    incorrect: int = 0

    @property
    def total_requests(self) -> int:
        return sum(r.requests for r in self.roles.values())

    @property
    def graded(self) -> int:
        return self.correct + self.incorrect


class UsageStats:
    """
    Token, request and grading-progress counters.

    Methods:
        record_request(role, model, prompt_tokens, completion_tokens): Count one model call.
        record_outcome(correct): Count one graded question.
        read() -> UsageSnapshot: Copy of the current counters.
        reset(): Zero every counter.
        estimate_cost(prices) -> float: USD estimate from a per-1M-token price table.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot = UsageSnapshot()

    def record_request(
        self, role: str, model: str, prompt_tokens: int, completion_tokens: int
    ) -> None:
        with self._lock:
            for bucket in (
                self._snapshot.roles.setdefault(role, RoleUsage()),
                self._snapshot.models.setdefault(model, RoleUsage()),
            ):
                bucket.requests += 1
                bucket.prompt_tokens += prompt_tokens
                bucket.completion_tokens += completion_tokens

    def record_outcome(self, correct: bool) -> None:
        with self._lock:
            if correct:
                self._snapshot.correct += 1
            else:
                self._snapshot.incorrect += 1

    def read(self) -> UsageSnapshot:
        with self._lock:
            return UsageSnapshot(
                roles={k: RoleUsage(**vars(v)) for k, v in self._snapshot.roles.items()},
                models={k: RoleUsage(**vars(v)) for k, v in self._snapshot.models.items()},
                correct=self._snapshot.correct,
                incorrect=self._snapshot.incorrect,
            )

    def reset(self) -> None:
        with self._lock:
            self._snapshot = UsageSnapshot()

    def estimate_cost(self, prices: Mapping[str, Mapping[str, float]]) -> float:
        default = prices.get("default", {"input": 0.0, "output": 0.0})
        total = 0.0
        for model, usage in self.read().models.items():
            price = prices.get(model, default)
            total += usage.prompt_tokens * price["input"] / 1_000_000
            total += usage.completion_tokens * price["output"] / 1_000_000
        return total


USAGE = UsageStats()
