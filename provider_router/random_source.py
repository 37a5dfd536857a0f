# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Injectable uniform random source.

Every random decision in the router (epsilon-greedy exploration, posterior
sampling, diversity overrides) draws from a ``RandomSource`` so that tests can
pin a seed and assert exact outcomes.
"""

from __future__ import annotations

import random
from typing import Protocol


class RandomSource(Protocol):
    def random(self) -> float: ...


class SeededRandom:
    """Reproducible uniform generator backed by ``random.Random``."""

    def __init__(self, seed: int | None = None) -> None:
        self.seed = seed
        self._rng = random.Random(seed)

    def random(self) -> float:
        return self._rng.random()

    def reseed(self, seed: int) -> None:
        self.seed = seed
        self._rng.seed(seed)


class SequenceRandom:
    """Replays a fixed list of draws, cycling when exhausted."""

    def __init__(self, values: list[float]) -> None:
        if not values:
            raise ValueError("SequenceRandom requires at least one value")
        self._values = list(values)
        self._index = 0

    def random(self) -> float:
        value = self._values[self._index % len(self._values)]
        self._index += 1
        return value


def default_random_source() -> RandomSource:
    return SeededRandom()
