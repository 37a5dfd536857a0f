# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Beta, Gamma and Normal samplers driven by an injectable RandomSource.

All samplers return finite values for any finite input: shapes are clamped,
variances floored and degenerate draws replaced by a neutral value.
"""

from __future__ import annotations

import math

from ..random_source import RandomSource

MIN_SHAPE = 0.001
NORMAL_APPROX_SHAPE = 100.0
MIN_VARIANCE = 1e-10
GAMMA_MAX_ITERATIONS = 1000
_U1_FLOOR = 1e-10


def sample_standard_normal(rng: RandomSource) -> float:
    """Box-Muller transform; a draw too close to zero for the log is rejected."""
    u1 = rng.random()
    while u1 <= _U1_FLOOR:
        u1 = rng.random()
    u2 = rng.random()
    return math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)


def sample_normal(mean: float, variance: float, rng: RandomSource) -> float:
    return mean + math.sqrt(max(variance, MIN_VARIANCE)) * sample_standard_normal(rng)


def sample_gamma(shape: float, rng: RandomSource) -> float:
    """Gamma(shape, 1) via Marsaglia and Tsang's squeeze method."""
    if shape < 1.0:
        # Gamma(a) = Gamma(a + 1) * U^(1/a)
        return sample_gamma(shape + 1.0, rng) * math.pow(rng.random(), 1.0 / shape)

    d = shape - 1.0 / 3.0
    c = 1.0 / math.sqrt(9.0 * d)

    for _ in range(GAMMA_MAX_ITERATIONS):
        x = sample_standard_normal(rng)
        v = 1.0 + c * x
        while v <= 0.0:
            x = sample_standard_normal(rng)
            v = 1.0 + c * x

        v = v * v * v
        u = rng.random()
        if u < 1.0 - 0.0331 * (x * x) * (x * x):
            return d * v
        if u > 0.0 and math.log(u) < 0.5 * x * x + d * (1.0 - v + math.log(v)):
            return d * v

    return shape


def sample_beta(alpha: float, beta: float, rng: RandomSource) -> float:
    a = max(alpha, MIN_SHAPE)
    b = max(beta, MIN_SHAPE)

    if a > NORMAL_APPROX_SHAPE or b > NORMAL_APPROX_SHAPE:
        total = a + b
        mean = a / total
        variance = (a * b) / (total * total * (total + 1.0))
        return _clamp01(mean + math.sqrt(variance) * sample_standard_normal(rng))

    ga = sample_gamma(a, rng)
    gb = sample_gamma(b, rng)
    if ga + gb == 0.0:
        return 0.5
    return _clamp01(ga / (ga + gb))


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))
