# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Global/tenant blend ratio and exploration rate from tenant sample volume."""

from __future__ import annotations

LOW_SAMPLE_THRESHOLD = 20
HIGH_SAMPLE_THRESHOLD = 100


def compute_alpha_beta(tenant_samples: int) -> tuple[float, float]:
    """Return (alpha, beta) weights for global vs tenant statistics.

    Few tenant samples means global data is trusted; once the tenant has
    accumulated more than 100 observations its own data dominates.
    """
    if tenant_samples < LOW_SAMPLE_THRESHOLD:
        return 0.85, 0.15
    if tenant_samples <= HIGH_SAMPLE_THRESHOLD:
        return 0.60, 0.40
    return 0.35, 0.65


def compute_epsilon(tenant_samples: int) -> float:
    if tenant_samples < LOW_SAMPLE_THRESHOLD:
        return 0.20
    if tenant_samples <= HIGH_SAMPLE_THRESHOLD:
        return 0.10
    return 0.05


def blend(alpha: float, beta: float, global_value: float | None, tenant_value: float | None, default: float) -> float:
    """Blend two scope values, using whichever exists when only one does."""
    if global_value is not None and tenant_value is not None:
        return alpha * global_value + beta * tenant_value
    if global_value is not None:
        return global_value
    if tenant_value is not None:
        return tenant_value
    return default
