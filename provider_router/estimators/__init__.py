# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Online estimators: EWMA, Bayesian posteriors and samplers."""

from .ewma import EWMA_LAMBDA, compute_ewma_update
from .posterior import PosteriorState, compute_posterior_update
from .sampling import sample_beta, sample_gamma, sample_normal, sample_standard_normal

__all__ = [
    "EWMA_LAMBDA",
    "compute_ewma_update",
    "PosteriorState",
    "compute_posterior_update",
    "sample_beta",
    "sample_gamma",
    "sample_normal",
    "sample_standard_normal",
]
