"""Tests for the posterior samplers and random sources."""

import math
import statistics

import pytest

from provider_router.estimators import sample_beta, sample_gamma, sample_normal, sample_standard_normal
from provider_router.random_source import SeededRandom, SequenceRandom


class TestRandomSources:
    def test_seeded_is_reproducible(self):
        a, b = SeededRandom(7), SeededRandom(7)
        assert [a.random() for _ in range(5)] == [b.random() for _ in range(5)]

    def test_reseed(self):
        rng = SeededRandom(1)
        first = rng.random()
        rng.reseed(1)
        assert rng.random() == first

    def test_sequence_cycles(self):
        rng = SequenceRandom([0.1, 0.2])
        assert [rng.random() for _ in range(4)] == [0.1, 0.2, 0.1, 0.2]

    def test_sequence_requires_values(self):
        with pytest.raises(ValueError):
            SequenceRandom([])


class TestNormal:
    def test_box_muller_rejects_zero(self):
        # The 0.0 draw is rejected; 0.5 and 0.0 give sqrt(-2 ln 0.5) * cos(0)
        value = sample_standard_normal(SequenceRandom([0.0, 0.5, 0.0]))
        assert value == pytest.approx(math.sqrt(-2.0 * math.log(0.5)))

    def test_zero_variance_is_floored(self):
        value = sample_normal(250.0, 0.0, SeededRandom(3))
        assert value == pytest.approx(250.0, abs=1e-3)

    def test_moments(self):
        rng = SeededRandom(11)
        draws = [sample_normal(10.0, 4.0, rng) for _ in range(4000)]
        assert statistics.fmean(draws) == pytest.approx(10.0, abs=0.15)
        assert statistics.pstdev(draws) == pytest.approx(2.0, abs=0.15)


class TestGamma:
    @pytest.mark.parametrize("shape", [0.5, 1.0, 3.0, 20.0])
    def test_mean_matches_shape(self, shape):
        rng = SeededRandom(5)
        draws = [sample_gamma(shape, rng) for _ in range(3000)]
        assert all(d >= 0 for d in draws)
        assert statistics.fmean(draws) == pytest.approx(shape, rel=0.1)


class TestBeta:
    def test_in_unit_interval(self):
        rng = SeededRandom(9)
        for a, b in [(1, 1), (0.0, 0.0), (-3, 2), (50, 2), (500, 400)]:
            value = sample_beta(a, b, rng)
            assert 0.0 <= value <= 1.0
            assert math.isfinite(value)

    def test_mean(self):
        rng = SeededRandom(13)
        draws = [sample_beta(8.0, 2.0, rng) for _ in range(3000)]
        assert statistics.fmean(draws) == pytest.approx(0.8, abs=0.02)

    def test_large_shapes_use_normal_approximation(self):
        rng = SeededRandom(17)
        draws = [sample_beta(900.0, 100.0, rng) for _ in range(2000)]
        assert statistics.fmean(draws) == pytest.approx(0.9, abs=0.005)

    def test_symmetric_shapes_center_on_half(self):
        rng = SeededRandom(21)
        draws = [sample_beta(3.0, 3.0, rng) for _ in range(3000)]
        assert statistics.fmean(draws) == pytest.approx(0.5, abs=0.02)

    def test_skewed_shapes(self):
        rng = SeededRandom(23)
        draws = [sample_beta(10.0, 2.0, rng) for _ in range(3000)]
        assert statistics.fmean(draws) == pytest.approx(10 / 12, abs=0.02)

    def test_tiny_shapes_stay_finite(self):
        rng = SeededRandom(29)
        for _ in range(200):
            value = sample_beta(0.001, 0.001, rng)
            assert math.isfinite(value)
            assert 0.0 <= value <= 1.0

    def test_different_seeds_diverge(self):
        a, b = SeededRandom(1), SeededRandom(2)
        assert [a.random() for _ in range(5)] != [b.random() for _ in range(5)]
