"""Tests for the statistics helpers."""

from __future__ import annotations

import pytest

from taste_engine import stats


class TestPearson:
    def test_fewer_than_five_points_is_zero(self) -> None:
        assert stats.pearson([1, 2, 3, 4], [1, 2, 3, 4]) == 0.0

    def test_constant_feature_is_exactly_zero(self) -> None:
        assert stats.pearson([1, 5, 3, 8, 9, 2], [0.7] * 6) == 0.0

    def test_constant_ratings_is_exactly_zero(self) -> None:
        assert stats.pearson([7.0] * 6, [0.1, 0.2, 0.3, 0.4, 0.5, 0.6]) == 0.0

    def test_perfect_positive(self) -> None:
        assert stats.pearson([1, 2, 3, 4, 5], [2, 4, 6, 8, 10]) == pytest.approx(1.0)

    def test_perfect_negative(self) -> None:
        assert stats.pearson([1, 2, 3, 4, 5], [5, 4, 3, 2, 1]) == pytest.approx(-1.0)


class TestWeightedMean:
    def test_empty_is_none(self) -> None:
        assert stats.weighted_mean([], []) is None

    def test_zero_total_weight_is_none(self) -> None:
        assert stats.weighted_mean([1.0, 2.0], [0.0, 0.0]) is None

    def test_weights_applied(self) -> None:
        assert stats.weighted_mean([0.0, 10.0], [1.0, 3.0]) == pytest.approx(7.5)


class TestPercentileBounds:
    def test_floor_index(self) -> None:
        assert stats.percentile_bounds([9, 0, 8, 1, 7, 2, 6, 3, 5, 4]) == (1.0, 9.0)

    def test_single_value(self) -> None:
        assert stats.percentile_bounds([0.4]) == (0.4, 0.4)

    def test_empty_raises(self) -> None:
        with pytest.raises(ValueError):
            stats.percentile_bounds([])


class TestMoments:
    def test_empty_sequences_are_zero(self) -> None:
        assert stats.mean([]) == 0.0
        assert stats.std_dev([]) == 0.0
        assert stats.variance([]) == 0.0

    def test_population_std_dev(self) -> None:
        values = [2, 4, 4, 4, 5, 5, 7, 9]
        assert stats.mean(values) == pytest.approx(5.0)
        assert stats.std_dev(values) == pytest.approx(2.0)
        assert stats.variance(values) == pytest.approx(4.0)

    def test_clamp(self) -> None:
        assert stats.clamp(-1, 0, 10) == 0
        assert stats.clamp(11, 0, 10) == 10
        assert stats.clamp(5, 0, 10) == 5
