#!/usr/bin/env python3
"""
Unit Tests for Substitution Profiles and Lag Accumulation
========================================================

Test Coverage:
- Substitution indicators at the selected codon positions
- Case-insensitive comparison and invalid bases
- Lag covariance accumulation against a brute-force pair scan
- Lag window bound and all-excluded profiles
- Structure, mutation and rate covariances of small matrices

Usage:
    python -m pytest tests/analysis/test_substitutions.py
"""

import logging
import unittest

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from subcorr.analysis.substitutions import (
    accumulate,
    column_means,
    matrix_correlations,
    mutation_covariance,
    rate_covariance,
    structure_covariance,
    substitution_profile,
)
from subcorr.profiling.position_profile import PositionType
from subcorr.statistics.accumulators import (
    Calculators,
    LagCovariance,
    MeanCovariance,
    MeanVariance,
)

logging.getLogger().setLevel(logging.WARNING)

F1, F2, F3, FF = (
    PositionType.FIRST,
    PositionType.SECOND,
    PositionType.THIRD,
    PositionType.FOUR_FOLD,
)


class TestSubstitutionProfile(unittest.TestCase):
    """Test conversion of aligned sequences to 0/1/NaN indicators."""

    def setUp(self):
        self.profile = np.array([F1, F2, F3, F1, F2, F3], dtype=np.uint8)

    def test_third_positions(self):
        subs = substitution_profile(b"ATGATG", b"ATGATC", self.profile, F3)
        self.assertEqual(subs.dtype, np.float64)
        self.assertTrue(np.isnan(subs[[0, 1, 3, 4]]).all())
        self.assertEqual(subs[2], 0.0)
        self.assertEqual(subs[5], 1.0)

    def test_first_positions(self):
        subs = substitution_profile("ATGCTG", "ATGATG", self.profile, F1)
        self.assertEqual(subs[0], 0.0)
        self.assertEqual(subs[3], 1.0)
        self.assertEqual(int(np.isnan(subs).sum()), 4)

    def test_comparison_ignores_case(self):
        subs = substitution_profile(b"atgatg", b"ATGATC", self.profile, F3)
        self.assertEqual(subs[2], 0.0)
        self.assertEqual(subs[5], 1.0)

    def test_invalid_bases_are_excluded(self):
        subs = substitution_profile(b"ATNATG", b"ATGAT*", self.profile, F3)
        self.assertTrue(np.isnan(subs).all())

    def test_coding_wildcard_selects_every_codon_position(self):
        subs = substitution_profile(b"ATGATG", b"ATGATC", self.profile, PositionType.CODING)
        assert_array_equal(subs, [0, 0, 0, 0, 0, 1])

    def test_length_mismatch_raises(self):
        with self.assertRaises(ValueError):
            substitution_profile(b"ATG", b"ATGA", self.profile[:3], F3)
        with self.assertRaises(ValueError):
            substitution_profile(b"ATG", b"ATG", self.profile, F3)


def brute_force(subs, maxl):
    """Per-lag pair lists from a direct double loop."""
    pairs = {lag: [] for lag in range(maxl)}
    valid = [i for i, v in enumerate(subs) if not np.isnan(v)]
    for a in valid:
        for b in valid:
            if a <= b and b - a < maxl:
                pairs[b - a].append((subs[a], subs[b]))
    return pairs


class TestAccumulate(unittest.TestCase):
    """Test lag covariance accumulation of a single profile."""

    def test_matches_brute_force(self):
        rng = np.random.default_rng(13)
        subs = rng.integers(0, 2, 80).astype(float)
        subs[rng.random(80) < 0.4] = np.nan
        maxl = 12

        covariance = LagCovariance(maxl)
        diversity = MeanVariance()
        n = accumulate(subs, covariance, diversity)

        expected = brute_force(subs, maxl)
        self.assertEqual(n, sum(len(p) for p in expected.values()))
        for lag, pairs in expected.items():
            self.assertEqual(covariance.n(lag), len(pairs))
            if pairs:
                xs, ys = np.array(pairs).T
                self.assertAlmostEqual(
                    covariance.result(lag), float(np.mean(xs * ys) - xs.mean() * ys.mean())
                )
        valid = subs[~np.isnan(subs)]
        self.assertEqual(diversity.n, valid.size)
        self.assertAlmostEqual(diversity.mean, valid.mean())

    def test_lag_zero_is_variance(self):
        subs = np.array([0, 1, 0, 0, 1, 1, 0, 0, 0], dtype=float)
        covariance = LagCovariance(3)
        accumulate(subs, covariance, MeanVariance())
        self.assertEqual(covariance.n(0), 9)
        self.assertAlmostEqual(covariance.result(0), subs.var())

    def test_work_is_bounded_by_window(self):
        subs = np.zeros(200)
        covariance = LagCovariance(50)
        n = accumulate(subs, covariance, MeanVariance(), maxl=10)
        self.assertLessEqual(n, subs.size * 10)
        self.assertEqual(covariance.counts[10:].sum(), 0)
        self.assertEqual(covariance.n(9), 191)

    def test_all_excluded_leaves_accumulators_untouched(self):
        covariance = LagCovariance(5)
        diversity = MeanVariance()
        self.assertEqual(accumulate(np.full(20, np.nan), covariance, diversity), 0)
        self.assertEqual(covariance.total_increments(), 0)
        self.assertEqual(diversity.n, 0)

    def test_maxl_larger_than_accumulator_rejected(self):
        with self.assertRaises(ValueError):
            accumulate(np.zeros(4), LagCovariance(3), MeanVariance(), maxl=4)


@pytest.mark.parametrize("seed", [1, 5, 17])
def test_accumulate_merge_matches_single_pass(seed):
    rng = np.random.default_rng(seed)
    rows = [rng.integers(0, 2, 40).astype(float) for _ in range(6)]

    single = Calculators.new(8)
    for row in rows:
        accumulate(row, single.total, single.ks)

    parts = []
    for chunk in (rows[:2], rows[2:3], rows[3:]):
        calc = Calculators.new(8)
        for row in chunk:
            accumulate(row, calc.total, calc.ks)
        parts.append(calc)
    merged = Calculators.new(8)
    for calc in parts[::-1]:
        merged.merge(calc)

    assert_array_equal(merged.total.counts, single.total.counts)
    assert_allclose(merged.total.results(), single.total.results())
    assert merged.ks.mean == pytest.approx(single.ks.mean)


class TestMatrixCovariances(unittest.TestCase):
    """Test the covariances computed over a substitution matrix."""

    def setUp(self):
        self.matrix = np.array(
            [
                [0, 1, 0],
                [1, 1, 0],
                [0, 0, 1],
                [1, 0, 0],
            ],
            dtype=float,
        )

    def test_structure_lag_zero_is_column_variance(self):
        acc = MeanCovariance(3)
        structure_covariance(self.matrix, acc)
        self.assertEqual(acc.counts[0], 3)
        expected = self.matrix.var(axis=0).mean()
        self.assertAlmostEqual(acc.means()[0], expected)
        # Lag 1 pairs columns 0/1 and 1/2 over four rows.
        self.assertEqual(acc.counts[1], 2)

    def test_mutation_needs_four_pairs_per_row(self):
        acc = MeanCovariance(3)
        mutation_covariance(self.matrix, acc)
        self.assertEqual(acc.counts.sum(), 0)

        wide = np.tile(self.matrix, 2)
        mutation_covariance(wide, acc)
        self.assertEqual(acc.counts[0], 4)
        assert_allclose(acc.means()[0], wide.var(axis=1).mean())

    def test_rate_covariance(self):
        matrix = np.array([[0, 1, 0, 1, 1, 0], [0, 1, 1, 1, 0, 0]], dtype=float)
        means = column_means(matrix)
        assert_allclose(means, [0, 1, 0.5, 1, 0.5, 0])

        acc = MeanCovariance(4)
        rate_covariance(matrix, acc)
        self.assertEqual(acc.counts[0], 1)
        self.assertAlmostEqual(acc.means()[0], means.var())
        # Lag 3 has only three column pairs.
        self.assertEqual(acc.counts[3], 0)

    def test_nan_cells_reduce_pair_counts(self):
        matrix = self.matrix.copy()
        matrix[0, 0] = np.nan
        acc = MeanCovariance(1)
        structure_covariance(matrix, acc)
        # Column 0 is left with three valid rows.
        self.assertEqual(acc.counts[0], 2)

    def test_matrix_correlations_fills_every_statistic(self):
        matrix = np.tile(self.matrix, 2)
        calc = Calculators.new(3)
        matrix_correlations(matrix, calc)
        self.assertEqual(calc.ks.n, matrix.size)
        self.assertGreater(calc.total.total_increments(), 0)
        self.assertGreater(calc.structure.counts[0], 0)
        self.assertGreater(calc.mutation.counts[0], 0)
        self.assertGreater(calc.rate.counts[0], 0)

    def test_empty_matrix_is_ignored(self):
        calc = Calculators.new(3)
        matrix_correlations(np.empty((0, 5)), calc)
        self.assertEqual(calc.ks.n, 0)
