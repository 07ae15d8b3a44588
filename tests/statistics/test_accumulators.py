#!/usr/bin/env python3
"""
Unit Tests for Streaming Accumulators
====================================

Test Coverage:
- Covariance results against numpy, bias correction and empty input
- Merge associativity for arbitrary partitions
- Lag covariance batch updates and bounds
- Mean/variance and mean-covariance merging
- Calculators bundle merging

Usage:
    python -m pytest tests/statistics/test_accumulators.py
"""

import math
import unittest

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from subcorr.statistics.accumulators import (
    Calculators,
    Covariance,
    LagCovariance,
    MeanCovariance,
    MeanVariance,
)


def population_cov(xs, ys):
    return float(np.cov(xs, ys, bias=True)[0, 1])


class TestCovariance(unittest.TestCase):
    """Test the scalar covariance accumulator."""

    def setUp(self):
        rng = np.random.default_rng(7)
        self.xs = rng.random(50)
        self.ys = 0.5 * self.xs + rng.random(50)

    def test_matches_population_covariance(self):
        cov = Covariance()
        for x, y in zip(self.xs, self.ys):
            cov.increment(x, y)
        self.assertEqual(cov.n, 50)
        self.assertAlmostEqual(cov.result(), population_cov(self.xs, self.ys))
        self.assertAlmostEqual(cov.mean_x(), self.xs.mean())
        self.assertAlmostEqual(cov.mean_y(), self.ys.mean())

    def test_bias_correction_matches_sample_covariance(self):
        cov = Covariance(bias_correction=True)
        for x, y in zip(self.xs, self.ys):
            cov.increment(x, y)
        self.assertAlmostEqual(cov.result(), float(np.cov(self.xs, self.ys)[0, 1]))

    def test_empty_accumulator_is_nan(self):
        cov = Covariance()
        self.assertEqual(cov.n, 0)
        self.assertTrue(math.isnan(cov.result()))
        self.assertTrue(math.isnan(cov.mean_x()))

    def test_single_observation(self):
        plain = Covariance()
        plain.increment(0.0, 1.0)
        self.assertEqual(plain.result(), 0.0)

        corrected = Covariance(bias_correction=True)
        corrected.increment(0.0, 1.0)
        self.assertTrue(math.isnan(corrected.result()))

    def test_merge_returns_self_and_leaves_other(self):
        a, b = Covariance(), Covariance()
        a.increment(1.0, 2.0)
        b.increment(3.0, 4.0)
        self.assertIs(a.merge(b), a)
        self.assertEqual(a.n, 2)
        self.assertEqual(b.n, 1)


@pytest.mark.parametrize("k", [1, 2, 3, 7, 50])
def test_covariance_merge_associativity(k):
    rng = np.random.default_rng(k)
    xs = rng.integers(0, 2, 200).astype(float)
    ys = rng.integers(0, 2, 200).astype(float)

    direct = Covariance()
    for x, y in zip(xs, ys):
        direct.increment(x, y)

    groups = np.array_split(rng.permutation(200), k)
    parts = []
    for group in groups:
        part = Covariance()
        for i in group:
            part.increment(xs[i], ys[i])
        parts.append(part)

    # Left fold and right fold give the same result.
    left = Covariance()
    for part in parts:
        left.merge(part)
    right = Covariance()
    for part in reversed(parts):
        right.merge(part)

    assert left.n == right.n == direct.n == 200
    assert left.result() == pytest.approx(direct.result())
    assert right.result() == pytest.approx(direct.result())


class TestMeanVariance(unittest.TestCase):
    """Test the Ks mean/variance accumulator."""

    def test_increment_matches_numpy(self):
        values = np.array([0, 1, 0, 0, 1, 1, 0, 0, 0], dtype=float)
        mv = MeanVariance()
        for v in values:
            mv.increment(v)
        self.assertEqual(mv.n, 9)
        self.assertAlmostEqual(mv.mean, values.mean())
        self.assertAlmostEqual(mv.variance, values.var(ddof=1))

    def test_increment_many_and_merge(self):
        rng = np.random.default_rng(3)
        values = rng.random(101)
        a, b = MeanVariance(), MeanVariance()
        a.increment_many(values[:40])
        for v in values[40:]:
            b.increment(v)
        a.merge(b)
        self.assertEqual(a.n, 101)
        self.assertAlmostEqual(a.mean, values.mean())
        self.assertAlmostEqual(a.variance, values.var(ddof=1))

    def test_population_variance(self):
        mv = MeanVariance(bias_correction=False)
        mv.increment_many([1.0, 3.0])
        self.assertAlmostEqual(mv.variance, 1.0)

    def test_empty_and_single(self):
        mv = MeanVariance()
        self.assertTrue(math.isnan(mv.mean))
        self.assertTrue(math.isnan(mv.variance))
        mv.increment(1.0)
        self.assertEqual(mv.mean, 1.0)
        self.assertTrue(math.isnan(mv.variance))

    def test_merge_empty(self):
        mv = MeanVariance()
        mv.increment_many([1.0, 2.0, 3.0])
        mv.merge(MeanVariance())
        self.assertEqual(mv.n, 3)
        self.assertAlmostEqual(mv.mean, 2.0)


class TestLagCovariance(unittest.TestCase):
    """Test the per-lag covariance array."""

    def test_increment_lags_matches_scalar_increments(self):
        rng = np.random.default_rng(11)
        lags = rng.integers(0, 5, 300)
        xs = rng.integers(0, 2, 300).astype(float)
        ys = rng.integers(0, 2, 300).astype(float)

        batch = LagCovariance(5)
        batch.increment_lags(lags, xs, ys)

        single = LagCovariance(5)
        for lag, x, y in zip(lags, xs, ys):
            single.increment(int(lag), x, y)

        assert_array_equal(batch.counts, single.counts)
        assert_allclose(batch.results(), single.results())
        for lag in range(5):
            mask = lags == lag
            self.assertAlmostEqual(batch.result(lag), population_cov(xs[mask], ys[mask]))
            self.assertEqual(batch[lag].n, int(mask.sum()))

    def test_empty_lags_report_nan(self):
        acc = LagCovariance(4)
        acc.increment(1, 1.0, 0.0)
        results = acc.results()
        self.assertTrue(np.isnan(results[0]))
        self.assertEqual(results[1], 0.0)
        self.assertEqual(acc.n(0), 0)
        self.assertEqual(acc.total_increments(), 1)

    def test_bias_correction_single_observation_is_nan(self):
        acc = LagCovariance(2, bias_correction=True)
        acc.increment(0, 1.0, 1.0)
        self.assertTrue(np.isnan(acc.result(0)))

    def test_out_of_range_lag_rejected(self):
        acc = LagCovariance(3)
        with self.assertRaises(IndexError):
            acc.increment(3, 0.0, 0.0)
        with self.assertRaises(IndexError):
            acc.increment_lags([0, 3], [0.0, 0.0], [0.0, 0.0])
        self.assertEqual(acc.total_increments(), 0)

    def test_merge_requires_same_size(self):
        with self.assertRaises(ValueError):
            LagCovariance(3).merge(LagCovariance(4))

    def test_invalid_size(self):
        with self.assertRaises(ValueError):
            LagCovariance(0)

    def test_mean_xy(self):
        acc = LagCovariance(2)
        acc.increment_lags([1, 1], [1.0, 0.0], [1.0, 1.0])
        self.assertAlmostEqual(acc.mean_xy()[1], 0.5)
        self.assertTrue(np.isnan(acc.mean_xy()[0]))


class TestMeanCovariance(unittest.TestCase):
    """Test per-lag means of covariance values."""

    def test_merge_matches_single_accumulator(self):
        rng = np.random.default_rng(5)
        values = rng.random(30)

        whole = MeanCovariance(3)
        whole.increment_many(1, values)

        a, b, c = MeanCovariance(3), MeanCovariance(3), MeanCovariance(3)
        a.increment_many(1, values[:10])
        for v in values[10:25]:
            b.increment(1, v)
        c.increment_many(1, values[25:])
        a.merge(c).merge(b)

        assert_array_equal(a.counts, whole.counts)
        assert_allclose(a.means()[1], values.mean())
        assert_allclose(a.variances()[1], whole.variances()[1])
        self.assertTrue(np.isnan(a.means()[0]))

    def test_merge_with_empty(self):
        acc = MeanCovariance(2)
        acc.increment_many(0, [1.0, 2.0])
        acc.merge(MeanCovariance(2))
        assert_allclose(acc.means()[0], 1.5)
        self.assertEqual(acc.counts[1], 0)


def test_calculators_merge_is_order_independent():
    rng = np.random.default_rng(21)
    parts = []
    for _ in range(4):
        calc = Calculators.new(6)
        values = rng.integers(0, 2, 20).astype(float)
        calc.ks.increment_many(values)
        calc.total.increment_lags(rng.integers(0, 6, 20), values, values[::-1])
        calc.structure.increment_many(2, rng.random(5))
        parts.append(calc)

    forward = Calculators.new(6)
    for part in parts:
        forward.merge(part)
    backward = Calculators.new(6)
    for part in reversed(parts):
        backward.merge(part)

    assert forward.ks.n == backward.ks.n == 80
    assert forward.ks.mean == pytest.approx(backward.ks.mean)
    assert_allclose(forward.total.results(), backward.total.results(), equal_nan=True)
    assert_allclose(forward.structure.means(), backward.structure.means(), equal_nan=True)
    assert forward.maxl == 6
