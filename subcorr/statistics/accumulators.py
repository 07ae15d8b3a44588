#!/usr/bin/env python3
"""
Streaming accumulators for substitution statistics.

All accumulators here keep sufficient statistics only, support O(1)
increments and an associative, commutative ``merge``. That is what lets the
comparison strategies hand a private accumulator to every worker and fold
the results together afterwards in whatever order they arrive.

NaN inputs must be filtered by the caller; the accumulators never inspect
their inputs.
"""

import math
from dataclasses import dataclass

import numpy as np


class Covariance:
    """
    Covariance of paired observations from the sums x, y, xy and the count.

    The result is the population covariance ``Sxy/n - (Sx/n)(Sy/n)``. With
    ``bias_correction`` the value is scaled by ``n/(n-1)`` and is NaN while
    ``n <= 1``. An empty accumulator reports NaN.
    """

    __slots__ = ("sum_x", "sum_y", "sum_xy", "count", "bias_correction")

    def __init__(self, bias_correction: bool = False):
        self.sum_x = 0.0
        self.sum_y = 0.0
        self.sum_xy = 0.0
        self.count = 0
        self.bias_correction = bias_correction

    def increment(self, x: float, y: float) -> None:
        self.sum_x += x
        self.sum_y += y
        self.sum_xy += x * y
        self.count += 1

    def merge(self, other: "Covariance") -> "Covariance":
        self.sum_x += other.sum_x
        self.sum_y += other.sum_y
        self.sum_xy += other.sum_xy
        self.count += other.count
        return self

    @property
    def n(self) -> int:
        return self.count

    def mean_x(self) -> float:
        return self.sum_x / self.count if self.count else math.nan

    def mean_y(self) -> float:
        return self.sum_y / self.count if self.count else math.nan

    def result(self) -> float:
        n = self.count
        if n == 0:
            return math.nan
        cov = self.sum_xy / n - (self.sum_x / n) * (self.sum_y / n)
        if self.bias_correction:
            if n <= 1:
                return math.nan
            cov *= n / (n - 1)
        return cov

    def __repr__(self):
        return f"Covariance(n={self.count}, result={self.result():.6g})"


class MeanVariance:
    """
    Running mean and variance (Welford updates, Chan et al. merge).

    ``bias_correction=True`` reports the sample variance (NaN while n <= 1),
    otherwise the population variance. Empty accumulators report NaN.
    """

    __slots__ = ("count", "_mean", "_m2", "bias_correction")

    def __init__(self, bias_correction: bool = True):
        self.count = 0
        self._mean = 0.0
        self._m2 = 0.0
        self.bias_correction = bias_correction

    def increment(self, value: float) -> None:
        self.count += 1
        delta = value - self._mean
        self._mean += delta / self.count
        self._m2 += delta * (value - self._mean)

    def increment_many(self, values) -> None:
        values = np.asarray(values, dtype=float)
        if values.size == 0:
            return
        batch_mean = float(values.mean())
        batch_m2 = float(((values - batch_mean) ** 2).sum())
        self._combine(values.size, batch_mean, batch_m2)

    def merge(self, other: "MeanVariance") -> "MeanVariance":
        self._combine(other.count, other._mean, other._m2)
        return self

    def _combine(self, n_b: int, mean_b: float, m2_b: float) -> None:
        if n_b == 0:
            return
        n = self.count + n_b
        delta = mean_b - self._mean
        self._mean += delta * n_b / n
        self._m2 += m2_b + delta * delta * self.count * n_b / n
        self.count = n

    @property
    def n(self) -> int:
        return self.count

    @property
    def mean(self) -> float:
        return self._mean if self.count else math.nan

    @property
    def variance(self) -> float:
        if self.count == 0:
            return math.nan
        if self.bias_correction:
            if self.count <= 1:
                return math.nan
            return self._m2 / (self.count - 1)
        return self._m2 / self.count

    def __repr__(self):
        return f"MeanVariance(n={self.count}, mean={self.mean:.6g}, var={self.variance:.6g})"


class LagCovariance:
    """
    One covariance accumulator per genomic lag ``0 .. maxl-1``.

    The per-lag sums live in numpy arrays so a batch of observations that
    fall on many different lags can be added with a single ``bincount``.
    """

    def __init__(self, maxl: int, bias_correction: bool = False):
        if maxl <= 0:
            raise ValueError(f"maxl must be a positive integer, got {maxl}")
        self.bias_correction = bias_correction
        self.sum_x = np.zeros(maxl)
        self.sum_y = np.zeros(maxl)
        self.sum_xy = np.zeros(maxl)
        self.counts = np.zeros(maxl, dtype=np.int64)

    @property
    def maxl(self) -> int:
        return self.counts.size

    def increment(self, lag: int, x: float, y: float) -> None:
        if not 0 <= lag < self.maxl:
            raise IndexError(f"lag {lag} outside 0..{self.maxl - 1}")
        self.sum_x[lag] += x
        self.sum_y[lag] += y
        self.sum_xy[lag] += x * y
        self.counts[lag] += 1

    def increment_lags(self, lags, xs, ys) -> None:
        """Add the pairs ``(xs[k], ys[k])`` to the accumulators at ``lags[k]``."""
        lags = np.asarray(lags, dtype=np.intp)
        if lags.size == 0:
            return
        if lags.min() < 0 or lags.max() >= self.maxl:
            raise IndexError(f"lags must lie within 0..{self.maxl - 1}")
        xs = np.asarray(xs, dtype=float)
        ys = np.asarray(ys, dtype=float)
        size = self.maxl
        self.sum_x += np.bincount(lags, weights=xs, minlength=size)
        self.sum_y += np.bincount(lags, weights=ys, minlength=size)
        self.sum_xy += np.bincount(lags, weights=xs * ys, minlength=size)
        self.counts += np.bincount(lags, minlength=size)

    def merge(self, other: "LagCovariance") -> "LagCovariance":
        if other.maxl != self.maxl:
            raise ValueError(
                f"Cannot merge lag covariances of different sizes ({self.maxl} vs {other.maxl})"
            )
        self.sum_x += other.sum_x
        self.sum_y += other.sum_y
        self.sum_xy += other.sum_xy
        self.counts += other.counts
        return self

    def n(self, lag: int) -> int:
        return int(self.counts[lag])

    def result(self, lag: int) -> float:
        return float(self.results()[lag])

    def results(self) -> np.ndarray:
        """Covariance at every lag, NaN where undefined."""
        n = self.counts.astype(float)
        with np.errstate(divide="ignore", invalid="ignore"):
            cov = self.sum_xy / n - (self.sum_x / n) * (self.sum_y / n)
            if self.bias_correction:
                cov = np.where(self.counts > 1, cov * n / (n - 1), np.nan)
        cov[self.counts == 0] = np.nan
        return cov

    def mean_xy(self) -> np.ndarray:
        """Product of the x and y means at every lag, NaN where empty."""
        n = self.counts.astype(float)
        with np.errstate(divide="ignore", invalid="ignore"):
            return (self.sum_x / n) * (self.sum_y / n)

    def total_increments(self) -> int:
        return int(self.counts.sum())

    def __getitem__(self, lag: int) -> Covariance:
        cov = Covariance(self.bias_correction)
        cov.sum_x = float(self.sum_x[lag])
        cov.sum_y = float(self.sum_y[lag])
        cov.sum_xy = float(self.sum_xy[lag])
        cov.count = int(self.counts[lag])
        return cov

    def __len__(self):
        return self.maxl


class MeanCovariance:
    """
    Per-lag running mean/variance of covariance values.

    Used for the structure, mutation and rate covariances, where every
    contributing value is itself a covariance computed over a substitution
    matrix slice.
    """

    def __init__(self, maxl: int, bias_correction: bool = False):
        if maxl <= 0:
            raise ValueError(f"maxl must be a positive integer, got {maxl}")
        self.bias_correction = bias_correction
        self.counts = np.zeros(maxl, dtype=np.int64)
        self._means = np.zeros(maxl)
        self._m2 = np.zeros(maxl)

    @property
    def maxl(self) -> int:
        return self.counts.size

    def increment_many(self, lag: int, values) -> None:
        values = np.asarray(values, dtype=float)
        if values.size == 0:
            return
        batch_mean = float(values.mean())
        batch_m2 = float(((values - batch_mean) ** 2).sum())
        self._combine(lag, values.size, batch_mean, batch_m2)

    def increment(self, lag: int, value: float) -> None:
        self._combine(lag, 1, float(value), 0.0)

    def _combine(self, lag, n_b, mean_b, m2_b):
        n_a = self.counts[lag]
        n = n_a + n_b
        delta = mean_b - self._means[lag]
        self._means[lag] += delta * n_b / n
        self._m2[lag] += m2_b + delta * delta * n_a * n_b / n
        self.counts[lag] = n

    def merge(self, other: "MeanCovariance") -> "MeanCovariance":
        if other.maxl != self.maxl:
            raise ValueError(
                f"Cannot merge mean covariances of different sizes ({self.maxl} vs {other.maxl})"
            )
        n_a = self.counts.astype(float)
        n_b = other.counts.astype(float)
        n = n_a + n_b
        filled = n > 0
        delta = other._means - self._means
        with np.errstate(divide="ignore", invalid="ignore"):
            self._means = np.where(filled, self._means + delta * n_b / n, 0.0)
            self._m2 = np.where(
                filled, self._m2 + other._m2 + delta * delta * n_a * n_b / n, 0.0
            )
        self.counts = self.counts + other.counts
        return self

    def means(self) -> np.ndarray:
        return np.where(self.counts > 0, self._means, np.nan)

    def variances(self) -> np.ndarray:
        n = self.counts.astype(float)
        with np.errstate(divide="ignore", invalid="ignore"):
            if self.bias_correction:
                return np.where(self.counts > 1, self._m2 / (n - 1), np.nan)
            return np.where(self.counts > 0, self._m2 / n, np.nan)


@dataclass
class Calculators:
    """
    Every statistic collected for one comparison strategy run.

    ks: mean/variance of the lag-0 substitution indicator (diversity).
    total: lag covariance of substitutions (Ct).
    structure, mutation, rate: mean covariances over substitution matrices
        (Cs, Cm, Cr); only filled by the genome strategies.
    """

    ks: MeanVariance
    total: LagCovariance
    structure: MeanCovariance
    mutation: MeanCovariance
    rate: MeanCovariance

    @classmethod
    def new(cls, maxl: int, bias_correction: bool = False) -> "Calculators":
        return cls(
            ks=MeanVariance(bias_correction=True),
            total=LagCovariance(maxl, bias_correction),
            structure=MeanCovariance(maxl, bias_correction),
            mutation=MeanCovariance(maxl, bias_correction),
            rate=MeanCovariance(maxl, bias_correction),
        )

    @property
    def maxl(self) -> int:
        return self.total.maxl

    def merge(self, other: "Calculators") -> "Calculators":
        self.ks.merge(other.ks)
        self.total.merge(other.total)
        self.structure.merge(other.structure)
        self.mutation.merge(other.mutation)
        self.rate.merge(other.rate)
        return self
