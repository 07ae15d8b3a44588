#!/usr/bin/env python3
"""
Substitution indicators and their lag covariance.

A substitution profile turns two aligned sequences into one float per
coordinate: 0.0 for identical bases, 1.0 for different bases and NaN for
coordinates excluded from the statistics (wrong codon role, or a base that
is not A/C/G/T).

`accumulate` then feeds one profile into the lag covariance accumulators.
The matrix functions compute the structure, mutation and rate covariances
of a stack of profiles that share one coordinate frame (one row per
compared pair of aligned genomes).
"""

import logging
from typing import Union

import numpy as np

from subcorr.profiling.position_profile import position_mask
from subcorr.statistics.accumulators import (
    Calculators,
    LagCovariance,
    MeanCovariance,
    MeanVariance,
)

logger = logging.getLogger(__name__)

# Lookup table of valid bases indexed by byte value.
VALID_BASES = np.zeros(256, dtype=bool)
VALID_BASES[np.frombuffer(b"ACGTacgt", dtype=np.uint8)] = True

# Minimum number of valid pairs for a matrix covariance to count.
MIN_MATRIX_PAIRS = 4

SequenceLike = Union[bytes, bytearray, str, np.ndarray]


def as_byte_array(seq: SequenceLike) -> np.ndarray:
    """View a sequence as a uint8 numpy array without copying bytes input."""
    if isinstance(seq, np.ndarray):
        return seq.astype(np.uint8, copy=False)
    if isinstance(seq, str):
        seq = seq.encode("ascii")
    return np.frombuffer(bytes(seq), dtype=np.uint8)


def substitution_profile(
    seq_a: SequenceLike, seq_b: SequenceLike, profile, position
) -> np.ndarray:
    """
    Compare two aligned sequences at the coordinates selected by a position type.

    Parameters:
        seq_a, seq_b: Aligned sequences of identical length.
        profile: Position profile codes covering the same coordinates.
        position: Target `PositionType`; THIRD also selects FOUR_FOLD sites.

    Returns:
        np.ndarray: float64 array, 0.0 = match, 1.0 = mismatch, NaN = excluded.

    Raises:
        ValueError: If the three inputs differ in length.
    """
    a = as_byte_array(seq_a)
    b = as_byte_array(seq_b)
    profile = np.asarray(profile, dtype=np.uint8)
    if not (a.size == b.size == profile.size):
        raise ValueError(
            f"Sequence and profile lengths differ: {a.size}, {b.size}, {profile.size}"
        )

    valid = position_mask(profile, position) & VALID_BASES[a] & VALID_BASES[b]
    # Bitwise OR with 0x20 lowercases ASCII letters.
    different = (a | 0x20) != (b | 0x20)

    subs = np.full(a.size, np.nan)
    subs[valid] = different[valid]
    return subs


def accumulate(
    subs,
    covariance: LagCovariance,
    diversity: MeanVariance,
    maxl: int = None,
) -> int:
    """
    Feed one substitution profile into the lag covariance accumulators.

    Every valid value goes into `diversity` and into lag 0 as ``(x, x)``.
    Each pair of valid coordinates ``i < j`` with ``j - i < maxl`` adds
    ``(x_i, x_j)`` at lag ``j - i``. Valid positions are increasing, so the
    scan over offsets stops at the first offset where no pair is still
    inside the window, bounding the work by ``len(subs) * maxl``.

    Parameters:
        subs: Substitution indicators (NaN = excluded).
        covariance (LagCovariance): Per-lag accumulator, updated in place.
        diversity (MeanVariance): Ks accumulator, updated in place.
        maxl (int): Maximum lag (exclusive). Defaults to the accumulator size
            and may not exceed it.

    Returns:
        int: Number of lag increments performed, including lag 0.
    """
    if maxl is None:
        maxl = covariance.maxl
    elif maxl > covariance.maxl:
        raise ValueError(f"maxl {maxl} exceeds the accumulator size {covariance.maxl}")

    subs = np.asarray(subs, dtype=float)
    positions = np.flatnonzero(~np.isnan(subs))
    if positions.size == 0:
        return 0

    values = subs[positions]
    diversity.increment_many(values)
    covariance.increment_lags(np.zeros(values.size, dtype=np.intp), values, values)
    n_increments = int(values.size)

    for offset in range(1, positions.size):
        lags = positions[offset:] - positions[:-offset]
        within = lags < maxl
        if not within.any():
            break
        covariance.increment_lags(
            lags[within], values[:-offset][within], values[offset:][within]
        )
        n_increments += int(within.sum())

    return n_increments


def _masked_covariance(xs: np.ndarray, ys: np.ndarray, axis: int):
    """
    Population covariance of paired values along one axis, ignoring NaN pairs.

    Returns the covariances and the number of valid pairs behind each one.
    """
    valid = ~(np.isnan(xs) | np.isnan(ys))
    n = valid.sum(axis=axis)
    x = np.where(valid, xs, 0.0)
    y = np.where(valid, ys, 0.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        mean_x = x.sum(axis=axis) / n
        mean_y = y.sum(axis=axis) / n
        cov = (x * y).sum(axis=axis) / n - mean_x * mean_y
    return cov, n


def _usable(cov: np.ndarray, n: np.ndarray) -> np.ndarray:
    return cov[(n >= MIN_MATRIX_PAIRS) & ~np.isnan(cov)]


def structure_covariance(matrix, accumulator: MeanCovariance, maxl: int = None) -> None:
    """Covariance across rows between columns ``i`` and ``i + lag``."""
    matrix = np.atleast_2d(np.asarray(matrix, dtype=float))
    n_cols = matrix.shape[1]
    maxl = accumulator.maxl if maxl is None else maxl
    for lag in range(min(maxl, n_cols)):
        cov, n = _masked_covariance(matrix[:, : n_cols - lag], matrix[:, lag:], axis=0)
        accumulator.increment_many(lag, _usable(cov, n))


def mutation_covariance(matrix, accumulator: MeanCovariance, maxl: int = None) -> None:
    """Covariance along each row between coordinates ``k`` and ``k + lag``."""
    matrix = np.atleast_2d(np.asarray(matrix, dtype=float))
    n_cols = matrix.shape[1]
    maxl = accumulator.maxl if maxl is None else maxl
    for lag in range(min(maxl, n_cols)):
        cov, n = _masked_covariance(matrix[:, : n_cols - lag], matrix[:, lag:], axis=1)
        accumulator.increment_many(lag, _usable(cov, n))


def column_means(matrix) -> np.ndarray:
    """Mean of every column over its valid rows, NaN for all-NaN columns."""
    matrix = np.atleast_2d(np.asarray(matrix, dtype=float))
    valid = ~np.isnan(matrix)
    counts = valid.sum(axis=0)
    totals = np.where(valid, matrix, 0.0).sum(axis=0)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(counts > 0, totals / counts, np.nan)


def rate_covariance(matrix, accumulator: MeanCovariance, maxl: int = None) -> None:
    """Covariance of the per-column substitution rates at distance ``lag``."""
    means = column_means(matrix)
    size = means.size
    maxl = accumulator.maxl if maxl is None else maxl
    for lag in range(min(maxl, size)):
        cov, n = _masked_covariance(means[: size - lag], means[lag:], axis=0)
        if n >= MIN_MATRIX_PAIRS and not np.isnan(cov):
            accumulator.increment(lag, float(cov))


def matrix_correlations(matrix, calculators: Calculators) -> None:
    """
    Accumulate every statistic of one substitution matrix.

    Each row goes through `accumulate` (Ks and the total covariance), then the
    structure, mutation and rate covariances are computed over the matrix.
    """
    matrix = np.atleast_2d(np.asarray(matrix, dtype=float))
    if matrix.shape[0] == 0 or matrix.shape[1] == 0:
        return

    for row in matrix:
        accumulate(row, calculators.total, calculators.ks)

    structure_covariance(matrix, calculators.structure)
    mutation_covariance(matrix, calculators.mutation)
    rate_covariance(matrix, calculators.rate)
