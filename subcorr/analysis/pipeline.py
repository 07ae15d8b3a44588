#!/usr/bin/env python3
"""
Map-reduce execution of comparison units.

The producer is a generator of `ComparisonUnit` objects, batched into work
items. Work items are processed by a `multiprocessing.Pool` whose workers
receive the read-only reference profile once, through the pool initializer.
Every work item is turned into fresh, private `Calculators` that travel
back through the pool's result channel; the calling process merges them
one by one in arrival order.
"""

import logging
import math
import threading
from dataclasses import dataclass, field
from multiprocessing import Pool
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from tqdm import tqdm

from subcorr.analysis.substitutions import (
    accumulate,
    matrix_correlations,
    substitution_profile,
)
from subcorr.statistics.accumulators import Calculators

logger = logging.getLogger(__name__)


@dataclass
class ComparisonUnit:
    """
    Pairs of aligned sequences sharing one window of the reference profile.

    Attributes:
        label: Read name or alignment record id, used in log messages.
        start, stop: 0-based half-open window on the reference profile.
        reverse: Read the profile window backwards (negative-strand genes).
        pairs: ``(seq_a, seq_b)`` tuples; every sequence covers the first
            ``len(seq_a)`` coordinates of the (possibly reversed) window.
        matrix: Also compute the structure, mutation and rate covariances
            of the stacked pairs.
        group: Bootstrap resampling group. Units sharing a group are kept as
            one calculator; None keeps the unit on its own.
    """

    label: str
    start: int
    stop: int
    pairs: Sequence[Tuple[bytes, bytes]]
    reverse: bool = False
    matrix: bool = False
    group: Optional[int] = None


@dataclass
class WorkerContext:
    profile: np.ndarray
    maxl: int
    position: int
    bias_correction: bool = False
    keep_units: bool = False


@dataclass
class PipelineResult:
    calculators: Calculators
    units: Optional[List[Calculators]] = None
    n_units: int = 0
    n_skipped: int = 0
    complete: bool = True
    skipped: List[str] = field(default_factory=list)


# Worker-process state, set by init_worker.
worker_context: Optional[WorkerContext] = None


def init_worker(context: WorkerContext) -> None:
    """Install the shared, read-only reference context in a worker process."""
    global worker_context
    worker_context = context


def profile_window(profile: np.ndarray, unit: ComparisonUnit) -> np.ndarray:
    window = profile[unit.start : unit.stop]
    if unit.reverse:
        window = window[::-1]
    return window


def check_unit(unit: ComparisonUnit, window: np.ndarray) -> Optional[str]:
    """Describe why a unit cannot be compared, or return None when it can."""
    if unit.start < 0 or unit.stop < unit.start:
        return f"{unit.label}: invalid window {unit.start:,}..{unit.stop:,}"
    if unit.stop - unit.start != window.size:
        return (
            f"{unit.label}: window {unit.start:,}..{unit.stop:,} exceeds the "
            f"reference profile"
        )
    for seq_a, seq_b in unit.pairs:
        if len(seq_a) != len(seq_b):
            return (
                f"{unit.label}: aligned sequence lengths differ "
                f"({len(seq_a):,} vs {len(seq_b):,})"
            )
        if len(seq_a) > window.size:
            return (
                f"{unit.label}: sequence of length {len(seq_a):,} is longer than "
                f"its profile window ({window.size:,})"
            )
    if unit.matrix and len({len(seq_a) for seq_a, _ in unit.pairs}) > 1:
        return f"{unit.label}: rows of one substitution matrix differ in length"
    return None


def compare_unit(
    unit: ComparisonUnit,
    profile: np.ndarray,
    calculators: Calculators,
    position,
) -> Optional[str]:
    """
    Feed every pair of a unit into `calculators`.

    The whole unit is validated before anything is accumulated, so a
    rejected unit leaves `calculators` untouched.

    Returns:
        str | None: Reason the unit was skipped, None when it was processed.
    """
    window = profile_window(profile, unit)
    problem = check_unit(unit, window)
    if problem is not None:
        return problem

    rows = [
        substitution_profile(seq_a, seq_b, window[: len(seq_a)], position)
        for seq_a, seq_b in unit.pairs
    ]
    if unit.matrix:
        if rows:
            matrix_correlations(np.vstack(rows), calculators)
    else:
        for subs in rows:
            accumulate(subs, calculators.total, calculators.ks)
    return None


def process_units(
    batch: List[ComparisonUnit], context: WorkerContext
) -> Tuple[List[Calculators], List[Optional[int]], int, List[str]]:
    """
    Process one work item.

    Returns:
        tuple: (calculators, groups, number of processed units, skip
        messages). Without ``context.keep_units`` there is a single merged
        entry with group None. With it there is one entry per resampling
        group present in the batch (one per unit for ungrouped units), and
        ``groups`` names the group of each entry.
    """
    skipped = []
    n_done = 0
    if not context.keep_units:
        merged = Calculators.new(context.maxl, context.bias_correction)
        for unit in batch:
            problem = compare_unit(unit, context.profile, merged, context.position)
            if problem is not None:
                skipped.append(problem)
                continue
            n_done += 1
        return [merged], [None], n_done, skipped

    results = []
    groups = []
    by_group = {}
    for unit in batch:
        calc = by_group.get(unit.group) if unit.group is not None else None
        is_new = calc is None
        if is_new:
            calc = Calculators.new(context.maxl, context.bias_correction)
        # Rejected units leave calc untouched.
        problem = compare_unit(unit, context.profile, calc, context.position)
        if problem is not None:
            skipped.append(problem)
            continue
        n_done += 1
        if is_new:
            results.append(calc)
            groups.append(unit.group)
            if unit.group is not None:
                by_group[unit.group] = calc
    return results, groups, n_done, skipped


def process_batch(batch: List[ComparisonUnit]):
    """Pool entry point; uses the context installed by `init_worker`."""
    if worker_context is None:
        raise RuntimeError("Worker context is not initialized; call init_worker first.")
    return process_units(batch, worker_context)


class BatchProducer:
    """
    Batch comparison units into work items, stopping early on cancellation.

    ``exhausted`` becomes True only once every unit has been handed out.
    """

    def __init__(
        self,
        units: Iterable[ComparisonUnit],
        chunk_size: int,
        cancel: Optional[threading.Event] = None,
    ):
        self.units = units
        self.chunk_size = chunk_size
        self.cancel = cancel
        self.exhausted = False

    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    def __iter__(self):
        batch = []
        for unit in self.units:
            if self.cancelled():
                return
            batch.append(unit)
            if len(batch) >= self.chunk_size:
                yield batch
                batch = []
        if self.cancelled():
            return
        if batch:
            yield batch
        self.exhausted = True


def run_pipeline(
    units: Iterable[ComparisonUnit],
    context: WorkerContext,
    cpus: int = 1,
    chunk_size: int = 64,
    cancel: Optional[threading.Event] = None,
    total_units: Optional[int] = None,
    desc: str = "Comparing",
    log: Optional[logging.Logger] = None,
) -> PipelineResult:
    """
    Run every comparison unit and merge the per-batch calculators.

    Parameters:
        units: Comparison units, produced lazily.
        context (WorkerContext): Reference profile and accumulator settings.
        cpus (int): Worker processes; 1 processes everything in-process.
        chunk_size (int): Units per work item.
        cancel (threading.Event): Stops the producer when set. Work already
            handed out is drained and the result is flagged incomplete.
        total_units (int): Number of units, for the progress bar only.
        desc (str): Progress bar label.
        log (logging.Logger): Receives skip warnings; module logger if None.

    Returns:
        PipelineResult: Merged calculators, optional per-group calculators,
        counts and completeness flag.
    """
    log = log or logger
    producer = BatchProducer(units, chunk_size, cancel)
    total = math.ceil(total_units / chunk_size) if total_units else None

    merged = Calculators.new(context.maxl, context.bias_correction)
    kept = [] if context.keep_units else None
    kept_groups = {}
    n_units = 0
    skipped = []

    def collect(outcome):
        nonlocal n_units
        calculators, groups, n_done, messages = outcome
        for calc, group in zip(calculators, groups):
            merged.merge(calc)
            if kept is None:
                continue
            # A group can be split over several work items.
            if group is not None and group in kept_groups:
                kept_groups[group].merge(calc)
                continue
            if group is not None:
                kept_groups[group] = calc
            kept.append(calc)
        n_units += n_done
        for message in messages:
            log.warning(f"Skipping comparison unit {message}")
        skipped.extend(messages)

    if cpus == 1:
        for batch in tqdm(producer, total=total, desc=desc, unit="batch"):
            collect(process_units(batch, context))
    else:
        with Pool(processes=cpus, initializer=init_worker, initargs=(context,)) as pool:
            for outcome in tqdm(
                pool.imap_unordered(process_batch, producer),
                total=total,
                desc=desc,
                unit="batch",
            ):
                collect(outcome)

    complete = producer.exhausted
    if not complete:
        log.warning(
            f"Comparison cancelled after {n_units:,} units; results are partial."
        )
    log.info(
        f"{desc}: {n_units:,} units compared, {len(skipped):,} skipped, "
        f"{merged.ks.n:,} sites."
    )
    return PipelineResult(
        calculators=merged,
        units=kept,
        n_units=n_units,
        n_skipped=len(skipped),
        complete=complete,
        skipped=skipped,
    )
