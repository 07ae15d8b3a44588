#!/usr/bin/env python3
"""
Comparison strategies.

A strategy decides which pairs of aligned sequences are compared; the
comparison itself is shared (see `subcorr.analysis.pipeline`). Four
strategies are registered in `STRATEGIES`:

- ``reads-vs-reads``: every pair of overlapping read windows, restricted to
  their overlap.
- ``reads-vs-genome``: every read window against the reference sequence.
- ``genome-vs-genome``: in each ortholog alignment, the reference genome's
  row against every row from another genome.
- ``genome-vs-genomes``: in each ortholog alignment, every pair of rows.

The genome strategies also accumulate the structure, mutation and rate
covariances of each alignment's substitution matrix.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional

import numpy as np
from Bio.Seq import reverse_complement

from subcorr.analysis.pipeline import ComparisonUnit, WorkerContext, run_pipeline
from subcorr.profiling.position_profile import PositionType, parse_position_type
from subcorr.statistics.accumulators import Calculators
from subcorr.utilities.alignments import GAP_CHARACTERS, AlignedRecord
from subcorr.utilities.genome_io import GenomeSequence
from subcorr.utilities.reads import MappedRead

logger = logging.getLogger(__name__)

# Reference rows may be shorter than their gene by a trimmed stop codon.
STOP_CODON_SLACK = 3

GAP_CODES = np.frombuffer(GAP_CHARACTERS, dtype=np.uint8)


@dataclass
class CorrelationSettings:
    """
    Validated parameters of one correlation run.

    Parameters:
        maxl (int): Maximum lag (exclusive), > 0.
        position (PositionType): Target position type; any form accepted by
            `parse_position_type`.
        bias_correction (bool): Scale covariances by n/(n-1); lags with a
            single observation then report NaN instead of 0.0.
        cpus (int): Worker processes.
        chunk_size (int): Comparison units per work item.
    """

    maxl: int
    position: PositionType = PositionType.FOUR_FOLD
    bias_correction: bool = False
    cpus: int = 1
    chunk_size: int = 64

    def __post_init__(self):
        if isinstance(self.maxl, bool) or not isinstance(self.maxl, (int, np.integer)):
            raise ValueError(f"maxl must be an integer, got {self.maxl!r}")
        if self.maxl <= 0:
            raise ValueError(f"maxl must be positive, got {self.maxl}")
        self.maxl = int(self.maxl)
        self.position = parse_position_type(self.position, target=True)
        if self.cpus < 1:
            raise ValueError(f"cpus must be at least 1, got {self.cpus}")
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be at least 1, got {self.chunk_size}")


@dataclass
class StrategyResult:
    strategy: str
    position: PositionType
    calculators: Calculators
    n_units: int
    n_skipped: int
    complete: bool
    replicates: List[Calculators] = field(default_factory=list)


def _same_contig(read: MappedRead, genome: GenomeSequence) -> bool:
    return read.reference is None or read.reference == genome.accession


def reads_vs_genome_units(
    reads: List[MappedRead], genome: GenomeSequence, log: logging.Logger = logger
) -> Iterator[ComparisonUnit]:
    """Compare each read window with the reference window it maps to."""
    genome_length = len(genome)
    for read in reads:
        if not _same_contig(read, genome):
            continue
        if read.start < 0 or read.end > genome_length:
            log.warning(
                f"Skipping read {read.name}: window {read.start:,}..{read.end:,} "
                f"exceeds the reference length {genome_length:,}"
            )
            continue
        yield ComparisonUnit(
            label=read.name,
            start=read.start,
            stop=read.end,
            pairs=((genome.sequence[read.start : read.end], read.sequence),),
        )


def reads_vs_reads_units(
    reads: List[MappedRead], genome: GenomeSequence, log: logging.Logger = logger
) -> Iterator[ComparisonUnit]:
    """
    Compare every pair of overlapping read windows over their overlap.

    Reads are sorted by right edge here, so scanning backwards from a read
    can stop at the first earlier read that ends at or before its start.
    """
    genome_length = len(genome)
    usable = []
    for read in reads:
        if not _same_contig(read, genome):
            continue
        if read.start < 0 or read.end > genome_length:
            log.warning(
                f"Skipping read {read.name}: window {read.start:,}..{read.end:,} "
                f"exceeds the reference length {genome_length:,}"
            )
            continue
        usable.append(read)
    usable.sort(key=lambda r: r.end)

    for i, current in enumerate(usable):
        for j in range(i - 1, -1, -1):
            other = usable[j]
            if other.end <= current.start:
                break
            start = max(current.start, other.start)
            stop = other.end
            if stop <= start:
                continue
            yield ComparisonUnit(
                label=f"{current.name}/{other.name}",
                start=start,
                stop=stop,
                pairs=(
                    (
                        current.sequence[start - current.start : stop - current.start],
                        other.sequence[start - other.start : stop - other.start],
                    ),
                ),
            )


def strip_reference_gaps(reference_row: bytes, row: bytes) -> bytes:
    """Drop the columns of ``row`` where ``reference_row`` has a gap."""
    ref = np.frombuffer(reference_row, dtype=np.uint8)
    keep = ~np.isin(ref, GAP_CODES)
    return np.frombuffer(row, dtype=np.uint8)[keep].tobytes()


def matching_prefix(a: bytes, b: bytes) -> int:
    """Length of the common prefix of two byte strings."""
    size = min(len(a), len(b))
    left = np.frombuffer(a[:size], dtype=np.uint8)
    right = np.frombuffer(b[:size], dtype=np.uint8)
    mismatches = np.flatnonzero(left != right)
    return int(mismatches[0]) if mismatches.size else size


def reference_gene(record: AlignedRecord, genome: GenomeSequence) -> Optional[bytes]:
    """Gene sequence of a reference row in its reading direction, None if out of range."""
    start = record.start - 1
    stop = record.end
    if stop <= start or start < 0 or stop > len(genome):
        return None
    nucleotides = genome.sequence[start:stop]
    if record.reverse:
        nucleotides = reverse_complement(nucleotides.decode("ascii")).encode("ascii")
    return nucleotides


def _genome_units(
    groups: List[List[AlignedRecord]],
    genome: GenomeSequence,
    all_pairs: bool,
    log: logging.Logger,
) -> Iterator[ComparisonUnit]:
    for index, group in enumerate(groups):
        for ref in (r for r in group if r.genome == genome.label):
            nucleotides = reference_gene(ref, genome)
            if nucleotides is None:
                log.warning(
                    f"Skipping alignment record {ref.id}: {ref.start:,}..{ref.end:,} "
                    f"is not a valid window on {genome.accession} ({len(genome):,} bp)"
                )
                continue

            ref_row = ref.sequence.encode("ascii")
            ref_stripped = strip_reference_gaps(ref_row, ref_row)
            length = matching_prefix(ref_stripped, nucleotides)
            if (
                length == 0
                or len(ref_stripped) - length > STOP_CODON_SLACK
                or len(nucleotides) - length > STOP_CODON_SLACK
            ):
                log.warning(
                    f"Skipping alignment record {ref.id}: only {length:,} of "
                    f"{len(ref_stripped):,} aligned bases match the reference gene "
                    f"({len(nucleotides):,} bp)"
                )
                continue

            rows = []
            for record in group:
                if len(record.sequence) != len(ref.sequence):
                    log.warning(
                        f"Skipping alignment record {record.id}: aligned length "
                        f"{len(record.sequence):,} differs from reference row "
                        f"{ref.id} ({len(ref.sequence):,})"
                    )
                    continue
                row = strip_reference_gaps(ref_row, record.sequence.encode("ascii"))
                rows.append((record, row[:length]))

            if all_pairs:
                pairs = [
                    (rows[i][1], rows[j][1])
                    for i in range(len(rows))
                    for j in range(i + 1, len(rows))
                ]
            else:
                pairs = [
                    (ref_stripped[:length], row)
                    for record, row in rows
                    if record.genome != ref.genome
                ]

            if not pairs:
                log.debug(f"Alignment record {ref.id}: nothing to compare.")
                continue

            yield ComparisonUnit(
                label=ref.id,
                start=ref.start - 1,
                stop=ref.end,
                reverse=ref.reverse,
                pairs=pairs,
                matrix=True,
                group=index,
            )


def genome_vs_genome_units(
    groups: List[List[AlignedRecord]],
    genome: GenomeSequence,
    log: logging.Logger = logger,
) -> Iterator[ComparisonUnit]:
    """Compare the reference genome's row with every other genome's row."""
    return _genome_units(groups, genome, all_pairs=False, log=log)


def genome_vs_genomes_units(
    groups: List[List[AlignedRecord]],
    genome: GenomeSequence,
    log: logging.Logger = logger,
) -> Iterator[ComparisonUnit]:
    """Compare every pair of rows of each alignment, in the reference frame."""
    return _genome_units(groups, genome, all_pairs=True, log=log)


@dataclass(frozen=True)
class Strategy:
    name: str
    enumerate_units: Callable[..., Iterator[ComparisonUnit]]
    uses_reads: bool

    def estimate_units(self, inputs) -> Optional[int]:
        # Progress estimate only; overlapping read pairs are not counted up front.
        if self.name == "reads-vs-reads":
            return None
        return len(inputs)


STRATEGIES: Dict[str, Strategy] = {
    strategy.name: strategy
    for strategy in (
        Strategy("reads-vs-reads", reads_vs_reads_units, uses_reads=True),
        Strategy("reads-vs-genome", reads_vs_genome_units, uses_reads=True),
        Strategy("genome-vs-genome", genome_vs_genome_units, uses_reads=False),
        Strategy("genome-vs-genomes", genome_vs_genomes_units, uses_reads=False),
    )
}


def get_strategy(name: str) -> Strategy:
    try:
        return STRATEGIES[name]
    except KeyError:
        raise ValueError(
            f"Unknown strategy '{name}'. Choose from: {', '.join(STRATEGIES)}"
        ) from None


def bootstrap_results(
    units: List[Calculators],
    replicates: int,
    maxl: int,
    bias_correction: bool = False,
    rng: np.random.Generator = None,
    log: logging.Logger = logger,
) -> List[Calculators]:
    """
    Resample per-group calculators with replacement.

    Each replicate draws ``len(units)`` groups, merges them and is kept only
    when its Ks variance is defined.
    """
    if not units or replicates <= 0:
        return []
    rng = rng if rng is not None else np.random.default_rng()

    results = []
    for _ in range(replicates):
        merged = Calculators.new(maxl, bias_correction)
        for index in rng.integers(0, len(units), size=len(units)):
            merged.merge(units[index])
        if np.isnan(merged.ks.variance):
            log.debug("Dropping bootstrap replicate with undefined Ks variance.")
            continue
        results.append(merged)

    log.info(f"Kept {len(results):,} of {replicates:,} bootstrap replicates.")
    return results


def run_strategy(
    name: str,
    inputs,
    genome: GenomeSequence,
    settings: CorrelationSettings,
    bootstrap: int = 0,
    rng: np.random.Generator = None,
    cancel: threading.Event = None,
    logger: logging.Logger = None,
) -> StrategyResult:
    """
    Run one comparison strategy.

    Parameters:
        name (str): Key of `STRATEGIES`.
        inputs: Mapped reads for the read strategies, alignment groups for
            the genome strategies.
        genome (GenomeSequence): Reference sequence with its position profile.
        settings (CorrelationSettings): Validated run parameters.
        bootstrap (int): Bootstrap replicates (genome strategies only).
        rng (np.random.Generator): Random source for bootstrapping.
        cancel (threading.Event): Stops enumeration early when set.
        logger (logging.Logger): Receives progress and skip messages.

    Returns:
        StrategyResult: Merged calculators, counts, completeness flag and
        bootstrap replicates.

    Raises:
        ValueError: For an unknown strategy, a genome without a matching
            profile, or bootstrapping a read strategy.
    """
    log = logger if logger is not None else logging.getLogger(__name__)
    strategy = get_strategy(name)
    if genome.profile is None:
        raise ValueError(f"Genome {genome.accession} has no position profile")
    if len(genome.profile) != len(genome):
        raise ValueError(
            f"Profile length {len(genome.profile):,} does not match genome length "
            f"{len(genome):,} for {genome.accession}"
        )
    if bootstrap and strategy.uses_reads:
        raise ValueError(f"Bootstrapping is only available for genome strategies, not {name}")
    if bootstrap < 0:
        raise ValueError(f"bootstrap must be non-negative, got {bootstrap}")

    log.info(
        f"Running {name} on {genome.accession} at {settings.position.name} positions "
        f"(maxl={settings.maxl:,}, cpus={settings.cpus})"
    )
    context = WorkerContext(
        profile=genome.profile,
        maxl=settings.maxl,
        position=settings.position,
        bias_correction=settings.bias_correction,
        keep_units=bootstrap > 0,
    )
    outcome = run_pipeline(
        strategy.enumerate_units(inputs, genome, log),
        context,
        cpus=settings.cpus,
        chunk_size=settings.chunk_size,
        cancel=cancel,
        total_units=strategy.estimate_units(inputs),
        desc=name,
        log=log,
    )

    replicates = []
    if bootstrap and outcome.complete:
        replicates = bootstrap_results(
            outcome.units,
            bootstrap,
            settings.maxl,
            settings.bias_correction,
            rng=rng,
            log=log,
        )

    return StrategyResult(
        strategy=name,
        position=settings.position,
        calculators=outcome.calculators,
        n_units=outcome.n_units,
        n_skipped=outcome.n_skipped,
        complete=outcome.complete,
        replicates=replicates,
    )
