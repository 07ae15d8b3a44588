#!/usr/bin/env python3
"""
Codon Position Profiling
========================

Labels every coordinate of a genome with its role in translation. The
resulting byte-per-base array ("position profile") is what the substitution
correlation engine uses to decide which coordinates take part in a
comparison.

Roles
-----
- NON_CODING: not covered by any annotated gene.
- FIRST / SECOND: first and second codon positions.
- THIRD: third codon position that is not four-fold degenerate.
- FOUR_FOLD: third codon position where all four bases encode the same
  amino acid (a refinement of THIRD).
- UNDEFINED: claimed by more than one gene. Overlap is terminal: a
  coordinate once UNDEFINED stays UNDEFINED.

CODING is a query-only wildcard matching FIRST, SECOND, THIRD and FOUR_FOLD.
It never appears inside a profile.

Genes on the negative strand are reverse-complemented before classification
and the classified block is reversed back, so codon positions are always
counted in the gene's own reading direction.
"""

import logging
from dataclasses import dataclass
from enum import IntEnum
from functools import lru_cache
from typing import Iterable, Union

import numpy as np
from Bio.Data import CodonTable
from Bio.Seq import reverse_complement

logger = logging.getLogger(__name__)

DEFAULT_GENETIC_CODE = 11
NUCLEOTIDES = "TCAG"


class PositionType(IntEnum):
    NON_CODING = 0
    FIRST = 1
    SECOND = 2
    THIRD = 3
    FOUR_FOLD = 4
    UNDEFINED = 5
    CODING = 6


# Codes that may be stored in a profile (CODING is a query wildcard only).
PROFILE_CODES = tuple(p for p in PositionType if p != PositionType.CODING)
CODING_CODES = (
    PositionType.FIRST,
    PositionType.SECOND,
    PositionType.THIRD,
    PositionType.FOUR_FOLD,
)


@dataclass(frozen=True)
class Gene:
    """A protein coding feature, 1-based inclusive coordinates."""

    id: str
    start: int
    end: int
    strand: str = "+"

    @property
    def length(self) -> int:
        return self.end - self.start + 1


def parse_position_type(value, target: bool = True) -> PositionType:
    """
    Convert a user supplied position code into a `PositionType`.

    Accepts the integer code, its string form ("4") or the member name in
    any case ("four_fold", "THIRD").

    Parameters:
        value: Code, digit string or member name.
        target (bool): When True the value is going to be used as a filter,
            in which case UNDEFINED is rejected since it can never match.

    Returns:
        PositionType: The parsed member.

    Raises:
        ValueError: If the value is unknown, or UNDEFINED is used as a target.
    """
    if isinstance(value, PositionType):
        position = value
    else:
        text = str(value).strip()
        try:
            position = PositionType(int(text))
        except ValueError:
            try:
                position = PositionType[text.upper()]
            except KeyError:
                valid = ", ".join(f"{p.value}={p.name}" for p in PositionType)
                raise ValueError(
                    f"Unknown position type '{value}'. Valid codes: {valid}"
                ) from None

    if target and position == PositionType.UNDEFINED:
        raise ValueError(
            "UNDEFINED positions cannot be targeted; they mark overlapping genes."
        )
    return position


def position_mask(profile, position) -> np.ndarray:
    """
    Boolean mask of the profile coordinates selected by a target position type.

    THIRD also selects FOUR_FOLD coordinates (four-fold sites are third
    positions); FOUR_FOLD does not select plain THIRD coordinates. UNDEFINED
    never matches anything.
    """
    profile = np.asarray(profile, dtype=np.uint8)
    position = PositionType(position)

    if position == PositionType.UNDEFINED:
        return np.zeros(profile.shape, dtype=bool)
    if position == PositionType.THIRD:
        return np.isin(profile, (PositionType.THIRD, PositionType.FOUR_FOLD))
    if position == PositionType.CODING:
        return np.isin(profile, CODING_CODES)
    return profile == position


@lru_cache(maxsize=None)
def four_fold_codons(table_id: int = DEFAULT_GENETIC_CODE) -> frozenset:
    """
    Codons whose third position is four-fold degenerate under an NCBI table.

    A codon qualifies when all four codons sharing its first two bases
    translate to the same amino acid. Stop codons never qualify.

    Args:
        table_id: NCBI genetic code table id (11 = bacterial/archaeal).

    Returns:
        frozenset: Uppercase codon strings.

    Raises:
        ValueError: If the table id is unknown to Biopython.
    """
    try:
        table = CodonTable.unambiguous_dna_by_id[int(table_id)]
    except KeyError:
        raise ValueError(f"Unknown NCBI genetic code table: {table_id}") from None

    codons = set()
    for first in NUCLEOTIDES:
        for second in NUCLEOTIDES:
            family = [first + second + third for third in NUCLEOTIDES]
            amino_acids = {table.forward_table.get(codon) for codon in family}
            if len(amino_acids) == 1 and None not in amino_acids:
                codons.update(family)

    logger.debug(f"Genetic code {table_id}: {len(codons)} four-fold codons.")
    return frozenset(codons)


def classify_gene(nucleotides: str, four_fold: frozenset) -> np.ndarray:
    """
    Classify the codon positions of one gene, read in its own direction.

    A trailing partial codon gets FIRST/SECOND labels only. Codons that are
    missing from the four-fold table (ambiguous bases, gaps) leave their
    third position as THIRD.
    """
    length = len(nucleotides)
    frame = np.arange(length) % 3
    prof = np.empty(length, dtype=np.uint8)
    prof[frame == 0] = PositionType.FIRST
    prof[frame == 1] = PositionType.SECOND
    prof[frame == 2] = PositionType.THIRD

    codon_seq = nucleotides.upper()
    for end in range(2, length, 3):
        if codon_seq[end - 2 : end + 1] in four_fold:
            prof[end] = PositionType.FOUR_FOLD

    return prof


def profile_genome(
    sequence: Union[bytes, str],
    genes: Iterable[Gene],
    genetic_code: Union[int, frozenset] = DEFAULT_GENETIC_CODE,
) -> np.ndarray:
    """
    Build the position profile of a genome from its gene annotations.

    Every coordinate starts as NON_CODING. Each gene's classified block is
    written into the profile; coordinates already claimed by an earlier gene
    become UNDEFINED instead of being overwritten.

    Skipped (logged, not fatal):
    - wrap-around genes whose end precedes their start,
    - genes falling outside the genome,
    - genes shorter than one codon.

    Parameters:
        sequence (bytes | str): Genome sequence.
        genes (Iterable[Gene]): Gene annotations, 1-based inclusive.
        genetic_code (int | frozenset): NCBI table id or a precomputed set of
            four-fold codons.

    Returns:
        np.ndarray: uint8 array of PositionType codes, same length as sequence.
    """
    if isinstance(sequence, (bytes, bytearray)):
        sequence = sequence.decode("ascii")
    sequence = sequence.upper()

    if isinstance(genetic_code, frozenset):
        four_fold = genetic_code
    else:
        four_fold = four_fold_codons(genetic_code)

    genome_length = len(sequence)
    profile = np.full(genome_length, PositionType.NON_CODING, dtype=np.uint8)

    n_profiled = 0
    n_skipped = 0
    for gene in genes:
        if gene.end < gene.start:
            logger.warning(
                f"Skipping gene {gene.id}: end {gene.end:,} precedes start "
                f"{gene.start:,} (genes across the origin are not supported)."
            )
            n_skipped += 1
            continue

        start = gene.start - 1
        end = gene.end
        if start < 0 or end > genome_length:
            logger.warning(
                f"Skipping gene {gene.id}: {gene.start:,}..{gene.end:,} lies outside "
                f"the genome of length {genome_length:,}."
            )
            n_skipped += 1
            continue

        if end - start < 3:
            logger.debug(f"Skipping gene {gene.id}: shorter than one codon.")
            n_skipped += 1
            continue

        nucleotides = sequence[start:end]
        reverse = gene.strand == "-"
        if reverse:
            nucleotides = reverse_complement(nucleotides)

        prof = classify_gene(nucleotides, four_fold)
        if reverse:
            prof = prof[::-1]

        window = profile[start:end]
        claimed = window != PositionType.NON_CODING
        window[:] = np.where(claimed, PositionType.UNDEFINED, prof)
        n_profiled += 1

    logger.info(
        f"Profiled {n_profiled:,} genes over {genome_length:,} bp "
        f"({n_skipped:,} skipped)."
    )
    return profile


def summarize_profile(profile) -> dict:
    """Count coordinates per stored position type, keyed by member name."""
    counts = np.bincount(np.asarray(profile, dtype=np.uint8), minlength=len(PROFILE_CODES))
    return {p.name: int(counts[p]) for p in PROFILE_CODES}
