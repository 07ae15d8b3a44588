#!/usr/bin/env python3
"""
Mapped reads projected onto reference coordinates.

Each alignment is rewritten in reference coordinates: aligned bases are
copied, insertions and clipped bases are dropped, deletions and skipped
regions become ``'*'``. Mates of a proper pair are merged into one window.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import pysam

logger = logging.getLogger(__name__)

PLACEHOLDER = b"*"

COPY_OPS = {pysam.CMATCH, pysam.CEQUAL, pysam.CDIFF}
QUERY_ONLY_OPS = {pysam.CINS, pysam.CSOFT_CLIP}
REFERENCE_ONLY_OPS = {pysam.CDEL, pysam.CREF_SKIP}


@dataclass(frozen=True)
class MappedRead:
    """A read (or merged mate pair) in reference coordinates, 0-based start."""

    name: str
    start: int
    sequence: bytes
    reference: Optional[str] = None

    @property
    def end(self) -> int:
        return self.start + len(self.sequence)

    def __len__(self):
        return len(self.sequence)


def map_to_reference(segment, min_baseq: int = 0) -> bytes:
    """
    Project one aligned segment onto the reference.

    Parameters:
        segment (pysam.AlignedSegment): Mapped alignment.
        min_baseq (int): Bases with a lower Phred quality become ``'*'``.

    Returns:
        bytes: One byte per reference coordinate from ``reference_start``.
    """
    query = segment.query_sequence
    if query is None:
        return b""
    query = query.encode("ascii")
    qualities = segment.query_qualities
    mask_quality = min_baseq > 0 and qualities is not None

    pieces = []
    offset = 0
    for op, length in segment.cigartuples or ():
        if op in COPY_OPS:
            bases = bytearray(query[offset : offset + length])
            if mask_quality:
                for i in range(length):
                    if qualities[offset + i] < min_baseq:
                        bases[i] = ord(PLACEHOLDER)
            pieces.append(bytes(bases))
            offset += length
        elif op in QUERY_ONLY_OPS:
            offset += length
        elif op in REFERENCE_ONLY_OPS:
            pieces.append(PLACEHOLDER * length)
        # Hard clips and padding consume neither sequence nor reference.

    return b"".join(pieces)


def merge_mates(left: MappedRead, right: MappedRead) -> MappedRead:
    """
    Join two mates into one window, ``left`` being the leftmost mate.

    An unsequenced insert between the mates is filled with ``'*'``; where the
    mates overlap, only the part of ``right`` past the end of ``left`` is used.
    """
    if right.start < left.start:
        left, right = right, left
    gap = right.start - left.end
    if gap > 0:
        sequence = left.sequence + PLACEHOLDER * gap + right.sequence
    else:
        sequence = left.sequence + right.sequence[-gap:]
    return MappedRead(left.name, left.start, sequence, left.reference)


def _is_usable(segment, min_mapq: int, proper_pairs_only: bool) -> bool:
    if segment.is_unmapped or segment.is_secondary or segment.is_supplementary:
        return False
    if segment.mapping_quality < min_mapq:
        return False
    if proper_pairs_only and not (segment.is_paired and segment.is_proper_pair):
        return False
    return True


def load_mapped_reads(
    bam_file,
    reference: str = None,
    min_mapq: int = 0,
    min_baseq: int = 13,
    proper_pairs_only: bool = True,
) -> List[MappedRead]:
    """
    Load the reads mapped to one contig, merging mate pairs.

    Paired reads whose mate maps to another contig, or whose mate did not
    pass the filters, are dropped. Unpaired reads are kept as they are when
    ``proper_pairs_only`` is False.

    Parameters:
        bam_file (str): Indexed BAM file.
        reference (str): Contig name; every contig when None.
        min_mapq (int): Minimum mapping quality.
        min_baseq (int): Minimum base quality, lower bases become ``'*'``.
        proper_pairs_only (bool): Keep only reads flagged as proper pairs.

    Returns:
        list[MappedRead]: Reads sorted by their right edge.
    """
    reads = []
    pending = {}
    n_filtered = 0

    with pysam.AlignmentFile(bam_file, "rb") as bamfile:
        segments = bamfile.fetch(reference) if reference else bamfile.fetch(until_eof=True)
        for segment in segments:
            if not _is_usable(segment, min_mapq, proper_pairs_only):
                n_filtered += 1
                continue

            mapped = MappedRead(
                name=segment.query_name,
                start=segment.reference_start,
                sequence=map_to_reference(segment, min_baseq),
                reference=segment.reference_name,
            )

            if not segment.is_paired:
                reads.append(mapped)
                continue
            if segment.next_reference_name != segment.reference_name:
                n_filtered += 1
                continue

            key = (segment.reference_name, segment.query_name)
            mate = pending.pop(key, None)
            if mate is None:
                pending[key] = mapped
            else:
                reads.append(merge_mates(mate, mapped))

    if pending:
        logger.debug(f"Dropped {len(pending):,} reads whose mate was not loaded.")
    reads.sort(key=lambda r: r.end)
    logger.info(
        f"Loaded {len(reads):,} read windows from {bam_file}"
        f"{' (' + reference + ')' if reference else ''}; "
        f"{n_filtered:,} alignments filtered, {len(pending):,} orphan mates dropped."
    )
    return reads
