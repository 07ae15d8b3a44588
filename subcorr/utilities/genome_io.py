#!/usr/bin/env python3
"""Reading genomes and gene annotations, reading and writing position profiles."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import numpy as np
import pandas as pd
from Bio import SeqIO

from subcorr.profiling.position_profile import PROFILE_CODES, Gene

logger = logging.getLogger(__name__)

PTT_SUFFIXES = {".ptt"}
GFF_SUFFIXES = {".gff", ".gff3"}
GFF_COLUMNS = [
    "seqid",
    "source",
    "type",
    "start",
    "end",
    "score",
    "strand",
    "phase",
    "attributes",
]


@dataclass
class GenomeSequence:
    """
    One reference contig with its (optional) position profile.

    ``label`` names the genome inside ortholog alignments; it defaults to
    the accession.
    """

    accession: str
    sequence: bytes
    profile: Optional[np.ndarray] = None
    label: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.sequence, str):
            self.sequence = self.sequence.encode("ascii")
        self.sequence = bytes(self.sequence).upper()
        if self.label is None:
            self.label = self.accession
        if self.profile is not None:
            self.profile = np.asarray(self.profile, dtype=np.uint8)
            if self.profile.size != len(self.sequence):
                raise ValueError(
                    f"Profile length {self.profile.size:,} does not match the "
                    f"length {len(self.sequence):,} of {self.accession}"
                )

    def __len__(self):
        return len(self.sequence)


def read_genome(fasta_file, reference: str = None, label: str = None) -> GenomeSequence:
    """
    Load one contig from a FASTA file.

    Parameters:
        fasta_file (str): Path to the FASTA file.
        reference (str): Record id to load; the first record when None.
        label (str): Genome label used to find its rows in ortholog alignments.

    Returns:
        GenomeSequence: Uppercase sequence without a profile.

    Raises:
        ValueError: If the file has no records or the reference is missing.
    """
    logger.info(f"Reading genome from {fasta_file}")
    seen = 0
    for record in SeqIO.parse(str(fasta_file), "fasta"):
        seen += 1
        if reference is None or record.id == reference:
            genome = GenomeSequence(
                accession=record.id,
                sequence=str(record.seq).encode("ascii"),
                label=label,
            )
            logger.info(f"Loaded {genome.accession}: {len(genome):,} bp")
            return genome

    if seen == 0:
        raise ValueError(f"No FASTA records found in {fasta_file}")
    raise ValueError(f"Reference '{reference}' not found among {seen:,} records of {fasta_file}")


def _parse_location(location: str):
    start, _, end = str(location).partition("..")
    if not end:
        raise ValueError(f"Malformed location '{location}'")
    return int(start), int(end)


def read_ptt(ptt_file) -> List[Gene]:
    """
    Read protein coding genes from an NCBI protein table (.ptt).

    The two title lines are skipped; the table needs ``Location`` (``from..to``,
    1-based inclusive) and ``Strand`` columns. Gene ids come from ``Synonym``,
    falling back to ``PID`` and then to the location string.
    """
    df = pd.read_csv(ptt_file, sep="\t", skiprows=2, dtype=str)
    missing = {"Location", "Strand"} - set(df.columns)
    if missing:
        raise ValueError(f"Missing columns in PTT file {ptt_file}: {missing}")

    genes = []
    for row in df.to_dict("records"):
        start, end = _parse_location(row["Location"])
        candidates = (row.get("Synonym"), row.get("PID"), row["Location"])
        gene_id = next(c for c in candidates if isinstance(c, str) and c.strip() not in ("", "-"))
        genes.append(Gene(gene_id.strip(), start, end, str(row["Strand"]).strip()))

    logger.info(f"Read {len(genes):,} genes from {ptt_file}")
    return genes


def _gff_id(attributes: str, fallback: str) -> str:
    for field in str(attributes).split(";"):
        key, _, value = field.partition("=")
        if key.strip() == "ID" and value:
            return value.strip()
    return fallback


def read_gff(gff_file, seqid: str = None) -> List[Gene]:
    """
    Read CDS features from a GFF3 file.

    Parameters:
        gff_file (str): Path to the GFF3 file.
        seqid (str): Only keep features on this sequence when given.

    Returns:
        list[Gene]: CDS features, 1-based inclusive.
    """
    df = pd.read_csv(
        gff_file,
        sep="\t",
        comment="#",
        header=None,
        names=GFF_COLUMNS,
        dtype=str,
    )
    # Embedded FASTA sections produce single-column rows; they are not CDS.
    df = df[df["type"] == "CDS"]
    if seqid is not None:
        df = df[df["seqid"] == seqid]

    genes = [
        Gene(
            _gff_id(row.attributes, f"{row.seqid}:{row.start}..{row.end}"),
            int(row.start),
            int(row.end),
            row.strand,
        )
        for row in df.itertuples(index=False)
    ]
    logger.info(f"Read {len(genes):,} CDS features from {gff_file}")
    return genes


def read_features(feature_file, seqid: str = None) -> List[Gene]:
    """Read genes from a PTT or GFF3 file, chosen by file extension."""
    suffix = Path(feature_file).suffix.lower()
    if suffix in PTT_SUFFIXES:
        return read_ptt(feature_file)
    if suffix in GFF_SUFFIXES:
        return read_gff(feature_file, seqid=seqid)
    raise ValueError(
        f"Unsupported feature file '{feature_file}'; expected one of "
        f"{sorted(PTT_SUFFIXES | GFF_SUFFIXES)}"
    )


def write_profile(path, profile) -> None:
    """Write a position profile as one ASCII digit per base."""
    codes = np.asarray(profile, dtype=np.uint8)
    Path(path).write_bytes((codes + ord("0")).tobytes())
    logger.info(f"Wrote position profile of {codes.size:,} bp to {path}")


def read_profile(path) -> np.ndarray:
    """
    Read a position profile written by `write_profile`.

    Raises:
        ValueError: If the file holds anything other than profile codes.
    """
    data = Path(path).read_bytes().rstrip(b"\r\n")
    codes = np.frombuffer(data, dtype=np.uint8) - ord("0")
    if codes.size and codes.max() > max(PROFILE_CODES):
        raise ValueError(f"{path} is not a position profile (unexpected byte values)")
    return codes.astype(np.uint8)
