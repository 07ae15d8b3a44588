#!/usr/bin/env python3
"""Ortholog alignments: loading and core/dispensable/pan partitioning."""

import json
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("id", "genome", "start", "end", "sequence")
GAP_CHARACTERS = b"-."


@dataclass(frozen=True)
class AlignedRecord:
    """
    One row of an ortholog alignment.

    ``start``/``end`` are the 1-based inclusive coordinates of the gene on
    its genome; ``sequence`` is the aligned (gapped) nucleotide row in the
    gene's reading direction.
    """

    id: str
    genome: str
    start: int
    end: int
    sequence: str
    strand: str = "+"

    @property
    def reverse(self) -> bool:
        return self.strand == "-"


def _to_record(entry: dict, group_index: int) -> AlignedRecord:
    missing = [key for key in REQUIRED_FIELDS if key not in entry]
    if missing:
        raise ValueError(
            f"Alignment group {group_index}: record is missing fields {missing}"
        )
    return AlignedRecord(
        id=str(entry["id"]),
        genome=str(entry["genome"]),
        start=int(entry["start"]),
        end=int(entry["end"]),
        sequence=str(entry["sequence"]).upper(),
        strand=str(entry.get("strand", "+")),
    )


def read_alignments(path) -> List[List[AlignedRecord]]:
    """
    Read ortholog alignments from JSON.

    The file holds a list of alignment groups, each a list of records with
    ``id``, ``genome``, ``start``, ``end``, ``strand`` and ``sequence``.

    Raises:
        ValueError: If the JSON layout or a record is malformed.
    """
    with open(path) as handle:
        data = json.load(handle)

    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of alignment groups")

    groups = []
    for index, group in enumerate(data):
        if not isinstance(group, list):
            raise ValueError(f"{path}: alignment group {index} is not a list")
        groups.append([_to_record(entry, index) for entry in group])

    n_records = sum(len(group) for group in groups)
    logger.info(f"Read {len(groups):,} alignment groups ({n_records:,} records) from {path}")
    return groups


def partition_alignments(
    groups: List[List[AlignedRecord]], genomes: Iterable[str] = None
) -> Dict[str, List[List[AlignedRecord]]]:
    """
    Split alignment groups by how many genomes they cover.

    Parameters:
        groups: Alignment groups.
        genomes: Genome labels of the species; every genome present in
            ``groups`` when None.

    Returns:
        dict: ``core`` (groups covering every genome), ``disp`` (groups
        missing at least one genome) and ``pan`` (all groups).
    """
    if genomes is None:
        genomes = {record.genome for group in groups for record in group}
    n_genomes = len(set(genomes))

    core, disp = [], []
    for group in groups:
        covered = len({record.genome for record in group})
        if covered >= n_genomes:
            core.append(group)
        else:
            disp.append(group)

    logger.debug(
        f"Partitioned {len(groups):,} alignment groups over {n_genomes:,} genomes: "
        f"{len(core):,} core, {len(disp):,} dispensable."
    )
    return {"core": core, "disp": disp, "pan": list(groups)}
