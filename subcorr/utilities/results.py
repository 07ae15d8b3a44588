#!/usr/bin/env python3
"""
Correlation results and their JSON / TSV / bootstrap files.

A `CovResult` is the reportable summary of merged `Calculators`: the Ks
diversity statistic and the Ct, Cs, Cm and Cr curves, each with the lag
indices where it is defined and the number of observations behind every
value. Lags without data are omitted from the curves.
"""

import gzip
import json
import logging
import math
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Iterable, List

import numpy as np
import pandas as pd

from subcorr.profiling.position_profile import PositionType
from subcorr.statistics.accumulators import Calculators

logger = logging.getLogger(__name__)

CODON_POSITIONS = {
    PositionType.FIRST,
    PositionType.SECOND,
    PositionType.THIRD,
    PositionType.FOUR_FOLD,
    PositionType.CODING,
}


@dataclass
class Curve:
    indices: List[int] = field(default_factory=list)
    values: List[float] = field(default_factory=list)
    counts: List[int] = field(default_factory=list)

    @classmethod
    def from_arrays(cls, values, counts, lags) -> "Curve":
        values = np.asarray(values, dtype=float)[lags]
        counts = np.asarray(counts)[lags]
        keep = np.flatnonzero(~np.isnan(values))
        return cls(
            indices=[int(i) for i in keep],
            values=[float(v) for v in values[keep]],
            counts=[int(n) for n in counts[keep]],
        )


def _clean(value):
    """Replace NaN by None so the JSON output stays standard."""
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, dict):
        return {k: _clean(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_clean(v) for v in value]
    return value


@dataclass
class CovResult:
    ks: float
    var_ks: float
    n: int
    ct: Curve
    mean_xy: List[float]
    cs: Curve
    cm: Curve
    cr: Curve
    step: int = 1

    @classmethod
    def from_calculators(
        cls, calculators: Calculators, position=None, codon_lags: bool = False
    ) -> "CovResult":
        """
        Summarize merged calculators.

        With ``codon_lags`` and a codon position type, only every third lag
        is reported and curve indices count codons instead of bases.
        """
        maxl = calculators.maxl
        step = 1
        if codon_lags and position is not None and PositionType(position) in CODON_POSITIONS:
            step = 3
        lags = np.arange(maxl // step) * step

        total = calculators.total
        ct = Curve.from_arrays(total.results(), total.counts, lags)
        mean_xy = np.asarray(total.mean_xy())[lags]

        return cls(
            ks=calculators.ks.mean,
            var_ks=calculators.ks.variance,
            n=calculators.ks.n,
            ct=ct,
            mean_xy=[float(mean_xy[i]) for i in ct.indices],
            cs=Curve.from_arrays(
                calculators.structure.means(), calculators.structure.counts, lags
            ),
            cm=Curve.from_arrays(
                calculators.mutation.means(), calculators.mutation.counts, lags
            ),
            cr=Curve.from_arrays(calculators.rate.means(), calculators.rate.counts, lags),
            step=step,
        )

    def to_dict(self) -> dict:
        return _clean(asdict(self))

    def to_json(self, path) -> None:
        with open(path, "w") as handle:
            json.dump(self.to_dict(), handle, indent=2)
        logger.info(f"Wrote correlation result to {path}")

    def ct_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "lag": self.ct.indices,
                "ct": self.ct.values,
                "n": self.ct.counts,
                "mean_xy": self.mean_xy,
            }
        )

    def to_tsv(self, path) -> None:
        """Write the Ct curve as TSV below a ``#Ks=..;VarKs=..;N=..`` header line."""
        with open(path, "w") as handle:
            handle.write(f"#Ks={self.ks};VarKs={self.var_ks};N={self.n}\n")
            self.ct_frame().to_csv(handle, sep="\t", index=False)
        logger.info(f"Wrote correlation table to {path}")


def write_bootstrap(path, results: Iterable[CovResult]) -> int:
    """
    Write bootstrap results as gzipped JSON lines, one result per line.

    Results with an undefined Ks variance are not written.

    Returns:
        int: Number of results written.
    """
    written = 0
    with gzip.open(path, "wt") as handle:
        for result in results:
            if math.isnan(result.var_ks):
                continue
            handle.write(json.dumps(result.to_dict()) + "\n")
            written += 1
    logger.info(f"Wrote {written:,} bootstrap results to {path}")
    return written


def read_bootstrap(path) -> List[dict]:
    with gzip.open(path, "rt") as handle:
        return [json.loads(line) for line in handle if line.strip()]


def result_prefix(output_dir, prefix: str, *parts) -> Path:
    name = "_".join(str(p) for p in (prefix, *parts) if p not in (None, ""))
    return Path(output_dir) / name
