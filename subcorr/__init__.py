"""
SubCorr: Correlation of nucleotide substitutions along bacterial genomes.

SubCorr compares aligned sequences (mapped metagenomic reads or ortholog
alignments) against each other or against a reference genome and computes
the covariance of substitutions as a function of genomic distance, at a
chosen class of codon positions.

Example usage:
    # CLI
    $ subcorr cov --config config.yml

    # Python
    >>> import subcorr
    >>> print(subcorr.__version__)
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("SubCorr")
except PackageNotFoundError:
    __version__ = "unknown"

# Public API exports
from subcorr.analysis.strategies import STRATEGIES, CorrelationSettings, run_strategy
from subcorr.profiling.position_profile import PositionType, profile_genome
from subcorr.workflow import run_correlation, validate_config

__all__ = [
    "__version__",
    "STRATEGIES",
    "CorrelationSettings",
    "PositionType",
    "profile_genome",
    "run_correlation",
    "run_strategy",
    "validate_config",
]
