#!/usr/bin/env python3
"""
SubCorr Workflow Orchestration Module.

Loads and validates the YAML configuration, prepares the reference genome
and its position profile, and runs every configured comparison strategy at
every configured position type, writing one result per run. Kept separate
from the CLI so the same steps can be driven from Python.
"""

import copy
import logging
import multiprocessing
import sys
import threading
from datetime import datetime
from importlib import resources
from pathlib import Path
from typing import Dict, Optional

import numpy as np
import yaml

from subcorr.analysis.strategies import (
    STRATEGIES,
    CorrelationSettings,
    StrategyResult,
    run_strategy,
)
from subcorr.profiling.position_profile import (
    parse_position_type,
    profile_genome,
    summarize_profile,
)
from subcorr.utilities.alignments import partition_alignments, read_alignments
from subcorr.utilities.genome_io import (
    GenomeSequence,
    read_features,
    read_genome,
    read_profile,
)
from subcorr.utilities.reads import load_mapped_reads
from subcorr.utilities.results import CovResult, result_prefix, write_bootstrap

logger = logging.getLogger(__name__)

# =============================================================================
# Defaults
# =============================================================================

DEFAULT_CONFIG = {
    "input": {
        "genome": None,
        "features": None,
        "profile": None,
        "bam": None,
        "alignments": None,
        "genetic_code": 11,
        "reference": None,
        "label": None,
    },
    "output": {"dir": "subcorr_output", "prefix": "subcorr"},
    "correlation": {
        "maxl": 300,
        "positions": [4],
        "strategies": ["reads-vs-genome"],
        "bias_correction": False,
        "codon_lags": False,
    },
    "reads": {"min_mapq": 0, "min_baseq": 13, "proper_pairs_only": True},
    "resources": {"cpus": None, "chunk_size": 64},
    "bootstrap": {"replicates": 0, "seed": None},
}

REQUIRED_SECTIONS = ["input", "output", "correlation"]


# =============================================================================
# Path Helpers
# =============================================================================


def get_template_path() -> Path:
    """
    Get the path to the configuration template file.

    Returns:
        Path to the config.template.yml bundled with the package.
    """
    template = Path(__file__).parent / "templates" / "config.template.yml"
    if not template.exists():
        template = Path(str(resources.files("subcorr") / "templates" / "config.template.yml"))
    return template


# =============================================================================
# Configuration Validation
# =============================================================================


def _merge_defaults(defaults: dict, config: dict) -> dict:
    merged = copy.deepcopy(defaults)
    for key, value in (config or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def check_config(config: dict) -> dict:
    """
    Fill in defaults and check a configuration dictionary.

    Returns:
        dict: The completed configuration.

    Raises:
        ValueError: Describing the first problem found.
    """
    if not isinstance(config, dict):
        raise ValueError("Configuration must be a YAML mapping")

    missing = [s for s in REQUIRED_SECTIONS if s not in config]
    if missing:
        raise ValueError(f"Configuration missing required sections: {missing}")

    config = _merge_defaults(DEFAULT_CONFIG, config)
    inputs = config["input"]
    correlation = config["correlation"]

    if not inputs.get("genome"):
        raise ValueError("Configuration missing required input path: genome")
    if not inputs.get("features") and not inputs.get("profile"):
        raise ValueError("Configuration needs input.features or input.profile")

    strategies = correlation["strategies"]
    if isinstance(strategies, str):
        strategies = [strategies]
    unknown = [s for s in strategies if s not in STRATEGIES]
    if unknown:
        raise ValueError(f"Unknown strategies {unknown}; choose from {list(STRATEGIES)}")
    if not strategies:
        raise ValueError("No correlation strategies configured")
    correlation["strategies"] = list(strategies)

    if any(STRATEGIES[s].uses_reads for s in strategies) and not inputs.get("bam"):
        raise ValueError("Read strategies need input.bam")
    if any(not STRATEGIES[s].uses_reads for s in strategies) and not inputs.get(
        "alignments"
    ):
        raise ValueError("Genome strategies need input.alignments")

    positions = correlation["positions"]
    if not isinstance(positions, list):
        positions = [positions]
    correlation["positions"] = [parse_position_type(p) for p in positions]
    if not correlation["positions"]:
        raise ValueError("No position types configured")

    # Fails fast on maxl, cpus and chunk size.
    settings_for(config, correlation["positions"][0])

    if int(config["bootstrap"]["replicates"] or 0) < 0:
        raise ValueError("bootstrap.replicates must be non-negative")

    return config


def validate_config(config_path: Path) -> dict:
    """
    Load and validate a configuration file.

    Args:
        config_path: Path to the configuration file.

    Returns:
        Parsed configuration dictionary with defaults filled in.

    Raises:
        SystemExit: If configuration is invalid or missing required fields.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        logger.error(f"Configuration file not found: {config_path}")
        logger.error("Generate one with 'subcorr init' or provide a valid path.")
        sys.exit(1)

    try:
        with open(config_path) as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        logger.error(f"Error parsing configuration file: {e}")
        sys.exit(1)

    try:
        return check_config(config)
    except ValueError as e:
        logger.error(f"Invalid configuration {config_path}: {e}")
        sys.exit(1)


def settings_for(config: dict, position) -> CorrelationSettings:
    """Build the validated core settings for one position type."""
    resources_config = config["resources"]
    cpus = resources_config.get("cpus") or multiprocessing.cpu_count()
    return CorrelationSettings(
        maxl=config["correlation"]["maxl"],
        position=position,
        bias_correction=bool(config["correlation"]["bias_correction"]),
        cpus=int(cpus),
        chunk_size=int(resources_config["chunk_size"]),
    )


# =============================================================================
# Inputs
# =============================================================================


def prepare_genome(config: dict) -> GenomeSequence:
    """Load the reference contig and attach its position profile."""
    inputs = config["input"]
    genome = read_genome(inputs["genome"], reference=inputs["reference"], label=inputs["label"])

    if inputs.get("profile"):
        profile = read_profile(inputs["profile"])
    else:
        genes = read_features(inputs["features"], seqid=genome.accession)
        profile = profile_genome(genome.sequence, genes, int(inputs["genetic_code"]))

    genome = GenomeSequence(
        accession=genome.accession,
        sequence=genome.sequence,
        profile=profile,
        label=genome.label,
    )
    logger.info(f"Position profile of {genome.accession}: {summarize_profile(profile)}")
    return genome


# =============================================================================
# Execution
# =============================================================================


def save_result(
    result: StrategyResult, stem: Path, codon_lags: bool = False
) -> CovResult:
    """Write the JSON, TSV and optional bootstrap files of one strategy run."""
    summary = CovResult.from_calculators(
        result.calculators, position=result.position, codon_lags=codon_lags
    )
    if np.isnan(summary.var_ks):
        logger.warning(f"{stem.name}: Ks variance is undefined (too few sites).")
    summary.to_json(stem.parent / f"{stem.name}.json")
    summary.to_tsv(stem.parent / f"{stem.name}.tsv")

    if result.replicates:
        write_bootstrap(
            stem.parent / f"{stem.name}_boot.jsonl.gz",
            (
                CovResult.from_calculators(c, position=result.position, codon_lags=codon_lags)
                for c in result.replicates
            ),
        )
    return summary


def run_correlation(
    config: dict,
    cancel: Optional[threading.Event] = None,
    genome: Optional[GenomeSequence] = None,
) -> Dict[str, CovResult]:
    """
    Run every configured strategy at every configured position type.

    Args:
        config: Configuration as returned by `validate_config`.
        cancel: Stops the current run early when set; later runs are skipped.
        genome: Prepared reference genome; loaded from the configuration when None.

    Returns:
        Mapping of output file stem to its `CovResult`.
    """
    genome = genome if genome is not None else prepare_genome(config)
    correlation = config["correlation"]
    output_dir = Path(config["output"]["dir"])
    output_dir.mkdir(parents=True, exist_ok=True)
    prefix = config["output"]["prefix"]

    reads = None
    alignment_sets = None
    replicates = int(config["bootstrap"]["replicates"] or 0)
    rng = np.random.default_rng(config["bootstrap"]["seed"])

    summaries = {}
    for position in correlation["positions"]:
        settings = settings_for(config, position)
        for name in correlation["strategies"]:
            strategy = STRATEGIES[name]

            if strategy.uses_reads:
                if reads is None:
                    reads_config = config["reads"]
                    reads = load_mapped_reads(
                        config["input"]["bam"],
                        reference=genome.accession,
                        min_mapq=int(reads_config["min_mapq"]),
                        min_baseq=int(reads_config["min_baseq"]),
                        proper_pairs_only=bool(reads_config["proper_pairs_only"]),
                    )
                runs = {"": reads}
            else:
                if alignment_sets is None:
                    alignment_sets = partition_alignments(
                        read_alignments(config["input"]["alignments"])
                    )
                runs = alignment_sets

            for set_name, inputs in runs.items():
                if cancel is not None and cancel.is_set():
                    logger.warning("Cancelled; remaining runs skipped.")
                    return summaries
                if not inputs:
                    logger.warning(f"{name}: {set_name or 'read'} set is empty, skipped.")
                    continue

                result = run_strategy(
                    name,
                    inputs,
                    genome,
                    settings,
                    bootstrap=0 if strategy.uses_reads else replicates,
                    rng=rng,
                    cancel=cancel,
                    logger=logger,
                )
                stem = result_prefix(
                    output_dir,
                    prefix,
                    genome.accession,
                    name,
                    set_name,
                    f"pos{int(position)}",
                )
                summaries[stem.name] = save_result(
                    result, stem, codon_lags=bool(correlation["codon_lags"])
                )
                if not result.complete:
                    logger.warning(f"{stem.name} holds partial results.")

    return summaries


def execute_correlation(
    config_file: str,
    cpus: Optional[int] = None,
    maxl: Optional[int] = None,
    version: str = "unknown",
) -> int:
    """
    Validate a configuration file and run it.

    Args:
        config_file: Path to the configuration file.
        cpus: Overrides resources.cpus.
        maxl: Overrides correlation.maxl.
        version: SubCorr version string for logging.

    Returns:
        Exit code (0 = success, 1 = invalid input, 130 = interrupted).
    """
    config_path = Path(config_file)
    config = validate_config(config_path)
    if cpus is not None:
        config["resources"]["cpus"] = cpus
    if maxl is not None:
        config["correlation"]["maxl"] = maxl

    logger.info("=" * 60)
    logger.info("SubCorr Correlation Starting")
    logger.info("=" * 60)
    logger.info(f"Version: {version}")
    logger.info(f"Config: {config_path}")
    logger.info(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    logger.info(f"Strategies: {', '.join(config['correlation']['strategies'])}")
    logger.info("=" * 60)

    cancel = threading.Event()
    try:
        summaries = run_correlation(config, cancel=cancel)
    except KeyboardInterrupt:
        cancel.set()
        logger.warning("\nInterrupted by user.")
        return 130
    except ValueError as e:
        logger.error(f"SubCorr failed: {e}")
        return 1

    logger.info("=" * 60)
    logger.info(f"SubCorr completed: {len(summaries):,} results written.")
    logger.info(f"Output directory: {config['output']['dir']}")
    logger.info("=" * 60)
    return 0
