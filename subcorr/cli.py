#!/usr/bin/env python3
"""
SubCorr CLI - Command Line Interface for substitution correlation analysis.

This module defines the CLI commands and arguments using Click.
Orchestration is handled by the separate workflow module.
"""

import logging
import sys
from pathlib import Path

import click
import questionary
import yaml

from subcorr import __version__
from subcorr.analysis.strategies import STRATEGIES
from subcorr.profiling.position_profile import PositionType, profile_genome, summarize_profile
from subcorr.utilities.genome_io import read_features, read_genome, write_profile
from subcorr.utilities.logging_config import setup_logging

from .workflow import execute_correlation, get_template_path

# =============================================================================
# Banner Display
# =============================================================================

BANNER = r"""
   _____       __    ______
  / ___/__  __/ /_  / ____/___  __________
  \__ \/ / / / __ \/ /   / __ \/ ___/ ___/
 ___/ / /_/ / /_/ / /___/ /_/ / /  / /
/____/\__,_/_.___/\____/\____/_/  /_/
"""


def print_banner():
    """Print the SubCorr banner with colors."""
    click.echo(click.style(BANNER, fg="cyan", bold=True), err=True)
    version_line = f"  Version {__version__}  |  Substitution Correlation in Genomes"
    click.echo(click.style(version_line, fg="bright_blue"), err=True)
    click.echo(click.style("-" * 60, fg="cyan"), err=True)
    click.echo(err=True)


class BannerGroup(click.Group):
    """Custom Click Group that shows banner before help."""

    def format_help(self, ctx, formatter):
        print_banner()
        super().format_help(ctx, formatter)


# =============================================================================
# Helper Functions for Interactive Prompts
# =============================================================================


def prompt_text(
    message: str,
    default: str = None,
    validate_file: bool = False,
    required: bool = False,
    show_default_used: bool = True,
) -> str:
    """
    Prompt for text input with optional file validation.

    Args:
        message: The prompt message to display.
        default: Default value (None means no default shown).
        validate_file: If True, validate that the input is an existing file.
        required: If True, input cannot be empty.
        show_default_used: If True, print message when default is used.

    Returns:
        The user's input string.

    Raises:
        KeyboardInterrupt: If user cancels the prompt.
    """
    kwargs = {"message": message}
    if default is not None:
        kwargs["default"] = default

    def validate(text):
        if required and not text.strip():
            return "This field is required."
        if validate_file and text and not Path(text).is_file():
            return "File does not exist."
        return True

    if validate_file or required:
        kwargs["validate"] = validate

    result = questionary.text(**kwargs).ask()
    if result is None:
        raise KeyboardInterrupt

    if not result and default is not None and show_default_used:
        click.echo(f"  -> Using default: {default}")
        return default

    return result


def prompt_boolean(message: str, default: bool = True) -> bool:
    """Prompt for a yes/no answer."""
    result = questionary.confirm(message, default=default).ask()
    if result is None:
        raise KeyboardInterrupt
    return result


def prompt_integer(
    message: str,
    default: int,
    min_value: int = None,
    show_default_used: bool = True,
) -> int:
    """
    Prompt for an integer value with validation.

    Raises:
        KeyboardInterrupt: If user cancels the prompt.
    """

    def validate(text):
        if not text.strip():
            return True  # Empty is OK, will use default
        try:
            value = int(text)
        except ValueError:
            return "Please enter a valid integer."
        if min_value is not None and value < min_value:
            return f"Value must be >= {min_value}."
        return True

    result = questionary.text(message, default=str(default), validate=validate).ask()
    if result is None:
        raise KeyboardInterrupt

    if not result.strip():
        if show_default_used:
            click.echo(f"  -> Using default: {default}")
        return default

    return int(result)


def prompt_choices(message: str, choices: list, defaults: list) -> list:
    """
    Prompt for one or more selections from a list of choices.

    Raises:
        KeyboardInterrupt: If user cancels the prompt.
    """
    result = questionary.checkbox(
        message,
        choices=[questionary.Choice(c, value=c, checked=c in defaults) for c in choices],
        validate=lambda selected: True if selected else "Select at least one option.",
    ).ask()
    if result is None:
        raise KeyboardInterrupt
    return result


# =============================================================================
# Command Group
# =============================================================================


@click.group(cls=BannerGroup, context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "-v", "--version")
@click.pass_context
def cli(ctx):
    """
    SubCorr: correlation of substitutions along bacterial genomes.

    Compares mapped reads or ortholog alignments with a reference genome and
    reports the covariance of substitutions as a function of distance.

    \b
    Quick Start:
        1. Initialize a config file: subcorr init
        2. Edit the config file with your paths
        3. Run: subcorr cov --config config.yml
    """
    if ctx.invoked_subcommand is not None:
        print_banner()


# =============================================================================
# PROFILE Command
# =============================================================================


@cli.command("profile")
@click.argument("genome", type=click.Path(exists=True, dir_okay=False))
@click.argument("features", type=click.Path(exists=True, dir_okay=False))
@click.argument("output", type=click.Path(dir_okay=False, writable=True))
@click.option(
    "--genetic-code",
    type=int,
    default=11,
    show_default=True,
    help="NCBI genetic code table id.",
)
@click.option(
    "--reference",
    default=None,
    help="FASTA record id to profile (default: first record).",
)
def build_profile(genome, features, output, genetic_code, reference):
    """Build the position profile of GENOME from FEATURES and write it to OUTPUT."""
    logger = logging.getLogger(__name__)
    try:
        sequence = read_genome(genome, reference=reference)
        genes = read_features(features, seqid=sequence.accession)
        profile = profile_genome(sequence.sequence, genes, genetic_code)
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)

    write_profile(output, profile)
    for name, count in summarize_profile(profile).items():
        click.echo(f"  {name:<12} {count:>12,}")


# =============================================================================
# COV Command
# =============================================================================


@cli.command("cov")
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True, resolve_path=True),
    required=True,
    help="Path to the SubCorr configuration file (YAML).",
)
@click.option(
    "-t",
    "--cpus",
    type=click.IntRange(min=1),
    default=None,
    help="Worker processes (overrides resources.cpus).",
)
@click.option(
    "--maxl",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum lag in bases (overrides correlation.maxl).",
)
def run_cov(config_file, cpus, maxl):
    """
    Compute substitution correlations for every configured strategy and position.

    \b
    Examples:
        subcorr cov --config config.yml
        subcorr cov --config config.yml --cpus 8 --maxl 1500
    """
    exit_code = execute_correlation(
        config_file=config_file, cpus=cpus, maxl=maxl, version=__version__
    )
    sys.exit(exit_code)


# =============================================================================
# INFO Command
# =============================================================================


@cli.command("info")
def show_info():
    """
    Display information about the SubCorr installation.

    Shows the version, installation path, available strategies and
    position type codes.
    """
    package_dir = Path(__file__).parent

    click.echo("")
    click.echo("SubCorr Installation Information")
    click.echo("=" * 40)
    click.echo(f"Version:        {__version__}")
    click.echo(f"Package dir:    {package_dir}")
    click.echo(f"Config template: {get_template_path()}")
    click.echo(f"Strategies:     {', '.join(STRATEGIES)}")
    click.echo("Position types: " + ", ".join(f"{p.value}={p.name}" for p in PositionType))
    click.echo("")


# =============================================================================
# INIT Command (Interactive Configuration)
# =============================================================================


@cli.command("init")
@click.option(
    "--template",
    "use_template",
    is_flag=True,
    help="Print a template config to stdout.",
)
@click.option(
    "--output",
    default="subcorr_config.yml",
    help="Output config file path.",
    show_default=True,
)
def init_config(use_template, output):
    """Creates a new configuration file for a SubCorr analysis."""
    template_path = get_template_path()
    if use_template:
        with open(template_path, "r") as f:
            click.echo(f.read())
        return

    with open(template_path, "r") as f:
        config_template = yaml.safe_load(f)

    click.echo("Welcome to SubCorr! Let's create your configuration file.\n")

    try:
        output = prompt_text("Where should the config file be saved?", default=output)

        click.echo("\nReference genome:")
        genome = prompt_text(
            "Path to the reference genome FASTA:", validate_file=True, required=True
        )
        features = prompt_text(
            "Path to gene annotations (.ptt or .gff), empty to use a position profile:",
            validate_file=True,
        )
        profile = ""
        if not features:
            profile = prompt_text(
                "Path to the position profile (.pos):", validate_file=True, required=True
            )
        genetic_code = prompt_integer("NCBI genetic code table:", default=11, min_value=1)

        click.echo("\nComparisons:")
        strategies = prompt_choices(
            "Which comparison strategies should run?",
            list(STRATEGIES),
            defaults=["reads-vs-genome"],
        )
        bam = ""
        if any(STRATEGIES[s].uses_reads for s in strategies):
            bam = prompt_text("Path to the indexed BAM file:", validate_file=True, required=True)
        alignments = ""
        replicates = 0
        if any(not STRATEGIES[s].uses_reads for s in strategies):
            alignments = prompt_text(
                "Path to the ortholog alignments (JSON):", validate_file=True, required=True
            )
            replicates = prompt_integer("Bootstrap replicates (0 = off):", default=0, min_value=0)

        positions = prompt_choices(
            "Which position types should be analysed?",
            [p.name for p in PositionType if p != PositionType.UNDEFINED],
            defaults=[PositionType.FOUR_FOLD.name],
        )
        maxl = prompt_integer("Maximum lag in bases:", default=300, min_value=1)
        bias_correction = prompt_boolean("Apply n/(n-1) bias correction?", default=False)

        click.echo("\nOutput:")
        output_dir = prompt_text(
            "Where should the output files be saved?", default="./subcorr_output"
        )
        cpus = prompt_integer("Worker processes:", default=4, min_value=1)

    except KeyboardInterrupt:
        click.echo("\nConfiguration cancelled.")
        return

    config_template["input"].update(
        genome=genome,
        features=features,
        profile=profile,
        genetic_code=genetic_code,
        bam=bam,
        alignments=alignments,
    )
    config_template["output"]["dir"] = output_dir
    config_template["correlation"].update(
        maxl=maxl,
        positions=[int(PositionType[name]) for name in positions],
        strategies=strategies,
        bias_correction=bias_correction,
    )
    config_template["resources"]["cpus"] = cpus
    config_template["bootstrap"]["replicates"] = replicates

    with open(output, "w") as f:
        yaml.safe_dump(config_template, f, sort_keys=False, default_flow_style=None)

    click.echo(f"\nConfiguration file '{output}' was created successfully!")
    click.echo("\nTo start your analysis, run the following command:")
    click.echo(f"   subcorr cov --config {output}")


# =============================================================================
# Entry Point
# =============================================================================


def main():
    """Entry point for the SubCorr CLI."""
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        cli(standalone_mode=False)
    except click.exceptions.Abort:
        click.echo("\nOperation cancelled.")
        sys.exit(130)
    except KeyboardInterrupt:
        click.echo("\nInterrupted.")
        sys.exit(130)
    except SystemExit as e:
        sys.exit(e.code)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
