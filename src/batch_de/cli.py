from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Optional

import click
import pandas as pd

from batch_de.config import (
    DEFAULT_BIOMART_DATASET,
    DEFAULT_BIOMART_HOST,
    DEFAULT_FIRST_N,
    DEFAULT_QUANT_SUBDIR,
    DEFAULT_TOP_K,
    AnalysisConfig,
)
from batch_de.errors import BatchDEError
from batch_de.joiners import compare_effect_sizes, compare_rankings
from batch_de.metadata import load_metadata, samples_to_frame
from batch_de.model import (
    CoefficientRecord,
    ComparisonRecord,
    EffectComparisonRecord,
    SignificanceRecord,
    UnmatchedPolicy,
    records_to_frame,
)
from batch_de.pipeline import run_analysis, write_outputs

GENE_ID_COLUMNS = ("gene_id", "target_id", "ens_gene")
QVAL_COLUMNS = ("qval", "q_value")

logger = logging.getLogger(__name__)

POLICY_CHOICE = click.Choice([p.value for p in UnmatchedPolicy])


def _pick_column(df: pd.DataFrame, candidates: Iterable[str], path: Path) -> str:
    for name in candidates:
        if name in df.columns:
            return name
    raise click.ClickException(
        f"{path}: none of the columns {', '.join(candidates)} found"
    )


def _read_table(path: Path) -> pd.DataFrame:
    # Gene ids stay text so ids such as "00123" survive the round trip
    return pd.read_csv(path, sep="\t", dtype=str)


def _gene_rows(df: pd.DataFrame, gene_col: str, path: Path) -> pd.DataFrame:
    blank = df[gene_col].isna() | (df[gene_col].str.strip() == "")
    if blank.any():
        logger.warning("%s: skipping %d row(s) without a gene id", path, int(blank.sum()))
    return df[~blank]


def read_significance_table(path: Path) -> List[SignificanceRecord]:
    """Read a results TSV, keeping its row order as the ranking."""
    df = _read_table(path)
    gene_col = _pick_column(df, GENE_ID_COLUMNS, path)
    qval_col = _pick_column(df, QVAL_COLUMNS, path)
    df = _gene_rows(df, gene_col, path)
    qvals = pd.to_numeric(df[qval_col])
    return [
        SignificanceRecord(gene_id=g, q_value=float(q))
        for g, q in zip(df[gene_col], qvals)
    ]


def read_coefficient_table(path: Path) -> List[CoefficientRecord]:
    df = _read_table(path)
    gene_col = _pick_column(df, GENE_ID_COLUMNS, path)
    term_col = _pick_column(df, ("term",), path)
    est_col = _pick_column(df, ("estimate", "b"), path)
    df = _gene_rows(df, gene_col, path)
    estimates = pd.to_numeric(df[est_col])
    return [
        CoefficientRecord(gene_id=g, term=str(t), estimate=float(e))
        for g, t, e in zip(df[gene_col], df[term_col], estimates)
    ]


def _echo_table(df: pd.DataFrame) -> None:
    click.echo(df.to_csv(sep="\t", index=False), nl=False)


@click.group()
@click.option("--verbose", is_flag=True, help="Enable verbose logging.")
def cli(verbose: bool) -> None:
    """Batch-aware differential expression for kallisto quantifications."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)


@cli.command("run")
@click.option(
    "--metadata",
    "metadata_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="CSV sample sheet with sample and library name columns.",
)
@click.option(
    "--results-root",
    type=click.Path(path_type=Path),
    default=None,
    help="Directory with one kallisto output folder per sample "
    "(default: $BATCH_DE_RESULTS_ROOT or ../results).",
)
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("batch_de_output"),
    show_default=True,
    help="Directory to write result tables to.",
)
@click.option("--quant-subdir", default=DEFAULT_QUANT_SUBDIR, show_default=True)
@click.option("--sample-column", default="sample_id", show_default=True)
@click.option("--library-column", default="library_name", show_default=True)
@click.option("--condition", default="strain", show_default=True,
              help="Covariate under test.")
@click.option("--batch", default="lane", show_default=True,
              help="Batch covariate to control for.")
@click.option("--biomart-dataset", default=DEFAULT_BIOMART_DATASET, show_default=True)
@click.option("--biomart-host", default=DEFAULT_BIOMART_HOST, show_default=True)
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Annotation cache directory (default: $BATCH_DE_CACHE_DIR or ~/.batch_de).",
)
@click.option(
    "--qval",
    "qval_threshold",
    type=click.FloatRange(0, 1, min_open=True),
    default=0.05,
    show_default=True,
    help="q-value threshold for the significant result tables.",
)
@click.option(
    "--first-n",
    type=click.IntRange(min=1),
    default=DEFAULT_FIRST_N,
    show_default=True,
    help="Rows of the batch-aware table kept before rank comparison.",
)
@click.option(
    "--top-k",
    type=click.IntRange(min=1),
    default=DEFAULT_TOP_K,
    show_default=True,
    help="Genes with the largest rank change to report.",
)
@click.option("--on-unmatched", type=POLICY_CHOICE, default="drop", show_default=True)
def run_command(
    metadata_path: Path,
    results_root: Optional[Path],
    output_dir: Path,
    quant_subdir: str,
    sample_column: str,
    library_column: str,
    condition: str,
    batch: str,
    biomart_dataset: str,
    biomart_host: str,
    cache_dir: Optional[Path],
    qval_threshold: float,
    first_n: int,
    top_k: int,
    on_unmatched: str,
) -> None:
    """Run the full batch-aware analysis and write result tables."""
    config = AnalysisConfig(
        metadata_path=metadata_path,
        quant_subdir=quant_subdir,
        sample_column=sample_column,
        library_column=library_column,
        condition=condition,
        batch=batch,
        biomart_dataset=biomart_dataset,
        biomart_host=biomart_host,
        qval_threshold=qval_threshold,
        first_n=first_n,
        top_k=top_k,
        on_unmatched=on_unmatched,
    )
    if results_root is not None:
        config.results_root = results_root
    if cache_dir is not None:
        config.cache_dir = cache_dir

    try:
        result = run_analysis(config)
    except (BatchDEError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    written = write_outputs(result, output_dir)
    summary = result.summary()
    click.echo(
        f"{summary['n_significant_batch']} genes significant with {summary['batch_test']}, "
        f"{summary['n_significant_naive']} with {summary['naive_test']}"
    )
    for gene_id in summary["top_rank_changes"]:
        click.echo(f"  rank change: {gene_id}")
    click.echo(f"Wrote {len(written)} files to {output_dir}")


@cli.command("metadata")
@click.argument("metadata_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--results-root", type=click.Path(path_type=Path), default=None)
@click.option("--quant-subdir", default=DEFAULT_QUANT_SUBDIR, show_default=True)
@click.option("--sample-column", default="sample_id", show_default=True)
@click.option("--library-column", default="library_name", show_default=True)
def metadata_command(
    metadata_path: Path,
    results_root: Optional[Path],
    quant_subdir: str,
    sample_column: str,
    library_column: str,
) -> None:
    """Print the sample table with covariates derived from library names."""
    root = results_root if results_root is not None else AnalysisConfig().results_root
    try:
        samples = load_metadata(
            metadata_path,
            results_root=root,
            subdir=quant_subdir,
            sample_column=sample_column,
            library_column=library_column,
        )
    except BatchDEError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_table(samples_to_frame(samples))


@cli.command("compare")
@click.argument("first", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("second", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--first-n",
    type=click.IntRange(min=1),
    default=None,
    help="Keep only the first N rows of FIRST before ranking.",
)
@click.option(
    "--top-k",
    type=click.IntRange(min=1),
    default=DEFAULT_TOP_K,
    show_default=True,
)
@click.option("--all", "show_all", is_flag=True, help="Report every joined gene.")
@click.option("--on-unmatched", type=POLICY_CHOICE, default="drop", show_default=True)
def compare_command(
    first: Path,
    second: Path,
    first_n: Optional[int],
    top_k: int,
    show_all: bool,
    on_unmatched: str,
) -> None:
    """Compare gene ranks between two result TSVs (rows in ranked order)."""
    try:
        comparison = compare_rankings(
            read_significance_table(first),
            read_significance_table(second),
            first_n=first_n,
            top_k=None if show_all else top_k,
            on_unmatched=on_unmatched,
        )
    except (BatchDEError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    if not comparison:
        click.echo("No genes in common.", err=True)
    _echo_table(records_to_frame(comparison, ComparisonRecord))


@cli.command("effects")
@click.argument("first", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("second", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--term", required=True, help="Substring a coefficient term must contain.")
@click.option(
    "--gene",
    "genes",
    multiple=True,
    help="Restrict to this gene id (repeat for multiple, order is kept).",
)
def effects_command(first: Path, second: Path, term: str, genes: Iterable[str]) -> None:
    """Put matching coefficient estimates from two models side by side."""
    try:
        comparison = compare_effect_sizes(
            read_coefficient_table(first),
            read_coefficient_table(second),
            term,
            gene_ids=list(genes) or None,
        )
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    if not comparison:
        click.echo(f"No coefficients matching {term!r} in both tables.", err=True)
    _echo_table(records_to_frame(comparison, EffectComparisonRecord))


def main() -> None:  # pragma: no cover
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
