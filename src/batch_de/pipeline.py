"""
Batch-effect analysis pipeline.

Runs the whole walkthrough: load metadata, fetch the transcript-to-gene
annotation, fit the four designs, test the condition effect with and
without the batch covariate, and compare the two result tables.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd

from .annotation import BiomartClient
from .config import AnalysisConfig
from .joiners import compare_effect_sizes, compare_rankings
from .metadata import load_metadata, samples_to_frame
from .model import (
    AnalysisContext,
    ComparisonRecord,
    EffectComparisonRecord,
    SampleRecord,
    records_to_frame,
)
from .modeling import (
    coefficient_records,
    coefficient_table,
    fit_model,
    likelihood_ratio_test,
    prepare,
    results_table,
    significance_records,
    wald_test,
)

logger = logging.getLogger(__name__)


@dataclass
class AnalysisResult:
    """Container for everything one pipeline run produces."""

    config: AnalysisConfig
    samples: List[SampleRecord] = field(default_factory=list)
    context: Optional[AnalysisContext] = None
    batch_results: pd.DataFrame = field(default_factory=pd.DataFrame)
    naive_results: pd.DataFrame = field(default_factory=pd.DataFrame)
    wald_results: pd.DataFrame = field(default_factory=pd.DataFrame)
    rank_comparison: List[ComparisonRecord] = field(default_factory=list)
    effect_comparison: List[EffectComparisonRecord] = field(default_factory=list)

    def summary(self) -> Dict[str, object]:
        n_features = len(self.context.abundance) if self.context is not None else 0
        return {
            "n_samples": len(self.samples),
            "n_features": n_features,
            "qval_threshold": self.config.qval_threshold,
            "batch_test": self.config.batch_test_name(),
            "n_significant_batch": len(self.batch_results),
            "naive_test": self.config.naive_test_name(),
            "n_significant_naive": len(self.naive_results),
            "top_rank_changes": [c.gene_id for c in self.rank_comparison],
            "n_effect_comparisons": len(self.effect_comparison),
        }


def fit_and_test(ctx: AnalysisContext, config: AnalysisConfig) -> AnalysisContext:
    """Fit every design in ``config`` and run both LRTs."""
    for name, formula in config.model_formulas().items():
        ctx = fit_model(ctx, name, formula)
    ctx = likelihood_ratio_test(ctx, config.batch, "full")
    ctx = likelihood_ratio_test(ctx, "reduced", config.condition)
    return ctx


def _condition_terms(ctx: AnalysisContext, config: AnalysisConfig) -> List[str]:
    return [t for t in ctx.models["full"].terms if t.startswith(config.condition)]


def run_analysis(
    config: AnalysisConfig,
    client: Optional[BiomartClient] = None,
) -> AnalysisResult:
    """
    Run the batch-effect analysis end to end.

    Args:
        config: Analysis configuration; ``metadata_path`` is required
        client: Annotation client (defaults to a ``BiomartClient`` built
            from the config)

    Returns:
        AnalysisResult with both result tables and both comparisons
    """
    config.validate()
    if config.metadata_path is None:
        raise ValueError("config.metadata_path is required")

    result = AnalysisResult(config=config)

    logger.info("Loading sample metadata from %s", config.metadata_path)
    result.samples = load_metadata(
        config.metadata_path,
        results_root=config.results_root,
        subdir=config.quant_subdir,
        sample_column=config.sample_column,
        library_column=config.library_column,
        delimiter=config.delimiter,
    )

    client = client or BiomartClient(
        dataset=config.biomart_dataset,
        host=config.biomart_host,
        cache_dir=config.cache_dir,
    )
    target_mapping = client.fetch_target_mapping()

    logger.info("Reading quantifications for %d samples", len(result.samples))
    ctx = prepare(
        result.samples,
        target_mapping,
        min_reads=config.min_reads,
        min_prop=config.min_prop,
        pseudocount=config.pseudocount,
    )
    ctx = fit_and_test(ctx, config)

    # Wald test on each level of the condition in the batch-aware model
    for term in _condition_terms(ctx, config):
        ctx = wald_test(ctx, term, "full")
    result.context = ctx

    result.batch_results = results_table(
        ctx, config.batch_test_name(), "lrt", qval_threshold=config.qval_threshold
    )
    result.naive_results = results_table(
        ctx, config.naive_test_name(), "lrt", qval_threshold=config.qval_threshold
    )
    wald_tables = [
        results_table(ctx, term, "wt").assign(term=term)
        for term in _condition_terms(ctx, config)
    ]
    if wald_tables:
        result.wald_results = pd.concat(wald_tables, ignore_index=True)

    logger.info(
        "%d significant with %s, %d with %s (q <= %s)",
        len(result.batch_results), config.batch_test_name(),
        len(result.naive_results), config.naive_test_name(),
        config.qval_threshold,
    )

    result.rank_comparison = compare_rankings(
        significance_records(result.batch_results),
        significance_records(result.naive_results),
        first_n=config.first_n,
        top_k=config.top_k,
        on_unmatched=config.unmatched_policy,
    )
    result.effect_comparison = compare_effect_sizes(
        coefficient_records(ctx, "full"),
        coefficient_records(ctx, config.condition),
        config.term_substring,
        gene_ids=[c.gene_id for c in result.rank_comparison],
    )
    if not result.effect_comparison:
        logger.info("No effect-size comparison rows for term %r", config.term_substring)

    return result


def write_outputs(result: AnalysisResult, output_dir: Union[str, Path]) -> Dict[str, Path]:
    """
    Write the result tables as TSV plus a JSON summary.

    Returns:
        Mapping of output name to written path
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    config = result.config
    written: Dict[str, Path] = {}

    def _write(name: str, df: pd.DataFrame) -> None:
        path = output_dir / name
        df.to_csv(path, sep="\t", index=False)
        written[name] = path

    _write("samples.tsv", samples_to_frame(result.samples))
    _write(f"{_slug(config.batch_test_name())}_results.tsv", result.batch_results)
    _write(f"{_slug(config.naive_test_name())}_results.tsv", result.naive_results)
    if not result.wald_results.empty:
        _write("wald_results.tsv", result.wald_results)
    if result.context is not None:
        for model in ("full", config.condition):
            _write(f"{model}_coefficients.tsv", coefficient_table(result.context, model))
    _write(
        "rank_comparison.tsv",
        records_to_frame(result.rank_comparison, ComparisonRecord),
    )
    _write(
        "effect_comparison.tsv",
        records_to_frame(result.effect_comparison, EffectComparisonRecord),
    )

    summary_path = output_dir / "summary.json"
    with summary_path.open("w", encoding="utf-8") as fh:
        json.dump(result.summary(), fh, indent=2)
    written["summary.json"] = summary_path

    logger.info("Wrote %d files to %s", len(written), output_dir)
    return written


def _slug(name: str) -> str:
    return name.replace(":", "_vs_")
