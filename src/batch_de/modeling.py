"""
Linear modeling of transformed gene abundances.

Builds an analysis context from kallisto output, fits named design
formulas gene by gene with statsmodels, and compares fits with
likelihood-ratio and Wald tests. Every step takes a context and
returns a new one; nothing is updated in place, so the order of fits
and tests is visible in the calling code::

    ctx = prepare(samples, t2g)
    ctx = fit_model(ctx, "full", "~lane + strain")
    ctx = fit_model(ctx, "lane", "~lane")
    ctx = likelihood_ratio_test(ctx, "lane", "full")
    table = results_table(ctx, "lane:full", "lrt", qval_threshold=0.05)
"""

import logging
import re
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from patsy import PatsyError, dmatrix
from scipy import stats
from statsmodels.stats.multitest import multipletests

from .errors import InvalidTestError, ModelNotFoundError
from .metadata import samples_to_frame
from .model import (
    AnalysisContext,
    CoefficientRecord,
    FittedModel,
    SampleRecord,
    SignificanceRecord,
    TestResult,
)
from .quant import aggregate_to_genes, basic_filter, build_count_matrix, size_factors, transform

logger = logging.getLogger(__name__)

INTERCEPT = "(Intercept)"
_TREATMENT_TERM = re.compile(r"^(?P<factor>.+)\[T\.(?P<level>.+)\]$")

TEST_TYPES = ("lrt", "wt")


# =============================================================================
# Context construction
# =============================================================================


def prepare(
    samples: Sequence[SampleRecord],
    target_mapping: Optional[pd.DataFrame] = None,
    min_reads: float = 5.0,
    min_prop: float = 0.47,
    pseudocount: float = 0.5,
) -> AnalysisContext:
    """
    Read every sample's abundances and build the analysis context.

    Args:
        samples: Sample records; each ``path`` must hold an ``abundance.tsv``
        target_mapping: ``target_id``/``ens_gene``/``ext_gene`` table.
            Transcripts are summed to genes when given; otherwise the
            analysis runs on transcripts.
        min_reads: Filter threshold on estimated counts
        min_prop: Fraction of samples that must pass ``min_reads``
        pseudocount: Added before the log transform

    Returns:
        A context with no fitted models
    """
    counts = build_count_matrix(samples)
    if target_mapping is not None and not target_mapping.empty:
        counts = aggregate_to_genes(counts, target_mapping)
    counts = basic_filter(counts, min_reads=min_reads, min_prop=min_prop)
    abundance = transform(counts, size_factors(counts), pseudocount=pseudocount)
    return context_from_abundance(samples, abundance, target_mapping)


def context_from_abundance(
    samples: Sequence[SampleRecord],
    abundance: pd.DataFrame,
    target_mapping: Optional[pd.DataFrame] = None,
) -> AnalysisContext:
    """Build a context from an already transformed features x samples matrix."""
    sample_ids = [s.sample_id for s in samples]
    missing = [s for s in sample_ids if s not in abundance.columns]
    if missing:
        raise ValueError(f"abundance matrix lacks sample(s): {', '.join(missing)}")

    if target_mapping is None:
        target_mapping = pd.DataFrame(columns=["target_id", "ens_gene", "ext_gene"])

    logger.info(
        "Prepared analysis of %d features across %d samples",
        len(abundance), len(sample_ids),
    )
    return AnalysisContext(
        samples=tuple(samples),
        sample_table=samples_to_frame(samples),
        abundance=abundance[sample_ids].astype(float),
        target_mapping=target_mapping,
    )


# =============================================================================
# Model fitting
# =============================================================================


def term_name(column: str) -> str:
    """Report a design column the compact way: ``strain[T.DBA]`` -> ``strainDBA``."""
    if column == "Intercept":
        return INTERCEPT
    match = _TREATMENT_TERM.match(column)
    if match:
        return match.group("factor") + match.group("level")
    return column


def design_matrix(sample_table: pd.DataFrame, formula: str) -> pd.DataFrame:
    """Design matrix for a one-sided formula such as ``~lane + strain``."""
    rhs = formula.strip()
    if rhs.startswith("~"):
        rhs = rhs[1:].strip()
    try:
        design = dmatrix(rhs or "1", sample_table, return_type="dataframe")
    except PatsyError as exc:
        raise InvalidTestError(f"cannot build design for {formula!r}: {exc}") from exc
    design.columns = [term_name(c) for c in design.columns]
    return design


def fit_model(ctx: AnalysisContext, name: str, formula: str) -> AnalysisContext:
    """
    Fit ``formula`` to every gene with ordinary least squares.

    Args:
        ctx: Current analysis context
        name: Name to store the fit under (replaces an existing fit)
        formula: One-sided design formula over sample covariates

    Returns:
        A new context holding the fitted model
    """
    design = design_matrix(ctx.sample_table, formula)
    X = design.to_numpy()

    params, bses, llfs, rsss = [], [], [], []
    for _, y in ctx.abundance.iterrows():
        result = sm.OLS(y.to_numpy(), X).fit()
        params.append(result.params)
        bses.append(result.bse)
        llfs.append(result.llf)
        rsss.append(result.ssr)

    index = ctx.abundance.index
    columns = list(design.columns)
    model = FittedModel(
        name=name,
        formula=formula,
        terms=tuple(columns),
        coefficients=pd.DataFrame(params, index=index, columns=columns),
        std_errors=pd.DataFrame(bses, index=index, columns=columns),
        log_likelihood=pd.Series(llfs, index=index, dtype=float),
        rss=pd.Series(rsss, index=index, dtype=float),
        df_model=int(np.linalg.matrix_rank(X)),
    )
    logger.info("Fitted model %r (%s) to %d features", name, formula, len(index))
    return ctx.with_model(model)


def get_model(ctx: AnalysisContext, name: str) -> FittedModel:
    try:
        return ctx.models[name]
    except KeyError:
        raise ModelNotFoundError(
            f"model {name!r} has not been fitted; fitted models: {sorted(ctx.models)}"
        ) from None


def list_models(ctx: AnalysisContext) -> pd.DataFrame:
    """One row per fitted model: name, formula, design rank."""
    rows = [
        {"name": m.name, "formula": m.formula, "df_model": m.df_model}
        for m in ctx.models.values()
    ]
    return pd.DataFrame(rows, columns=["name", "formula", "df_model"])


# =============================================================================
# Tests
# =============================================================================


def _adjust(pvalues: np.ndarray) -> np.ndarray:
    if len(pvalues) == 0:
        return pvalues
    _, adjusted, _, _ = multipletests(pvalues, method="fdr_bh")
    return adjusted


def likelihood_ratio_test(
    ctx: AnalysisContext, null_model: str, alt_model: str
) -> AnalysisContext:
    """
    Compare a reduced model against a fuller one for every gene.

    The statistic ``2 * (llf_alt - llf_null)`` is referred to a
    chi-square distribution with the difference in design rank as
    degrees of freedom. q-values are Benjamini-Hochberg adjusted.
    The test is stored as ``"<null>:<alt>"``.
    """
    null = get_model(ctx, null_model)
    alt = get_model(ctx, alt_model)
    df = alt.df_model - null.df_model
    if df <= 0:
        raise InvalidTestError(
            f"{null_model!r} (rank {null.df_model}) is not nested in "
            f"{alt_model!r} (rank {alt.df_model})"
        )

    with np.errstate(invalid="ignore"):
        stat = 2.0 * (alt.log_likelihood - null.log_likelihood)
    stat = stat.clip(lower=0.0)
    pval = pd.Series(stats.chi2.sf(stat, df), index=stat.index)
    # Genes with no variance give an undefined statistic
    pval = pval.fillna(1.0)

    table = pd.DataFrame({
        "gene_id": stat.index,
        "test_stat": stat.to_numpy(),
        "degrees_free": df,
        "pval": pval.to_numpy(),
        "qval": _adjust(pval.to_numpy()),
        "rss": alt.rss.to_numpy(),
        "mean_obs": ctx.abundance.mean(axis=1).to_numpy(),
        "var_obs": ctx.abundance.var(axis=1).to_numpy(),
    })
    name = f"{null_model}:{alt_model}"
    logger.info(
        "LRT %s: %d of %d features at q <= 0.05",
        name, int((table["qval"] <= 0.05).sum()), len(table),
    )
    return ctx.with_test(TestResult(name=name, test_type="lrt", table=table))


def wald_test(ctx: AnalysisContext, term: str, model: str) -> AnalysisContext:
    """
    Test one coefficient of a fitted model for every gene.

    The table holds the estimate ``b`` and its standard error ``se_b``
    along with normal-approximation p-values and BH q-values. The test
    is stored under the term name.
    """
    fitted = get_model(ctx, model)
    if term not in fitted.terms:
        raise InvalidTestError(
            f"model {model!r} has no term {term!r}; terms: {list(fitted.terms)}"
        )

    b = fitted.coefficients[term]
    se_b = fitted.std_errors[term]
    with np.errstate(divide="ignore", invalid="ignore"):
        z = b / se_b
    pval = pd.Series(2.0 * stats.norm.sf(np.abs(z)), index=b.index).fillna(1.0)

    table = pd.DataFrame({
        "gene_id": b.index,
        "b": b.to_numpy(),
        "se_b": se_b.to_numpy(),
        "pval": pval.to_numpy(),
        "qval": _adjust(pval.to_numpy()),
        "mean_obs": ctx.abundance.mean(axis=1).to_numpy(),
    })
    logger.info("Wald test %s in model %r on %d features", term, model, len(table))
    return ctx.with_test(TestResult(name=term, test_type="wt", table=table))


def list_tests(ctx: AnalysisContext) -> pd.DataFrame:
    rows = [{"name": t.name, "test_type": t.test_type} for t in ctx.tests.values()]
    return pd.DataFrame(rows, columns=["name", "test_type"])


# =============================================================================
# Results
# =============================================================================


def results_table(
    ctx: AnalysisContext,
    test: str,
    test_type: str = "lrt",
    qval_threshold: Optional[float] = None,
) -> pd.DataFrame:
    """
    Results of a named test, most significant first.

    Args:
        ctx: Analysis context holding the test
        test: Test name (``"lane:full"`` for an LRT, the term for a Wald test)
        test_type: ``"lrt"`` or ``"wt"``
        qval_threshold: Keep only rows with ``qval <= qval_threshold``

    Returns:
        DataFrame with ``gene_id``, ``gene_name``, ``pval``, ``qval`` and the
        test's own columns, sorted by q-value then p-value.
    """
    if test_type not in TEST_TYPES:
        raise InvalidTestError(f"unknown test type {test_type!r}; expected one of {TEST_TYPES}")
    try:
        result = ctx.tests[test]
    except KeyError:
        raise ModelNotFoundError(
            f"test {test!r} has not been run; available: {sorted(ctx.tests)}"
        ) from None
    if result.test_type != test_type:
        raise InvalidTestError(f"test {test!r} is a {result.test_type!r} test, not {test_type!r}")

    table = result.table.copy()
    names = ctx.gene_names
    table.insert(1, "gene_name", table["gene_id"].map(names))
    table = table.sort_values(["qval", "pval"], kind="mergesort").reset_index(drop=True)

    if qval_threshold is not None:
        table = table[table["qval"] <= qval_threshold].reset_index(drop=True)
    return table


def significance_records(table: pd.DataFrame) -> List[SignificanceRecord]:
    """Turn a results table into q-value records, keeping row order."""
    records = []
    for row in table.itertuples(index=False):
        gene_name = getattr(row, "gene_name", None)
        pval = getattr(row, "pval", None)
        records.append(SignificanceRecord(
            gene_id=str(row.gene_id),
            q_value=float(row.qval),
            gene_name=None if pd.isna(gene_name) else str(gene_name),
            p_value=None if pval is None or pd.isna(pval) else float(pval),
        ))
    return records


def coefficient_table(ctx: AnalysisContext, model: str) -> pd.DataFrame:
    """Long-format coefficients: ``gene_id``, ``term``, ``estimate``, ``std_error``."""
    fitted = get_model(ctx, model)
    coef = fitted.coefficients
    n_genes, n_terms = coef.shape
    # Row-major: all terms of the first gene, then the next gene
    return pd.DataFrame({
        "gene_id": np.repeat(coef.index.to_numpy(), n_terms),
        "term": np.tile(np.asarray(coef.columns, dtype=object), n_genes),
        "estimate": coef.to_numpy().ravel(),
        "std_error": fitted.std_errors.to_numpy().ravel(),
    })


def coefficient_records(ctx: AnalysisContext, model: str) -> List[CoefficientRecord]:
    table = coefficient_table(ctx, model)
    return [
        CoefficientRecord(
            gene_id=str(r.gene_id),
            term=str(r.term),
            estimate=float(r.estimate),
            std_error=float(r.std_error),
        )
        for r in table.itertuples(index=False)
    ]
