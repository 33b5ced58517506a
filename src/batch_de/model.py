"""Typed records for the batch-effect DE analysis.

Every table the analysis passes around has its own dataclass here, so
columns are fixed at the loader boundary instead of being looked up by
name later. The analysis context is immutable: fitting and testing
return a new context rather than updating one in place.
"""

from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Type

import pandas as pd


@dataclass(frozen=True)
class SampleRecord:
    """One sequenced sample, with covariates derived from its library name."""

    sample_id: str
    library_name: str
    strain: str
    experiment: str
    lane: str
    path: str
    extra: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SignificanceRecord:
    """Gene-level q-value from one model comparison."""

    gene_id: str
    q_value: float
    gene_name: Optional[str] = None
    p_value: Optional[float] = None


@dataclass(frozen=True)
class RankedRecord:
    gene_id: str
    q_value: float
    rank: int  # 1-based position in the supplied sequence


@dataclass(frozen=True)
class ComparisonRecord:
    """A gene's rank in two result tables and how far apart they are."""

    gene_id: str
    rank_a: Optional[int]
    rank_b: Optional[int]
    relative_difference: Optional[float]


@dataclass(frozen=True)
class CoefficientRecord:
    gene_id: str
    term: str
    estimate: float
    std_error: Optional[float] = None


@dataclass(frozen=True)
class EffectComparisonRecord:
    """Estimates of a matching term from two fitted models, side by side."""

    gene_id: str
    term_a: str
    estimate_a: float
    term_b: str
    estimate_b: float


class UnmatchedPolicy(str, Enum):
    """What the rank join does with genes found in only one table."""

    DROP = "drop"
    ERROR = "error"
    KEEP_WITH_NULL = "keep_with_null"


@dataclass(frozen=True)
class FittedModel:
    """Per-gene fit of one design formula.

    ``coefficients`` and ``std_errors`` are genes x terms frames;
    ``log_likelihood`` and ``rss`` are indexed by gene.
    """

    name: str
    formula: str
    terms: Tuple[str, ...]
    coefficients: pd.DataFrame
    std_errors: pd.DataFrame
    log_likelihood: pd.Series
    rss: pd.Series
    df_model: int


@dataclass(frozen=True)
class TestResult:
    __test__ = False  # not a pytest class

    name: str
    test_type: str  # "lrt" | "wt"
    table: pd.DataFrame


@dataclass(frozen=True)
class AnalysisContext:
    """Everything needed to fit models and run tests on one experiment.

    ``abundance`` holds transformed gene abundances (genes x samples),
    ``sample_table`` the covariates indexed by sample id in the same
    column order.
    """

    samples: Tuple[SampleRecord, ...]
    sample_table: pd.DataFrame
    abundance: pd.DataFrame
    target_mapping: pd.DataFrame
    models: Mapping[str, FittedModel] = field(default_factory=dict)
    tests: Mapping[str, TestResult] = field(default_factory=dict)

    def with_model(self, model: FittedModel) -> "AnalysisContext":
        models = dict(self.models)
        models[model.name] = model
        return replace(self, models=models)

    def with_test(self, test: TestResult) -> "AnalysisContext":
        tests = dict(self.tests)
        tests[test.name] = test
        return replace(self, tests=tests)

    @property
    def gene_ids(self) -> List[str]:
        return list(self.abundance.index)

    @property
    def gene_names(self) -> Dict[str, str]:
        """Map gene id to external gene name, where the annotation has one."""
        mapping = self.target_mapping
        if mapping.empty or "ext_gene" not in mapping.columns:
            return {}
        pairs = mapping[["ens_gene", "ext_gene"]].dropna().drop_duplicates("ens_gene")
        return dict(zip(pairs["ens_gene"], pairs["ext_gene"]))


def records_to_frame(records: Sequence, record_type: Optional[Type] = None) -> pd.DataFrame:
    """Flatten a list of record dataclasses into a DataFrame.

    ``record_type`` supplies the column names when ``records`` is empty.
    Integer fields use the nullable ``Int64`` dtype so a missing rank does
    not turn the column into floats.
    """
    if records:
        df = pd.DataFrame([asdict(r) for r in records])
        for column in df.columns:
            values = [getattr(r, column) for r in records]
            present = [v for v in values if v is not None]
            if present and all(isinstance(v, int) and not isinstance(v, bool) for v in present):
                df[column] = df[column].astype("Int64")
        return df
    columns = [f.name for f in fields(record_type)] if record_type else []
    return pd.DataFrame(columns=columns)
