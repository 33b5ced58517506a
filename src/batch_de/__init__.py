"""Batch-aware differential expression for kallisto RNA-seq quantifications.

Tests a biological condition (strain) while controlling for a
sequencing batch (lane), and compares the result with the test that
ignores the batch.

Usage::

    from batch_de import AnalysisConfig, run_analysis, write_outputs

    config = AnalysisConfig(metadata_path="metadata/experiment.csv",
                            sample_column="run_accession")
    result = run_analysis(config)
    write_outputs(result, "output/")
"""

from batch_de.config import AnalysisConfig
from batch_de.errors import (
    BatchDEError,
    InvalidTestError,
    MalformedInputError,
    ModelNotFoundError,
    UnmatchedGeneError,
)
from batch_de.joiners import compare_effect_sizes, compare_rankings, rank_records
from batch_de.metadata import load_metadata
from batch_de.model import (
    AnalysisContext,
    CoefficientRecord,
    ComparisonRecord,
    EffectComparisonRecord,
    SampleRecord,
    SignificanceRecord,
    UnmatchedPolicy,
)
from batch_de.pipeline import AnalysisResult, run_analysis, write_outputs

__version__ = "0.1.0"

__all__ = [
    "AnalysisConfig",
    "AnalysisContext",
    "AnalysisResult",
    "BatchDEError",
    "CoefficientRecord",
    "ComparisonRecord",
    "EffectComparisonRecord",
    "InvalidTestError",
    "MalformedInputError",
    "ModelNotFoundError",
    "SampleRecord",
    "SignificanceRecord",
    "UnmatchedGeneError",
    "UnmatchedPolicy",
    "compare_effect_sizes",
    "compare_rankings",
    "load_metadata",
    "rank_records",
    "run_analysis",
    "write_outputs",
]
