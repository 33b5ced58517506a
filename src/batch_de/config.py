"""Configuration for a batch-aware DE analysis run.

Defaults reproduce the strain-vs-lane walkthrough on mouse data. Two
paths can be overridden from the environment:

* ``BATCH_DE_RESULTS_ROOT``: directory holding one kallisto output
  folder per sample (default ``../results``).
* ``BATCH_DE_CACHE_DIR``: where the BioMart annotation cache lives
  (default ``~/.batch_de``).
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from .model import UnmatchedPolicy

DEFAULT_RESULTS_ROOT = Path("..") / "results"
DEFAULT_CACHE_DIR = Path.home() / ".batch_de"
DEFAULT_QUANT_SUBDIR = "kallisto"
DEFAULT_BIOMART_HOST = "www.ensembl.org"
DEFAULT_BIOMART_DATASET = "mmusculus_gene_ensembl"

# Pragmatic cap on the first result table before ranking; not a
# statistical threshold.
DEFAULT_FIRST_N = 2000
DEFAULT_TOP_K = 4

# Model names fitted alongside the per-covariate models
RESERVED_MODEL_NAMES = ("full", "reduced")


def _env_path(name: str, default: Path) -> Path:
    value = os.environ.get(name)
    return Path(value) if value else default


@dataclass
class AnalysisConfig:
    """Options for ``run_analysis()``."""

    metadata_path: Optional[Path] = None
    results_root: Path = field(
        default_factory=lambda: _env_path("BATCH_DE_RESULTS_ROOT", DEFAULT_RESULTS_ROOT)
    )
    quant_subdir: str = DEFAULT_QUANT_SUBDIR
    sample_column: str = "sample_id"
    library_column: str = "library_name"
    delimiter: str = "_"

    # Annotation
    biomart_dataset: str = DEFAULT_BIOMART_DATASET
    biomart_host: str = DEFAULT_BIOMART_HOST
    cache_dir: Path = field(
        default_factory=lambda: _env_path("BATCH_DE_CACHE_DIR", DEFAULT_CACHE_DIR)
    )

    # Covariates
    condition: str = "strain"
    batch: str = "lane"

    # Feature filtering and transform
    min_reads: float = 5.0
    min_prop: float = 0.47
    pseudocount: float = 0.5

    # Result comparison
    qval_threshold: float = 0.05
    first_n: Optional[int] = DEFAULT_FIRST_N
    top_k: Optional[int] = DEFAULT_TOP_K
    on_unmatched: str = UnmatchedPolicy.DROP.value
    effect_term: Optional[str] = None

    @property
    def unmatched_policy(self) -> UnmatchedPolicy:
        return UnmatchedPolicy(self.on_unmatched)

    @property
    def term_substring(self) -> str:
        return self.effect_term or self.condition

    def model_formulas(self) -> Dict[str, str]:
        """Named design formulas fitted by the pipeline, in fit order."""
        return {
            "full": f"~{self.batch} + {self.condition}",
            self.batch: f"~{self.batch}",
            self.condition: f"~{self.condition}",
            "reduced": "~1",
        }

    def batch_test_name(self) -> str:
        """LRT for the condition effect with the batch held in both models."""
        return f"{self.batch}:full"

    def naive_test_name(self) -> str:
        """LRT for the condition effect ignoring the batch."""
        return f"reduced:{self.condition}"

    def validate(self) -> None:
        if not 0 < self.qval_threshold <= 1:
            raise ValueError(f"qval_threshold must be in (0, 1], got {self.qval_threshold}")
        if self.first_n is not None and self.first_n < 1:
            raise ValueError(f"first_n must be positive, got {self.first_n}")
        if self.top_k is not None and self.top_k < 1:
            raise ValueError(f"top_k must be positive, got {self.top_k}")
        if not 0 <= self.min_prop <= 1:
            raise ValueError(f"min_prop must be in [0, 1], got {self.min_prop}")
        if self.condition == self.batch:
            raise ValueError("condition and batch must be different covariates")
        for name in (self.condition, self.batch):
            if name in RESERVED_MODEL_NAMES:
                raise ValueError(f"covariate name {name!r} clashes with a fitted model name")
        # Raises ValueError for unknown policies
        self.unmatched_policy
