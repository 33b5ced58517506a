"""
Readers and transforms for kallisto quantification output.

Each sample directory holds an ``abundance.tsv`` with the columns
``target_id, length, eff_length, est_counts, tpm``. Counts are summed
to genes, lowly expressed genes are filtered, and the remaining counts
are normalized by median-of-ratios size factors and log transformed.
"""

import logging
from pathlib import Path
from typing import Sequence, Union

import numpy as np
import pandas as pd

from .annotation import strip_version
from .model import SampleRecord

logger = logging.getLogger(__name__)

ABUNDANCE_FILE = "abundance.tsv"
ABUNDANCE_COLUMNS = ("target_id", "est_counts")


def read_abundance(path: Union[str, Path]) -> pd.DataFrame:
    """
    Read one sample's kallisto ``abundance.tsv``.

    Args:
        path: The sample's kallisto output directory, or the file itself

    Returns:
        DataFrame indexed by ``target_id``
    """
    path = Path(path)
    if path.is_dir() or path.suffix != ".tsv":
        path = path / ABUNDANCE_FILE
    if not path.exists():
        raise FileNotFoundError(f"kallisto abundance file not found: {path}")

    df = pd.read_csv(path, sep="\t")
    missing = [c for c in ABUNDANCE_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"{path}: missing column(s) {', '.join(missing)}")
    df["target_id"] = df["target_id"].astype(str)
    return df.set_index("target_id")


def build_count_matrix(samples: Sequence[SampleRecord]) -> pd.DataFrame:
    """Estimated counts as a transcripts x samples matrix, in sample order."""
    columns = {}
    for sample in samples:
        logger.debug("Reading abundances for %s from %s", sample.sample_id, sample.path)
        columns[sample.sample_id] = read_abundance(sample.path)["est_counts"]
    if not columns:
        return pd.DataFrame()
    counts = pd.concat(columns, axis=1).fillna(0.0)
    return counts[[s.sample_id for s in samples]]


def aggregate_to_genes(counts: pd.DataFrame, mapping: pd.DataFrame) -> pd.DataFrame:
    """
    Sum transcript counts per gene.

    Transcript ids are matched with their version suffix removed.
    Transcripts absent from ``mapping`` are dropped.

    Args:
        counts: transcripts x samples
        mapping: table with ``target_id`` and ``ens_gene`` columns

    Returns:
        genes x samples, indexed by ``ens_gene``
    """
    lookup = (
        mapping.assign(target_id=mapping["target_id"].map(strip_version))
        .drop_duplicates("target_id")
        .set_index("target_id")["ens_gene"]
    )
    genes = counts.index.map(lambda t: lookup.get(strip_version(t)))
    mapped = pd.notna(genes) & (genes != "")

    n_unmapped = int((~mapped).sum())
    if n_unmapped:
        logger.info("Dropping %d transcripts without a gene mapping", n_unmapped)

    gene_counts = counts[mapped].groupby(np.asarray(genes[mapped])).sum()
    gene_counts.index.name = None
    return gene_counts


def basic_filter(
    counts: pd.DataFrame, min_reads: float = 5.0, min_prop: float = 0.47
) -> pd.DataFrame:
    """Keep features with at least ``min_reads`` in at least ``min_prop`` of samples."""
    if counts.empty:
        return counts
    keep = (counts >= min_reads).mean(axis=1) >= min_prop
    logger.info("Filter kept %d of %d features", int(keep.sum()), len(keep))
    return counts[keep]


def size_factors(counts: pd.DataFrame) -> pd.Series:
    """
    Median-of-ratios size factors, one per sample.

    Only features with a non-zero count in every sample contribute.
    """
    positive = counts[(counts > 0).all(axis=1)]
    if positive.empty:
        logger.warning("No feature is expressed in every sample; using unit size factors")
        return pd.Series(1.0, index=counts.columns)
    log_counts = np.log(positive)
    log_geo_means = log_counts.mean(axis=1)
    return np.exp(log_counts.sub(log_geo_means, axis=0).median(axis=0))


def transform(
    counts: pd.DataFrame, factors: pd.Series, pseudocount: float = 0.5
) -> pd.DataFrame:
    """``log(count / size_factor + pseudocount)``."""
    return np.log(counts.div(factors, axis=1) + pseudocount)
