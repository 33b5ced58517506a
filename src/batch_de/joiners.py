"""Compare two DE result tables by gene rank and by effect size.

Both joins are inner joins on gene id. What happens to genes found in
only one ranked table is chosen with ``UnmatchedPolicy``; the effect
size join always drops them and returns an empty list when nothing
matches, which callers detect by length rather than by exception.
"""

import logging
from collections import OrderedDict, defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Union

from .config import DEFAULT_TOP_K
from .errors import UnmatchedGeneError
from .model import (
    CoefficientRecord,
    ComparisonRecord,
    EffectComparisonRecord,
    RankedRecord,
    SignificanceRecord,
    UnmatchedPolicy,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Rank comparison
# =============================================================================


def rank_records(records: Iterable[SignificanceRecord]) -> List[RankedRecord]:
    """Rank records by their position, starting at 1.

    The input order is taken as given (normally ascending q-value); ranks
    are not recomputed by sorting.
    """
    return [
        RankedRecord(gene_id=r.gene_id, q_value=r.q_value, rank=i)
        for i, r in enumerate(records, start=1)
    ]


def relative_difference(rank_a: int, rank_b: int) -> float:
    """``|rank_a - rank_b| / (rank_a + rank_b)``, in [0, 1) for positive ranks."""
    if rank_a < 1 or rank_b < 1:
        raise ValueError(f"ranks must be positive, got {rank_a} and {rank_b}")
    return abs(rank_a - rank_b) / (rank_a + rank_b)


def _first_ranks(ranked: Sequence[RankedRecord]) -> "OrderedDict[str, int]":
    # A gene listed twice keeps its better (earlier) rank
    ranks: "OrderedDict[str, int]" = OrderedDict()
    for r in ranked:
        ranks.setdefault(r.gene_id, r.rank)
    return ranks


def compare_rankings(
    first: Sequence[SignificanceRecord],
    second: Sequence[SignificanceRecord],
    first_n: Optional[int] = None,
    top_k: Optional[int] = DEFAULT_TOP_K,
    on_unmatched: Union[UnmatchedPolicy, str] = UnmatchedPolicy.DROP,
) -> List[ComparisonRecord]:
    """Join two ranked gene lists and order genes by rank disagreement.

    Args:
        first: Records in ranked order (e.g. batch-corrected test)
        second: Records in ranked order (e.g. test ignoring the batch)
        first_n: Keep only the first ``first_n`` records of ``first``
            before ranking. ``None`` keeps all.
        top_k: Number of comparisons to return. ``None`` returns all.
        on_unmatched: ``drop`` discards genes present in one table only,
            ``error`` raises, ``keep_with_null`` keeps them with a ``None``
            rank and score after every scored gene.

    Returns:
        Comparisons sorted by descending relative difference. Ties keep
        the order of ``first``. Empty if either input is empty.

    Raises:
        UnmatchedGeneError: under the ``error`` policy.
        ValueError: if ``first_n`` or ``top_k`` is below 1.
    """
    if first_n is not None and first_n < 1:
        raise ValueError(f"first_n must be positive, got {first_n}")
    if top_k is not None and top_k < 1:
        raise ValueError(f"top_k must be positive, got {top_k}")
    policy = UnmatchedPolicy(on_unmatched)
    first = list(first)
    second = list(second)
    if not first or not second:
        return []

    if first_n is not None:
        first = first[:first_n]

    ranks_a = _first_ranks(rank_records(first))
    ranks_b = _first_ranks(rank_records(second))

    matched: List[ComparisonRecord] = []
    only_a: List[str] = []
    for gene_id, rank_a in ranks_a.items():
        rank_b = ranks_b.get(gene_id)
        if rank_b is None:
            only_a.append(gene_id)
            continue
        matched.append(ComparisonRecord(
            gene_id=gene_id,
            rank_a=rank_a,
            rank_b=rank_b,
            relative_difference=relative_difference(rank_a, rank_b),
        ))
    only_b = [g for g in ranks_b if g not in ranks_a]

    if only_a or only_b:
        if policy is UnmatchedPolicy.ERROR:
            raise UnmatchedGeneError(only_a + only_b)
        logger.debug(
            "%d gene(s) only in first table, %d only in second (%s)",
            len(only_a), len(only_b), policy.value,
        )

    # list.sort is stable, also with reverse=True
    matched.sort(key=lambda c: c.relative_difference, reverse=True)

    if policy is UnmatchedPolicy.KEEP_WITH_NULL:
        matched.extend(
            ComparisonRecord(g, ranks_a[g], None, None) for g in only_a
        )
        matched.extend(
            ComparisonRecord(g, None, ranks_b[g], None) for g in only_b
        )

    if top_k is not None:
        matched = matched[:top_k]
    return matched


# =============================================================================
# Effect size comparison
# =============================================================================


def filter_terms(
    records: Iterable[CoefficientRecord], substring: str
) -> List[CoefficientRecord]:
    """Keep coefficients whose term contains ``substring`` (case-sensitive, no regex)."""
    return [r for r in records if substring in r.term]


def compare_effect_sizes(
    first: Sequence[CoefficientRecord],
    second: Sequence[CoefficientRecord],
    substring: str,
    gene_ids: Optional[Sequence[str]] = None,
) -> List[EffectComparisonRecord]:
    """Put a covariate's estimates from two models side by side.

    Both tables are filtered to terms containing ``substring`` and
    inner-joined on gene id. A gene with several matching terms yields
    every pairing, in table order.

    If ``gene_ids`` is given, only those genes are returned, in that
    order. No matching term in either table gives an empty list.
    """
    matched_a = filter_terms(first, substring)
    matched_b = filter_terms(second, substring)
    if not matched_a or not matched_b:
        logger.debug("No term matching %r in one of the coefficient tables", substring)
        return []

    by_gene_b: Dict[str, List[CoefficientRecord]] = defaultdict(list)
    for r in matched_b:
        by_gene_b[r.gene_id].append(r)

    joined: "OrderedDict[str, List[EffectComparisonRecord]]" = OrderedDict()
    for a in matched_a:
        for b in by_gene_b.get(a.gene_id, []):
            joined.setdefault(a.gene_id, []).append(EffectComparisonRecord(
                gene_id=a.gene_id,
                term_a=a.term,
                estimate_a=a.estimate,
                term_b=b.term,
                estimate_b=b.estimate,
            ))

    if gene_ids is None:
        return [rec for recs in joined.values() for rec in recs]

    result: List[EffectComparisonRecord] = []
    seen = set()
    for gene_id in gene_ids:
        if gene_id in seen:
            continue
        seen.add(gene_id)
        result.extend(joined.get(gene_id, []))
    return result
