"""Unit tests for the rank and effect-size joins."""

import itertools

import pytest

from batch_de.errors import UnmatchedGeneError
from batch_de.joiners import (
    compare_effect_sizes,
    compare_rankings,
    filter_terms,
    rank_records,
    relative_difference,
)
from batch_de.model import (
    CoefficientRecord,
    ComparisonRecord,
    SignificanceRecord,
    UnmatchedPolicy,
    records_to_frame,
)


def _sig(*pairs):
    return [SignificanceRecord(gene_id=g, q_value=q) for g, q in pairs]


def _sig_ids(*gene_ids):
    return [SignificanceRecord(gene_id=g, q_value=0.01 * (i + 1)) for i, g in enumerate(gene_ids)]


def _coef(gene_id, term, estimate):
    return CoefficientRecord(gene_id=gene_id, term=term, estimate=estimate)


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------

class TestRankRecords:

    def test_positional_ranks(self):
        ranked = rank_records(_sig(("g1", 0.01), ("g2", 0.02), ("g3", 0.03)))
        assert [(r.gene_id, r.rank) for r in ranked] == [("g1", 1), ("g2", 2), ("g3", 3)]

    def test_rank_not_recomputed_by_q_value(self):
        ranked = rank_records(_sig(("g1", 0.5), ("g2", 0.01)))
        assert [r.rank for r in ranked] == [1, 2]
        assert ranked[0].q_value == 0.5


class TestRelativeDifference:

    def test_equal_ranks(self):
        assert relative_difference(7, 7) == 0.0

    def test_example(self):
        assert relative_difference(1, 2) == pytest.approx(1 / 3)

    def test_range(self):
        for a, b in itertools.product(range(1, 40), repeat=2):
            d = relative_difference(a, b)
            assert 0.0 <= d < 1.0

    def test_rejects_non_positive(self):
        with pytest.raises(ValueError):
            relative_difference(0, 3)


# ---------------------------------------------------------------------------
# compare_rankings
# ---------------------------------------------------------------------------

class TestCompareRankings:

    def test_example(self):
        a = _sig(("g1", 0.01), ("g2", 0.02), ("g3", 0.03))
        b = _sig(("g2", 0.01), ("g1", 0.02))
        result = compare_rankings(a, b, top_k=None)

        assert [c.gene_id for c in result] == ["g1", "g2"]
        by_gene = {c.gene_id: c for c in result}
        assert (by_gene["g1"].rank_a, by_gene["g1"].rank_b) == (1, 2)
        assert (by_gene["g2"].rank_a, by_gene["g2"].rank_b) == (2, 1)
        assert by_gene["g1"].relative_difference == pytest.approx(0.3333, abs=1e-3)
        assert by_gene["g2"].relative_difference == pytest.approx(0.3333, abs=1e-3)

    def test_join_is_symmetric_in_gene_ids(self):
        s1 = _sig_ids("a", "b", "c", "d", "e")
        s2 = _sig_ids("e", "x", "c", "a", "y")
        forward = {c.gene_id for c in compare_rankings(s1, s2, top_k=None)}
        backward = {c.gene_id for c in compare_rankings(s2, s1, top_k=None)}
        assert forward == backward == {"a", "c", "e"}

    def test_disjoint_is_empty(self):
        assert compare_rankings(_sig_ids("a", "b"), _sig_ids("c", "d")) == []

    @pytest.mark.parametrize("policy", list(UnmatchedPolicy))
    def test_empty_input_is_empty(self, policy):
        assert compare_rankings([], _sig_ids("a"), on_unmatched=policy) == []
        assert compare_rankings(_sig_ids("a"), [], on_unmatched=policy) == []

    def test_sorted_by_descending_difference(self):
        a = _sig_ids("g1", "g2", "g3", "g4")
        b = _sig_ids("g4", "g2", "g3", "g1")
        result = compare_rankings(a, b, top_k=None)

        diffs = [c.relative_difference for c in result]
        assert diffs == sorted(diffs, reverse=True)
        # g1 (1 vs 4) and g4 (4 vs 1) tie; first-table order wins
        assert [c.gene_id for c in result[:2]] == ["g1", "g4"]
        assert {c.gene_id for c in result[2:]} == {"g2", "g3"}

    def test_ties_keep_first_sequence_order(self):
        a = _sig_ids("g3", "g1", "g2")
        b = _sig_ids("g3", "g1", "g2")
        result = compare_rankings(a, b, top_k=None)
        assert [c.gene_id for c in result] == ["g3", "g1", "g2"]
        assert all(c.relative_difference == 0.0 for c in result)

    def test_top_k(self):
        a = _sig_ids(*[f"g{i}" for i in range(10)])
        b = list(reversed(a))
        assert len(compare_rankings(a, b)) == 4
        assert len(compare_rankings(a, b, top_k=2)) == 2
        assert len(compare_rankings(a, b, top_k=None)) == 10

    def test_first_n_caps_first_table_only(self):
        a = _sig_ids("g1", "g2", "g3")
        b = _sig_ids("g3", "g2", "g1")
        result = compare_rankings(a, b, first_n=2, top_k=None)

        assert {c.gene_id for c in result} == {"g1", "g2"}
        by_gene = {c.gene_id: c for c in result}
        assert by_gene["g1"].rank_b == 3

    @pytest.mark.parametrize("first_n", [0, -1])
    def test_first_n_below_one_rejected(self, first_n):
        with pytest.raises(ValueError, match="first_n"):
            compare_rankings(_sig_ids("g1"), _sig_ids("g1"), first_n=first_n, on_unmatched="error")

    @pytest.mark.parametrize("top_k", [0, -1])
    def test_top_k_below_one_rejected(self, top_k):
        with pytest.raises(ValueError, match="top_k"):
            compare_rankings(_sig_ids("g1", "g2"), _sig_ids("g2", "g1"), top_k=top_k)

    def test_duplicate_gene_keeps_first_rank(self):
        a = _sig_ids("g1", "g1", "g2")
        b = _sig_ids("g2", "g1")
        result = compare_rankings(a, b, top_k=None)
        by_gene = {c.gene_id: c for c in result}
        assert len(result) == 2
        assert by_gene["g1"].rank_a == 1

    def test_error_policy(self):
        with pytest.raises(UnmatchedGeneError) as excinfo:
            compare_rankings(_sig_ids("a", "b"), _sig_ids("b", "c"), on_unmatched="error")
        assert excinfo.value.gene_ids == ["a", "c"]

    def test_error_policy_all_matched(self):
        result = compare_rankings(
            _sig_ids("a", "b"), _sig_ids("b", "a"), on_unmatched=UnmatchedPolicy.ERROR
        )
        assert len(result) == 2

    def test_keep_with_null(self):
        result = compare_rankings(
            _sig_ids("a", "b", "c"),
            _sig_ids("d", "a"),
            top_k=None,
            on_unmatched="keep_with_null",
        )
        assert [c.gene_id for c in result] == ["a", "b", "c", "d"]
        assert result[0].relative_difference == pytest.approx(1 / 3)
        assert (result[1].rank_a, result[1].rank_b, result[1].relative_difference) == (2, None, None)
        assert (result[3].rank_a, result[3].rank_b) == (None, 1)

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            compare_rankings(_sig_ids("a"), _sig_ids("a"), on_unmatched="ignore")

    def test_keep_with_null_ranks_stay_integer_in_frame(self):
        result = compare_rankings(
            _sig_ids("a", "b"), _sig_ids("a"), top_k=None, on_unmatched="keep_with_null"
        )
        df = records_to_frame(result, ComparisonRecord)

        assert str(df["rank_a"].dtype) == "Int64"
        assert str(df["rank_b"].dtype) == "Int64"
        lines = df.to_csv(sep="\t", index=False).splitlines()
        assert lines[1].split("\t")[:3] == ["a", "1", "1"]
        assert lines[2].split("\t")[:3] == ["b", "2", ""]


# ---------------------------------------------------------------------------
# Effect sizes
# ---------------------------------------------------------------------------

class TestFilterTerms:

    def test_example(self):
        records = [_coef("g1", "(Intercept)", 3.0), _coef("g1", "strainD2", 1.5)]
        assert [r.term for r in filter_terms(records, "strain")] == ["strainD2"]

    def test_case_sensitive(self):
        assert filter_terms([_coef("g1", "StrainD2", 1.0)], "strain") == []

    def test_no_regex(self):
        records = [_coef("g1", "strainD2", 1.0), _coef("g1", "lane.L2", 1.0)]
        assert [r.term for r in filter_terms(records, "lane.")] == ["lane.L2"]
        assert filter_terms(records, "str.in") == []


class TestCompareEffectSizes:

    def _tables(self):
        full = [
            _coef("g1", "(Intercept)", 5.0),
            _coef("g1", "laneL2", 0.3),
            _coef("g1", "strainDBA", 1.2),
            _coef("g2", "(Intercept)", 4.0),
            _coef("g2", "strainDBA", -0.5),
            _coef("g3", "strainDBA", 2.0),
        ]
        strain_only = [
            _coef("g2", "strainDBA", -0.9),
            _coef("g1", "(Intercept)", 5.1),
            _coef("g1", "strainDBA", 1.6),
            _coef("g4", "strainDBA", 0.1),
        ]
        return full, strain_only

    def test_join(self):
        full, strain_only = self._tables()
        result = compare_effect_sizes(full, strain_only, "strain")

        assert [r.gene_id for r in result] == ["g1", "g2"]
        assert (result[0].estimate_a, result[0].estimate_b) == (1.2, 1.6)
        assert result[0].term_a == result[0].term_b == "strainDBA"

    def test_restrict_to_gene_order(self):
        full, strain_only = self._tables()
        result = compare_effect_sizes(full, strain_only, "strain", gene_ids=["g2", "g9", "g1", "g2"])
        assert [r.gene_id for r in result] == ["g2", "g1"]

    def test_no_matching_term_is_empty(self):
        full, strain_only = self._tables()
        assert compare_effect_sizes(full, strain_only, "batch") == []
        assert compare_effect_sizes(full, [], "strain") == []

    def test_multiple_terms_pair_up(self):
        a = [_coef("g1", "strainA", 1.0), _coef("g1", "strainB", 2.0)]
        b = [_coef("g1", "strainA", 1.5)]
        result = compare_effect_sizes(a, b, "strain")
        assert [(r.term_a, r.term_b) for r in result] == [("strainA", "strainA"), ("strainB", "strainA")]
