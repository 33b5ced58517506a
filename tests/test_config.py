"""Unit tests for AnalysisConfig."""

from pathlib import Path

import pytest

from batch_de.config import AnalysisConfig
from batch_de.model import UnmatchedPolicy


class TestAnalysisConfig:

    def test_defaults(self):
        config = AnalysisConfig()
        assert config.qval_threshold == 0.05
        assert config.first_n == 2000
        assert config.top_k == 4
        assert config.unmatched_policy is UnmatchedPolicy.DROP
        assert config.term_substring == "strain"
        config.validate()

    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("BATCH_DE_RESULTS_ROOT", str(tmp_path / "res"))
        monkeypatch.setenv("BATCH_DE_CACHE_DIR", str(tmp_path / "cache"))
        config = AnalysisConfig()
        assert config.results_root == tmp_path / "res"
        assert config.cache_dir == tmp_path / "cache"

    def test_env_unset(self, monkeypatch):
        monkeypatch.delenv("BATCH_DE_RESULTS_ROOT", raising=False)
        assert AnalysisConfig().results_root == Path("..") / "results"

    def test_model_formulas(self):
        formulas = AnalysisConfig().model_formulas()
        assert formulas == {
            "full": "~lane + strain",
            "lane": "~lane",
            "strain": "~strain",
            "reduced": "~1",
        }

    def test_test_names(self):
        config = AnalysisConfig(condition="genotype", batch="flowcell")
        assert config.batch_test_name() == "flowcell:full"
        assert config.naive_test_name() == "reduced:genotype"
        assert config.term_substring == "genotype"

    @pytest.mark.parametrize("kwargs", [
        {"qval_threshold": 0.0},
        {"qval_threshold": 1.5},
        {"first_n": 0},
        {"top_k": 0},
        {"min_prop": 2.0},
        {"on_unmatched": "ignore"},
        {"condition": "lane", "batch": "lane"},
        {"batch": "full"},
        {"condition": "reduced"},
    ])
    def test_validate_rejects(self, kwargs):
        with pytest.raises(ValueError):
            AnalysisConfig(**kwargs).validate()

    @pytest.mark.parametrize("kwargs", [{"batch": "full"}, {"condition": "full"}, {"batch": "reduced"}])
    def test_covariate_cannot_shadow_model_name(self, kwargs):
        with pytest.raises(ValueError, match="clashes with a fitted model name"):
            AnalysisConfig(**kwargs).validate()
