"""
Unit tests for ranking and reshaping of result tables.
"""

import numpy as np
import pandas as pd
import pytest

from airwayseq.core import ValidationError
from airwayseq.services.analysis.result_summary_service import ResultSummaryService


@pytest.fixture
def service():
    return ResultSummaryService()


def _gene(n):
    return f"ENSG{n:011d}"


@pytest.mark.unit
class TestRankByEffect:
    def test_significant_only_with_stable_ties(self, service, results_table):
        ranked, stats, _ = service.rank_by_effect(results_table, n=30)

        assert list(ranked.index) == [_gene(2), _gene(1), _gene(3), _gene(7)]
        assert list(ranked["rank"]) == [1, 2, 3, 4]
        assert stats["n_candidates"] == 4

    def test_all_genes_nan_last(self, service, results_table):
        ranked, _, _ = service.rank_by_effect(results_table, n=30, significant_only=False)

        assert list(ranked.index) == [
            _gene(5), _gene(2), _gene(1), _gene(3), _gene(7), _gene(8), _gene(4), _gene(6)
        ]

    def test_top10_is_prefix_of_top30(self, service):
        rng = np.random.default_rng(11)
        n = 500
        # coarse rounding creates many exact ties
        table = pd.DataFrame(
            {
                "log2FoldChange": np.round(rng.normal(0, 2, n), 1),
                "padj": rng.uniform(0, 0.04, n),
            },
            index=[_gene(i) for i in range(n)],
        )

        top30, _, _ = service.rank_by_effect(table, n=30)
        top10, _, _ = service.rank_by_effect(table, n=10)

        assert list(top10.index) == list(top30.index[:10])
        assert set(top10.index) <= set(top30.index)
        magnitudes = top30["log2FoldChange"].abs().to_numpy()
        assert (np.diff(magnitudes) <= 0).all()

    def test_tie_order_follows_input_order(self, service):
        table = pd.DataFrame(
            {"log2FoldChange": [1.0, -1.0, 1.0], "padj": [0.01, 0.01, 0.01]},
            index=["c", "a", "b"],
        )
        ranked, _, _ = service.rank_by_effect(table, n=3)
        assert list(ranked.index) == ["c", "a", "b"]

    def test_fewer_candidates_than_n(self, service, results_table):
        ranked, stats, _ = service.rank_by_effect(results_table, n=2)
        assert len(ranked) == 2
        assert stats["n_returned"] == 2

    def test_empty_table(self, service):
        table = pd.DataFrame({"log2FoldChange": [], "padj": []}, dtype=float)
        ranked, _, _ = service.rank_by_effect(table, n=30)
        assert ranked.empty

    def test_negative_n(self, service, results_table):
        with pytest.raises(ValidationError):
            service.rank_by_effect(results_table, n=-1)


@pytest.mark.unit
class TestCenteredMatrix:
    def test_rows_have_zero_mean(self, service, vst_like_matrix):
        genes = list(vst_like_matrix.index[:5])
        centered = service.centered_matrix(vst_like_matrix, genes)

        assert np.allclose(centered.mean(axis=1), 0.0)
        assert list(centered.columns) == list(vst_like_matrix.columns)
        assert list(centered.index) == genes

    def test_symbols_and_duplicates(self, service, vst_like_matrix):
        genes = [_gene(1), _gene(2), _gene(3)]
        symbol_map = pd.Series({_gene(1): "ACTB", _gene(2): "ACTB", _gene(3): _gene(3)})

        centered = service.centered_matrix(vst_like_matrix, genes, symbol_map)

        assert list(centered.index) == [
            f"ACTB ({_gene(1)})",
            f"ACTB ({_gene(2)})",
            _gene(3),
        ]

    def test_unknown_gene(self, service, vst_like_matrix):
        with pytest.raises(ValidationError, match="not present"):
            service.centered_matrix(vst_like_matrix, ["ENSG_missing"])


@pytest.mark.unit
class TestLongForm:
    def test_one_row_per_gene_and_sample(self, service, vst_like_matrix, airway_metadata):
        genes = [_gene(1), _gene(2)]
        symbol_map = pd.Series({_gene(1): "DUSP1", _gene(2): _gene(2)})

        long_df = service.long_form(
            vst_like_matrix, genes, airway_metadata, group_col="dex", symbol_map=symbol_map
        )

        assert list(long_df.columns) == ["gene_id", "symbol", "sample", "expression", "dex"]
        assert len(long_df) == 2 * 8
        row = long_df[(long_df["gene_id"] == _gene(1)) & (long_df["sample"] == "SRR1039509")]
        assert row["expression"].item() == vst_like_matrix.loc[_gene(1), "SRR1039509"]
        assert row["symbol"].item() == "DUSP1"
        assert row["dex"].item() == "trt"

    def test_missing_group_column(self, service, vst_like_matrix, airway_metadata):
        with pytest.raises(ValidationError, match="Group column 'treatment'"):
            service.long_form(vst_like_matrix, [_gene(1)], airway_metadata, group_col="treatment")
