"""
Unit tests for BulkVisualizationService.
"""

from unittest.mock import patch

import numpy as np
import pandas as pd
import plotly.graph_objects as go
import pytest

from airwayseq.services.analysis.result_summary_service import ResultSummaryService
from airwayseq.services.analysis.sample_structure_service import SampleStructureService
from airwayseq.services.visualization.bulk_visualization_service import (
    BulkVisualizationError,
    BulkVisualizationService,
)


@pytest.fixture
def service():
    return BulkVisualizationService()


@pytest.mark.unit
class TestMAPlot:
    def test_traces_and_stats(self, service, results_table):
        fig, stats, step = service.create_ma_plot(results_table, alpha=0.05)

        assert isinstance(fig, go.Figure)
        assert len(fig.data) == 2
        assert stats["n_genes_significant"] == 4
        assert stats["n_genes_total"] == 8
        # NaN padj genes are drawn as not significant
        assert len(fig.data[0].x) == 4
        assert step.tool_name == "BulkVisualizationService.create_ma_plot"

    def test_uses_symbols_for_hover(self, service, results_table):
        table = results_table.assign(symbol=[f"G{i}" for i in range(8)])
        fig, _, _ = service.create_ma_plot(table)
        assert "G0" in list(fig.data[1].text)

    def test_missing_columns(self, service, results_table):
        with pytest.raises(BulkVisualizationError, match="Missing required columns"):
            service.create_ma_plot(results_table.drop(columns=["baseMean"]))


@pytest.mark.unit
class TestSampleStructurePlots:
    def test_dendrogram_leaf_labels(self, service, vst_like_matrix):
        clustering, _, _ = SampleStructureService().cluster_samples(vst_like_matrix)

        fig, stats, _ = service.create_sample_dendrogram(clustering)

        assert len(fig.data) == 7  # one U-shape per merge
        assert stats["leaf_order"] == clustering["leaf_order"]
        assert list(fig.layout.xaxis.ticktext) == clustering["leaf_order"]

    def test_dendrogram_without_linkage(self, service):
        clustering = {"linkage": None, "labels": ["s1"], "leaf_order": ["s1"]}
        fig, stats, _ = service.create_sample_dendrogram(clustering)

        assert len(fig.data) == 0
        assert stats["n_samples"] == 1

    def test_pca_axis_titles(self, service, vst_like_matrix, airway_metadata):
        coords, pca_stats, _ = SampleStructureService().compute_pca(
            vst_like_matrix, airway_metadata
        )

        fig, stats, _ = service.create_pca_plot(
            coords, pca_stats["explained_variance_ratio"], color_by="dex"
        )

        assert fig.layout.xaxis.title.text.startswith("PC1: ")
        assert stats["n_samples"] == 8

    def test_pca_degenerate(self, service):
        fig, _, _ = service.create_pca_plot(pd.DataFrame(), [])
        assert len(fig.data) == 0


@pytest.mark.unit
class TestExpressionPlots:
    def test_heatmap_is_centred(self, service, vst_like_matrix):
        centered = ResultSummaryService().centered_matrix(
            vst_like_matrix, list(vst_like_matrix.index[:12])
        )

        fig, stats, _ = service.create_expression_heatmap(centered)

        heatmap = fig.data[0]
        assert isinstance(heatmap, go.Heatmap)
        assert heatmap.zmid == 0
        assert np.asarray(heatmap.z).shape == (12, 8)
        assert sorted(stats["gene_order"]) == sorted(centered.index)

    def test_heatmap_without_clustering_keeps_order(self, service, vst_like_matrix):
        centered = ResultSummaryService().centered_matrix(
            vst_like_matrix, list(vst_like_matrix.index[:5])
        )
        _, stats, _ = service.create_expression_heatmap(
            centered, cluster_samples=False, cluster_genes=False
        )
        assert stats["gene_order"] == list(centered.index)

    def test_empty_heatmap(self, service):
        with pytest.raises(BulkVisualizationError, match="No genes"):
            service.create_expression_heatmap(pd.DataFrame())

    def test_boxplots_one_panel_per_gene(self, service, vst_like_matrix, airway_metadata):
        genes = list(vst_like_matrix.index[:4])
        long_df = ResultSummaryService().long_form(vst_like_matrix, genes, airway_metadata)

        fig, stats, _ = service.create_gene_boxplots(long_df, group_col="dex")

        assert stats["n_genes"] == 4
        panel_titles = {a.text for a in fig.layout.annotations}
        assert panel_titles == set(genes)

    def test_boxplots_empty(self, service):
        with pytest.raises(BulkVisualizationError):
            service.create_gene_boxplots(
                pd.DataFrame(columns=["gene_id", "symbol", "sample", "expression", "dex"])
            )


@pytest.mark.unit
class TestSaveFigure:
    def test_html_always_written(self, service, temp_workspace):
        fig = go.Figure(go.Scatter(x=[1, 2], y=[3, 4]))

        saved = service.save_figure(fig, temp_workspace / "figures", "example")

        assert saved == [temp_workspace / "figures" / "example.html"]
        assert saved[0].exists()

    def test_image_failure_is_logged_not_raised(self, service, temp_workspace, caplog):
        fig = go.Figure()
        with patch(
            "airwayseq.services.visualization.bulk_visualization_service.pio.write_image",
            side_effect=RuntimeError("kaleido missing"),
        ):
            saved = service.save_figure(fig, temp_workspace, "example", formats=["html", "png"])

        assert [p.suffix for p in saved] == [".html"]
