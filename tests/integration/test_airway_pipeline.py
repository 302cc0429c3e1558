"""
End-to-end tests of AirwayPipeline on simulated counts.

pyDESeq2 runs for real; the mygene client is replaced by a stub.
"""

import json
from unittest.mock import MagicMock

import pandas as pd
import pytest
import requests

from airwayseq.config.settings import Settings
from airwayseq.core import AnnotationServiceError, ValidationError
from airwayseq.core.dataset import CountDataset
from airwayseq.services.annotation.gene_annotation_service import GeneAnnotationService
from airwayseq.services.orchestration.pipeline import AirwayPipeline, threshold_label

pytest.importorskip("pydeseq2")


def _stub_client():
    def querymany(ids, **kwargs):
        return [
            {"query": gene_id, "symbol": f"SYM{int(gene_id[4:])}"}
            if int(gene_id[4:]) % 2
            else {"query": gene_id, "notfound": True}
            for gene_id in ids
        ]

    client = MagicMock()
    client.querymany.side_effect = querymany
    return client


def _settings(**overrides) -> Settings:
    settings = Settings()
    settings.ALPHA = 0.05
    settings.LFC_THRESHOLD = 1.0
    settings.TOP_N = 30
    settings.TOP_N_BOXPLOT = 10
    settings.FIGURE_FORMATS = ["html"]
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


@pytest.fixture(scope="module")
def pipeline_run(simulated):
    dataset, _ = simulated
    pipeline = AirwayPipeline(
        settings=_settings(),
        annotation_service=GeneAnnotationService(client=_stub_client()),
    )
    return pipeline, pipeline.run(dataset)


@pytest.mark.integration
class TestPipelineRun:
    def test_low_counts_removed(self, pipeline_run, simulated):
        _, result = pipeline_run
        _, truth = simulated

        assert result.filtered.n_genes < result.dataset.n_genes
        assert not set(truth["near_zero_genes"]) & set(result.filtered.counts.index)
        assert (result.filtered.counts.sum(axis=1) > 1).all()

    def test_both_result_tables(self, pipeline_run):
        _, result = pipeline_run

        assert set(result.results) == {"lfc0", "lfc1"}
        assert result.primary_label == "lfc1"
        assert (
            result.significance["lfc1"]["significant"]
            <= result.significance["lfc0"]["significant"]
        )
        for table in result.results.values():
            assert table.columns[0] == "symbol"
            assert len(table) == result.filtered.n_genes

    def test_symbols_fall_back_to_ids(self, pipeline_run):
        _, result = pipeline_run
        table = result.primary_results

        assert table.loc["ENSG00000000001", "symbol"] == "SYM1"
        assert table.loc["ENSG00000000002", "symbol"] == "ENSG00000000002"
        assert "ENSG00000000001" in result.resolved_ids

    def test_top_genes_ranked_from_significant(self, pipeline_run):
        _, result = pipeline_run

        assert 0 < len(result.top_genes) <= 30
        assert (result.top_genes["padj"] < 0.05).all()
        assert list(result.top_boxplot_genes.index) == list(result.top_genes.index[:10])
        magnitudes = result.top_genes["log2FoldChange"].abs()
        assert magnitudes.is_monotonic_decreasing

    def test_summary_views(self, pipeline_run):
        _, result = pipeline_run

        assert result.heatmap_matrix.shape == (len(result.top_genes), 8)
        assert len(result.long_form) == len(result.top_boxplot_genes) * 8
        assert result.transformed.shape == result.filtered.counts.shape
        assert sorted(result.clustering["leaf_order"]) == sorted(result.filtered.counts.columns)
        assert len(result.pca_explained) == 2

    def test_figures(self, pipeline_run):
        _, result = pipeline_run
        assert set(result.figures) == {
            "ma_plot",
            "sample_dendrogram",
            "pca",
            "top_genes_heatmap",
            "top_genes_boxplots",
        }

    def test_provenance_steps(self, pipeline_run):
        _, result = pipeline_run
        tools = [step.tool_name for step in result.steps]

        assert tools[0] == "CountFilterService.filter_low_counts"
        assert tools.count("DifferentialExpressionService.test") == 2
        assert "GeneAnnotationService.map_identifiers" in tools


@pytest.mark.integration
class TestPipelineExport:
    def test_files_written(self, pipeline_run, temp_workspace):
        pipeline, result = pipeline_run

        written = pipeline.export(result, temp_workspace)

        for name in [
            "results_lfc0.csv",
            "results_lfc1.csv",
            "significant_lfc0.csv",
            "significant_lfc1.csv",
            "top_genes.csv",
            "size_factors.csv",
            "provenance.json",
        ]:
            assert (temp_workspace / name).exists(), name
        assert (temp_workspace / "figures" / "ma_plot.html").exists()
        assert len(written["figures"]) == 5

    def test_results_ordered_by_padj(self, pipeline_run, temp_workspace):
        pipeline, result = pipeline_run
        pipeline.export(result, temp_workspace)

        table = pd.read_csv(temp_workspace / "results_lfc0.csv", index_col="gene_id")
        padj = table["padj"]
        tested = padj.dropna()
        assert tested.is_monotonic_increasing
        # untestable genes are kept, at the end
        assert padj.isna().sum() == result.significance["lfc0"]["untestable"]
        assert padj.iloc[len(tested):].isna().all()

        significant = pd.read_csv(temp_workspace / "significant_lfc1.csv")
        assert len(significant) == result.significance["lfc1"]["significant"]

    def test_provenance(self, pipeline_run, temp_workspace):
        pipeline, result = pipeline_run
        pipeline.export(result, temp_workspace)

        with open(temp_workspace / "provenance.json") as f:
            provenance = json.load(f)

        assert provenance["settings"]["DESIGN"] == "~cell + dex"
        assert provenance["significance"] == result.significance
        assert len(provenance["steps"]) == len(result.steps)


@pytest.mark.integration
class TestEverythingFiltered:
    @pytest.fixture
    def low_count_dataset(self, airway_metadata):
        samples = list(airway_metadata.index)
        counts = pd.DataFrame(0, index=[f"ENSG{i:011d}" for i in range(1, 6)], columns=samples)
        counts.iloc[0, 0] = 1
        counts.iloc[3, 5] = 1
        return CountDataset(counts=counts, metadata=airway_metadata)

    def test_run_and_export_on_empty_filtered_matrix(self, low_count_dataset, temp_workspace):
        client = _stub_client()
        pipeline = AirwayPipeline(
            settings=_settings(),
            annotation_service=GeneAnnotationService(client=client),
        )

        result = pipeline.run(low_count_dataset)

        assert result.filtered.n_genes == 0
        assert result.transformed.shape == (0, 8)
        assert set(result.results) == {"lfc0", "lfc1"}
        for label, table in result.results.items():
            assert table.empty
            assert result.significance[label] == {
                "significant": 0,
                "not_significant": 0,
                "untestable": 0,
            }
        assert result.top_genes.empty
        assert result.heatmap_matrix.empty
        assert result.clustering["linkage"] is None
        assert result.pca_coordinates.empty
        assert set(result.figures) == {"ma_plot", "sample_dendrogram", "pca"}
        client.querymany.assert_not_called()

        pipeline.export(result, temp_workspace)
        exported = pd.read_csv(temp_workspace / "results_lfc1.csv")
        assert exported.empty
        assert "padj" in exported.columns


@pytest.mark.integration
class TestPipelineOptions:
    def test_annotation_failure_aborts(self, simulated):
        dataset, _ = simulated
        client = MagicMock()
        client.querymany.side_effect = requests.exceptions.ConnectionError("offline")
        pipeline = AirwayPipeline(
            settings=_settings(),
            annotation_service=GeneAnnotationService(client=client),
            make_figures=False,
        )

        with pytest.raises(AnnotationServiceError):
            pipeline.run(dataset)

    def test_without_annotation_ids_are_labels(self, simulated):
        dataset, _ = simulated
        client = MagicMock()
        pipeline = AirwayPipeline(
            settings=_settings(LFC_THRESHOLD=0.0),
            annotation_service=GeneAnnotationService(client=client),
            annotate=False,
            make_figures=False,
        )

        result = pipeline.run(dataset)

        client.querymany.assert_not_called()
        assert set(result.results) == {"lfc0"}
        table = result.primary_results
        assert (table["symbol"] == table.index).all()
        assert result.figures == {}

    def test_load_requires_one_source(self):
        pipeline = AirwayPipeline(settings=_settings(), annotate=False)

        with pytest.raises(ValidationError, match="Exactly one input"):
            pipeline.load()
        with pytest.raises(ValidationError, match="Exactly one input"):
            pipeline.load(h5ad_path="x.h5ad", simulate_seed=1)

    def test_load_from_files(self, simulated, temp_workspace):
        dataset, _ = simulated
        counts_path = temp_workspace / "counts.tsv"
        metadata_path = temp_workspace / "metadata.csv"
        dataset.counts.to_csv(counts_path, sep="\t")
        dataset.metadata.to_csv(metadata_path)

        pipeline = AirwayPipeline(settings=_settings(), annotate=False)
        loaded, _, step = pipeline.load(counts_path=counts_path, metadata_path=metadata_path)

        pd.testing.assert_frame_equal(
            loaded.counts, dataset.counts, check_names=False, check_dtype=False
        )
        assert step.tool_name == "DatasetLoaderService.load_from_files"


@pytest.mark.unit
def test_threshold_label():
    assert threshold_label(0.0) == "lfc0"
    assert threshold_label(1.0) == "lfc1"
    assert threshold_label(0.5) == "lfc0.5"
