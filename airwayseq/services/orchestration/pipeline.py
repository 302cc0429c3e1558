"""
End-to-end airway differential expression pipeline.

Runs load -> filter -> transform -> fit -> test -> annotate -> summarize ->
plot in order, keeping every intermediate artefact and one provenance step
per operation, and optionally exports the tables and figures.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pandas as pd
import plotly.graph_objects as go

from airwayseq.config.settings import Settings, get_settings
from airwayseq.core import ValidationError
from airwayseq.core.analysis_ir import AnalysisStep
from airwayseq.core.dataset import CountDataset
from airwayseq.services.analysis.differential_expression_service import (
    DeseqFit,
    DifferentialExpressionService,
)
from airwayseq.services.analysis.result_summary_service import ResultSummaryService
from airwayseq.services.analysis.sample_structure_service import SampleStructureService
from airwayseq.services.analysis.transform_service import TransformService
from airwayseq.services.annotation.gene_annotation_service import GeneAnnotationService
from airwayseq.services.data_access.dataset_loader import DatasetLoaderService
from airwayseq.services.quality.count_filter_service import CountFilterService
from airwayseq.services.visualization.bulk_visualization_service import (
    BulkVisualizationService,
)
from airwayseq.utils.logger import get_logger

logger = get_logger(__name__)


def threshold_label(lfc_threshold: float) -> str:
    """File-name friendly label of a result table, e.g. 'lfc0', 'lfc1', 'lfc0.5'."""
    return f"lfc{lfc_threshold:g}"


@dataclass
class PipelineResult:
    """Every artefact of one pipeline run."""

    dataset: CountDataset
    filtered: CountDataset
    transformed: pd.DataFrame
    fit: DeseqFit
    results: Dict[str, pd.DataFrame]
    significance: Dict[str, Dict[str, int]]
    summaries: Dict[str, Dict[str, int]]
    primary_label: str
    symbol_map: pd.Series
    resolved_ids: List[str]
    top_genes: pd.DataFrame
    top_boxplot_genes: pd.DataFrame
    heatmap_matrix: pd.DataFrame
    long_form: pd.DataFrame
    clustering: Dict[str, Any]
    pca_coordinates: pd.DataFrame
    pca_explained: List[float]
    figures: Dict[str, go.Figure] = field(default_factory=dict)
    steps: List[AnalysisStep] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)

    @property
    def primary_results(self) -> pd.DataFrame:
        return self.results[self.primary_label]


class AirwayPipeline:
    """
    Orchestrates the services of one airway analysis run.

    Args:
        settings: Run configuration; the module singleton when omitted
        annotation_service: Symbol lookup; a mygene-backed service when omitted
        annotate: Query the annotation service (ids are used as labels otherwise)
        make_figures: Render plotly figures
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        annotation_service: Optional[GeneAnnotationService] = None,
        annotate: bool = True,
        make_figures: bool = True,
    ):
        self.settings = settings or get_settings()
        self.annotate = annotate
        self.make_figures = make_figures

        self.loader = DatasetLoaderService()
        self.count_filter = CountFilterService()
        self.transform_service = TransformService(n_cpus=self.settings.N_CPUS)
        self.de_service = DifferentialExpressionService(n_cpus=self.settings.N_CPUS)
        self.structure_service = SampleStructureService()
        self.summary_service = ResultSummaryService()
        self.visualization = BulkVisualizationService()
        self.annotation_service = annotation_service or GeneAnnotationService(
            species=self.settings.ANNOTATION_SPECIES,
            scope=self.settings.ANNOTATION_SCOPE,
        )

    @property
    def lfc_thresholds(self) -> List[float]:
        """Always the plain ``LFC == 0`` test, plus the configured threshold."""
        return sorted({0.0, float(self.settings.LFC_THRESHOLD)})

    def load(
        self,
        counts_path: Optional[Union[str, Path]] = None,
        metadata_path: Optional[Union[str, Path]] = None,
        h5ad_path: Optional[Union[str, Path]] = None,
        simulate_seed: Optional[int] = None,
        simulate_genes: int = 2000,
    ):
        """Load from exactly one source; returns ``(dataset, stats, step)``."""
        sources = [
            counts_path is not None or metadata_path is not None,
            h5ad_path is not None,
            simulate_seed is not None,
        ]
        if sum(sources) != 1:
            raise ValidationError(
                "Exactly one input is required: --counts/--metadata, --h5ad or --simulate"
            )

        if h5ad_path is not None:
            return self.loader.load_from_h5ad(h5ad_path)
        if simulate_seed is not None:
            return self.loader.simulate(n_genes=simulate_genes, seed=simulate_seed)
        if counts_path is None or metadata_path is None:
            raise ValidationError("Both a counts file and a metadata file are required")
        return self.loader.load_from_files(counts_path, metadata_path)

    def run(self, dataset: CountDataset, load_step: Optional[AnalysisStep] = None) -> PipelineResult:
        """
        Run every stage on ``dataset``.

        Raises:
            AirwaySeqError: Any typed error of the underlying services; an
                annotation failure aborts the run when annotation is enabled
        """
        cfg = self.settings
        steps: List[AnalysisStep] = [load_step] if load_step is not None else []
        dataset.validate()
        logger.info(f"Starting airway pipeline on {dataset.n_genes} genes x {dataset.n_samples} samples")

        filtered, filter_stats, step = self.count_filter.filter_low_counts(
            dataset, min_total_count=cfg.MIN_TOTAL_COUNT
        )
        steps.append(step)

        transformed, transform_stats, step = self.transform_service.variance_stabilize(
            filtered, design=cfg.DESIGN, blind=cfg.VST_BLIND
        )
        steps.append(step)

        fit = self.de_service.fit(filtered, design=cfg.DESIGN, contrast=cfg.CONTRAST)
        results: Dict[str, pd.DataFrame] = {}
        significance: Dict[str, Dict[str, int]] = {}
        summaries: Dict[str, Dict[str, int]] = {}
        for threshold in self.lfc_thresholds:
            label = threshold_label(threshold)
            table, test_stats, step = self.de_service.test(
                fit,
                contrast=cfg.CONTRAST,
                alpha=cfg.ALPHA,
                lfc_threshold=threshold,
                shrink_lfc=cfg.SHRINK_LFC,
            )
            results[label] = table
            significance[label] = test_stats["significance_counts"]
            summaries[label] = test_stats["summary"]
            steps.append(step)
        primary_label = threshold_label(float(cfg.LFC_THRESHOLD))

        gene_ids = list(filtered.counts.index)
        if self.annotate:
            symbol_map, annotation_stats, step = self.annotation_service.map_identifiers(gene_ids)
            resolved_ids = annotation_stats["resolved_ids"]
            steps.append(step)
        else:
            logger.info("Annotation disabled: using gene ids as labels")
            symbol_map = pd.Series(gene_ids, index=gene_ids, dtype=object, name="symbol")
            resolved_ids = []

        results = {
            label: GeneAnnotationService.annotate(table, symbol_map)
            for label, table in results.items()
        }

        top_genes, _, step = self.summary_service.rank_by_effect(
            results[primary_label], n=cfg.TOP_N, significant_only=True, alpha=cfg.ALPHA
        )
        steps.append(step)
        top_boxplot_genes = top_genes.head(cfg.TOP_N_BOXPLOT)

        heatmap_matrix = self.summary_service.centered_matrix(
            transformed, top_genes.index, symbol_map
        )
        long_form = self.summary_service.long_form(
            transformed,
            top_boxplot_genes.index,
            filtered.metadata,
            group_col=cfg.GROUP_COLUMN,
            symbol_map=symbol_map,
        )

        clustering, _, step = self.structure_service.cluster_samples(transformed)
        steps.append(step)
        pca_coords, pca_stats, step = self.structure_service.compute_pca(
            transformed, filtered.metadata, ntop=cfg.PCA_NTOP
        )
        steps.append(step)

        result = PipelineResult(
            dataset=dataset,
            filtered=filtered,
            transformed=transformed,
            fit=fit,
            results=results,
            significance=significance,
            summaries=summaries,
            primary_label=primary_label,
            symbol_map=symbol_map,
            resolved_ids=resolved_ids,
            top_genes=top_genes,
            top_boxplot_genes=top_boxplot_genes,
            heatmap_matrix=heatmap_matrix,
            long_form=long_form,
            clustering=clustering,
            pca_coordinates=pca_coords,
            pca_explained=pca_stats["explained_variance_ratio"],
            steps=steps,
            stats={
                "filter": filter_stats,
                "transform": transform_stats,
                "size_factors": fit.size_factors.round(6).to_dict(),
                "n_top_genes": len(top_genes),
                "n_resolved_symbols": len(resolved_ids),
            },
        )

        if self.make_figures:
            self._make_figures(result)

        logger.info(
            "Pipeline complete: "
            + ", ".join(
                f"{label}: {counts['significant']} significant"
                for label, counts in significance.items()
            )
        )
        return result

    def _make_figures(self, result: PipelineResult) -> None:
        cfg = self.settings
        figures = {}

        fig, _, step = self.visualization.create_ma_plot(
            result.results[threshold_label(0.0)], alpha=cfg.ALPHA
        )
        figures["ma_plot"] = fig
        result.steps.append(step)

        fig, _, step = self.visualization.create_sample_dendrogram(result.clustering)
        figures["sample_dendrogram"] = fig
        result.steps.append(step)

        fig, _, step = self.visualization.create_pca_plot(
            result.pca_coordinates, result.pca_explained, color_by=cfg.GROUP_COLUMN
        )
        figures["pca"] = fig
        result.steps.append(step)

        if result.heatmap_matrix.empty:
            logger.warning("No significant genes: skipping heatmap and boxplots")
        else:
            fig, _, step = self.visualization.create_expression_heatmap(result.heatmap_matrix)
            figures["top_genes_heatmap"] = fig
            result.steps.append(step)

            fig, _, step = self.visualization.create_gene_boxplots(
                result.long_form, group_col=cfg.GROUP_COLUMN
            )
            figures["top_genes_boxplots"] = fig
            result.steps.append(step)

        result.figures = figures

    def export(
        self,
        result: PipelineResult,
        output_dir: Optional[Union[str, Path]] = None,
        figure_formats: Optional[List[str]] = None,
    ) -> Dict[str, List[Path]]:
        """
        Write result tables, provenance and figures to ``output_dir``.

        Files: ``results_<label>.csv`` and ``significant_<label>.csv`` per
        threshold (ordered by padj), ``top_genes.csv``, ``size_factors.csv``,
        ``provenance.json`` and ``figures/<name>.<fmt>``.
        """
        cfg = self.settings
        output_dir = Path(output_dir or cfg.OUTPUT_DIR)
        output_dir.mkdir(parents=True, exist_ok=True)
        formats = figure_formats or cfg.FIGURE_FORMATS
        written: Dict[str, List[Path]] = {"tables": [], "figures": []}

        for label, table in result.results.items():
            ordered = DifferentialExpressionService.order_by_padj(table)
            path = output_dir / f"results_{label}.csv"
            ordered.to_csv(path, index_label="gene_id")
            written["tables"].append(path)

            path = output_dir / f"significant_{label}.csv"
            ordered[ordered["padj"] < cfg.ALPHA].to_csv(path, index_label="gene_id")
            written["tables"].append(path)

        path = output_dir / "top_genes.csv"
        result.top_genes.to_csv(path, index_label="gene_id")
        written["tables"].append(path)

        path = output_dir / "size_factors.csv"
        result.fit.size_factors.to_csv(path, index_label="sample")
        written["tables"].append(path)

        provenance = {
            "settings": {
                key: (str(value) if isinstance(value, Path) else value)
                for key, value in cfg.get_all_settings().items()
            },
            "significance": result.significance,
            "summaries": result.summaries,
            "steps": [step.to_dict() for step in result.steps],
        }
        path = output_dir / "provenance.json"
        with open(path, "w") as f:
            json.dump(provenance, f, indent=2)
        written["provenance"] = [path]

        for name, fig in result.figures.items():
            written["figures"].extend(
                self.visualization.save_figure(fig, output_dir / "figures", name, formats)
            )

        logger.info(
            f"Exported {len(written['tables'])} tables and {len(written['figures'])} "
            f"figure files to {output_dir}"
        )
        return written
