"""
Bulk RNA-seq visualization service for the airway analysis.

This service renders differential expression results and sample structure as
interactive Plotly figures: MA plot, sample dendrogram, PCA, row-centred
expression heatmap and per-gene boxplots.
"""

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
import plotly.io as pio
from scipy.cluster.hierarchy import dendrogram, leaves_list, linkage

from airwayseq.core import AirwaySeqError
from airwayseq.core.analysis_ir import AnalysisStep
from airwayseq.utils.logger import get_logger

logger = get_logger(__name__)


class BulkVisualizationError(AirwaySeqError):
    """Base exception for bulk RNA-seq visualization operations."""

    pass


class BulkVisualizationService:
    """
    Plotly visualizations for bulk RNA-seq differential expression.

    Every ``create_*`` method returns ``(figure, stats, step)`` and raises
    BulkVisualizationError when its input cannot be plotted.
    """

    def __init__(self):
        logger.debug("Initializing BulkVisualizationService")

        self.significance_colors = {
            "up": "red",
            "down": "blue",
            "not_significant": "lightgray",
        }
        self.diverging_colors = px.colors.diverging.RdBu_r

        self.default_width = 900
        self.default_height = 700
        self.default_marker_size = 5
        self.default_opacity = 0.7

    def create_ma_plot(
        self,
        results: pd.DataFrame,
        alpha: float = 0.05,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Create an MA plot (log10 mean expression vs log2 fold change).

        Genes without an adjusted p-value are drawn as not significant.

        Args:
            results: Result table with baseMean, log2FoldChange and padj
            alpha: Significance threshold used for colouring
            title: Plot title

        Returns:
            Tuple[go.Figure, Dict[str, Any], AnalysisStep]: MA plot,
                statistics, and provenance step

        Raises:
            BulkVisualizationError: If required columns are missing
        """
        try:
            logger.info("Creating MA plot")

            required_cols = ["log2FoldChange", "padj", "baseMean"]
            missing_cols = [col for col in required_cols if col not in results.columns]
            if missing_cols:
                raise BulkVisualizationError(
                    f"Missing required columns: {missing_cols}. "
                    f"Available columns: {list(results.columns)}"
                )

            log2fc = results["log2FoldChange"].to_numpy(dtype=float)
            padj = results["padj"].fillna(1.0).to_numpy(dtype=float)
            base_mean = results["baseMean"].to_numpy(dtype=float)
            gene_names = results.index.astype(str).to_numpy()
            if "symbol" in results.columns:
                gene_names = results["symbol"].astype(str).to_numpy()

            log_base_mean = np.log10(base_mean + 1)

            significant = padj < alpha
            n_significant = int(np.sum(significant))

            fig = go.Figure()
            hover = "Gene: %{text}<br>log10(baseMean): %{x:.2f}<br>log2FC: %{y:.2f}<extra></extra>"
            fig.add_trace(
                go.Scatter(
                    x=log_base_mean[~significant],
                    y=log2fc[~significant],
                    mode="markers",
                    name="Not significant",
                    marker=dict(
                        color=self.significance_colors["not_significant"],
                        size=self.default_marker_size,
                        opacity=0.4,
                    ),
                    text=gene_names[~significant],
                    hovertemplate=hover,
                )
            )

            if n_significant > 0:
                colors = [
                    self.significance_colors["up"] if fc > 0 else self.significance_colors["down"]
                    for fc in log2fc[significant]
                ]
                fig.add_trace(
                    go.Scatter(
                        x=log_base_mean[significant],
                        y=log2fc[significant],
                        mode="markers",
                        name=f"padj < {alpha} ({n_significant})",
                        marker=dict(
                            color=colors,
                            size=self.default_marker_size + 1,
                            opacity=self.default_opacity,
                        ),
                        text=gene_names[significant],
                        hovertemplate=hover,
                    )
                )

            fig.add_hline(y=0, line_dash="dash", line_color="darkgray")
            fig.update_layout(
                title=title or f"MA Plot ({n_significant} significant genes)",
                xaxis_title="log10(Mean Expression)",
                yaxis_title="log2 Fold Change",
                width=self.default_width,
                height=self.default_height,
                plot_bgcolor="white",
                hovermode="closest",
            )
            fig.update_xaxes(showgrid=True, gridcolor="lightgray")
            fig.update_yaxes(showgrid=True, gridcolor="lightgray")

            stats = {
                "plot_type": "ma_plot",
                "n_genes_total": len(results),
                "n_genes_significant": n_significant,
                "alpha": alpha,
            }
            step = self._plot_step(
                "create_ma_plot", "MA plot of differential expression results", {"alpha": alpha}
            )

            logger.info(f"MA plot created: {n_significant} significant genes")
            return fig, stats, step

        except Exception as e:
            logger.error(f"Error creating MA plot: {e}")
            if isinstance(e, BulkVisualizationError):
                raise
            raise BulkVisualizationError(f"Failed to create MA plot: {str(e)}")

    def create_sample_dendrogram(
        self,
        clustering: Dict[str, Any],
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Draw the sample clustering tree.

        Args:
            clustering: Output of SampleStructureService.cluster_samples
            title: Plot title
        """
        try:
            logger.info("Creating sample dendrogram")
            labels = clustering["labels"]
            link = clustering["linkage"]

            fig = go.Figure()
            if link is None:
                fig.add_annotation(
                    text="Not enough samples to cluster", showarrow=False, x=0.5, y=0.5
                )
                leaf_order = list(labels)
            else:
                tree = dendrogram(link, labels=labels, no_plot=True)
                for xs, ys in zip(tree["icoord"], tree["dcoord"]):
                    fig.add_trace(
                        go.Scatter(
                            x=xs,
                            y=ys,
                            mode="lines",
                            line=dict(color="black", width=1.5),
                            hoverinfo="skip",
                            showlegend=False,
                        )
                    )
                leaf_order = list(tree["ivl"])
                # scipy places leaf i at x = 10 * i + 5
                fig.update_xaxes(
                    tickmode="array",
                    tickvals=[10 * i + 5 for i in range(len(leaf_order))],
                    ticktext=leaf_order,
                    tickangle=45,
                )

            fig.update_layout(
                title=title or "Sample Clustering (Euclidean distance)",
                yaxis_title="Height",
                width=self.default_width,
                height=self.default_height // 2 + 150,
                plot_bgcolor="white",
            )

            stats = {
                "plot_type": "sample_dendrogram",
                "n_samples": len(labels),
                "leaf_order": leaf_order,
            }
            step = self._plot_step(
                "create_sample_dendrogram", "Dendrogram of sample clustering", {}
            )
            return fig, stats, step

        except Exception as e:
            logger.error(f"Error creating sample dendrogram: {e}")
            raise BulkVisualizationError(f"Failed to create sample dendrogram: {str(e)}")

    def create_pca_plot(
        self,
        coordinates: pd.DataFrame,
        explained_variance_ratio: Iterable[float],
        color_by: str = "dex",
        symbol_by: Optional[str] = "cell",
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Scatter of samples on PC1 / PC2, coloured by treatment.

        Args:
            coordinates: Output of SampleStructureService.compute_pca
            explained_variance_ratio: Fractions of variance per component
            color_by: Metadata column for marker colour
            symbol_by: Metadata column for marker symbol, or None
            title: Plot title
        """
        try:
            logger.info("Creating PCA plot")
            explained = list(explained_variance_ratio)

            if len(explained) < 2 or coordinates.empty:
                fig = go.Figure()
                fig.add_annotation(
                    text="Not enough samples or genes for PCA", showarrow=False, x=0.5, y=0.5
                )
            else:
                plot_df = coordinates.rename_axis("sample").reset_index()
                fig = px.scatter(
                    plot_df,
                    x="PC1",
                    y="PC2",
                    color=color_by if color_by in plot_df.columns else None,
                    symbol=symbol_by if symbol_by in plot_df.columns else None,
                    hover_name="sample",
                )
                fig.update_traces(marker=dict(size=12))
                fig.update_xaxes(title=f"PC1: {explained[0] * 100:.0f}% variance")
                fig.update_yaxes(title=f"PC2: {explained[1] * 100:.0f}% variance")

            fig.update_layout(
                title=title or "PCA of variance-stabilized counts",
                width=self.default_width,
                height=self.default_height,
                plot_bgcolor="white",
            )

            stats = {
                "plot_type": "pca",
                "n_samples": len(coordinates),
                "explained_variance_ratio": explained,
            }
            step = self._plot_step(
                "create_pca_plot",
                "PCA of samples",
                {"color_by": color_by, "symbol_by": symbol_by},
            )
            return fig, stats, step

        except Exception as e:
            logger.error(f"Error creating PCA plot: {e}")
            raise BulkVisualizationError(f"Failed to create PCA plot: {str(e)}")

    def create_expression_heatmap(
        self,
        centered: pd.DataFrame,
        cluster_samples: bool = True,
        cluster_genes: bool = True,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Heatmap of row-centred expression (genes as rows).

        Args:
            centered: Output of ResultSummaryService.centered_matrix
            cluster_samples: Reorder columns by complete-linkage clustering
            cluster_genes: Reorder rows by complete-linkage clustering
            title: Plot title

        Raises:
            BulkVisualizationError: If the matrix is empty
        """
        try:
            logger.info("Creating expression heatmap")
            if centered.empty:
                raise BulkVisualizationError("No genes to plot in heatmap")

            X = np.nan_to_num(centered.to_numpy(dtype=float), nan=0.0)
            gene_names = centered.index.astype(str).to_numpy()
            sample_names = centered.columns.astype(str).to_numpy()

            if cluster_genes and X.shape[0] > 1:
                gene_order = leaves_list(linkage(X, method="complete"))
                X = X[gene_order, :]
                gene_names = gene_names[gene_order]
            if cluster_samples and X.shape[1] > 1:
                sample_order = leaves_list(linkage(X.T, method="complete"))
                X = X[:, sample_order]
                sample_names = sample_names[sample_order]

            limit = float(np.abs(X).max()) or 1.0
            fig = go.Figure(
                data=go.Heatmap(
                    z=X,
                    x=sample_names,
                    y=gene_names,
                    colorscale=self.diverging_colors,
                    zmid=0,
                    zmin=-limit,
                    zmax=limit,
                    colorbar=dict(title="Centred<br>expression"),
                    hovertemplate="Sample: %{x}<br>Gene: %{y}<br>Value: %{z:.2f}<extra></extra>",
                )
            )
            fig.update_layout(
                title=title
                or f"Expression Heatmap ({len(gene_names)} genes, {len(sample_names)} samples)",
                xaxis_title="Samples",
                yaxis_title="Genes",
                width=max(self.default_width, 40 * len(sample_names)),
                height=max(self.default_height, 15 * len(gene_names)),
                plot_bgcolor="white",
            )
            fig.update_xaxes(tickangle=45, tickfont=dict(size=9))
            fig.update_yaxes(tickfont=dict(size=8), autorange="reversed")

            stats = {
                "plot_type": "expression_heatmap",
                "n_samples": len(sample_names),
                "n_genes": len(gene_names),
                "gene_order": list(gene_names),
                "sample_order": list(sample_names),
            }
            step = self._plot_step(
                "create_expression_heatmap",
                "Heatmap of row-centred variance-stabilized expression",
                {"cluster_samples": cluster_samples, "cluster_genes": cluster_genes},
            )

            logger.info(
                f"Expression heatmap created: {len(gene_names)} genes x {len(sample_names)} samples"
            )
            return fig, stats, step

        except Exception as e:
            logger.error(f"Error creating expression heatmap: {e}")
            if isinstance(e, BulkVisualizationError):
                raise
            raise BulkVisualizationError(f"Failed to create expression heatmap: {str(e)}")

    def create_gene_boxplots(
        self,
        long_df: pd.DataFrame,
        group_col: str = "dex",
        columns: int = 5,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        One boxplot panel per gene, samples grouped by ``group_col``.

        Args:
            long_df: Output of ResultSummaryService.long_form
            group_col: Grouping column present in ``long_df``
            columns: Panels per row
            title: Plot title
        """
        try:
            logger.info("Creating per-gene boxplots")
            if long_df.empty:
                raise BulkVisualizationError("No genes to plot in boxplots")
            if group_col not in long_df.columns:
                raise BulkVisualizationError(f"Group column '{group_col}' not in table")

            n_genes = long_df["symbol"].nunique()
            fig = px.box(
                long_df,
                x=group_col,
                y="expression",
                color=group_col,
                facet_col="symbol",
                facet_col_wrap=columns,
                points="all",
                hover_data=["sample", "gene_id"],
            )
            fig.for_each_annotation(lambda a: a.update(text=a.text.split("=")[-1]))
            fig.update_yaxes(matches=None, showticklabels=True)
            n_rows = int(np.ceil(n_genes / columns))
            fig.update_layout(
                title=title or f"Expression of top {n_genes} genes",
                width=self.default_width + 200,
                height=max(self.default_height // 2, 260 * n_rows),
                plot_bgcolor="white",
                showlegend=False,
            )

            stats = {"plot_type": "gene_boxplots", "n_genes": int(n_genes)}
            step = self._plot_step(
                "create_gene_boxplots",
                "Per-gene boxplots of variance-stabilized expression",
                {"group_col": group_col},
            )
            return fig, stats, step

        except Exception as e:
            logger.error(f"Error creating gene boxplots: {e}")
            if isinstance(e, BulkVisualizationError):
                raise
            raise BulkVisualizationError(f"Failed to create gene boxplots: {str(e)}")

    def save_figure(
        self,
        fig: go.Figure,
        output_dir: Path,
        name: str,
        formats: Iterable[str] = ("html",),
    ) -> List[Path]:
        """
        Write a figure to ``output_dir``.

        HTML is always written. Image formats go through kaleido; a failed
        image export is logged and skipped.

        Returns:
            List[Path]: Files actually written
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        html_path = output_dir / f"{name}.html"
        pio.write_html(fig, html_path)
        saved = [html_path]

        for fmt in formats:
            if fmt == "html":
                continue
            image_path = output_dir / f"{name}.{fmt}"
            try:
                pio.write_image(fig, image_path)
                saved.append(image_path)
            except Exception as e:
                logger.warning(f"Could not save {fmt.upper()} for {name}: {e}")

        logger.debug(f"Saved figure {name}: {[p.name for p in saved]}")
        return saved

    @staticmethod
    def _plot_step(
        method: str, description: str, parameters: Dict[str, Any]
    ) -> AnalysisStep:
        return AnalysisStep(
            operation="plotly.graph_objects.Figure",
            tool_name=f"BulkVisualizationService.{method}",
            description=description,
            library="plotly",
            parameters=parameters,
            input_entities=[],
            output_entities=[method.replace("create_", "")],
        )
