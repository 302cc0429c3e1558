"""
Summaries of differential expression results for reporting and plotting.

Ranks genes by effect size and reshapes the transformed matrix into the
inputs of the heatmap (row-centred, symbol-labelled) and boxplot (long form)
views.
"""

from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from airwayseq.core import ValidationError
from airwayseq.core.analysis_ir import AnalysisStep
from airwayseq.utils.logger import get_logger

logger = get_logger(__name__)


def _labels_for(genes: Sequence[str], symbol_map: Optional[pd.Series]) -> list:
    """Display labels for genes; repeated symbols get the gene id appended."""
    if symbol_map is None:
        return [str(g) for g in genes]

    labels = [str(symbol_map.get(g, g)) for g in genes]
    counts = pd.Series(labels).value_counts()
    return [
        f"{label} ({gene})" if counts[label] > 1 and label != str(gene) else label
        for label, gene in zip(labels, genes)
    ]


class ResultSummaryService:
    """Stateless ranking and reshaping of result tables."""

    def rank_by_effect(
        self,
        results: pd.DataFrame,
        n: int = 30,
        significant_only: bool = True,
        alpha: float = 0.05,
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Top ``n`` genes by absolute log2 fold change.

        Ordering is by descending ``|log2FoldChange|``; genes with equal
        magnitude keep their order in ``results`` and genes without an
        estimate come last. The top ``k`` for any ``k < n`` is therefore a
        prefix of the top ``n``.

        Args:
            results: Result table with ``log2FoldChange`` and ``padj``
            n: Number of genes to return
            significant_only: Restrict to genes with ``padj < alpha``
            alpha: Significance level used when ``significant_only`` is set

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]: ranked rows with
                a 1-based ``rank`` column, stats, provenance step
        """
        if n < 0:
            raise ValidationError(f"n must be >= 0, got {n}")

        candidates = results
        if significant_only:
            candidates = results[results["padj"] < alpha]

        magnitude = candidates["log2FoldChange"].abs().to_numpy(dtype=float)
        sort_key = np.where(np.isnan(magnitude), np.inf, -magnitude)
        positions = np.arange(len(candidates))
        order = np.lexsort((positions, sort_key))

        ranked = candidates.iloc[order[:n]].copy()
        ranked["rank"] = np.arange(1, len(ranked) + 1)

        logger.info(
            f"Ranked {len(candidates)} candidate genes by |log2FoldChange|; "
            f"kept top {len(ranked)}"
        )

        stats = {
            "n_requested": n,
            "n_candidates": len(candidates),
            "n_returned": len(ranked),
            "significant_only": significant_only,
            "alpha": alpha,
        }
        step = AnalysisStep(
            operation="numpy.lexsort",
            tool_name="ResultSummaryService.rank_by_effect",
            description=f"Top {n} genes by absolute log2 fold change",
            library="numpy",
            parameters={"n": n, "significant_only": significant_only, "alpha": alpha},
            input_entities=["results"],
            output_entities=[f"top_{n}"],
        )
        return ranked, stats, step

    def centered_matrix(
        self,
        transformed: pd.DataFrame,
        genes: Sequence[str],
        symbol_map: Optional[pd.Series] = None,
    ) -> pd.DataFrame:
        """
        Row-centred expression of ``genes`` (each row minus its mean).

        Rows are labelled by gene symbol; symbols shared by several genes are
        disambiguated with the gene id. Gene order follows ``genes``.
        """
        genes = list(genes)
        missing = [g for g in genes if g not in transformed.index]
        if missing:
            raise ValidationError(
                f"{len(missing)} genes not present in the transformed matrix",
                details={"missing": missing[:10]},
            )

        subset = transformed.loc[genes]
        centered = subset.sub(subset.mean(axis=1), axis=0)
        centered.index = pd.Index(_labels_for(genes, symbol_map), name="gene")
        return centered

    def long_form(
        self,
        transformed: pd.DataFrame,
        genes: Sequence[str],
        metadata: pd.DataFrame,
        group_col: str = "dex",
        symbol_map: Optional[pd.Series] = None,
    ) -> pd.DataFrame:
        """
        One row per (gene, sample) pair of ``genes`` for boxplots.

        Columns: ``gene_id``, ``symbol``, ``sample``, ``expression`` and the
        grouping column taken from ``metadata``.
        """
        if group_col not in metadata.columns:
            raise ValidationError(f"Group column '{group_col}' not found in metadata")

        genes = list(genes)
        subset = transformed.loc[genes]
        labels = dict(zip(genes, _labels_for(genes, symbol_map)))

        long_df = (
            subset.rename_axis("gene_id")
            .reset_index()
            .melt(id_vars="gene_id", var_name="sample", value_name="expression")
        )
        long_df["symbol"] = long_df["gene_id"].map(labels)
        long_df[group_col] = long_df["sample"].map(metadata[group_col]).astype(str)
        return long_df[["gene_id", "symbol", "sample", "expression", group_col]]
