"""
Low-count gene filter for bulk RNA-seq count matrices.

Genes whose total count across all samples does not exceed a threshold carry
no information for the differential expression model and are removed before
transformation and fitting.
"""

from typing import Any, Dict, Tuple

from airwayseq.core.analysis_ir import AnalysisStep
from airwayseq.core.dataset import CountDataset
from airwayseq.utils.logger import get_logger

logger = get_logger(__name__)


class CountFilterService:
    """
    Stateless service for removing low-count genes.

    This service is stateless and doesn't require a data manager instance.
    """

    def __init__(self):
        logger.debug("Initializing stateless CountFilterService")

    def filter_low_counts(
        self, dataset: CountDataset, min_total_count: int = 1
    ) -> Tuple[CountDataset, Dict[str, Any], AnalysisStep]:
        """
        Keep genes whose row sum is strictly greater than ``min_total_count``.

        Args:
            dataset: Validated count dataset
            min_total_count: Genes with a total count <= this value are removed

        Returns:
            Tuple[CountDataset, Dict[str, Any], AnalysisStep]:
                - Row-filtered dataset (column order and metadata unchanged)
                - Filtering statistics
                - Provenance step

        A filter that removes every gene is not an error: the returned dataset
        has zero rows and downstream stages produce empty tables.
        """
        n_before = dataset.n_genes
        row_sums = dataset.counts.sum(axis=1)
        keep = row_sums > min_total_count

        filtered = dataset.subset_genes(keep[keep].index)
        n_after = filtered.n_genes

        if n_after == 0:
            logger.warning(
                f"No genes passed the low-count filter (total count > {min_total_count})"
            )
        logger.info(
            f"Low-count filter: {n_before} -> {n_after} genes "
            f"({n_before - n_after} removed, total count <= {min_total_count})"
        )

        stats = {
            "n_genes_before": n_before,
            "n_genes_after": n_after,
            "n_genes_removed": n_before - n_after,
            "min_total_count": min_total_count,
        }

        step = AnalysisStep(
            operation="pandas.DataFrame.sum",
            tool_name="CountFilterService.filter_low_counts",
            description=f"Remove genes with total count <= {min_total_count}",
            library="pandas",
            parameters={"min_total_count": min_total_count},
            input_entities=["counts"],
            output_entities=["filtered_counts"],
        )

        return filtered, stats, step
