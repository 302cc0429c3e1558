"""
Variance-stabilizing transformation of bulk RNA-seq counts.

The transformed matrix is used for sample clustering, PCA and the heatmap /
boxplot views only; differential testing always runs on raw counts.
"""

from typing import Any, Dict, Tuple

import numpy as np
import pandas as pd

from airwayseq.core import AirwaySeqError
from airwayseq.core.analysis_ir import AnalysisStep
from airwayseq.core.dataset import CountDataset
from airwayseq.utils.logger import get_logger

logger = get_logger(__name__)


class TransformError(AirwaySeqError):
    """Raised when the variance-stabilizing transformation fails."""

    pass


class TransformService:
    """
    Stateless service wrapping the pyDESeq2 variance-stabilizing transform.
    """

    def __init__(self, n_cpus: int = 1):
        self.n_cpus = n_cpus

    def variance_stabilize(
        self,
        dataset: CountDataset,
        design: str = "~cell + dex",
        blind: bool = True,
        fit_type: str = "parametric",
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Apply the DESeq2 variance-stabilizing transformation.

        Args:
            dataset: Filtered count dataset (genes x samples)
            design: Design formula, used for the dispersion trend only when
                ``blind`` is False
            blind: Estimate dispersions ignoring the design
            fit_type: Dispersion trend type ("parametric" or "mean")

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
                - Transformed float matrix with the input's gene and sample labels
                - Transform statistics
                - Provenance step

        Raises:
            ValidationError: If the counts are not non-negative integers
            TransformError: If pyDESeq2 fails on the input
        """
        dataset.validate()
        try:
            counts = dataset.counts
            logger.info(
                f"Variance-stabilizing {counts.shape[0]} genes x {counts.shape[1]} "
                f"samples (blind={blind})"
            )

            if counts.shape[0] == 0:
                transformed = pd.DataFrame(
                    np.empty((0, counts.shape[1]), dtype=float),
                    index=counts.index,
                    columns=counts.columns,
                )
            else:
                from pydeseq2.dds import DeseqDataSet
                from pydeseq2.default_inference import DefaultInference

                dds = DeseqDataSet(
                    counts=counts.T.astype(int),
                    metadata=dataset.metadata.copy(),
                    design=design,
                    inference=DefaultInference(n_cpus=self.n_cpus),
                    quiet=True,
                )
                dds.vst(use_design=not blind, fit_type=fit_type)

                transformed = pd.DataFrame(
                    np.asarray(dds.layers["vst_counts"], dtype=float).T,
                    index=counts.index,
                    columns=counts.columns,
                )

            stats = {
                "n_genes": int(transformed.shape[0]),
                "n_samples": int(transformed.shape[1]),
                "blind": blind,
                "fit_type": fit_type,
                "min_value": float(transformed.to_numpy().min()) if transformed.size else None,
                "max_value": float(transformed.to_numpy().max()) if transformed.size else None,
            }

            step = AnalysisStep(
                operation="pydeseq2.dds.DeseqDataSet.vst",
                tool_name="TransformService.variance_stabilize",
                description="Variance-stabilizing transformation of filtered counts",
                library="pydeseq2",
                parameters={"design": design, "blind": blind, "fit_type": fit_type},
                input_entities=["filtered_counts"],
                output_entities=["vst_matrix"],
            )

            return transformed, stats, step

        except Exception as e:
            if isinstance(e, TransformError):
                raise
            else:
                logger.exception(f"Error in variance-stabilizing transform: {e}")
                raise TransformError(f"Variance-stabilizing transform failed: {e}")
