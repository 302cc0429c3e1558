"""
Sample-level structure of the transformed expression matrix.

Distances, hierarchical clustering and principal components are computed
here and rendered by the visualization service.
"""

from typing import Any, Dict, Tuple

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import leaves_list, linkage
from scipy.spatial.distance import pdist, squareform
from sklearn.decomposition import PCA

from airwayseq.core import AirwaySeqError
from airwayseq.core.analysis_ir import AnalysisStep
from airwayseq.utils.logger import get_logger

logger = get_logger(__name__)


class SampleStructureError(AirwaySeqError):
    """Raised when sample distances, clustering or PCA cannot be computed."""

    pass


class SampleStructureService:
    """Stateless service for sample distances, clustering and PCA."""

    def sample_distances(self, transformed: pd.DataFrame) -> pd.DataFrame:
        """
        Euclidean distances between samples (columns) of a genes x samples matrix.

        Returns:
            pd.DataFrame: Symmetric samples x samples distance matrix
        """
        samples = transformed.columns
        if transformed.shape[1] < 2 or transformed.shape[0] == 0:
            return pd.DataFrame(
                np.zeros((len(samples), len(samples))), index=samples, columns=samples
            )
        distances = squareform(pdist(transformed.T.to_numpy(), metric="euclidean"))
        return pd.DataFrame(distances, index=samples, columns=samples)

    def cluster_samples(
        self, transformed: pd.DataFrame, method: str = "complete"
    ) -> Tuple[Dict[str, Any], Dict[str, Any], AnalysisStep]:
        """
        Hierarchical clustering of samples on Euclidean distance.

        Args:
            transformed: Variance-stabilized genes x samples matrix
            method: scipy linkage method

        Returns:
            Tuple[Dict[str, Any], Dict[str, Any], AnalysisStep]:
                - {"linkage": ndarray | None, "labels": [...], "leaf_order": [...],
                  "distances": DataFrame}
                - Clustering statistics
                - Provenance step

        Raises:
            SampleStructureError: If scipy rejects the input
        """
        try:
            labels = [str(s) for s in transformed.columns]
            distances = self.sample_distances(transformed)

            if len(labels) < 2 or transformed.shape[0] == 0:
                logger.warning(
                    f"Cannot cluster {len(labels)} samples over "
                    f"{transformed.shape[0]} genes; returning trivial ordering"
                )
                link = None
                leaf_order = labels
            else:
                link = linkage(transformed.T.to_numpy(), method=method, metric="euclidean")
                leaf_order = [labels[i] for i in leaves_list(link)]

            logger.info(f"Clustered {len(labels)} samples ({method} linkage)")

            clustering = {
                "linkage": link,
                "labels": labels,
                "leaf_order": leaf_order,
                "distances": distances,
            }
            stats = {
                "method": method,
                "n_samples": len(labels),
                "leaf_order": leaf_order,
                "max_distance": float(distances.to_numpy().max()) if len(labels) else 0.0,
            }
            step = AnalysisStep(
                operation="scipy.cluster.hierarchy.linkage",
                tool_name="SampleStructureService.cluster_samples",
                description=f"{method.capitalize()}-linkage clustering of samples on Euclidean distance",
                library="scipy",
                parameters={"method": method, "metric": "euclidean"},
                input_entities=["vst_matrix"],
                output_entities=["sample_clustering"],
            )
            return clustering, stats, step

        except Exception as e:
            if isinstance(e, SampleStructureError):
                raise
            else:
                raise SampleStructureError(f"Sample clustering failed: {e}")

    def compute_pca(
        self,
        transformed: pd.DataFrame,
        metadata: pd.DataFrame,
        ntop: int = 500,
        n_components: int = 2,
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        PCA of samples on the ``ntop`` most variable genes.

        Genes are centred but not scaled, matching DESeq2's ``plotPCA``.

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
                - Per-sample PC coordinates joined with the metadata columns
                - Stats with ``explained_variance_ratio`` and genes used
                - Provenance step

        Raises:
            SampleStructureError: If the decomposition fails
        """
        try:
            n_genes, n_samples = transformed.shape
            pc_columns = [f"PC{i + 1}" for i in range(n_components)]

            if n_samples < 2 or n_genes < 2:
                logger.warning(
                    f"PCA needs at least 2 samples and 2 genes, got {n_samples} x {n_genes}"
                )
                coords = pd.DataFrame(columns=pc_columns + list(metadata.columns))
                explained = []
                n_used = 0
            else:
                variances = transformed.var(axis=1, ddof=1)
                n_used = min(ntop, n_genes)
                # stable so equal-variance genes keep input order
                top_genes = variances.sort_values(
                    ascending=False, kind="mergesort"
                ).index[:n_used]

                matrix = transformed.loc[top_genes].T.to_numpy()
                k = min(n_components, n_samples, n_used)
                pca = PCA(n_components=k)
                scores = pca.fit_transform(matrix)

                coords = pd.DataFrame(
                    scores, index=transformed.columns, columns=pc_columns[:k]
                ).join(metadata)
                explained = [float(v) for v in pca.explained_variance_ratio_]

            logger.info(
                f"PCA on top {n_used} variable genes: explained variance "
                f"{[round(v * 100, 1) for v in explained]}%"
            )

            stats = {
                "ntop": ntop,
                "n_genes_used": n_used,
                "explained_variance_ratio": explained,
            }
            step = AnalysisStep(
                operation="sklearn.decomposition.PCA",
                tool_name="SampleStructureService.compute_pca",
                description=f"PCA of samples on the {ntop} most variable genes",
                library="scikit-learn",
                parameters={"ntop": ntop, "n_components": n_components},
                input_entities=["vst_matrix", "metadata"],
                output_entities=["pca_coordinates"],
            )
            return coords, stats, step

        except Exception as e:
            if isinstance(e, SampleStructureError):
                raise
            else:
                raise SampleStructureError(f"PCA failed: {e}")
