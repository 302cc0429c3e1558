"""
Count dataset container.

Pairs the gene x sample count matrix with its sample metadata and enforces
the alignment rules every downstream stage relies on.
"""

from dataclasses import dataclass
from typing import Any, Dict

import anndata
import numpy as np
import pandas as pd

from airwayseq.core import DataShapeError, ValidationError


@dataclass(frozen=True)
class CountDataset:
    """
    Gene x sample integer count matrix with one metadata row per sample.

    Attributes:
        counts: Count matrix, genes as index, samples as columns
        metadata: Sample metadata, index equal to ``counts.columns`` (same order)
    """

    counts: pd.DataFrame
    metadata: pd.DataFrame

    @property
    def n_genes(self) -> int:
        return self.counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]

    def validate(self) -> "CountDataset":
        """
        Check alignment, numeric type, sign and integrality of the counts.

        Returns:
            CountDataset: self, to allow chaining

        Raises:
            DataShapeError: If metadata rows do not match count columns
            ValidationError: If counts are non-numeric, missing, negative or
                fractional
        """
        count_samples = [str(s) for s in self.counts.columns]
        metadata_samples = [str(s) for s in self.metadata.index]

        if count_samples != metadata_samples:
            missing_from_metadata = sorted(set(count_samples) - set(metadata_samples))
            missing_from_counts = sorted(set(metadata_samples) - set(count_samples))
            if missing_from_metadata or missing_from_counts:
                message = (
                    "Sample metadata does not match count matrix columns "
                    f"(missing from metadata: {missing_from_metadata}, "
                    f"missing from counts: {missing_from_counts})"
                )
            elif len(count_samples) != len(metadata_samples):
                message = (
                    f"Sample metadata has {len(metadata_samples)} rows but the "
                    f"count matrix has {len(count_samples)} columns"
                )
            else:
                message = "Sample metadata rows are not in count matrix column order"
            raise DataShapeError(
                message,
                details={
                    "count_samples": count_samples,
                    "metadata_samples": metadata_samples,
                    "missing_from_metadata": missing_from_metadata,
                    "missing_from_counts": missing_from_counts,
                },
            )

        if not self.counts.dtypes.apply(lambda x: np.issubdtype(x, np.number)).all():
            raise ValidationError("Count matrix contains non-numeric data")

        values = self.counts.to_numpy(dtype=float, na_value=np.nan)
        if np.isnan(values).any():
            raise ValidationError("Count matrix contains missing values")

        if (values < 0).any():
            raise ValidationError("Count matrix contains negative values")

        if not np.all(np.mod(values, 1) == 0):
            raise ValidationError("Count matrix contains non-integer values")

        return self

    def subset_genes(self, genes) -> "CountDataset":
        """Row-filtered copy; the only shape change a dataset allows."""
        return CountDataset(counts=self.counts.loc[genes].copy(), metadata=self.metadata)

    def to_anndata(self) -> anndata.AnnData:
        """Samples x genes AnnData, the orientation pydeseq2 expects."""
        return anndata.AnnData(
            X=self.counts.T.to_numpy(),
            obs=self.metadata.copy(),
            var=pd.DataFrame(index=self.counts.index.astype(str)),
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "n_genes": self.n_genes,
            "n_samples": self.n_samples,
            "total_counts": int(self.counts.to_numpy().sum()),
            "metadata_columns": list(self.metadata.columns),
        }
