"""
Loading of the airway count dataset.

Counts and sample metadata can come from delimited text files, from an
AnnData ``.h5ad`` file, or from a negative-binomial simulation on the
published airway design (GEO GSE52778: four airway smooth muscle cell lines,
each untreated and treated with dexamethasone).
"""

from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import anndata
import numpy as np
import pandas as pd
from scipy import sparse

from airwayseq.core import ValidationError
from airwayseq.core.analysis_ir import AnalysisStep
from airwayseq.core.dataset import CountDataset
from airwayseq.utils.logger import get_logger

logger = get_logger(__name__)

# SRR run -> (GEO sample, cell line, treatment)
AIRWAY_SAMPLES = {
    "SRR1039508": ("GSM1275862", "N61311", "untrt"),
    "SRR1039509": ("GSM1275863", "N61311", "trt"),
    "SRR1039512": ("GSM1275866", "N052611", "untrt"),
    "SRR1039513": ("GSM1275867", "N052611", "trt"),
    "SRR1039516": ("GSM1275870", "N080611", "untrt"),
    "SRR1039517": ("GSM1275871", "N080611", "trt"),
    "SRR1039520": ("GSM1275874", "N061011", "untrt"),
    "SRR1039521": ("GSM1275875", "N061011", "trt"),
}

_TAB_SUFFIXES = {".tsv", ".tab", ".txt"}


def _read_table(path: Path) -> pd.DataFrame:
    suffixes = [s.lower() for s in path.suffixes if s.lower() not in (".gz", ".bz2")]
    sep = "\t" if suffixes and suffixes[-1] in _TAB_SUFFIXES else ","
    return pd.read_csv(path, sep=sep, index_col=0)


class DatasetLoaderService:
    """
    Stateless service producing validated CountDataset objects.
    """

    def load_from_files(
        self,
        counts_path: Union[str, Path],
        metadata_path: Union[str, Path],
    ) -> Tuple[CountDataset, Dict[str, Any], AnalysisStep]:
        """
        Load a genes x samples count table and a samples x attributes table.

        Both files are CSV, or tab-separated when the suffix is .tsv / .tab /
        .txt; the first column is the index. The metadata rows must list the
        count columns in the same order: a mismatch raises DataShapeError.

        Raises:
            FileNotFoundError: If either file does not exist
            DataShapeError: If metadata does not match the count columns
            ValidationError: If counts are non-numeric, negative or fractional
        """
        counts_path = Path(counts_path)
        metadata_path = Path(metadata_path)
        for path in (counts_path, metadata_path):
            if not path.exists():
                raise FileNotFoundError(f"Input file not found: {path}")

        logger.info(f"Loading counts from {counts_path} and metadata from {metadata_path}")
        counts = _read_table(counts_path)
        metadata = _read_table(metadata_path)

        dataset = self._build(counts, metadata)
        step = AnalysisStep(
            operation="pandas.read_csv",
            tool_name="DatasetLoaderService.load_from_files",
            description="Load count matrix and sample metadata from delimited files",
            library="pandas",
            parameters={"counts_path": str(counts_path), "metadata_path": str(metadata_path)},
            input_entities=[counts_path.name, metadata_path.name],
            output_entities=["counts", "metadata"],
        )
        return dataset, dataset.summary(), step

    def load_from_h5ad(
        self, path: Union[str, Path], layer: Optional[str] = None
    ) -> Tuple[CountDataset, Dict[str, Any], AnalysisStep]:
        """
        Load counts from an AnnData file (obs = samples, var = genes).

        Args:
            path: ``.h5ad`` file
            layer: Layer holding raw counts; ``X`` when omitted
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Input file not found: {path}")

        logger.info(f"Loading AnnData counts from {path}")
        adata = anndata.read_h5ad(path)
        if layer is not None and layer not in adata.layers:
            raise ValidationError(
                f"Layer '{layer}' not found; available layers: {list(adata.layers.keys())}"
            )

        X = adata.layers[layer] if layer is not None else adata.X
        if sparse.issparse(X):
            X = X.toarray()

        counts = pd.DataFrame(
            np.asarray(X).T,
            index=adata.var_names.astype(str),
            columns=adata.obs_names.astype(str),
        )
        dataset = self._build(counts, adata.obs.copy())
        step = AnalysisStep(
            operation="anndata.read_h5ad",
            tool_name="DatasetLoaderService.load_from_h5ad",
            description="Load count matrix and sample metadata from AnnData",
            library="anndata",
            parameters={"path": str(path), "layer": layer},
            input_entities=[path.name],
            output_entities=["counts", "metadata"],
        )
        return dataset, dataset.summary(), step

    @staticmethod
    def airway_sample_table() -> pd.DataFrame:
        """Sample metadata of the published airway experiment."""
        table = pd.DataFrame.from_dict(
            AIRWAY_SAMPLES, orient="index", columns=["SampleName", "cell", "dex"]
        )
        table.index.name = "Run"
        return table

    def simulate(
        self,
        n_genes: int = 2000,
        seed: int = 0,
        n_responsive: int = 200,
        n_near_zero: int = 200,
        min_abs_log2fc: float = 1.5,
        max_abs_log2fc: float = 3.0,
    ) -> Tuple[CountDataset, Dict[str, Any], AnalysisStep]:
        """
        Negative-binomial counts on the airway design.

        The first ``n_responsive`` expressed genes get a treatment effect with
        ``|log2FC|`` drawn uniformly from ``[min_abs_log2fc, max_abs_log2fc]``
        (random sign); the last ``n_near_zero`` genes have a total count of at
        most 1 and are removed by the low-count filter. Cell lines add a
        modest gene-wise shift, and samples differ in sequencing depth.

        Returns:
            Tuple[CountDataset, Dict[str, Any], AnalysisStep]: dataset, stats
                with ``responsive_genes`` / ``true_log2fc`` / ``near_zero_genes``,
                provenance step
        """
        if n_responsive + n_near_zero > n_genes:
            raise ValidationError(
                f"n_responsive ({n_responsive}) + n_near_zero ({n_near_zero}) "
                f"exceeds n_genes ({n_genes})"
            )

        rng = np.random.default_rng(seed)
        metadata = self.airway_sample_table()
        samples = list(metadata.index)
        gene_ids = [f"ENSG{i:011d}" for i in range(1, n_genes + 1)]
        n_expressed = n_genes - n_near_zero

        base_mean = rng.lognormal(mean=5.0, sigma=1.5, size=n_expressed)
        dispersion = 0.02 + 1.0 / base_mean

        log2fc = np.zeros(n_expressed)
        log2fc[:n_responsive] = rng.uniform(
            min_abs_log2fc, max_abs_log2fc, size=n_responsive
        ) * rng.choice([-1.0, 1.0], size=n_responsive)

        cell_levels = sorted(metadata["cell"].unique())
        cell_effect = {
            cell: rng.normal(0.0, 0.3, size=n_expressed) for cell in cell_levels
        }
        depth = rng.lognormal(mean=0.0, sigma=0.2, size=len(samples))

        counts = np.zeros((n_genes, len(samples)), dtype=np.int64)
        for j, sample in enumerate(samples):
            treated = metadata.loc[sample, "dex"] == "trt"
            log2_mu = (
                np.log2(base_mean)
                + cell_effect[metadata.loc[sample, "cell"]]
                + (log2fc if treated else 0.0)
            )
            mu = depth[j] * np.power(2.0, log2_mu)
            n_param = 1.0 / dispersion
            counts[:n_expressed, j] = rng.negative_binomial(n_param, n_param / (n_param + mu))

        # at most a single read per near-zero gene
        if n_near_zero:
            hit = rng.random(n_near_zero) < 0.5
            columns = rng.integers(0, len(samples), size=n_near_zero)
            counts[n_expressed + np.flatnonzero(hit), columns[hit]] = 1

        count_df = pd.DataFrame(counts, index=pd.Index(gene_ids, name="gene_id"), columns=samples)
        dataset = CountDataset(counts=count_df, metadata=metadata).validate()

        logger.info(
            f"Simulated {n_genes} genes x {len(samples)} samples "
            f"({n_responsive} responsive, {n_near_zero} near zero, seed={seed})"
        )

        stats = dataset.summary()
        stats.update(
            {
                "seed": seed,
                "responsive_genes": gene_ids[:n_responsive],
                "true_log2fc": dict(zip(gene_ids[:n_responsive], log2fc[:n_responsive].round(4).tolist())),
                "near_zero_genes": gene_ids[n_expressed:],
            }
        )
        step = AnalysisStep(
            operation="numpy.random.Generator.negative_binomial",
            tool_name="DatasetLoaderService.simulate",
            description="Simulate negative-binomial counts on the airway design",
            library="numpy",
            parameters={
                "n_genes": n_genes,
                "seed": seed,
                "n_responsive": n_responsive,
                "n_near_zero": n_near_zero,
                "min_abs_log2fc": min_abs_log2fc,
                "max_abs_log2fc": max_abs_log2fc,
            },
            output_entities=["counts", "metadata"],
        )
        return dataset, stats, step

    @staticmethod
    def _build(counts: pd.DataFrame, metadata: pd.DataFrame) -> CountDataset:
        counts = counts.copy()
        metadata = metadata.copy()
        counts.columns = counts.columns.astype(str)
        counts.index = counts.index.astype(str)
        metadata.index = metadata.index.astype(str)

        dataset = CountDataset(counts=counts, metadata=metadata).validate()
        dataset = CountDataset(counts=dataset.counts.astype(np.int64), metadata=metadata)
        logger.info(f"Loaded {dataset.n_genes} genes x {dataset.n_samples} samples")
        return dataset
