"""
Differential expression model for the airway treatment comparison.

This service fits the DESeq2 negative-binomial GLM through pyDESeq2 (size
factors, gene-wise / trended / MAP dispersions, GLM coefficients, Cook's
distance outlier handling) and runs Wald tests with Benjamini-Hochberg
adjustment, optionally against a thresholded null ``|LFC| <= threshold``.

One fitted model can be tested any number of times with different
(alpha, threshold) pairs; each call returns an independent result table.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from airwayseq.core import AirwaySeqError, ValidationError
from airwayseq.core.analysis_ir import AnalysisStep
from airwayseq.core.dataset import CountDataset
from airwayseq.services.analysis.differential_formula_service import (
    DifferentialFormulaService,
)
from airwayseq.utils.logger import get_logger

logger = get_logger(__name__)

RESULT_COLUMNS = ["baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj"]


class DifferentialExpressionError(AirwaySeqError):
    """Exception for pyDESeq2 model fitting and testing failures."""

    pass


@dataclass
class DeseqFit:
    """
    Handle on a fitted DESeq2 model.

    Attributes:
        dataset: The filtered dataset the model was fitted on
        design: Design formula used for the fit
        dds: Fitted ``pydeseq2.dds.DeseqDataSet`` (None for an empty dataset)
        size_factors: Per-sample normalization factors
        normalized_counts: Counts divided by size factors (genes x samples)
        reference_levels: Baseline level per categorical design variable
    """

    dataset: CountDataset
    design: str
    dds: Any = None
    size_factors: pd.Series = field(default_factory=lambda: pd.Series(dtype=float))
    normalized_counts: pd.DataFrame = field(default_factory=pd.DataFrame)
    reference_levels: Dict[str, str] = field(default_factory=dict)
    n_cpus: int = 1

    @property
    def is_empty(self) -> bool:
        return self.dds is None


def empty_results() -> pd.DataFrame:
    """Result table with the standard columns and no rows."""
    return pd.DataFrame(
        {column: pd.Series(dtype=float) for column in RESULT_COLUMNS},
        index=pd.Index([], dtype=object),
    )


class DifferentialExpressionService:
    """
    Stateless service for DESeq2 differential expression.

    This class validates inputs, fits the model and runs Wald tests. Every
    public method either returns typed results or raises a subclass of
    AirwaySeqError.
    """

    def __init__(self, n_cpus: int = 1):
        """
        Initialize the differential expression service.

        Args:
            n_cpus: Number of CPUs for pyDESeq2 inference
        """
        logger.debug("Initializing stateless DifferentialExpressionService")
        self.n_cpus = n_cpus
        self.formula_service = DifferentialFormulaService()

    def fit(
        self,
        dataset: CountDataset,
        design: str = "~cell + dex",
        contrast: Optional[List[str]] = None,
    ) -> DeseqFit:
        """
        Fit the DESeq2 model on a filtered dataset.

        Args:
            dataset: Filtered count dataset (genes x samples)
            design: R-style design formula
            contrast: Optional [factor, tested_level, reference_level]; when
                given, the reference level becomes the baseline of the factor
                so the fitted coefficient matches the contrast

        Returns:
            DeseqFit: Fitted model handle

        Raises:
            DataShapeError: If metadata does not line up with the count matrix
            ValidationError: If counts are invalid
            FormulaError: If the design formula is invalid
            DesignMatrixError: If the design cannot be fitted
            DifferentialExpressionError: If pyDESeq2 fails
        """
        dataset.validate()
        if dataset.metadata.empty or dataset.n_samples == 0:
            raise ValidationError("Metadata is empty")

        reference_levels = {}
        if contrast is not None:
            self._validate_contrast(contrast, dataset.metadata)
            reference_levels[contrast[0]] = contrast[2]

        design_info = self.formula_service.parse_formula(
            design, self._as_str_levels(dataset.metadata), reference_levels
        )
        self.formula_service.construct_design_matrix(
            design_info, self._as_str_levels(dataset.metadata), contrast
        )
        reference_levels = {
            var: info["reference_level"]
            for var, info in design_info["variable_info"].items()
            if info["type"] == "categorical"
        }

        if dataset.n_genes == 0:
            logger.warning("Empty count matrix: skipping model fit")
            return DeseqFit(
                dataset=dataset,
                design=design,
                size_factors=pd.Series(
                    np.nan, index=dataset.counts.columns, dtype=float
                ),
                normalized_counts=dataset.counts.astype(float),
                reference_levels=reference_levels,
                n_cpus=self.n_cpus,
            )

        try:
            from pydeseq2.dds import DeseqDataSet
            from pydeseq2.default_inference import DefaultInference

            metadata = self._ordered_metadata(
                dataset.metadata, design_info["variable_info"]
            )

            logger.info(
                f"Fitting DESeq2 model ({design}) on {dataset.n_genes} genes x "
                f"{dataset.n_samples} samples"
            )
            dds = DeseqDataSet(
                counts=dataset.counts.T.astype(int),
                metadata=metadata,
                design=design,
                refit_cooks=True,
                inference=DefaultInference(n_cpus=self.n_cpus),
                quiet=True,
            )
            dds.deseq2()

            if "size_factors" in dds.obs:
                size_factors = dds.obs["size_factors"]
            else:
                size_factors = dds.obsm["size_factors"]
            size_factors = pd.Series(
                np.asarray(size_factors, dtype=float),
                index=dataset.counts.columns,
                name="size_factor",
            )
            normalized_counts = pd.DataFrame(
                np.asarray(dds.layers["normed_counts"], dtype=float).T,
                index=dataset.counts.index,
                columns=dataset.counts.columns,
            )
            logger.debug(f"Size factors: {size_factors.round(3).to_dict()}")

            return DeseqFit(
                dataset=dataset,
                design=design,
                dds=dds,
                size_factors=size_factors,
                normalized_counts=normalized_counts,
                reference_levels=reference_levels,
                n_cpus=self.n_cpus,
            )

        except Exception as e:
            logger.exception(f"Error in pyDESeq2 model fit: {e}")
            raise DifferentialExpressionError(
                f"pyDESeq2 model fit failed: {e}", details={"design": design}
            )

    def test(
        self,
        fit: DeseqFit,
        contrast: Optional[List[str]] = None,
        alpha: float = 0.05,
        lfc_threshold: float = 0.0,
        alt_hypothesis: Optional[str] = None,
        shrink_lfc: bool = False,
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Wald-test the contrast on a fitted model.

        Args:
            fit: Handle returned by fit()
            contrast: [factor, tested_level, reference_level]
            alpha: Target FDR for independent filtering and counting
            lfc_threshold: log2 fold change threshold of the null hypothesis;
                0 tests LFC == 0
            alt_hypothesis: pyDESeq2 alternative; defaults to "greaterAbs"
                when ``lfc_threshold`` > 0
            shrink_lfc: Replace log2FoldChange / lfcSE with shrunk estimates

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
                - Result table indexed by gene id; untestable genes keep NaN
                  pvalue / padj
                - Test statistics (significance counts and DESeq2 summary)
                - Provenance step

        Raises:
            ValidationError: If alpha / threshold / contrast are invalid
            DifferentialExpressionError: If pyDESeq2 fails
        """
        contrast = list(contrast or ["dex", "trt", "untrt"])
        if not 0 < alpha < 1:
            raise ValidationError(f"alpha must be in (0, 1), got {alpha}")
        if lfc_threshold < 0:
            raise ValidationError(f"lfc_threshold must be >= 0, got {lfc_threshold}")
        self._validate_contrast(contrast, fit.dataset.metadata)

        if alt_hypothesis is None and lfc_threshold > 0:
            alt_hypothesis = "greaterAbs"

        if fit.is_empty:
            results_df = empty_results()
        else:
            results_df = self._run_wald_test(
                fit, contrast, alpha, lfc_threshold, alt_hypothesis, shrink_lfc
            )

        counts = self.significance_counts(results_df, alpha)
        summary = self.summarize(results_df, alpha)
        logger.info(
            f"Tested {len(results_df)} genes (alpha={alpha}, "
            f"lfc_threshold={lfc_threshold}): {counts['significant']} significant, "
            f"{counts['untestable']} untestable"
        )

        stats = {
            "method": "pydeseq2",
            "design": fit.design,
            "contrast": contrast,
            "alpha": alpha,
            "lfc_threshold": lfc_threshold,
            "alt_hypothesis": alt_hypothesis,
            "shrink_lfc": shrink_lfc,
            "total_genes_tested": len(results_df),
            "n_significant_genes": counts["significant"],
            "significance_counts": counts,
            "summary": summary,
        }

        step = AnalysisStep(
            operation="pydeseq2.ds.DeseqStats.summary",
            tool_name="DifferentialExpressionService.test",
            description=(
                f"Wald test of {contrast[0]} {contrast[1]} vs {contrast[2]} "
                f"(|LFC| threshold {lfc_threshold}, alpha {alpha})"
            ),
            library="pydeseq2",
            parameters={
                "design": fit.design,
                "contrast": contrast,
                "alpha": alpha,
                "lfc_threshold": lfc_threshold,
                "alt_hypothesis": alt_hypothesis,
                "shrink_lfc": shrink_lfc,
                "n_cpus": fit.n_cpus,
            },
            input_entities=["deseq_fit"],
            output_entities=[f"results_lfc{lfc_threshold:g}"],
        )

        return results_df, stats, step

    def run(
        self,
        dataset: CountDataset,
        design: str = "~cell + dex",
        contrast: Optional[List[str]] = None,
        alpha: float = 0.05,
        lfc_threshold: float = 0.0,
        shrink_lfc: bool = False,
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """Fit the model and test one contrast."""
        contrast = list(contrast or ["dex", "trt", "untrt"])
        fit = self.fit(dataset, design=design, contrast=contrast)
        return self.test(
            fit,
            contrast=contrast,
            alpha=alpha,
            lfc_threshold=lfc_threshold,
            shrink_lfc=shrink_lfc,
        )

    @staticmethod
    def significance_counts(results: pd.DataFrame, alpha: float = 0.05) -> Dict[str, int]:
        """
        Count genes by adjusted p-value status.

        Genes without an adjusted p-value are ``untestable`` and never counted
        as not significant, so the three counts sum to ``len(results)``.
        """
        padj = results["padj"]
        untestable = int(padj.isna().sum())
        significant = int((padj < alpha).sum())
        return {
            "significant": significant,
            "not_significant": len(results) - significant - untestable,
            "untestable": untestable,
        }

    @staticmethod
    def summarize(results: pd.DataFrame, alpha: float = 0.05) -> Dict[str, int]:
        """
        Counterpart of DESeq2's ``summary()`` for a result table.

        ``outliers`` are expressed genes whose p-value was removed by Cook's
        distance filtering; ``low_counts`` are genes whose adjusted p-value was
        removed by independent filtering.
        """
        significant = results["padj"] < alpha
        expressed = results["baseMean"] > 0
        return {
            "n_nonzero": int(expressed.sum()),
            "up": int((significant & (results["log2FoldChange"] > 0)).sum()),
            "down": int((significant & (results["log2FoldChange"] < 0)).sum()),
            "outliers": int((results["pvalue"].isna() & expressed).sum()),
            "low_counts": int(
                (results["pvalue"].notna() & results["padj"].isna()).sum()
            ),
        }

    @staticmethod
    def order_by_padj(results: pd.DataFrame) -> pd.DataFrame:
        """Ascending adjusted p-value, missing values last, stable on ties."""
        return results.sort_values("padj", kind="mergesort", na_position="last")

    def _run_wald_test(
        self,
        fit: DeseqFit,
        contrast: List[str],
        alpha: float,
        lfc_threshold: float,
        alt_hypothesis: Optional[str],
        shrink_lfc: bool,
    ) -> pd.DataFrame:
        try:
            from pydeseq2.default_inference import DefaultInference
            from pydeseq2.ds import DeseqStats

            logger.info(f"Running Wald tests for contrast: {contrast}")
            ds = DeseqStats(
                fit.dds,
                contrast=contrast,
                alpha=alpha,
                cooks_filter=True,
                independent_filter=True,
                lfc_null=lfc_threshold,
                alt_hypothesis=alt_hypothesis,
                inference=DefaultInference(n_cpus=fit.n_cpus),
                quiet=True,
            )
            ds.summary()

            if shrink_lfc:
                if fit.reference_levels.get(contrast[0]) != contrast[2]:
                    raise DifferentialExpressionError(
                        f"LFC shrinkage needs '{contrast[2]}' as the reference level "
                        f"of '{contrast[0]}'; refit with this contrast"
                    )
                logger.info("Applying log fold change shrinkage...")
                ds.lfc_shrink(coeff=f"{contrast[0]}[T.{contrast[1]}]")

            results_df = ds.results_df.copy()
            results_df = results_df[RESULT_COLUMNS].astype(float)
            results_df.index = fit.dataset.counts.index
            return results_df

        except Exception as e:
            if isinstance(e, DifferentialExpressionError):
                raise
            else:
                logger.exception(f"Error in pyDESeq2 testing: {e}")
                raise DifferentialExpressionError(
                    f"pyDESeq2 testing failed: {e}",
                    details={"contrast": contrast, "lfc_threshold": lfc_threshold},
                )

    @staticmethod
    def _as_str_levels(metadata: pd.DataFrame) -> pd.DataFrame:
        """Categorical columns as plain strings for design parsing."""
        converted = metadata.copy()
        for column in converted.columns:
            if not pd.api.types.is_numeric_dtype(converted[column]):
                converted[column] = converted[column].astype(str)
        return converted

    @staticmethod
    def _ordered_metadata(
        metadata: pd.DataFrame, variable_info: Dict[str, Dict[str, Any]]
    ) -> pd.DataFrame:
        """Encode design factors as categoricals with the baseline level first."""
        ordered = metadata.copy()
        for var, info in variable_info.items():
            if info["type"] == "categorical":
                ordered[var] = pd.Categorical(
                    ordered[var].astype(str), categories=info["levels"]
                )
        return ordered

    @staticmethod
    def _validate_contrast(contrast: List[str], metadata: pd.DataFrame) -> None:
        if len(contrast) != 3:
            raise ValidationError("Contrast must be [factor, level1, level2]")

        factor, level1, level2 = contrast
        if factor not in metadata.columns:
            raise ValidationError(f"Contrast factor '{factor}' not found in metadata")

        factor_levels = set(metadata[factor].astype(str))
        for level in (level1, level2):
            if level not in factor_levels:
                raise ValidationError(
                    f"Contrast level '{level}' not found in factor '{factor}'"
                )
        if level1 == level2:
            raise ValidationError(f"Contrast levels must differ, got '{level1}' twice")
