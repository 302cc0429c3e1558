"""
Design formula service for the differential expression model.

This module provides the DifferentialFormulaService that parses R-style
design formulas (``~cell + dex``) against sample metadata and constructs
the corresponding treatment-coded design matrix, so that an unusable design
is rejected before any model is fitted.
"""

import re
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from airwayseq.core import DesignMatrixError, FormulaError
from airwayseq.utils.logger import get_logger

logger = get_logger(__name__)


class DifferentialFormulaService:
    """
    Service for formula-based differential expression design.

    Only additive main-effect designs are supported; the contrast factor's
    reference level becomes the baseline of its dummy coding.
    """

    def __init__(self):
        """Initialize the formula service."""
        self.logger = logger

    def parse_formula(
        self,
        formula: str,
        metadata: pd.DataFrame,
        reference_levels: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Parse R-style formula into components and validate against metadata.

        Args:
            formula: R-style formula string (e.g., "~cell + dex")
            metadata: Sample metadata DataFrame
            reference_levels: Optional reference levels for categorical variables

        Returns:
            Dict[str, Any]: Parsed formula components

        Raises:
            FormulaError: If formula is invalid or variables not found
        """
        self.logger.debug(f"Parsing formula: {formula}")

        try:
            formula = self._clean_formula(formula)
            predictors = self._split_formula(formula)
            terms = self._parse_terms(predictors)
            self._validate_variables(terms, metadata)
            variable_info = self._analyze_variables(terms, metadata, reference_levels)

            formula_components = {
                "formula_string": formula,
                "predictor_terms": terms,
                "variable_info": variable_info,
                "reference_levels": reference_levels or {},
                "n_samples": len(metadata),
                "design_rank": self._estimate_design_rank(variable_info),
            }

            self.logger.debug(
                f"Formula parsed: {len(terms)} terms, "
                f"rank ~ {formula_components['design_rank']}"
            )
            return formula_components

        except Exception as e:
            if isinstance(e, FormulaError):
                raise
            else:
                raise FormulaError(f"Failed to parse formula '{formula}': {e}")

    def construct_design_matrix(
        self,
        formula_components: Dict[str, Any],
        metadata: pd.DataFrame,
        contrast: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Construct design matrix from parsed formula components.

        Args:
            formula_components: Parsed formula from parse_formula()
            metadata: Sample metadata DataFrame
            contrast: Optional contrast [factor, tested, reference]

        Returns:
            Dict[str, Any]: Design matrix, coefficient names, rank and the
                contrast vector when a contrast was given

        Raises:
            DesignMatrixError: If the matrix is not of full column rank or
                leaves no residual degrees of freedom
            FormulaError: If the contrast does not fit the formula
        """
        try:
            design_df = pd.DataFrame(index=metadata.index)
            design_df["(Intercept)"] = 1.0

            for term in formula_components["predictor_terms"]:
                var = term["variables"][0]
                var_info = formula_components["variable_info"][var]
                if var_info["type"] == "continuous":
                    design_df[var] = metadata[var].to_numpy(dtype=float)
                else:
                    for level in var_info["levels"][1:]:
                        design_df[f"{var}[T.{level}]"] = (
                            metadata[var] == level
                        ).astype(float)

            design_matrix = design_df.to_numpy(dtype=np.float64)
            self._validate_design_matrix(design_matrix, list(design_df.columns))

            coef_names = list(design_df.columns)
            contrast_vector = None
            contrast_name = None
            if contrast:
                contrast_vector, contrast_name = self._construct_contrast(
                    contrast, coef_names, formula_components
                )

            result = {
                "design_matrix": design_matrix,
                "design_df": design_df,
                "coefficient_names": coef_names,
                "n_coefficients": design_matrix.shape[1],
                "rank": int(np.linalg.matrix_rank(design_matrix)),
                "contrast_vector": contrast_vector,
                "contrast_name": contrast_name,
                "formula_components": formula_components,
            }

            self.logger.info(
                f"Design matrix constructed: {design_matrix.shape[0]} samples x "
                f"{design_matrix.shape[1]} coefficients (rank: {result['rank']})"
            )
            return result

        except Exception as e:
            if isinstance(e, (DesignMatrixError, FormulaError)):
                raise
            else:
                raise DesignMatrixError(f"Failed to construct design matrix: {e}")

    def _clean_formula(self, formula: str) -> str:
        """Clean and normalize formula string."""
        if not isinstance(formula, str):
            raise FormulaError(f"Formula must be a string, got {type(formula).__name__}")

        formula = re.sub(r"\s+", " ", formula.strip())
        if not formula.startswith("~"):
            formula = "~" + formula
        if formula == "~":
            raise FormulaError("Empty formula")
        return formula

    def _split_formula(self, formula: str) -> str:
        """Return the predictor side; a response variable is not allowed."""
        parts = formula.split("~")
        if len(parts) != 2 or parts[0].strip():
            raise FormulaError(f"Invalid formula format: {formula}")

        predictors = parts[1].strip()
        if not predictors:
            raise FormulaError("No predictor variables specified")
        return predictors

    def _parse_terms(self, predictor_string: str) -> List[Dict[str, Any]]:
        """Parse additive predictor terms from formula string."""
        terms = []
        for term_str in (t.strip() for t in predictor_string.split("+")):
            if not term_str:
                continue
            if any(op in term_str for op in ("*", ":")):
                raise FormulaError(
                    f"Interaction term '{term_str}' is not supported; "
                    "use an additive design such as '~cell + dex'"
                )
            if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_.]*", term_str):
                raise FormulaError(f"Invalid variable name in formula: '{term_str}'")
            terms.append({"term": term_str, "type": "main_effect", "variables": [term_str]})

        if not terms:
            raise FormulaError("No predictor variables specified")
        return terms

    def _validate_variables(
        self, terms: List[Dict[str, Any]], metadata: pd.DataFrame
    ) -> None:
        """Validate that all variables exist in metadata."""
        missing_vars = [
            term["variables"][0]
            for term in terms
            if term["variables"][0] not in metadata.columns
        ]
        if missing_vars:
            raise FormulaError(
                f"Variables not found in metadata: {missing_vars}. "
                f"Available variables: {list(metadata.columns)}"
            )

    def _analyze_variables(
        self,
        terms: List[Dict[str, Any]],
        metadata: pd.DataFrame,
        reference_levels: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Dict[str, Any]]:
        """Analyze variable types and order categorical levels."""
        variable_info = {}
        reference_levels = reference_levels or {}

        for term in terms:
            var = term["variables"][0]
            series = metadata[var]

            if series.isna().any():
                raise FormulaError(f"Variable '{var}' has missing values")

            if pd.api.types.is_numeric_dtype(series):
                variable_info[var] = {
                    "type": "continuous",
                    "levels": None,
                    "n_levels": None,
                    "reference_level": None,
                }
                continue

            levels = sorted(str(level) for level in series.unique())
            ref_level = reference_levels.get(var)
            if ref_level is not None:
                if ref_level not in levels:
                    raise FormulaError(
                        f"Reference level '{ref_level}' not found for variable '{var}'"
                    )
                levels = [ref_level] + [level for level in levels if level != ref_level]

            if len(levels) < 2:
                raise FormulaError(
                    f"Variable '{var}' has a single level ({levels}) and cannot be "
                    "part of the design"
                )

            variable_info[var] = {
                "type": "categorical",
                "levels": levels,
                "n_levels": len(levels),
                "reference_level": levels[0],
            }

        return variable_info

    def _estimate_design_rank(self, variable_info: Dict[str, Dict[str, Any]]) -> int:
        """Estimate rank of design matrix."""
        rank = 1  # Intercept
        for info in variable_info.values():
            if info["type"] == "continuous":
                rank += 1
            else:
                rank += info["n_levels"] - 1
        return rank

    def _validate_design_matrix(
        self, design_matrix: np.ndarray, column_names: List[str]
    ) -> None:
        """Reject designs the GLM cannot be fitted on."""
        if not np.all(np.isfinite(design_matrix)):
            raise DesignMatrixError("Design matrix contains NaN or infinite values")

        n_samples, n_cols = design_matrix.shape
        rank = np.linalg.matrix_rank(design_matrix)
        if rank < n_cols:
            raise DesignMatrixError(
                f"Design matrix is rank deficient: rank {rank} < {n_cols} columns. "
                "The design variables are confounded.",
                details={"rank": int(rank), "columns": column_names},
            )

        if n_samples <= n_cols:
            raise DesignMatrixError(
                f"Design has {n_cols} coefficients but only {n_samples} samples; "
                "no residual degrees of freedom remain for dispersion estimation",
                details={"n_samples": n_samples, "columns": column_names},
            )

    def _construct_contrast(
        self,
        contrast: List[str],
        coef_names: List[str],
        formula_components: Dict[str, Any],
    ) -> Tuple[np.ndarray, str]:
        """
        Construct contrast vector for hypothesis testing.

        Args:
            contrast: [factor, tested_level, reference_level]
            coef_names: List of coefficient names
            formula_components: Parsed formula components

        Returns:
            Tuple of contrast vector and contrast name
        """
        if len(contrast) != 3:
            raise FormulaError("Contrast must be [factor, level1, level2]")

        factor, level1, level2 = contrast

        if factor not in formula_components["variable_info"]:
            raise FormulaError(f"Factor '{factor}' not found in formula")

        var_info = formula_components["variable_info"][factor]
        if var_info["type"] != "categorical":
            raise FormulaError(f"Factor '{factor}' must be categorical for contrasts")

        for level in (level1, level2):
            if level not in var_info["levels"]:
                raise FormulaError(f"Level '{level}' not found in factor '{factor}'")
        if level1 == level2:
            raise FormulaError(f"Contrast levels must differ, got '{level1}' twice")

        contrast_vector = np.zeros(len(coef_names))
        ref_level = var_info["reference_level"]
        if level1 != ref_level:
            contrast_vector[coef_names.index(f"{factor}[T.{level1}]")] = 1.0
        if level2 != ref_level:
            contrast_vector[coef_names.index(f"{factor}[T.{level2}]")] = -1.0

        return contrast_vector, f"{factor}_{level1}_vs_{level2}"
