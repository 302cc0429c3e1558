# Analysis services
from airwayseq.services.analysis.differential_expression_service import (
    DeseqFit,
    DifferentialExpressionError,
    DifferentialExpressionService,
)
from airwayseq.services.analysis.differential_formula_service import (
    DifferentialFormulaService,
)
from airwayseq.services.analysis.result_summary_service import ResultSummaryService
from airwayseq.services.analysis.sample_structure_service import (
    SampleStructureError,
    SampleStructureService,
)
from airwayseq.services.analysis.transform_service import TransformError, TransformService

__all__ = [
    "DeseqFit",
    "DifferentialExpressionError",
    "DifferentialExpressionService",
    "DifferentialFormulaService",
    "ResultSummaryService",
    "SampleStructureError",
    "SampleStructureService",
    "TransformError",
    "TransformService",
]
