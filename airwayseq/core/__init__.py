"""
airwayseq core module with exception hierarchy and shared data structures.

This module provides the core exception hierarchy used by every pipeline
service, following a structured approach to error handling.
"""

from airwayseq.core.exceptions import (
    AirwaySeqError,
    AnnotationServiceError,
    DataShapeError,
)


class ValidationError(AirwaySeqError):
    """Exception raised for data validation failures."""

    pass


class FormulaError(AirwaySeqError):
    """Raised when design formula parsing fails."""

    pass


class DesignMatrixError(AirwaySeqError):
    """Raised when the design cannot support the requested contrast."""

    pass


class ProvenanceError(AirwaySeqError):
    """Exception raised for provenance tracking failures."""

    pass


__all__ = [
    "AirwaySeqError",
    "DataShapeError",
    "AnnotationServiceError",
    "ValidationError",
    "FormulaError",
    "DesignMatrixError",
    "ProvenanceError",
]
