"""
Core exceptions for the airwayseq analysis pipeline.

This module provides the exception hierarchy for handling errors
throughout data loading, model fitting, annotation and plotting.
"""

from typing import Any, Dict, Optional


class AirwaySeqError(Exception):
    """Base exception for all airwayseq errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        return self.message


class DataShapeError(AirwaySeqError):
    """
    Raised when sample metadata does not line up with the count matrix.

    The metadata index must equal the count-matrix columns exactly and in
    the same order. This is fatal: no model is fitted on misaligned data.

    Attributes:
        message: Human-readable error message
        details: Contains:
            - count_samples: Column labels of the count matrix
            - metadata_samples: Index labels of the metadata
            - missing_from_metadata: Samples without a metadata row
            - missing_from_counts: Metadata rows without a count column

    Example:
        try:
            dataset.validate()
        except DataShapeError as e:
            print(e.details["missing_from_metadata"])
    """

    pass


class AnnotationServiceError(AirwaySeqError):
    """
    Raised when the gene annotation service cannot be queried.

    Distinct from "no symbol found": an identifier that the service does not
    know is mapped to itself, while an unreachable or failing service raises
    this error so the caller never receives a silently empty mapping.

    Attributes:
        message: Human-readable error message
        details: Contains:
            - n_identifiers: Number of identifiers in the failed request
            - species: Species the query was scoped to
            - cause: Type name of the underlying exception
    """

    pass
