"""
Provenance records for pipeline operations.

Every service emits an AnalysisStep next to its result. The steps of one
run are collected by the pipeline and written to ``provenance.json`` so the
exact parameters and library versions behind a result table can be audited.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Dict, List

from airwayseq.core import ProvenanceError
from airwayseq.utils.logger import get_logger

logger = get_logger(__name__)


def library_version(name: str) -> str:
    """Return the installed version of a library, or 'unknown'."""
    try:
        return version(name)
    except PackageNotFoundError:
        return "unknown"


@dataclass
class AnalysisStep:
    """
    Provenance record for one pipeline operation.

    Attributes:
        operation: Fully-qualified operation name (e.g., "pydeseq2.dds.DeseqDataSet.deseq2")
        tool_name: Service method that performed the operation
        description: Human-readable description
        library: Main library the computation was delegated to
        parameters: Actual parameter values used in this execution
        input_entities: Names of the inputs consumed
        output_entities: Names of the outputs produced
        execution_context: Library versions, timestamps, etc.

    Example:
        >>> step = AnalysisStep(
        ...     operation="pandas.DataFrame.sum",
        ...     tool_name="filter_low_counts",
        ...     description="Remove genes with total count <= 1",
        ...     library="pandas",
        ...     parameters={"min_total_count": 1},
        ...     input_entities=["counts"],
        ...     output_entities=["filtered_counts"],
        ... )
    """

    # Identity
    operation: str
    tool_name: str
    description: str
    library: str

    # Parameters
    parameters: Dict[str, Any]

    # Data flow
    input_entities: List[str] = field(default_factory=list)
    output_entities: List[str] = field(default_factory=list)

    # Metadata
    execution_context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.execution_context.setdefault("timestamp", datetime.now().isoformat())
        self.execution_context.setdefault(
            f"{self.library}_version", library_version(self.library)
        )

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize to JSON-compatible dictionary.

        Raises:
            ProvenanceError: If a parameter value is not JSON-serializable
        """
        data = asdict(self)
        try:
            json.dumps(data)
        except TypeError as e:
            raise ProvenanceError(
                f"Parameters of '{self.operation}' are not JSON-serializable: {e}",
                details={"operation": self.operation},
            ) from e
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisStep":
        """
        Deserialize from dictionary.

        Raises:
            ProvenanceError: If required fields are missing
        """
        required_fields = [
            "operation",
            "tool_name",
            "description",
            "library",
            "parameters",
        ]
        missing_fields = [name for name in required_fields if name not in data]
        if missing_fields:
            raise ProvenanceError(f"Missing required fields: {missing_fields}")

        return cls(**data)

    def __repr__(self) -> str:
        return f"AnalysisStep(operation={self.operation!r}, tool={self.tool_name!r})"
