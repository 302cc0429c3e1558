"""
Unit tests for AnalysisStep provenance records.
"""

import json

import numpy as np
import pytest

from airwayseq.core import ProvenanceError
from airwayseq.core.analysis_ir import AnalysisStep, library_version


def _step(**overrides):
    fields = dict(
        operation="pandas.DataFrame.sum",
        tool_name="CountFilterService.filter_low_counts",
        description="Remove genes with total count <= 1",
        library="pandas",
        parameters={"min_total_count": 1},
        input_entities=["counts"],
        output_entities=["filtered_counts"],
    )
    fields.update(overrides)
    return AnalysisStep(**fields)


@pytest.mark.unit
class TestAnalysisStep:
    def test_execution_context_filled(self):
        step = _step()

        assert "timestamp" in step.execution_context
        assert step.execution_context["pandas_version"] != "unknown"

    def test_to_dict_is_json_serializable(self):
        data = _step().to_dict()

        assert json.loads(json.dumps(data))["parameters"] == {"min_total_count": 1}

    def test_round_trip_keeps_context(self):
        original = _step()
        restored = AnalysisStep.from_dict(original.to_dict())

        assert restored.operation == original.operation
        assert restored.execution_context == original.execution_context

    def test_non_serializable_parameters_raise(self):
        step = _step(parameters={"matrix": np.zeros(3)})

        with pytest.raises(ProvenanceError, match="not JSON-serializable"):
            step.to_dict()

    def test_from_dict_missing_fields(self):
        with pytest.raises(ProvenanceError, match="Missing required fields"):
            AnalysisStep.from_dict({"operation": "x"})

    def test_repr(self):
        assert "CountFilterService.filter_low_counts" in repr(_step())


@pytest.mark.unit
def test_library_version_unknown_package():
    assert library_version("surely-not-an-installed-distribution") == "unknown"
