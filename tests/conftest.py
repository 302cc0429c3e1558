"""
Pytest configuration and fixtures for the airwayseq test suite.

Provides markers, a temporary workspace and simulated airway datasets shared
by unit and integration tests.
"""

import logging
import os
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pandas as pd
import pytest

from airwayseq.core.dataset import CountDataset
from airwayseq.services.data_access.dataset_loader import DatasetLoaderService
from airwayseq.services.quality.count_filter_service import CountFilterService

# Quieter numerical libraries during tests
logging.getLogger("anndata").setLevel(logging.ERROR)
logging.getLogger("numba").setLevel(logging.ERROR)


# ==============================================================================
# Pytest Configuration Hooks
# ==============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ==============================================================================
# Workspace
# ==============================================================================


@pytest.fixture
def temp_workspace(tmp_path) -> Path:
    """Empty output directory for exports."""
    workspace = tmp_path / "airwayseq_test_workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture(autouse=True)
def clean_airwayseq_env(monkeypatch):
    """Keep AIRWAYSEQ_* variables of the developer's shell out of tests."""
    for key in list(os.environ):
        if key.startswith("AIRWAYSEQ_"):
            monkeypatch.delenv(key, raising=False)


# ==============================================================================
# Data fixtures
# ==============================================================================


@pytest.fixture
def airway_metadata() -> pd.DataFrame:
    """The 8-sample airway design."""
    return DatasetLoaderService.airway_sample_table()


@pytest.fixture
def small_dataset(airway_metadata) -> CountDataset:
    """Six genes with hand-picked row sums around the filter threshold."""
    samples = list(airway_metadata.index)
    rows = {
        "ENSG00000000001": [0, 0, 0, 0, 0, 0, 0, 0],  # sum 0
        "ENSG00000000002": [1, 0, 0, 0, 0, 0, 0, 0],  # sum 1
        "ENSG00000000003": [1, 1, 0, 0, 0, 0, 0, 0],  # sum 2
        "ENSG00000000004": [10, 12, 9, 11, 8, 14, 10, 13],
        "ENSG00000000005": [0, 0, 0, 0, 0, 0, 0, 5],
        "ENSG00000000006": [100, 400, 120, 390, 90, 410, 110, 380],
    }
    counts = pd.DataFrame.from_dict(rows, orient="index", columns=samples)
    return CountDataset(counts=counts, metadata=airway_metadata)


@pytest.fixture(scope="session")
def simulated():
    """Simulated airway dataset and its ground truth (dataset, stats)."""
    dataset, stats, _ = DatasetLoaderService().simulate(
        n_genes=400, seed=7, n_responsive=60, n_near_zero=40
    )
    return dataset, stats


@pytest.fixture(scope="session")
def simulated_filtered(simulated) -> CountDataset:
    dataset, _ = simulated
    filtered, _, _ = CountFilterService().filter_low_counts(dataset, min_total_count=1)
    return filtered


@pytest.fixture
def vst_like_matrix(airway_metadata) -> pd.DataFrame:
    """Deterministic log-scale matrix (genes x samples) with a treatment signal."""
    rng = np.random.default_rng(3)
    samples = list(airway_metadata.index)
    treated = (airway_metadata["dex"] == "trt").to_numpy()
    values = rng.normal(8.0, 1.0, size=(50, len(samples)))
    values[:10, treated] += 6.0
    index = [f"ENSG{i:011d}" for i in range(1, 51)]
    return pd.DataFrame(values, index=index, columns=samples)


@pytest.fixture
def results_table() -> pd.DataFrame:
    """Small result table with ties, NaN padj and NaN pvalue rows."""
    return pd.DataFrame(
        {
            "baseMean": [100.0, 50.0, 20.0, 500.0, 5.0, 0.0, 80.0, 30.0],
            "log2FoldChange": [2.0, -3.0, 2.0, 0.1, 4.0, np.nan, -2.0, 1.0],
            "lfcSE": [0.2, 0.3, 0.4, 0.1, 1.5, np.nan, 0.25, 0.3],
            "stat": [10.0, -10.0, 5.0, 1.0, 2.6, np.nan, -8.0, 3.3],
            "pvalue": [1e-20, 1e-20, 1e-6, 0.3, 0.01, np.nan, 1e-15, np.nan],
            "padj": [1e-18, 1e-18, 1e-5, 0.4, np.nan, np.nan, 1e-13, np.nan],
        },
        index=[f"ENSG{i:011d}" for i in range(1, 9)],
    )


@pytest.fixture
def mock_mygene_client():
    """querymany stub: odd-numbered ids resolve to SYM<n>, others are not found."""

    def querymany(ids, **kwargs):
        hits = []
        for gene_id in ids:
            number = int(gene_id[4:])
            if number % 2:
                hits.append({"query": gene_id, "_id": str(number), "symbol": f"SYM{number}"})
            else:
                hits.append({"query": gene_id, "notfound": True})
        return hits

    client = MagicMock()
    client.querymany.side_effect = querymany
    return client
