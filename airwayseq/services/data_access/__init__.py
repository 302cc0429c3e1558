# Data access services
from airwayseq.services.data_access.dataset_loader import DatasetLoaderService

__all__ = ["DatasetLoaderService"]
