from airwayseq.services.visualization.bulk_visualization_service import (
    BulkVisualizationError,
    BulkVisualizationService,
)

__all__ = ["BulkVisualizationError", "BulkVisualizationService"]
