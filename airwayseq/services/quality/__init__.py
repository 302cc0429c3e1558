from airwayseq.services.quality.count_filter_service import CountFilterService

__all__ = ["CountFilterService"]
