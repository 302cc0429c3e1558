from airwayseq.services.orchestration.pipeline import AirwayPipeline, PipelineResult

__all__ = ["AirwayPipeline", "PipelineResult"]
