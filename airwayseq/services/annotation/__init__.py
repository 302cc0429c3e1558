from airwayseq.services.annotation.gene_annotation_service import GeneAnnotationService

__all__ = ["GeneAnnotationService"]
