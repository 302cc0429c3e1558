"""
airwayseq - DESeq2 differential expression analysis of the airway experiment.
"""

from airwayseq.version import __version__

__all__ = ["__version__"]
