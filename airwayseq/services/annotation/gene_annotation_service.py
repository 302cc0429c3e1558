"""
Gene identifier to symbol mapping through mygene.info.

Identifiers the service does not know are mapped to themselves. A service
that cannot be reached, answers with an error, or returns an unreadable
payload raises AnnotationServiceError instead, so a failed lookup is never
mistaken for "no symbols found".
"""

import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

import mygene
import pandas as pd

from airwayseq.core import AnnotationServiceError
from airwayseq.core.analysis_ir import AnalysisStep
from airwayseq.utils.logger import get_logger

logger = get_logger(__name__)

_ENSEMBL_VERSION = re.compile(r"^(ENS[A-Z]*G\d+)\.\d+$")


def strip_version(gene_id: str) -> str:
    """'ENSG00000000003.14' -> 'ENSG00000000003'; other ids unchanged."""
    match = _ENSEMBL_VERSION.match(str(gene_id))
    return match.group(1) if match else str(gene_id)


class GeneAnnotationService:
    """
    Maps Ensembl gene ids to display symbols with one batched query.

    Symbols are cached on the instance, so repeated calls during a run only
    query ids that were not looked up before. Failed requests are not retried.
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        species: str = "human",
        scope: str = "ensembl.gene",
    ):
        """
        Args:
            client: Object with a mygene-compatible ``querymany``; a
                ``mygene.MyGeneInfo`` is created on first use when omitted
            species: Species the query is restricted to
            scope: mygene field the identifiers are matched against
        """
        self._client = client
        self.species = species
        self.scope = scope
        self._cache: Dict[str, Optional[str]] = {}

    @property
    def client(self):
        if self._client is None:
            self._client = mygene.MyGeneInfo()
        return self._client

    def map_identifiers(
        self, ids: Iterable[str]
    ) -> Tuple[pd.Series, Dict[str, Any], AnalysisStep]:
        """
        Map gene identifiers to symbols, falling back to the identifier.

        Args:
            ids: Gene identifiers (Ensembl version suffixes are allowed)

        Returns:
            Tuple[pd.Series, Dict[str, Any], AnalysisStep]:
                - Series indexed by the input ids with a label for every id
                - Stats including ``resolved_ids``, the ids that had a symbol
                - Provenance step

        Raises:
            AnnotationServiceError: If the annotation service fails
        """
        ids = [str(i) for i in ids]
        lookup_keys = {gene_id: strip_version(gene_id) for gene_id in ids}
        pending = sorted({key for key in lookup_keys.values() if key not in self._cache})

        if pending:
            self._cache.update(self._query(pending))
        n_cached = len(set(lookup_keys.values())) - len(pending)

        symbols = {}
        resolved: List[str] = []
        for gene_id in ids:
            symbol = self._cache.get(lookup_keys[gene_id])
            if symbol:
                symbols[gene_id] = symbol
                resolved.append(gene_id)
            else:
                symbols[gene_id] = gene_id

        symbol_map = pd.Series(symbols, dtype=object, name="symbol")
        symbol_map = symbol_map.reindex(pd.Index(ids, dtype=object).unique())

        logger.info(
            f"Mapped {len(resolved)}/{len(symbol_map)} identifiers to symbols "
            f"({n_cached} from cache)"
        )

        stats = {
            "n_requested": len(symbol_map),
            "n_resolved": len(set(resolved)),
            "n_unresolved": len(symbol_map) - len(set(resolved)),
            "n_queried": len(pending),
            "n_cached": n_cached,
            "resolved_ids": sorted(set(resolved)),
        }
        step = AnalysisStep(
            operation="mygene.MyGeneInfo.querymany",
            tool_name="GeneAnnotationService.map_identifiers",
            description="Map Ensembl gene ids to symbols",
            library="mygene",
            parameters={"scopes": self.scope, "fields": "symbol", "species": self.species},
            input_entities=["gene_ids"],
            output_entities=["symbol_map"],
        )
        return symbol_map, stats, step

    @staticmethod
    def annotate(results: pd.DataFrame, symbol_map: pd.Series) -> pd.DataFrame:
        """Copy of ``results`` with a ``symbol`` column (id when unmapped)."""
        annotated = results.copy()
        index = annotated.index.to_series()
        annotated.insert(0, "symbol", index.map(symbol_map).fillna(index).to_numpy())
        return annotated

    def _query(self, keys: List[str]) -> Dict[str, Optional[str]]:
        """One batched lookup; first hit wins when an id matches several genes."""
        logger.debug(f"Querying {len(keys)} identifiers (scope={self.scope})")
        try:
            hits = self.client.querymany(
                keys,
                scopes=self.scope,
                fields="symbol",
                species=self.species,
                verbose=False,
            )
        except Exception as e:
            logger.error(f"Gene annotation request failed: {e}")
            raise AnnotationServiceError(
                f"Gene annotation service request failed: {e}",
                details={
                    "n_identifiers": len(keys),
                    "species": self.species,
                    "cause": type(e).__name__,
                },
            ) from e

        if not isinstance(hits, list):
            raise AnnotationServiceError(
                f"Unexpected annotation payload of type {type(hits).__name__}",
                details={"n_identifiers": len(keys), "species": self.species},
            )

        mapping: Dict[str, Optional[str]] = {key: None for key in keys}
        for hit in hits:
            if not isinstance(hit, dict) or "query" not in hit:
                raise AnnotationServiceError(
                    f"Malformed annotation record: {hit!r}",
                    details={"n_identifiers": len(keys), "species": self.species},
                )
            query = str(hit["query"])
            if hit.get("notfound") or query not in mapping:
                continue
            symbol = hit.get("symbol")
            if mapping[query] is None and isinstance(symbol, str) and symbol:
                mapping[query] = symbol
        return mapping
