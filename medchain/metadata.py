"""
Resolution of off-chain metadata documents referenced by on-chain records.

Documents at a content address never change, so successful lookups are cached
for the lifetime of the resolver. A failed lookup never raises: the caller
gets a placeholder marked ``degraded`` and the failure is logged.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from medchain.content_store import ContentStore, extract_cid
from medchain.errors import DegradedMetadata
from medchain.models import Enriched, Metadata

logger = logging.getLogger(__name__)

UNAVAILABLE = "details unavailable"


class MetadataResolver:
    def __init__(self, store: Optional[ContentStore] = None):
        self.store = store or ContentStore()
        self._cache: Dict[str, Metadata] = {}
        self._inflight: Dict[str, "asyncio.Future[Metadata]"] = {}
        self.degraded: List[DegradedMetadata] = []

    def cached(self, ref: str) -> Optional[Metadata]:
        return self._cache.get(extract_cid(ref))

    def image_url(self, ref: str) -> str:
        return self.store.url(ref)

    async def resolve(self, ref: str, kind: str = "Entity", entity_id: Any = None) -> Metadata:
        """
        Resolve a content reference to its metadata document.

        Concurrent calls for the same address share one fetch.

        Args:
            ref: Bare CID, ipfs:// locator or gateway URL
            kind: Entity kind used in the placeholder name ("Medicine", "Doctor", ...)
            entity_id: On-chain id used in the placeholder name

        Returns:
            Metadata: The parsed document, or a degraded placeholder
        """
        cid = extract_cid(ref)
        if cid in self._cache:
            return self._cache[cid]
        if not cid:
            return self._placeholder(kind, entity_id, ref, "empty content reference")

        future = self._inflight.get(cid)
        if future is None:
            future = asyncio.ensure_future(self._fetch(cid))
            self._inflight[cid] = future
            future.add_done_callback(lambda _f, key=cid: self._inflight.pop(key, None))

        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return self._placeholder(kind, entity_id, ref, f"{type(e).__name__}: {e}")

    async def enrich(self, records: Sequence[Any], kind: str) -> List[Enriched]:
        """Pair each record with its metadata; lookups run concurrently."""
        documents = await asyncio.gather(
            *(self.resolve(record.metadata_ref, kind, record.id) for record in records)
        )
        return [Enriched(record=record, metadata=document) for record, document in zip(records, documents)]

    async def _fetch(self, cid: str) -> Metadata:
        document = await asyncio.to_thread(self.store.fetch, cid)
        metadata = Metadata.model_validate({k: v for k, v in document.items() if k != "degraded"})
        self._cache[cid] = metadata
        return metadata

    def _placeholder(self, kind: str, entity_id: Any, ref: str, reason: str) -> Metadata:
        event = DegradedMetadata(detail=f"{ref}: {reason}")
        self.degraded.append(event)
        logger.warning(f"DegradedMetadata for {kind} #{entity_id} ({ref}): {reason}")
        return Metadata(
            name=f"{kind} #{entity_id if entity_id is not None else '?'}",
            description=UNAVAILABLE,
            degraded=True,
        )
