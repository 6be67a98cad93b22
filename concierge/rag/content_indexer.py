"""Keep the embedding index in step with business content"""

from typing import Dict, Any, List
import structlog

from ..errors import ConciergeError, NotFoundError
from .content_processor import ContentProcessor
from .embedding_provider import EmbeddingProvider
from .models import ContentItem, ContentType, IndexResult, EmbeddingRecord
from .vector_store import EmbeddingIndex

logger = structlog.get_logger(__name__)


class ContentIndexer:
    """Vectorize content, embed it and store the result"""

    def __init__(
        self,
        processor: ContentProcessor,
        provider: EmbeddingProvider,
        index: EmbeddingIndex,
    ):
        self.processor = processor
        self.provider = provider
        self.index = index

    async def index_item(self, item: ContentItem) -> EmbeddingRecord:
        """Create or replace the embedding for one content item"""
        processed = self.processor.process(item.content_type, item.raw_fields)
        vector = await self.provider.embed(processed.text)

        record = await self.index.upsert(
            business_id=item.business_id,
            content_type=item.content_type,
            content_id=item.content_id,
            vector=vector,
            metadata=processed.metadata,
            normalized_text=processed.text,
        )

        logger.info("Content indexed",
                    business_id=item.business_id,
                    content_type=item.content_type.value,
                    content_id=item.content_id,
                    tokens=processed.token_estimate)
        return record

    async def index_batch(self, items: List[ContentItem]) -> List[IndexResult]:
        """Index several items, reporting each outcome instead of stopping at the first failure"""
        results = []

        for item in items:
            try:
                record = await self.index_item(item)
                results.append(IndexResult(
                    content_id=item.content_id,
                    content_type=item.content_type,
                    success=True,
                    embedding_id=record.id,
                    token_estimate=record.metadata.get("token_estimate", 0),
                ))
            except ConciergeError as e:
                logger.warning("Content indexing failed",
                               business_id=item.business_id,
                               content_id=item.content_id,
                               error=e.message)
                results.append(IndexResult(
                    content_id=item.content_id,
                    content_type=item.content_type,
                    success=False,
                    error=e.message,
                ))

        return results

    async def remove_item(self, business_id: str, content_type: ContentType, content_id: str):
        """Soft-delete the embedding of removed content"""
        removed = await self.index.delete(business_id, content_type, content_id)
        if not removed:
            raise NotFoundError(f"No embedding for {ContentType(content_type).value} {content_id}")

    async def reindex_business(self, business_id: str, items: List[ContentItem]) -> Dict[str, Any]:
        """Re-vectorize the full content set of a business.

        Live embeddings whose content is no longer in ``items`` are
        soft-deleted.
        """
        wanted = {(item.content_type, item.content_id) for item in items}
        stale = [
            (content_type, content_id)
            for content_type in ContentType
            for content_id in self.index.live_content_ids(business_id, content_type)
            if (content_type, content_id) not in wanted
        ]

        for content_type, content_id in stale:
            await self.index.delete(business_id, content_type, content_id)

        results = await self.index_batch([item for item in items if item.business_id == business_id])

        summary = {
            "business_id": business_id,
            "indexed": sum(1 for r in results if r.success),
            "failed": sum(1 for r in results if not r.success),
            "removed": len(stale),
            "results": results,
        }
        logger.info("Business reindexed",
                    business_id=business_id,
                    indexed=summary["indexed"],
                    failed=summary["failed"],
                    removed=summary["removed"])
        return summary

    def get_stats(self, business_id: str) -> Dict[str, Any]:
        return self.index.stats(business_id)

