"""In-memory embedding index with cosine similarity search"""

import asyncio
import uuid
from typing import Dict, Any, List, Optional, Sequence, Tuple
from datetime import datetime, timezone
import structlog
import numpy as np

from ..clock import Clock, system_clock
from ..config import Settings, settings as default_settings
from ..errors import InvalidDimension, InvalidInput
from .models import ContentType, EmbeddingRecord, SearchMatch

logger = structlog.get_logger(__name__)

ContentKey = Tuple[str, ContentType, str]


class EmbeddingIndex:
    """Vector store for business content embeddings.

    Holds at most one live row per (business, content type, content id).
    Deleted rows are kept with ``deleted_at`` set and never returned by
    search. Writes are serialized; reads see either the old or the new row,
    never a partially written one.
    """

    def __init__(self, settings: Optional[Settings] = None, clock: Optional[Clock] = None):
        self.settings = settings or default_settings
        self.dimension = self.settings.embedding_dimension
        self.clock = clock or system_clock
        self._rows: Dict[str, Dict[str, EmbeddingRecord]] = {}
        self._live: Dict[ContentKey, str] = {}
        self._write_lock = asyncio.Lock()

    async def upsert(
        self,
        business_id: str,
        content_type: ContentType,
        content_id: str,
        vector: Sequence[float],
        metadata: Optional[Dict[str, Any]] = None,
        normalized_text: str = "",
    ) -> EmbeddingRecord:
        """Insert or replace the live embedding for a piece of content"""
        array = self._as_vector(vector)
        content_type = ContentType(content_type)
        key = (business_id, content_type, content_id)

        async with self._write_lock:
            now = self._now()
            partition = self._rows.setdefault(business_id, {})
            existing_id = self._live.get(key)
            existing = partition.get(existing_id) if existing_id else None

            record = EmbeddingRecord(
                id=existing.id if existing else str(uuid.uuid4()),
                business_id=business_id,
                content_type=content_type,
                content_id=content_id,
                normalized_text=normalized_text,
                vector=array,
                metadata=dict(metadata or {}),
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )

            partition[record.id] = record
            self._live[key] = record.id

        logger.debug("Embedding upserted",
                     business_id=business_id,
                     content_type=content_type.value,
                     content_id=content_id,
                     replaced=existing is not None)
        return record

    async def delete(self, business_id: str, content_type: ContentType, content_id: str) -> bool:
        """Soft-delete the live embedding for a piece of content"""
        key = (business_id, ContentType(content_type), content_id)

        async with self._write_lock:
            embedding_id = self._live.pop(key, None)
            if embedding_id is None:
                return False

            partition = self._rows[business_id]
            partition[embedding_id] = partition[embedding_id].model_copy(
                update={"deleted_at": self._now()}
            )

        logger.info("Embedding deleted",
                    business_id=business_id,
                    content_type=key[1].value,
                    content_id=content_id)
        return True

    async def search(
        self,
        business_id: str,
        query_vector: Sequence[float],
        content_type: Optional[ContentType] = None,
        limit: int = 10,
        min_score: float = 0.7,
    ) -> List[SearchMatch]:
        """Rank live embeddings of a business by cosine similarity.

        Results are sorted by descending similarity, ties broken by the
        most recently updated row, and never include a score below
        ``min_score``.
        """
        query = self._as_vector(query_vector)
        limit = max(0, min(limit, self.settings.max_search_results))
        if limit == 0:
            return []

        candidates = self._live_rows(business_id, content_type)
        if not candidates:
            return []

        matrix = np.vstack([row.vector for row in candidates])
        similarities = self._cosine_similarities(matrix, query)

        scored = [
            (float(score), row)
            for score, row in zip(similarities, candidates)
            if score >= min_score
        ]
        scored.sort(key=lambda item: (item[0], item[1].updated_at), reverse=True)

        return [
            SearchMatch(
                embedding_id=row.id,
                business_id=row.business_id,
                content_type=row.content_type,
                content_id=row.content_id,
                content=row.normalized_text,
                metadata=row.metadata,
                similarity=score,
                updated_at=row.updated_at,
            )
            for score, row in scored[:limit]
        ]

    def get(self, business_id: str, content_type: ContentType, content_id: str) -> Optional[EmbeddingRecord]:
        """Return the live embedding for a piece of content, if any"""
        embedding_id = self._live.get((business_id, ContentType(content_type), content_id))
        if embedding_id is None:
            return None
        return self._rows[business_id][embedding_id]

    def live_content_ids(self, business_id: str, content_type: Optional[ContentType] = None) -> List[str]:
        return [row.content_id for row in self._live_rows(business_id, content_type)]

    def count(self, business_id: str, content_type: Optional[ContentType] = None) -> int:
        return len(self._live_rows(business_id, content_type))

    def stats(self, business_id: str) -> Dict[str, Any]:
        """Live and deleted embedding counts by content type"""
        partition = self._rows.get(business_id, {})
        by_type = {content_type.value: 0 for content_type in ContentType}
        deleted = 0

        for row in partition.values():
            if row.is_live:
                by_type[row.content_type.value] += 1
            else:
                deleted += 1

        return {
            "business_id": business_id,
            "total": sum(by_type.values()),
            "by_type": by_type,
            "deleted": deleted,
            "dimension": self.dimension,
        }

    async def purge_deleted(self, older_than: Optional[datetime] = None) -> int:
        """Physically drop soft-deleted rows"""
        removed = 0

        async with self._write_lock:
            for business_id, partition in self._rows.items():
                doomed = [
                    embedding_id for embedding_id, row in partition.items()
                    if row.deleted_at is not None and (older_than is None or row.deleted_at < older_than)
                ]
                for embedding_id in doomed:
                    del partition[embedding_id]
                removed += len(doomed)

        if removed:
            logger.info("Purged deleted embeddings", count=removed)
        return removed

    async def health_check(self) -> Dict[str, Any]:
        """Check index health"""
        return {
            "status": "healthy",
            "businesses": len(self._rows),
            "live_embeddings": len(self._live),
            "dimension": self.dimension,
        }

    def _live_rows(self, business_id: str, content_type: Optional[ContentType]) -> List[EmbeddingRecord]:
        partition = self._rows.get(business_id)
        if not partition:
            return []

        rows = [row for row in list(partition.values()) if row.is_live]
        if content_type is not None:
            content_type = ContentType(content_type)
            rows = [row for row in rows if row.content_type == content_type]
        return rows

    def _as_vector(self, vector: Sequence[float]) -> np.ndarray:
        try:
            array = np.asarray(vector, dtype=np.float32)
        except (TypeError, ValueError):
            raise InvalidInput(["Vector must be a sequence of numbers"])

        if array.ndim != 1 or array.shape[0] != self.dimension:
            actual = int(array.shape[0]) if array.ndim == 1 else int(array.size)
            raise InvalidDimension(self.dimension, actual)
        if not np.all(np.isfinite(array)):
            raise InvalidInput(["Vector contains non-finite values"])

        return array

    @staticmethod
    def _cosine_similarities(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
        query_norm = np.linalg.norm(query)
        row_norms = np.linalg.norm(matrix, axis=1)
        denominator = row_norms * query_norm

        dots = matrix @ query
        with np.errstate(divide="ignore", invalid="ignore"):
            similarities = np.where(denominator > 0, dots / denominator, 0.0)
        return np.clip(similarities, -1.0, 1.0)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock.now(), tz=timezone.utc)
