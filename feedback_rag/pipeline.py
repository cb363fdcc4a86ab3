"""Ingestion pipeline: Fetch feedback -> Embed -> Store."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .config import config
from .errors import (
    FeedbackRAGError,
    InvalidRequestError,
    VectorStoreUnavailable,
    sanitize_error_message,
)
from .health import VECTOR_STORE
from .models import estimate_tokens
from .retry import RetryPolicy, call_with_retry

if TYPE_CHECKING:
    import numpy as np

    from .collaborators import FeedbackStore
    from .embeddings import EmbeddingService
    from .health import CircuitBreaker
    from .models import EmbeddingRecord, FeedbackItem
    from .vector_store import BaseSQLiteStore

logger = config.get_logger(__name__)

NOT_FOUND = "not_found"


class IngestionPipeline:
    """Keeps the embedding store in step with the feedback store.

    Items are embedded in batches. When a batch call fails, its items are
    retried one by one so a single bad item only fails itself. Store writes
    are retried and reported per item.
    """

    def __init__(  # noqa: PLR0913
        self,
        feedback_store: FeedbackStore,
        embedding_service: EmbeddingService,
        vector_store: BaseSQLiteStore,
        batch_size: int | None = None,
        *,
        breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout: float | None = None,
    ) -> None:
        self.feedback_store = feedback_store
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.batch_size = batch_size or config.EMBEDDING_BATCH_SIZE
        self.breaker = breaker
        self.retry_policy = retry_policy
        self.timeout = (
            timeout if timeout is not None else config.VECTOR_SEARCH_TIMEOUT_SECONDS
        )

    async def ingest_embeddings(
        self, organization_id: str, source_item_ids: list[str]
    ) -> dict[str, Any]:
        """Embed and store the given feedback items.

        Args:
            organization_id: Owner of the feedback items.
            source_item_ids: Feedback ids to (re)index.

        Raises:
            InvalidRequestError: If the organization id is missing.

        Returns:
            ``{"indexed": int, "failed": [{"source_item_id", "error"}]}``.
        """
        if not organization_id:
            msg = "organization_id is required"
            raise InvalidRequestError(msg)
        unique_ids = list(dict.fromkeys(source_item_ids))
        logger.info(
            "Ingesting %d feedback items for %s", len(unique_ids), organization_id
        )

        items = await self.feedback_store.get_feedback_items(organization_id, unique_ids)
        found = {item.id for item in items}
        failed = [
            {"source_item_id": item_id, "error": NOT_FOUND}
            for item_id in unique_ids
            if item_id not in found
        ]

        indexed = 0
        for start in range(0, len(items), self.batch_size):
            batch = items[start : start + self.batch_size]
            batch_indexed, batch_failed = await self._ingest_batch(organization_id, batch)
            indexed += batch_indexed
            failed.extend(batch_failed)

        logger.info(
            "Indexed %d feedback items for %s (%d failed)",
            indexed,
            organization_id,
            len(failed),
        )
        return {"indexed": indexed, "failed": failed}

    async def _ingest_batch(
        self, organization_id: str, items: list[FeedbackItem]
    ) -> tuple[int, list[dict[str, str]]]:
        texts = [item.embedding_text() for item in items]
        try:
            vectors = await self.embedding_service.get_embeddings(texts)
        except FeedbackRAGError as exc:
            logger.warning(
                "Batch embedding failed (%s); retrying %d items individually",
                exc,
                len(items),
            )
            return await self._ingest_individually(organization_id, items)

        indexed = 0
        failed: list[dict[str, str]] = []
        for item, vector in zip(items, vectors, strict=True):
            try:
                await self._store(organization_id, item, vector)
            except FeedbackRAGError as exc:
                failed.append(self._failure(item.id, exc))
            else:
                indexed += 1
        return indexed, failed

    async def _ingest_individually(
        self, organization_id: str, items: list[FeedbackItem]
    ) -> tuple[int, list[dict[str, str]]]:
        indexed = 0
        failed: list[dict[str, str]] = []
        for item in items:
            try:
                vector = await self.embedding_service.get_embedding(item.embedding_text())
                await self._store(organization_id, item, vector)
            except FeedbackRAGError as exc:
                failed.append(self._failure(item.id, exc))
            else:
                indexed += 1
        return indexed, failed

    async def _store(
        self, organization_id: str, item: FeedbackItem, vector: np.ndarray
    ) -> EmbeddingRecord:
        text = item.embedding_text()
        return await self._upsert(
            organization_id,
            item.id,
            text,
            vector,
            estimate_tokens(text),
            item.embedding_metadata(),
        )

    async def _upsert(  # noqa: PLR0913
        self,
        organization_id: str,
        source_item_id: str,
        text: str,
        vector: np.ndarray,
        token_count: int,
        metadata: dict[str, Any],
    ) -> EmbeddingRecord:
        return await call_with_retry(
            lambda: self.vector_store.upsert(
                organization_id,
                source_item_id,
                text,
                vector,
                token_count,
                self.embedding_service.model,
                metadata,
            ),
            dependency=VECTOR_STORE,
            error_cls=VectorStoreUnavailable,
            policy=self.retry_policy,
            timeout=self.timeout,
            breaker=self.breaker,
        )

    @staticmethod
    def _failure(source_item_id: str, error: Exception) -> dict[str, str]:
        message = sanitize_error_message(str(error))
        logger.error("Failed to index feedback item %s: %s", source_item_id, message)
        return {"source_item_id": source_item_id, "error": message}

    async def refresh_embeddings(
        self, organization_id: str, batch_size: int = 50
    ) -> dict[str, int]:
        """Re-embed records produced by a model other than the current one.

        Returns:
            ``{"refreshed": int, "skipped": int, "errors": int}``.
        """
        current_model = self.embedding_service.model
        stale = await self.vector_store.list_records(
            organization_id, exclude_model=current_model
        )
        stats = await self.vector_store.stats(organization_id)
        skipped = stats["total_embeddings"] - len(stale)

        refreshed = 0
        errors = 0
        for start in range(0, len(stale), batch_size):
            batch = stale[start : start + batch_size]
            try:
                vectors = await self.embedding_service.get_embeddings(
                    [record.text for record in batch]
                )
            except FeedbackRAGError:
                logger.exception("Failed to refresh batch starting at %d", start)
                errors += len(batch)
                continue
            for record, vector in zip(batch, vectors, strict=True):
                try:
                    await self._upsert(
                        organization_id,
                        record.source_item_id,
                        record.text,
                        vector,
                        record.token_count,
                        record.metadata,
                    )
                except FeedbackRAGError:
                    logger.exception(
                        "Failed to refresh embedding for %s", record.source_item_id
                    )
                    errors += 1
                else:
                    refreshed += 1

        logger.info(
            "Refreshed %d embeddings for %s (skipped=%d, errors=%d)",
            refreshed,
            organization_id,
            skipped,
            errors,
        )
        return {"refreshed": refreshed, "skipped": skipped, "errors": errors}

    async def remove_embeddings(
        self, organization_id: str, source_item_ids: list[str]
    ) -> int:
        """Drop embeddings for deleted feedback items.

        Returns:
            Number of records removed.
        """
        return await self.vector_store.delete_by_source_items(
            organization_id, source_item_ids
        )
