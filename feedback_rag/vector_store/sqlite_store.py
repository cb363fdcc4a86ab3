"""SQLite-based embedding storage with brute-force numpy search."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from feedback_rag.config import config
from feedback_rag.vector_store.base import BaseSQLiteStore

if TYPE_CHECKING:
    from pathlib import Path

    from feedback_rag.models import RetrievedPassage, SearchFilter

logger = config.get_logger(__name__)


class SQLiteVectorStore(BaseSQLiteStore):
    """Exact nearest-neighbor search over vectors kept in the SQLite table.

    Filters are applied in SQL; only matching rows are scored.
    """

    backend = "sqlite"

    def __init__(
        self,
        db_path: Path | None = None,
        dimension: int | None = None,
        distance_strategy: str | None = None,
    ) -> None:
        """Initialize the SQLiteVectorStore.

        Args:
            db_path: Path to the SQLite database file.
            dimension: Vector dimensionality fixed for this store.
            distance_strategy: One of cosine, euclidean or inner_product.
        """
        super().__init__(
            db_path if db_path is not None else config.VECTOR_STORE_DB_PATH,
            dimension=dimension,
            distance_strategy=distance_strategy,
        )

    def raw_scores(self, query: np.ndarray, embeddings: np.ndarray) -> np.ndarray:
        """Score every row against the query with the configured strategy.

        Returns:
            np.ndarray: Cosine similarity, L2 distance or dot product per row.
        """
        if self.distance_strategy == "euclidean":
            return np.linalg.norm(embeddings - query, axis=1)
        if self.distance_strategy == "inner_product":
            return embeddings @ query

        query_norm = np.linalg.norm(query)
        doc_norms = np.linalg.norm(embeddings, axis=1)
        denominator = doc_norms * query_norm
        with np.errstate(divide="ignore", invalid="ignore"):
            cosine = np.where(denominator > 0, (embeddings @ query) / denominator, 0.0)
        return cosine

    def _search_sync(
        self,
        organization_id: str,
        query: np.ndarray,
        k: int,
        search_filter: SearchFilter | None,
        *,
        include_embeddings: bool,
    ) -> list[RetrievedPassage]:
        records = self._fetch_records(organization_id, search_filter)
        if not records:
            return []

        embeddings = np.vstack([record.vector for record in records]).astype(np.float64)
        scores = self.similarity_from_raw(
            self.raw_scores(query.astype(np.float64), embeddings)
        )
        results = self._rank(
            records, scores, k, search_filter, include_embeddings=include_embeddings
        )
        logger.debug(
            "Scored %d candidates for %s, returning %d",
            len(records),
            organization_id,
            len(results),
        )
        return results
