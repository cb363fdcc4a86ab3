"""FAISS-backed vector search with SQLite as the system of record."""

from __future__ import annotations

import hashlib
import sqlite3
import threading
from pathlib import Path
from typing import TYPE_CHECKING

import faiss
import numpy as np

from feedback_rag.config import config
from feedback_rag.vector_store.base import BaseSQLiteStore

if TYPE_CHECKING:
    from feedback_rag.models import EmbeddingRecord, RetrievedPassage, SearchFilter

logger = config.get_logger(__name__)


class FaissVectorStore(BaseSQLiteStore):
    """Vector search using one FAISS index per organization.

    Row ids of the SQLite table double as FAISS ids, so replacing a record
    means removing its id from the index and adding the new vector under the
    same id. Each index is written to disk after every change; an index file
    that is missing or out of step with the table is rebuilt from the stored
    vectors.
    """

    backend = "faiss"

    def __init__(
        self,
        db_path: Path | None = None,
        index_dir: Path | None = None,
        dimension: int | None = None,
        distance_strategy: str | None = None,
        raw_top_k_multiplier: int | None = None,
    ) -> None:
        """Configure FAISS-backed vector store."""
        self.index_dir = Path(index_dir if index_dir is not None else config.FAISS_INDEX_DIR)
        self.index_dir.mkdir(exist_ok=True, parents=True)
        self.raw_top_k_multiplier = max(
            1,
            raw_top_k_multiplier
            if raw_top_k_multiplier is not None
            else config.VECTOR_RAW_TOP_K_MULTIPLIER,
        )
        self._indexes: dict[str, faiss.IndexIDMap2] = {}
        self._index_lock = threading.RLock()

        super().__init__(
            db_path if db_path is not None else config.VECTOR_STORE_DB_PATH,
            dimension=dimension,
            distance_strategy=distance_strategy,
        )

    def _index_path(self, organization_id: str) -> Path:
        digest = hashlib.sha256(organization_id.encode("utf-8")).hexdigest()[:24]
        return self.index_dir / f"org_{digest}.faiss"

    def _prepare_vectors(self, vectors: np.ndarray) -> np.ndarray:
        """Normalize vectors for cosine similarity using inner product search.

        Returns:
            Contiguous float32 matrix ready for the index.
        """
        matrix = np.ascontiguousarray(np.atleast_2d(vectors), dtype="float32")
        if self.distance_strategy == "cosine":
            norms = np.linalg.norm(matrix, axis=1)
            nonzero = norms > 0
            if np.any(nonzero):
                subset = np.ascontiguousarray(matrix[nonzero])
                faiss.normalize_L2(subset)
                matrix[nonzero] = subset
        return matrix

    def _init_index(self) -> faiss.IndexIDMap2:
        if self.distance_strategy == "euclidean":
            base_index = faiss.IndexFlatL2(self.dimension)
        else:
            base_index = faiss.IndexFlatIP(self.dimension)
        logger.info(
            "Initialized FAISS IndexIDMap2 (%s) with dimension %d",
            self.distance_strategy,
            self.dimension,
        )
        return faiss.IndexIDMap2(base_index)

    def _count_rows(self, conn: sqlite3.Connection, organization_id: str) -> int:
        cursor = conn.execute(
            "SELECT COUNT(*) FROM feedback_embeddings WHERE organization_id = ?",
            (organization_id,),
        )
        return int(cursor.fetchone()[0])

    def _rebuild_index(self, organization_id: str) -> faiss.IndexIDMap2:
        """Rebuild an organization's index from the vectors stored in SQLite.

        Returns:
            Freshly populated index.
        """
        index = self._init_index()
        records = self._fetch_records(organization_id)
        if records:
            vectors = self._prepare_vectors(np.vstack([r.vector for r in records]))
            ids = np.asarray([r.id for r in records], dtype="int64")
            index.add_with_ids(vectors, ids)  # pyright: ignore[reportCallIssue]
        logger.info(
            "Rebuilt FAISS index for %s with %d vectors", organization_id, index.ntotal
        )
        return index

    def _load_index(self, organization_id: str) -> faiss.IndexIDMap2:
        with self._index_lock:
            index = self._indexes.get(organization_id)
            if index is not None:
                return index

            path = self._index_path(organization_id)
            with self._connect() as conn:
                expected = self._count_rows(conn, organization_id)

            if path.exists():
                loaded = faiss.read_index(str(path))
                if (
                    isinstance(loaded, faiss.IndexIDMap2)
                    and loaded.d == self.dimension
                    and loaded.ntotal == expected
                ):
                    index = loaded
                    logger.info(
                        "Loaded FAISS index from %s with %d vectors", path, index.ntotal
                    )
                else:
                    logger.warning(
                        "FAISS index at %s is stale (%d vectors, %d records); rebuilding",
                        path,
                        loaded.ntotal,
                        expected,
                    )

            if index is None:
                index = self._rebuild_index(organization_id)
                self._save_index(organization_id, index)

            self._indexes[organization_id] = index
            return index

    def _save_index(self, organization_id: str, index: faiss.IndexIDMap2) -> None:
        path = self._index_path(organization_id)
        tmp_path = path.with_suffix(".faiss.tmp")
        faiss.write_index(index, str(tmp_path))
        tmp_path.replace(path)

    def _after_upsert(self, conn: sqlite3.Connection, record: EmbeddingRecord) -> None:
        with self._index_lock:
            index = self._load_index(record.organization_id)
            ids = np.asarray([record.id], dtype="int64")
            index.remove_ids(ids)
            index.add_with_ids(self._prepare_vectors(record.vector), ids)  # pyright: ignore[reportCallIssue]
            self._save_index(record.organization_id, index)

    def _after_delete(
        self,
        conn: sqlite3.Connection,
        organization_id: str,
        row_ids: list[int],
    ) -> None:
        with self._index_lock:
            index = self._load_index(organization_id)
            index.remove_ids(np.asarray(row_ids, dtype="int64"))
            self._save_index(organization_id, index)

    def _search_sync(
        self,
        organization_id: str,
        query: np.ndarray,
        k: int,
        search_filter: SearchFilter | None,
        *,
        include_embeddings: bool,
    ) -> list[RetrievedPassage]:
        """Search the organization's index, widening until the filter is satisfied.

        Returns:
            Ranked passages that satisfy the filter.
        """
        with self._index_lock:
            index = self._load_index(organization_id)
            total = index.ntotal
            if total == 0:
                return []

            prepared = self._prepare_vectors(query)
            raw_k = min(max(k, self.raw_top_k_multiplier * k), total)
            has_filter = search_filter is not None and not search_filter.is_empty()

            while True:
                raw_scores, vector_ids = index.search(prepared, raw_k)  # pyright: ignore[reportCallIssue]
                hits = [
                    (int(vector_id), float(score))
                    for score, vector_id in zip(raw_scores[0], vector_ids[0], strict=True)
                    if int(vector_id) != -1  # faiss returns -1 for empty results
                ]
                records = self._fetch_records(
                    organization_id,
                    search_filter,
                    row_ids=[vector_id for vector_id, _ in hits],
                )
                if not has_filter or len(records) >= k or raw_k >= total:
                    break
                raw_k = min(raw_k * 2, total)

        raw_by_id = dict(hits)
        if self.distance_strategy == "euclidean":
            # IndexFlatL2 reports squared distances
            raw = np.sqrt(np.maximum([raw_by_id[r.id] for r in records], 0.0))
        else:
            raw = np.asarray([raw_by_id[r.id] for r in records], dtype=np.float64)
        scores = self.similarity_from_raw(raw) if records else np.asarray([])
        return self._rank(
            records, scores, k, search_filter, include_embeddings=include_embeddings
        )
