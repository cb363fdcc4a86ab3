"""Shared schema and helpers for SQLite-backed embedding stores."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Any, Literal

import numpy as np

from feedback_rag.cache import KeyedLock
from feedback_rag.config import config
from feedback_rag.errors import InvalidRequestError, InvalidVectorDimension
from feedback_rag.models import (
    EmbeddingRecord,
    RetrievedPassage,
    SearchFilter,
    to_utc_iso,
    utc_now_iso,
    validate_metadata,
)

DistanceStrategy = Literal["cosine", "euclidean", "inner_product"]
VALID_STRATEGIES = {"cosine", "euclidean", "inner_product"}

logger = config.get_logger(__name__)

_RECORD_COLUMNS = (
    "id, organization_id, source_item_id, text, vector, token_count, model, "
    "metadata, created_at, updated_at"
)


class BaseSQLiteStore:
    """Schema management, filtering and record persistence for embedding stores.

    Records live in one SQLite table keyed by ``(organization_id,
    source_item_id)``. The vector is stored as a float32 blob in the same row
    as the text, so an upsert replaces both in one statement. Subclasses
    provide the nearest-neighbor search over those rows.
    """

    backend = "base"

    def __init__(
        self,
        db_path: Path,
        dimension: int | None = None,
        distance_strategy: str | None = None,
    ) -> None:
        """Initialize the record store and ensure the schema exists.

        Raises:
            ValueError: If the distance strategy is not supported.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(exist_ok=True, parents=True)
        self.dimension = dimension if dimension is not None else config.EMBEDDING_DIMENSION
        strategy = (distance_strategy or config.DISTANCE_STRATEGY).lower()
        if strategy not in VALID_STRATEGIES:
            msg = f"Unsupported distance strategy: {strategy}"
            raise ValueError(msg)
        self.distance_strategy: DistanceStrategy = strategy  # type: ignore[assignment]
        self._item_locks = KeyedLock()
        self._create_tables()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        with closing(sqlite3.connect(str(self.db_path), timeout=30)) as conn, conn:
            yield conn

    def _create_tables(self) -> None:
        """Create the embeddings table and its indexes if they don't exist."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS feedback_embeddings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    organization_id TEXT NOT NULL,
                    source_item_id TEXT NOT NULL,
                    text TEXT NOT NULL,
                    vector BLOB NOT NULL,
                    dimension INTEGER NOT NULL,
                    token_count INTEGER NOT NULL DEFAULT 0 CHECK(token_count >= 0),
                    model TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    category TEXT,
                    sentiment TEXT,
                    customer_segment TEXT,
                    source_created_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (organization_id, source_item_id)
                )
            """)
            self._create_indexes(cursor)

    @staticmethod
    def _create_indexes(cursor: sqlite3.Cursor) -> None:
        """Ensure metadata indexes exist for common filters."""
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_embeddings_org_category "
            "ON feedback_embeddings(organization_id, category)"
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_embeddings_org_sentiment "
            "ON feedback_embeddings(organization_id, sentiment)"
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_embeddings_org_segment "
            "ON feedback_embeddings(organization_id, customer_segment)"
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_embeddings_org_source_created "
            "ON feedback_embeddings(organization_id, source_created_at)"
        )

    def _validate_vector(self, vector: Sequence[float] | np.ndarray) -> np.ndarray:
        array = np.asarray(vector, dtype=np.float32).reshape(-1)
        if array.shape[0] != self.dimension:
            raise InvalidVectorDimension(self.dimension, int(array.shape[0]))
        if not np.all(np.isfinite(array)):
            msg = "Vector contains non-finite values"
            raise InvalidRequestError(msg)
        return array

    @staticmethod
    def _normalize_metadata_fields(
        metadata: dict[str, Any],
    ) -> tuple[str | None, str | None, str | None, str | None]:
        """Extract the filterable metadata columns.

        Returns:
            Tuple of (category, sentiment, customer_segment, source_created_at).
        """
        created_at = metadata.get("created_at")
        return (
            metadata.get("category"),
            metadata.get("sentiment"),
            metadata.get("customer_segment"),
            to_utc_iso(created_at) if created_at else None,
        )

    def similarity_from_raw(self, raw: np.ndarray) -> np.ndarray:
        """Convert raw backend scores into similarity in [0, 1].

        Cosine scores arrive as cosine similarity (``1 - distance``), euclidean
        scores as L2 distance, inner-product scores as dot products.

        Returns:
            Array of similarity scores clipped to [0, 1].
        """
        raw = np.asarray(raw, dtype=np.float64)
        if self.distance_strategy == "euclidean":
            return 1.0 / (1.0 + np.maximum(raw, 0.0))
        return np.clip(raw, 0.0, 1.0)

    @staticmethod
    def _build_filter_clause(
        organization_id: str,
        search_filter: SearchFilter | None,
    ) -> tuple[str, list[Any]]:
        """Translate a SearchFilter into a conjunctive SQL WHERE clause.

        Returns:
            Tuple of (clause, parameters).
        """
        clauses = ["organization_id = ?"]
        params: list[Any] = [organization_id]
        if search_filter is None:
            return " AND ".join(clauses), params

        for column, values in (
            ("category", search_filter.categories),
            ("sentiment", search_filter.sentiments),
            ("customer_segment", search_filter.customer_segments),
        ):
            if not values:
                continue
            placeholders = ", ".join("?" for _ in values)
            clauses.append(f"{column} IN ({placeholders})")
            params.extend(values)

        if search_filter.date_from is not None:
            clauses.append("source_created_at >= ?")
            params.append(to_utc_iso(search_filter.date_from))
        if search_filter.date_to is not None:
            clauses.append("source_created_at <= ?")
            params.append(to_utc_iso(search_filter.date_to))

        return " AND ".join(clauses), params

    @staticmethod
    def _build_record_from_row(row: tuple) -> EmbeddingRecord:
        """Create an EmbeddingRecord from a table row.

        Returns:
            EmbeddingRecord hydrated with metadata and vector.
        """
        (
            record_id,
            organization_id,
            source_item_id,
            text,
            vector_blob,
            token_count,
            model,
            metadata_json,
            created_at,
            updated_at,
        ) = row
        return EmbeddingRecord(
            id=int(record_id),
            organization_id=organization_id,
            source_item_id=source_item_id,
            text=text,
            vector=np.frombuffer(vector_blob, dtype=np.float32).copy(),
            token_count=int(token_count),
            model=model,
            metadata=json.loads(metadata_json or "{}"),
            created_at=created_at,
            updated_at=updated_at,
        )

    @staticmethod
    def _build_passage(
        record: EmbeddingRecord,
        score: float,
        *,
        include_embedding: bool,
    ) -> RetrievedPassage:
        return RetrievedPassage(
            source_item_id=record.source_item_id,
            text=record.text,
            metadata=dict(record.metadata),
            similarity_score=float(score),
            embedding=record.vector if include_embedding else None,
        )

    def _upsert_sync(
        self,
        organization_id: str,
        source_item_id: str,
        text: str,
        vector: np.ndarray,
        token_count: int,
        model: str,
        metadata: dict[str, Any],
    ) -> EmbeddingRecord:
        category, sentiment, segment, source_created_at = (
            self._normalize_metadata_fields(metadata)
        )
        now = utc_now_iso()
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO feedback_embeddings (
                    organization_id, source_item_id, text, vector, dimension,
                    token_count, model, metadata, category, sentiment,
                    customer_segment, source_created_at, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(organization_id, source_item_id) DO UPDATE SET
                    text = excluded.text,
                    vector = excluded.vector,
                    dimension = excluded.dimension,
                    token_count = excluded.token_count,
                    model = excluded.model,
                    metadata = excluded.metadata,
                    category = excluded.category,
                    sentiment = excluded.sentiment,
                    customer_segment = excluded.customer_segment,
                    source_created_at = excluded.source_created_at,
                    updated_at = excluded.updated_at
                """,
                (
                    organization_id,
                    source_item_id,
                    text,
                    vector.tobytes(),
                    int(vector.shape[0]),
                    int(token_count),
                    model,
                    json.dumps(metadata),
                    category,
                    sentiment,
                    segment,
                    source_created_at,
                    now,
                    now,
                ),
            )
            cursor.execute(
                f"SELECT {_RECORD_COLUMNS} FROM feedback_embeddings "  # noqa: S608
                "WHERE organization_id = ? AND source_item_id = ?",
                (organization_id, source_item_id),
            )
            record = self._build_record_from_row(cursor.fetchone())
            self._after_upsert(conn, record)
        return record

    def _delete_sync(self, organization_id: str, source_item_ids: list[str]) -> int:
        if not source_item_ids:
            return 0
        placeholders = ", ".join("?" for _ in source_item_ids)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT id FROM feedback_embeddings WHERE organization_id = ? "  # noqa: S608
                f"AND source_item_id IN ({placeholders})",
                (organization_id, *source_item_ids),
            )
            row_ids = [int(row[0]) for row in cursor.fetchall()]
            if not row_ids:
                return 0
            cursor.execute(
                f"DELETE FROM feedback_embeddings WHERE organization_id = ? "  # noqa: S608
                f"AND source_item_id IN ({placeholders})",
                (organization_id, *source_item_ids),
            )
            self._after_delete(conn, organization_id, row_ids)
        return len(row_ids)

    def _fetch_records(
        self,
        organization_id: str,
        search_filter: SearchFilter | None = None,
        *,
        row_ids: list[int] | None = None,
        exclude_model: str | None = None,
    ) -> list[EmbeddingRecord]:
        """Load records matching the filter in insertion order.

        Returns:
            Records ordered by row id.
        """
        clause, params = self._build_filter_clause(organization_id, search_filter)
        if row_ids is not None:
            if not row_ids:
                return []
            clause += f" AND id IN ({', '.join('?' for _ in row_ids)})"
            params.extend(row_ids)
        if exclude_model is not None:
            clause += " AND model != ?"
            params.append(exclude_model)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {_RECORD_COLUMNS} FROM feedback_embeddings "  # noqa: S608
                f"WHERE {clause} ORDER BY id",
                params,
            )
            return [self._build_record_from_row(row) for row in cursor.fetchall()]

    def _stats_sync(self, organization_id: str) -> dict[str, Any]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT COUNT(*), COALESCE(SUM(token_count), 0),
                       MIN(created_at), MAX(updated_at)
                FROM feedback_embeddings WHERE organization_id = ?
                """,
                (organization_id,),
            )
            total, total_tokens, oldest, newest = cursor.fetchone()
            cursor.execute(
                """
                SELECT model, COUNT(*) FROM feedback_embeddings
                WHERE organization_id = ? GROUP BY model ORDER BY model
                """,
                (organization_id,),
            )
            models = {model: int(count) for model, count in cursor.fetchall()}

        return {
            "total_embeddings": int(total),
            "total_tokens": int(total_tokens),
            "average_tokens": (float(total_tokens) / total) if total else 0.0,
            "models": models,
            "oldest_embedding": oldest,
            "newest_embedding": newest,
        }

    def _after_upsert(self, conn: sqlite3.Connection, record: EmbeddingRecord) -> None:
        """Hook for backends that maintain an index beside the table."""

    def _after_delete(
        self,
        conn: sqlite3.Connection,
        organization_id: str,
        row_ids: list[int],
    ) -> None:
        """Hook for backends that maintain an index beside the table."""

    def _search_sync(
        self,
        organization_id: str,
        query: np.ndarray,
        k: int,
        search_filter: SearchFilter | None,
        *,
        include_embeddings: bool,
    ) -> list[RetrievedPassage]:
        raise NotImplementedError

    @staticmethod
    def _rank(
        records: list[EmbeddingRecord],
        scores: np.ndarray,
        k: int,
        search_filter: SearchFilter | None,
        *,
        include_embeddings: bool,
    ) -> list[RetrievedPassage]:
        """Order records by similarity, breaking ties by insertion order.

        Returns:
            At most ``k`` passages at or above the filter's minimum similarity.
        """
        order = sorted(
            range(len(records)),
            key=lambda i: (-float(scores[i]), records[i].id),
        )
        min_similarity = search_filter.min_similarity if search_filter else None
        passages: list[RetrievedPassage] = []
        for i in order:
            score = float(scores[i])
            if min_similarity is not None and score < min_similarity:
                break
            passages.append(
                BaseSQLiteStore._build_passage(
                    records[i], score, include_embedding=include_embeddings
                )
            )
            if len(passages) >= k:
                break
        return passages

    # Async API

    async def upsert(  # noqa: PLR0913
        self,
        organization_id: str,
        source_item_id: str,
        text: str,
        vector: Sequence[float] | np.ndarray,
        token_count: int,
        model: str,
        metadata: dict[str, Any] | None = None,
    ) -> EmbeddingRecord:
        """Insert or replace the record for ``(organization_id, source_item_id)``.

        Concurrent upserts of the same item are serialized; the last to commit
        wins. The write is committed before this returns.

        Raises:
            InvalidVectorDimension: If the vector length differs from the
                configured dimension.
            InvalidRequestError: If identifiers are empty or token_count is negative.

        Returns:
            The stored EmbeddingRecord.
        """
        if not organization_id or not source_item_id:
            msg = "organization_id and source_item_id are required"
            raise InvalidRequestError(msg)
        if token_count < 0:
            msg = "token_count must be >= 0"
            raise InvalidRequestError(msg)
        array = self._validate_vector(vector)
        clean_metadata = validate_metadata(metadata)

        async with self._item_locks.hold((organization_id, source_item_id)):
            record = await asyncio.to_thread(
                self._upsert_sync,
                organization_id,
                source_item_id,
                text,
                array,
                token_count,
                model,
                clean_metadata,
            )
        logger.debug(
            "Upserted embedding for %s/%s", organization_id, source_item_id
        )
        return record

    async def delete_by_source_items(
        self,
        organization_id: str,
        source_item_ids: list[str],
    ) -> int:
        """Delete records for the given source items; unknown ids are ignored.

        Returns:
            Number of records removed.
        """
        unique_ids = list(dict.fromkeys(source_item_ids))
        removed = await asyncio.to_thread(self._delete_sync, organization_id, unique_ids)
        if removed:
            logger.info(
                "Removed %d embeddings for organization %s", removed, organization_id
            )
        return removed

    async def nearest_neighbors(
        self,
        organization_id: str,
        query_vector: Sequence[float] | np.ndarray,
        k: int,
        search_filter: SearchFilter | None = None,
        *,
        include_embeddings: bool = False,
    ) -> list[RetrievedPassage]:
        """Return at most ``k`` passages matching the filter, most similar first.

        Raises:
            InvalidRequestError: If ``k`` is not positive.

        Returns:
            Passages sorted by similarity descending, ties in insertion order.
        """
        if k <= 0:
            msg = "k must be a positive integer"
            raise InvalidRequestError(msg)
        query = self._validate_vector(query_vector)
        return await asyncio.to_thread(
            self._search_sync,
            organization_id,
            query,
            k,
            search_filter,
            include_embeddings=include_embeddings,
        )

    async def get_record(
        self,
        organization_id: str,
        source_item_id: str,
    ) -> EmbeddingRecord | None:
        def _get() -> EmbeddingRecord | None:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    f"SELECT {_RECORD_COLUMNS} FROM feedback_embeddings "  # noqa: S608
                    "WHERE organization_id = ? AND source_item_id = ?",
                    (organization_id, source_item_id),
                )
                row = cursor.fetchone()
            return self._build_record_from_row(row) if row else None

        return await asyncio.to_thread(_get)

    async def list_records(
        self,
        organization_id: str,
        *,
        exclude_model: str | None = None,
    ) -> list[EmbeddingRecord]:
        return await asyncio.to_thread(
            self._fetch_records, organization_id, exclude_model=exclude_model
        )

    async def stats(self, organization_id: str) -> dict[str, Any]:
        """Summarize stored embeddings for an organization.

        Returns:
            Totals, average token count, per-model counts and timestamps.
        """
        return await asyncio.to_thread(self._stats_sync, organization_id)

    async def ping(self) -> None:
        def _ping() -> None:
            with self._connect() as conn:
                conn.execute("SELECT 1 FROM feedback_embeddings LIMIT 1").fetchall()

        await asyncio.to_thread(_ping)
