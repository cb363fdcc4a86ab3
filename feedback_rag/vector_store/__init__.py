"""Embedding store adapters and factory."""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

from feedback_rag.config import config

from .base import BaseSQLiteStore, DistanceStrategy
from .faiss_store import FaissVectorStore
from .sqlite_store import SQLiteVectorStore

if TYPE_CHECKING:
    from pathlib import Path

VectorBackend = Literal["faiss", "sqlite"]


def get_vector_store(
    store: VectorBackend | str | None = None,
    *,
    db_path: Path | None = None,
    index_dir: Path | None = None,
    dimension: int | None = None,
    distance_strategy: str | None = None,
    raw_top_k_multiplier: int | None = None,
) -> FaissVectorStore | SQLiteVectorStore:
    """Return a configured embedding store instance.

    Raises:
        ValueError: If an unsupported backend is requested.
    """
    backend = (store or config.VECTOR_BACKEND).lower()
    if db_path is None:
        db_path = config.VECTOR_STORE_DB_PATH

    if backend == "faiss":
        return FaissVectorStore(
            db_path=db_path,
            index_dir=index_dir if index_dir is not None else config.FAISS_INDEX_DIR,
            dimension=dimension,
            distance_strategy=distance_strategy,
            raw_top_k_multiplier=raw_top_k_multiplier,
        )

    if backend == "sqlite":
        return SQLiteVectorStore(
            db_path=db_path,
            dimension=dimension,
            distance_strategy=distance_strategy,
        )

    msg = f"Unsupported vector store backend: {store}"
    raise ValueError(msg)


__all__ = [
    "BaseSQLiteStore",
    "DistanceStrategy",
    "FaissVectorStore",
    "SQLiteVectorStore",
    "VectorBackend",
    "get_vector_store",
]
