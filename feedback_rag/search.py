"""Similarity search with optional Maximal Marginal Relevance re-ranking."""

from __future__ import annotations

import asyncio
import re
from typing import TYPE_CHECKING, Literal

import numpy as np

from .config import config
from .errors import InvalidRequestError, VectorStoreUnavailable
from .health import VECTOR_STORE
from .retry import RetryPolicy, call_with_retry

if TYPE_CHECKING:
    from .embeddings import EmbeddingService
    from .health import CircuitBreaker
    from .models import RetrievedPassage, SearchFilter
    from .vector_store import BaseSQLiteStore

PairwiseSimilarity = Literal["vector", "lexical"]

logger = config.get_logger(__name__)

_WORD_RE = re.compile(r"\w+")


def lexical_similarity(first: str, second: str) -> float:
    """Jaccard overlap of the lowercase word sets of two texts."""
    words_a = set(_WORD_RE.findall(first.lower()))
    words_b = set(_WORD_RE.findall(second.lower()))
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def pairwise_similarity_matrix(
    passages: list[RetrievedPassage],
    method: PairwiseSimilarity = "vector",
) -> np.ndarray:
    """Similarity between every pair of passages, in [0, 1].

    The vector method uses cosine similarity of the stored embeddings and
    falls back to lexical overlap when any passage lacks one.

    Returns:
        Symmetric matrix of shape (n, n).
    """
    n = len(passages)
    if method == "vector" and all(p.embedding is not None for p in passages):
        matrix = np.vstack([p.embedding for p in passages]).astype(np.float64)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        normalized = matrix / norms
        return np.clip(normalized @ normalized.T, 0.0, 1.0)

    if method == "vector":
        logger.warning("Passages missing embeddings; using lexical similarity for MMR")
    result = np.eye(n)
    for i in range(n):
        for j in range(i + 1, n):
            result[i, j] = result[j, i] = lexical_similarity(
                passages[i].text, passages[j].text
            )
    return result


def maximal_marginal_relevance(
    candidates: list[RetrievedPassage],
    k: int,
    lambda_mult: float = 0.5,
    pairwise: PairwiseSimilarity = "vector",
) -> list[RetrievedPassage]:
    """Select ``k`` passages trading relevance against redundancy.

    Candidates must already be sorted by similarity to the query. The first
    pick is the most relevant candidate; each following pick maximizes
    ``lambda * relevance - (1 - lambda) * max_similarity_to_selected``, with
    ties going to the better-ranked candidate.

    Returns:
        Selected passages in selection order.
    """
    if len(candidates) <= k:
        return list(candidates)

    relevance = np.asarray([p.similarity_score for p in candidates], dtype=np.float64)
    similarity = pairwise_similarity_matrix(candidates, pairwise)

    selected = [0]
    remaining = list(range(1, len(candidates)))
    max_sim_to_selected = similarity[0].copy()

    while len(selected) < k and remaining:
        best_index = remaining[0]
        best_score = -np.inf
        for index in remaining:
            score = (
                lambda_mult * relevance[index]
                - (1 - lambda_mult) * max_sim_to_selected[index]
            )
            if score > best_score:
                best_index, best_score = index, score
        selected.append(best_index)
        remaining.remove(best_index)
        max_sim_to_selected = np.maximum(max_sim_to_selected, similarity[best_index])

    return [candidates[i] for i in selected]


class SimilaritySearchEngine:
    """Translates natural-language queries into ranked feedback passages."""

    def __init__(
        self,
        embedding_service: EmbeddingService,
        vector_store: BaseSQLiteStore,
        *,
        breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout: float | None = None,
        fetch_k_cap: int | None = None,
    ) -> None:
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.breaker = breaker
        self.retry_policy = retry_policy
        self.timeout = (
            timeout if timeout is not None else config.VECTOR_SEARCH_TIMEOUT_SECONDS
        )
        self.fetch_k_cap = (
            fetch_k_cap if fetch_k_cap is not None else config.MMR_FETCH_K_CAP
        )

    async def search(
        self,
        organization_id: str,
        query: str,
        k: int | None = None,
        search_filter: SearchFilter | None = None,
        *,
        include_embeddings: bool = False,
    ) -> list[RetrievedPassage]:
        """Embed ``query`` and return the nearest passages.

        Raises:
            InvalidRequestError: If the query is empty or ``k`` is not positive.
            EmbeddingBackendUnavailable: If embedding fails after retries.
            VectorStoreUnavailable: If the store fails after retries.

        Returns:
            Passages sorted by similarity descending.
        """
        k = k if k is not None else config.SEARCH_TOP_K
        if not query or not query.strip():
            msg = "Search query must not be empty"
            raise InvalidRequestError(msg)
        if k <= 0:
            msg = "k must be a positive integer"
            raise InvalidRequestError(msg)

        query_vector = await self.embedding_service.get_embedding(query)
        passages = await call_with_retry(
            lambda: self.vector_store.nearest_neighbors(
                organization_id,
                query_vector,
                k,
                search_filter,
                include_embeddings=include_embeddings,
            ),
            dependency=VECTOR_STORE,
            error_cls=VectorStoreUnavailable,
            policy=self.retry_policy,
            timeout=self.timeout,
            breaker=self.breaker,
        )
        logger.info(
            "Search for %s returned %d passages (k=%d)",
            organization_id,
            len(passages),
            k,
        )
        return passages

    async def diversified_search(  # noqa: PLR0913
        self,
        organization_id: str,
        query: str,
        k: int | None = None,
        fetch_k: int | None = None,
        lambda_mult: float | None = None,
        search_filter: SearchFilter | None = None,
        *,
        pairwise: PairwiseSimilarity = "vector",
    ) -> list[RetrievedPassage]:
        """Search with Maximal Marginal Relevance re-ranking.

        ``fetch_k`` defaults to ``2 * k`` and is clamped to
        ``[k, fetch_k_cap]``. ``lambda_mult`` of 1.0 reproduces plain search
        order; 0.0 maximizes diversity.

        Raises:
            InvalidRequestError: If ``lambda_mult`` is outside [0, 1] or ``k``
                exceeds ``fetch_k_cap``.

        Returns:
            Up to ``k`` passages in selection order.
        """
        k = k if k is not None else config.SEARCH_TOP_K
        lambda_mult = lambda_mult if lambda_mult is not None else config.MMR_LAMBDA
        if not 0.0 <= lambda_mult <= 1.0:
            msg = "lambda_mult must be within [0, 1]"
            raise InvalidRequestError(msg)
        if k > self.fetch_k_cap:
            msg = f"k must not exceed the candidate cap of {self.fetch_k_cap}"
            raise InvalidRequestError(msg)
        fetch_k = fetch_k if fetch_k is not None else 2 * k
        fetch_k = max(k, min(fetch_k, self.fetch_k_cap))

        candidates = await self.search(
            organization_id,
            query,
            fetch_k,
            search_filter,
            include_embeddings=pairwise == "vector",
        )
        if len(candidates) <= k:
            return candidates

        return await asyncio.to_thread(
            maximal_marginal_relevance, candidates, k, lambda_mult, pairwise
        )
