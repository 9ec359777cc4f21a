"""Retriever for semantic search over indexed documents.

Handles:
- Query embedding through the embedding gateway
- Vector search against a committed index snapshot
- Deterministic lexical re-ranking
- Context assembly under a character budget
"""
import re
from typing import List, Optional

import structlog

from docpilot import config
from docpilot.rag.embeddings import EmbeddingGateway
from docpilot.rag.models import RetrievalResult, ScoredEntry
from docpilot.rag.store_faiss import VectorIndex

logger = structlog.get_logger()

TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)


def _terms(text: str) -> set:
    return set(TOKEN_PATTERN.findall(text.lower()))


def rerank_score(score: float, text: str, query: str, boost: float) -> float:
    """Boost a similarity score by the share of query terms found in the chunk.

    Pure function of its arguments, so ranking is reproducible.
    """
    if boost == 0:
        return score
    query_terms = _terms(query)
    if not query_terms:
        return score
    overlap = len(query_terms & _terms(text)) / len(query_terms)
    return score + boost * overlap


def rank_key(item: ScoredEntry):
    """Best score first, then newer source, then chunk_id."""
    return (-item.score, -item.entry.source_modified, item.entry.chunk_id)


def fill_budget(ranked: List[ScoredEntry], budget: int) -> List[ScoredEntry]:
    """Take chunks in rank order until the next one would not fit.

    Chunks are never split; assembly stops at the first chunk that overflows.
    """
    selected = []
    used = 0
    for item in ranked:
        size = len(item.entry.text)
        if used + size > budget:
            break
        selected.append(item)
        used += size
    return selected


class Retriever:
    """Read-only query path over the vector index."""

    def __init__(
        self,
        index: VectorIndex,
        gateway: EmbeddingGateway,
        top_k: int = None,
        lexical_boost: float = None,
        relevance_threshold: float = None,
        context_budget: int = None,
        tracker=None,
        reindex_wait: float = None,
    ):
        """Initialize the retriever.

        Args:
            index: Vector index to search
            gateway: Embedding gateway used for the query
            top_k: Number of nearest chunks to fetch (default from config)
            lexical_boost: Weight of the lexical overlap re-rank (0 disables it)
            relevance_threshold: Score the top result must reach to count as relevant
            context_budget: Default budget in characters
            tracker: Optional ReindexTracker; lets queries wait briefly for a
                source that is being re-indexed
            reindex_wait: Maximum seconds to wait for such a source
        """
        self.index = index
        self.gateway = gateway
        self.top_k = top_k or config.RETRIEVAL_TOP_K
        self.lexical_boost = config.LEXICAL_BOOST if lexical_boost is None else lexical_boost
        self.relevance_threshold = (
            config.RELEVANCE_THRESHOLD if relevance_threshold is None else relevance_threshold
        )
        self.context_budget = context_budget or config.CONTEXT_BUDGET_CHARS
        self.tracker = tracker
        self.reindex_wait = config.REINDEX_WAIT_TIMEOUT if reindex_wait is None else reindex_wait

        logger.info(
            "retriever_initialized",
            top_k=self.top_k,
            lexical_boost=self.lexical_boost,
            context_budget=self.context_budget,
        )

    def _search(self, query_vector, snapshot) -> List[ScoredEntry]:
        k = min(self.top_k, len(snapshot))
        return self.index.search(query_vector, k, snapshot=snapshot)

    async def retrieve(
        self,
        query: str,
        context_budget: Optional[int] = None,
        min_relevance: Optional[float] = None,
    ) -> RetrievalResult:
        """Retrieve ranked chunks for a query, bounded by a context budget.

        Args:
            query: User query text
            context_budget: Maximum combined characters of returned chunks
            min_relevance: Drop results scoring below this after re-ranking

        Returns:
            RetrievalResult, empty when the query is blank or the index is empty

        Raises:
            EmbeddingServiceError: If the query cannot be embedded
            DimensionMismatch: If the query vector does not fit the index
        """
        budget = self.context_budget if context_budget is None else context_budget
        empty = RetrievalResult(budget=budget, relevance_threshold=self.relevance_threshold)

        if not query or not query.strip():
            logger.warning("empty_query_provided")
            return empty

        snapshot = self.index.snapshot()
        if len(snapshot) == 0:
            logger.warning("empty_index_no_results")
            return empty

        logger.info("retrieval_started", query_length=len(query), top_k=self.top_k)

        query_vector = (await self.gateway.embed_query(query)).vector
        hits = self._search(query_vector, snapshot)

        if self.tracker is not None:
            busy = {h.entry.source_id for h in hits if self.tracker.is_reindexing(h.entry.source_id)}
            if busy:
                finished = await self.tracker.wait_for(busy, self.reindex_wait)
                if finished:
                    snapshot = self.index.snapshot()
                    hits = self._search(query_vector, snapshot) if len(snapshot) else []
                else:
                    logger.info(
                        "reindex_wait_timed_out",
                        sources=sorted(busy),
                        timeout=self.reindex_wait,
                    )

        ranked = [
            ScoredEntry(
                entry=h.entry,
                score=rerank_score(h.score, h.entry.text, query, self.lexical_boost),
            )
            for h in hits
        ]
        ranked.sort(key=rank_key)
        if min_relevance is not None:
            ranked = [r for r in ranked if r.score >= min_relevance]

        result = RetrievalResult(
            items=fill_budget(ranked, budget),
            budget=budget,
            relevance_threshold=self.relevance_threshold,
        )

        logger.info(
            "retrieval_completed",
            query_length=len(query),
            candidates=len(hits),
            results_returned=len(result),
            context_chars=result.size,
            top_score=result.items[0].score if result.items else None,
        )
        return result
