"""Tests for retrieval: re-ranking, budget assembly and reindex waits."""
import asyncio

import pytest

from docpilot.errors import EmbeddingServiceError
from docpilot.rag.embeddings import EmbeddingGateway
from docpilot.rag.ingest import ReindexTracker
from docpilot.rag.models import IndexEntry, Provenance, RetrievalResult, ScoredEntry
from docpilot.rag.retriever import Retriever, fill_budget, rank_key, rerank_score
from docpilot.rag.store_faiss import VectorIndex

DOCUMENTS = {
    "caching.pdf": "Caching stores results so repeated lookups are fast. LRU eviction drops old entries.",
    "graphs.pdf": "Breadth first search explores a graph level by level using a queue.",
    "sorting.pdf": "Merge sort splits the list in half, sorts both halves and merges them.",
}


async def _populated(tmp_path, embedder, **kwargs):
    gateway = EmbeddingGateway(embedder, backoff_base=0)
    index = VectorIndex(tmp_path)
    texts = list(DOCUMENTS.values())
    vectors = await gateway.embed(texts)
    await index.insert([
        IndexEntry(
            chunk_id=f"{source}-0",
            vector=vector.vector,
            text=text,
            provenance=Provenance(source_id=source, page=1, start_offset=0, end_offset=len(text)),
            model_id=vector.model_id,
        )
        for (source, text), vector in zip(DOCUMENTS.items(), vectors)
    ])
    return Retriever(index, gateway, lexical_boost=0.1, relevance_threshold=0.1, **kwargs)


def _scored(chunk_id: str, size: int, score: float) -> ScoredEntry:
    text = "x" * size
    return ScoredEntry(
        entry=IndexEntry(
            chunk_id=chunk_id,
            vector=None,
            text=text,
            provenance=Provenance(source_id="s.pdf", page=1, start_offset=0, end_offset=size),
            model_id="fake-32",
        ),
        score=score,
    )


def test_rerank_score_boosts_term_overlap():
    assert rerank_score(0.5, "LRU cache eviction policy", "cache policy", 0.1) == pytest.approx(0.6)
    assert rerank_score(0.5, "unrelated words", "cache policy", 0.1) == pytest.approx(0.5)
    assert rerank_score(0.5, "cache", "cache policy", 0.1) == pytest.approx(0.55)
    assert rerank_score(0.5, "cache", "cache", 0.0) == 0.5
    assert rerank_score(0.5, "cache", "???", 0.1) == 0.5


def test_fill_budget_stops_at_first_overflow():
    ranked = [_scored("a", 100, 0.9), _scored("b", 300, 0.8), _scored("c", 50, 0.7)]

    assert [s.entry.chunk_id for s in fill_budget(ranked, 200)] == ["a"]
    assert [s.entry.chunk_id for s in fill_budget(ranked, 450)] == ["a", "b", "c"]
    assert fill_budget(ranked, 99) == []


def test_rank_key_orders_ties_by_chunk_id():
    items = [_scored("b", 10, 0.5), _scored("a", 10, 0.5), _scored("c", 10, 0.9)]
    assert [s.entry.chunk_id for s in sorted(items, key=rank_key)] == ["c", "a", "b"]


@pytest.mark.asyncio
async def test_retrieve_ranks_relevant_chunk_first(tmp_path, embedder):
    retriever = await _populated(tmp_path, embedder)

    result = await retriever.retrieve("LRU caching eviction", context_budget=10_000)

    assert result.items[0].entry.provenance.source_id == "caching.pdf"
    assert [i.score for i in result.items] == sorted((i.score for i in result.items), reverse=True)
    assert result.has_relevant_material


@pytest.mark.asyncio
async def test_retrieve_respects_budget(tmp_path, embedder):
    retriever = await _populated(tmp_path, embedder)

    for budget in (0, 50, 90, 150, 400):
        result = await retriever.retrieve("graph search queue", context_budget=budget)
        assert result.size <= budget
        assert result.budget == budget

    assert len(await retriever.retrieve("graph search queue", context_budget=0)) == 0


@pytest.mark.asyncio
async def test_retrieve_is_deterministic(tmp_path, embedder):
    retriever = await _populated(tmp_path, embedder)

    first = await retriever.retrieve("sorting halves", context_budget=10_000)
    second = await retriever.retrieve("sorting halves", context_budget=10_000)

    assert [(i.entry.chunk_id, i.score) for i in first] == [(i.entry.chunk_id, i.score) for i in second]


@pytest.mark.asyncio
async def test_top_k_limits_candidates(tmp_path, embedder):
    retriever = await _populated(tmp_path, embedder, top_k=1)

    result = await retriever.retrieve("merge sort", context_budget=10_000)

    assert len(result) == 1


@pytest.mark.asyncio
async def test_min_relevance_filters(tmp_path, embedder):
    retriever = await _populated(tmp_path, embedder)

    result = await retriever.retrieve("merge sort", context_budget=10_000, min_relevance=10.0)

    assert len(result) == 0
    assert not result.has_relevant_material


@pytest.mark.asyncio
async def test_empty_index_returns_empty_result(tmp_path, embedder):
    retriever = Retriever(VectorIndex(tmp_path), EmbeddingGateway(embedder))

    result = await retriever.retrieve("anything", context_budget=100)

    assert isinstance(result, RetrievalResult)
    assert len(result) == 0
    assert embedder.calls == []


@pytest.mark.asyncio
async def test_blank_query(tmp_path, embedder):
    retriever = await _populated(tmp_path, embedder)
    calls = len(embedder.calls)

    assert len(await retriever.retrieve("   ")) == 0
    assert len(embedder.calls) == calls


@pytest.mark.asyncio
async def test_embedding_failure_propagates(tmp_path, embedder):
    retriever = await _populated(tmp_path, embedder)
    embedder.failures.append(EmbeddingServiceError("down", retryable=False))

    with pytest.raises(EmbeddingServiceError):
        await retriever.retrieve("caching")


@pytest.mark.asyncio
async def test_waits_for_reindexing_source_then_times_out(tmp_path, embedder):
    tracker = ReindexTracker()
    retriever = await _populated(tmp_path, embedder, tracker=tracker, reindex_wait=0.05)
    tracker.begin("caching.pdf")

    result = await retriever.retrieve("LRU caching eviction", context_budget=10_000)

    assert result.items[0].entry.provenance.source_id == "caching.pdf"
    assert tracker.is_reindexing("caching.pdf")


@pytest.mark.asyncio
async def test_sees_commit_that_finishes_during_wait(tmp_path, embedder):
    tracker = ReindexTracker()
    retriever = await _populated(tmp_path, embedder, tracker=tracker, reindex_wait=5.0)
    tracker.begin("caching.pdf")

    async def reindex():
        await asyncio.sleep(0.01)
        await retriever.index.delete_by_source("caching.pdf")
        tracker.end("caching.pdf")

    task = asyncio.ensure_future(reindex())
    result = await retriever.retrieve("LRU caching eviction", context_budget=10_000)
    await task

    assert "caching.pdf" not in [i.entry.provenance.source_id for i in result]


def test_result_citations_and_context():
    result = RetrievalResult(
        items=[_scored("a", 30, 0.9)], budget=100, relevance_threshold=0.5
    )

    citations = result.citations(excerpt_chars=10)
    context = result.as_context()

    assert citations[0].source == "s.pdf"
    assert citations[0].page == 1
    assert citations[0].excerpt == "x" * 10
    assert context.startswith("[Source 1: s.pdf p.1]\n")
    assert result.pairs()[0][1] == 0.9
