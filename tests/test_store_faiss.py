"""Tests for the FAISS vector index: search, deletes, snapshots and persistence."""
import json

import numpy as np
import pytest

from docpilot.errors import DimensionMismatch, IndexCorruption
from docpilot.rag.models import SourceType
from docpilot.rag.store_faiss import SCHEMA_VERSION, VectorIndex


def _ids(results):
    return [r.entry.chunk_id for r in results]


@pytest.mark.asyncio
async def test_insert_and_search(tmp_path, make_entry):
    index = VectorIndex(tmp_path)
    await index.insert([
        make_entry("x", [1, 0, 0]),
        make_entry("y", [0, 1, 0]),
        make_entry("z", [0, 0, 1]),
    ])

    results = index.search([0.9, 0.1, 0], k=2)

    assert _ids(results) == ["x", "y"]
    assert results[0].score == pytest.approx(0.9 / np.sqrt(0.82), abs=1e-5)
    assert len(index) == 3
    assert index.dimension == 3
    assert index.model_id == "fake-32"


@pytest.mark.asyncio
async def test_search_is_deterministic_with_ties(tmp_path, make_entry):
    index = VectorIndex(tmp_path)
    await index.insert([
        make_entry("b-old", [1, 0], source_id="old.pdf", source_modified=100.0),
        make_entry("a-old", [1, 0], source_id="old.pdf", source_modified=100.0),
        make_entry("c-new", [1, 0], source_id="new.pdf", source_modified=200.0),
        make_entry("far", [0, 1]),
    ])

    first = _ids(index.search([1, 0], k=3))
    second = _ids(index.search([1, 0], k=3))

    assert first == ["c-new", "a-old", "b-old"]
    assert first == second


@pytest.mark.asyncio
async def test_k_larger_than_index(tmp_path, make_entry):
    index = VectorIndex(tmp_path)
    await index.insert([make_entry("x", [1, 0])])

    assert _ids(index.search([1, 0], k=10)) == ["x"]
    assert index.search([1, 0], k=0) == []


def test_search_empty_index(tmp_path):
    assert VectorIndex(tmp_path).search([1.0, 0.0], k=5) == []


@pytest.mark.asyncio
async def test_delete_by_source(tmp_path, make_entry):
    index = VectorIndex(tmp_path, compaction_threshold=1.0)
    await index.insert([
        make_entry("a1", [1, 0], source_id="a.pdf"),
        make_entry("a2", [0.9, 0.1], source_id="a.pdf"),
        make_entry("b1", [0, 1], source_id="b.pdf"),
    ])

    removed = await index.delete_by_source("a.pdf")

    assert removed == 2
    assert len(index) == 1
    assert not index.has_source("a.pdf")
    assert _ids(index.search([1, 0], k=5)) == ["b1"]
    assert await index.delete_by_source("missing.pdf") == 0


@pytest.mark.asyncio
async def test_reinserting_chunk_id_replaces_entry(tmp_path, make_entry):
    index = VectorIndex(tmp_path, compaction_threshold=1.0)
    await index.insert([make_entry("x", [1, 0], text="old")])
    await index.insert([make_entry("x", [0, 1], text="new")])

    results = index.search([0, 1], k=5)

    assert len(index) == 1
    assert [r.entry.text for r in results] == ["new"]
    assert index.get_stats()["tombstones"] == 1


@pytest.mark.asyncio
async def test_compaction_drops_tombstones(tmp_path, make_entry):
    index = VectorIndex(tmp_path, compaction_threshold=0.3)
    await index.insert([make_entry(f"a{i}", [1, i], source_id="a.pdf") for i in range(3)])
    await index.insert([make_entry("b", [0, 1], source_id="b.pdf")])

    await index.delete_by_source("a.pdf")
    stats = index.get_stats()

    assert stats["rows"] == 1
    assert stats["tombstones"] == 0
    assert _ids(index.search([0, 1], k=5)) == ["b"]


@pytest.mark.asyncio
async def test_below_threshold_keeps_tombstones(tmp_path, make_entry):
    index = VectorIndex(tmp_path, compaction_threshold=0.5)
    await index.insert([make_entry(f"e{i}", [1, i]) for i in range(3)])
    await index.insert([make_entry("other", [0, 1], source_id="b.pdf")])
    await index.insert([make_entry("e0", [1, 0])])

    assert index.get_stats()["tombstones"] == 1

    await index.compact()
    assert index.get_stats()["tombstones"] == 0
    assert len(index) == 4


@pytest.mark.asyncio
async def test_snapshot_is_isolated_from_later_commits(tmp_path, make_entry):
    index = VectorIndex(tmp_path, compaction_threshold=0.1)
    await index.insert([make_entry("a1", [1, 0], source_id="a.pdf")])
    snapshot = index.snapshot()

    await index.insert([make_entry("b1", [1, 0.01], source_id="b.pdf")])
    await index.delete_by_source("a.pdf")

    assert _ids(index.search([1, 0], k=5, snapshot=snapshot)) == ["a1"]
    assert _ids(index.search([1, 0], k=5)) == ["b1"]
    assert len(snapshot) == 1


@pytest.mark.asyncio
async def test_failed_transaction_publishes_nothing(tmp_path, make_entry):
    index = VectorIndex(tmp_path)
    await index.insert([make_entry("a1", [1, 0], source_id="a.pdf")])
    generation = index.snapshot().generation

    with pytest.raises(RuntimeError):
        async with index.transaction() as txn:
            txn.delete_source("a.pdf")
            txn.insert([make_entry("a2", [0, 1], source_id="a.pdf")])
            raise RuntimeError("embedding batch incomplete")

    assert _ids(index.search([1, 0], k=5)) == ["a1"]
    assert index.snapshot().generation == generation


@pytest.mark.asyncio
async def test_delete_and_insert_commit_together(tmp_path, make_entry):
    index = VectorIndex(tmp_path)
    await index.insert([make_entry("old", [1, 0], source_id="a.pdf")])
    before = index.snapshot()

    async with index.transaction() as txn:
        assert txn.delete_source("a.pdf") == 1
        txn.insert([make_entry("new", [1, 0], source_id="a.pdf")])

    assert _ids(index.search([1, 0], k=5, snapshot=before)) == ["old"]
    assert _ids(index.search([1, 0], k=5)) == ["new"]


@pytest.mark.asyncio
async def test_dimension_mismatch(tmp_path, make_entry):
    index = VectorIndex(tmp_path)
    await index.insert([make_entry("x", [1, 0, 0])])

    with pytest.raises(DimensionMismatch):
        await index.insert([make_entry("y", [1, 0, 0, 0])])
    with pytest.raises(DimensionMismatch):
        index.search([1, 0], k=1)
    assert len(index) == 1


@pytest.mark.asyncio
async def test_empty_index_accepts_new_dimension(tmp_path, make_entry):
    index = VectorIndex(tmp_path)
    await index.insert([make_entry("x", [1, 0, 0], source_id="a.pdf")])

    async with index.transaction() as txn:
        txn.delete_source("a.pdf")
        txn.insert([make_entry("y", [1, 0, 0, 0], source_id="a.pdf")])

    assert index.dimension == 4
    assert _ids(index.search([1, 0, 0, 0], k=1)) == ["y"]


@pytest.mark.asyncio
async def test_model_mismatch(tmp_path, make_entry):
    index = VectorIndex(tmp_path, model_id="fake-32")
    await index.insert([make_entry("x", [1, 0])])

    with pytest.raises(DimensionMismatch):
        await index.insert([make_entry("y", [0, 1], model_id="other-model")])


@pytest.mark.asyncio
async def test_persist_and_load_round_trip(tmp_path, make_entry):
    index = VectorIndex(tmp_path, compaction_threshold=1.0)
    await index.insert([
        make_entry("a1", [1, 0, 0], source_id="a.pdf", page=2, source_modified=5.0),
        make_entry("b1", [0, 1, 0], source_id="b.pdf", source_type=SourceType.STATIC),
        make_entry("c1", [0, 0, 1], source_id="c.pdf"),
    ])
    await index.delete_by_source("c.pdf")
    await index.persist()

    loaded = VectorIndex(tmp_path, model_id="fake-32")
    assert await loaded.load() is True

    assert len(loaded) == 2
    assert loaded.source_ids() == ["a.pdf", "b.pdf"]
    assert loaded.get_stats()["tombstones"] == 1
    assert _ids(loaded.search([1, 0.2, 0], k=5)) == _ids(index.search([1, 0.2, 0], k=5))

    entry = loaded.snapshot().entry("a1")
    assert entry.provenance.page == 2
    assert entry.source_modified == 5.0
    assert loaded.snapshot().entry("b1").provenance.source_type == SourceType.STATIC


@pytest.mark.asyncio
async def test_load_without_files(tmp_path):
    assert await VectorIndex(tmp_path).load() is False


@pytest.mark.asyncio
async def test_persist_empty_index(tmp_path):
    await VectorIndex(tmp_path, model_id="fake-32").persist()

    loaded = VectorIndex(tmp_path)
    assert await loaded.load() is True
    assert len(loaded) == 0


@pytest.mark.asyncio
async def test_load_rejects_other_schema_version(tmp_path, make_entry):
    index = VectorIndex(tmp_path)
    await index.insert([make_entry("x", [1, 0])])
    await index.persist()

    metadata = json.loads(index.metadata_path.read_text())
    metadata["schema_version"] = SCHEMA_VERSION + 1
    index.metadata_path.write_text(json.dumps(metadata))

    with pytest.raises(IndexCorruption):
        await VectorIndex(tmp_path).load()


@pytest.mark.asyncio
async def test_load_detects_tampered_vectors(tmp_path, make_entry):
    index = VectorIndex(tmp_path)
    await index.insert([make_entry("x", [1, 0])])
    await index.persist()

    data = bytearray(index.index_path.read_bytes())
    data[-1] ^= 0xFF
    index.index_path.write_bytes(bytes(data))

    with pytest.raises(IndexCorruption):
        await VectorIndex(tmp_path).load()


@pytest.mark.asyncio
async def test_load_rejects_unreadable_metadata(tmp_path):
    (tmp_path / "index.json").write_text("{not json")

    with pytest.raises(IndexCorruption):
        await VectorIndex(tmp_path).load()


@pytest.mark.asyncio
async def test_load_with_different_model(tmp_path, make_entry):
    index = VectorIndex(tmp_path)
    await index.insert([make_entry("x", [1, 0])])
    await index.persist()

    with pytest.raises(DimensionMismatch):
        await VectorIndex(tmp_path, model_id="another-model").load()


@pytest.mark.asyncio
async def test_clear(tmp_path, make_entry):
    index = VectorIndex(tmp_path)
    await index.insert([make_entry("x", [1, 0])])

    await index.clear()

    assert len(index) == 0
    assert index.dimension is None
    await index.insert([make_entry("y", [1, 0, 0])])
    assert index.dimension == 3


@pytest.mark.asyncio
async def test_clear_forgets_model(tmp_path, make_entry):
    index = VectorIndex(tmp_path, model_id="fake-32")
    await index.insert([make_entry("x", [1, 0])])

    await index.clear()

    assert index.model_id is None
    await index.insert([make_entry("y", [0, 1], model_id="other-model")])
    assert index.model_id == "other-model"


@pytest.mark.asyncio
async def test_search_leaves_query_vector_untouched(tmp_path, make_entry):
    index = VectorIndex(tmp_path)
    await index.insert([make_entry("x", [1, 0, 0]), make_entry("y", [0, 1, 0])])
    query = np.array([3.0, 4.0, 0.0], dtype=np.float32)

    first = index.search(query, k=2)
    second = index.search(query, k=2)

    np.testing.assert_array_equal(query, np.array([3.0, 4.0, 0.0], dtype=np.float32))
    assert [(r.entry.chunk_id, r.score) for r in first] == [
        (r.entry.chunk_id, r.score) for r in second
    ]
    assert first[0].score == pytest.approx(0.8, abs=1e-6)
