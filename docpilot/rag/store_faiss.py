"""FAISS vector index for chunk embeddings.

Handles:
- Cosine similarity search (vectors are L2-normalized on insert, inner product index)
- Incremental insert and delete-by-source with tombstoning and compaction
- Versioned snapshots: readers search a complete, immutable version while a
  single writer prepares the next one
- Versioned on-disk persistence with corruption detection
"""
import asyncio
import hashlib
import json
import os
import tempfile
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence

import faiss
import numpy as np
import structlog

from docpilot import config
from docpilot.errors import DimensionMismatch, IndexCorruption
from docpilot.rag.models import IndexEntry, Provenance, ScoredEntry, SourceType

logger = structlog.get_logger()

SCHEMA_VERSION = 2


class _SlotStorage:
    """Append-only vector and entry storage shared by index versions.

    A slot number is the row of a vector in the FAISS index. Versions only
    ever read slots they know about, so appends never disturb older readers.
    """

    def __init__(self, dimension: int, index: Optional[faiss.Index] = None):
        self.dimension = dimension
        self.faiss = index if index is not None else faiss.IndexFlatIP(dimension)
        self.entries: List[Optional[IndexEntry]] = []

    @property
    def ntotal(self) -> int:
        return self.faiss.ntotal

    def append(self, entries: Sequence[IndexEntry], matrix: np.ndarray) -> int:
        base = self.ntotal
        self.faiss.add(matrix)
        self.entries.extend(entries)
        return base


@dataclass(frozen=True)
class IndexVersion:
    """An immutable, complete view of the index."""

    storage: Optional[_SlotStorage]
    slots: Mapping[str, int] = field(default_factory=dict)
    by_source: Mapping[str, FrozenSet[str]] = field(default_factory=dict)
    tombstones: FrozenSet[int] = frozenset()
    generation: int = 0

    def __len__(self) -> int:
        return len(self.slots)

    @property
    def tombstone_ratio(self) -> float:
        if self.storage is None or self.storage.ntotal == 0:
            return 0.0
        return len(self.tombstones) / self.storage.ntotal

    def entry(self, chunk_id: str) -> Optional[IndexEntry]:
        slot = self.slots.get(chunk_id)
        if slot is None:
            return None
        return self.storage.entries[slot]

    def entries(self) -> List[IndexEntry]:
        """Live entries in slot order."""
        return [self.storage.entries[s] for s in sorted(self.slots.values())]


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """Return an L2-normalized float32 copy; the input is never modified."""
    matrix = np.array(matrix, dtype=np.float32, order="C", copy=True)
    faiss.normalize_L2(matrix)
    return matrix


class IndexTransaction:
    """Pending changes against one base version.

    Nothing is visible to readers until the owning index commits the
    transaction; abandoning it leaves the index untouched.
    """

    def __init__(self, index: "VectorIndex", base: IndexVersion):
        self._index = index
        self.base = base
        self._deleted_chunk_ids: set = set()
        self._deleted_sources: set = set()
        self._pending: Dict[str, IndexEntry] = {}

    def delete_source(self, source_id: str) -> int:
        """Delete all entries whose provenance source matches.

        Returns:
            Number of committed entries that will be removed
        """
        self._deleted_sources.add(source_id)
        removed = set(self.base.by_source.get(source_id, ()))
        self._deleted_chunk_ids |= removed
        for chunk_id in [c for c, e in self._pending.items() if e.source_id == source_id]:
            del self._pending[chunk_id]
        return len(removed)

    def insert(self, entries: Sequence[IndexEntry]) -> None:
        """Stage entries; a chunk_id already present is replaced.

        Raises:
            DimensionMismatch: Dimension or model disagrees with the index
        """
        for entry in entries:
            self._index._check_entry(entry, self)
            self._pending[entry.chunk_id] = entry

    @property
    def remaining_live(self) -> int:
        """Committed entries that survive this transaction's deletes."""
        return len(self.base) - len(self._deleted_chunk_ids)

    @property
    def dimension(self) -> Optional[int]:
        """Dimension established for this transaction's result.

        An index left with no live entries may take a new dimension.
        """
        if self.remaining_live > 0:
            return self.base.storage.dimension
        if self._pending:
            return int(np.asarray(next(iter(self._pending.values())).vector).shape[-1])
        return None

    @property
    def is_empty(self) -> bool:
        return not self._pending and not self._deleted_chunk_ids


class VectorIndex:
    """FAISS-backed vector index with a single writer and snapshot readers."""

    def __init__(
        self,
        index_dir: Path = None,
        model_id: Optional[str] = None,
        compaction_threshold: Optional[float] = None,
    ):
        """Initialize an empty index.

        Args:
            index_dir: Directory for the persisted index (default: DATA_DIR)
            model_id: Embedding model identifier; established by the first
                insert when not given
            compaction_threshold: Tombstone ratio that triggers compaction
        """
        self.index_dir = Path(index_dir) if index_dir else config.DATA_DIR
        self.index_path = self.index_dir / config.VECTOR_INDEX_PATH.name
        self.metadata_path = self.index_dir / config.INDEX_METADATA_PATH.name
        self.model_id = model_id
        self.compaction_threshold = (
            config.COMPACTION_THRESHOLD if compaction_threshold is None else compaction_threshold
        )

        self.dimension: Optional[int] = None
        self._version = IndexVersion(storage=None)
        self._write_lock = asyncio.Lock()

        logger.info(
            "vector_index_initialized",
            index_dir=str(self.index_dir),
            model_id=self.model_id,
        )

    # Read side

    def snapshot(self) -> IndexVersion:
        """The last committed version. Never changes once returned."""
        return self._version

    def __len__(self) -> int:
        return len(self._version)

    def has_source(self, source_id: str) -> bool:
        return source_id in self._version.by_source

    def source_ids(self) -> List[str]:
        return sorted(self._version.by_source)

    def search(
        self,
        query_vector,
        k: int,
        snapshot: Optional[IndexVersion] = None,
    ) -> List[ScoredEntry]:
        """Find the k most similar live entries by cosine similarity.

        Ties are broken by newer source timestamp, then by chunk_id.

        Args:
            query_vector: Query embedding (need not be normalized)
            k: Maximum number of results
            snapshot: Version to search (default: latest committed)

        Returns:
            Up to k ScoredEntry objects, best first

        Raises:
            DimensionMismatch: If the query dimension disagrees with the index
        """
        version = snapshot if snapshot is not None else self._version
        query = np.asarray(query_vector, dtype=np.float32).reshape(1, -1)

        if version.storage is not None and query.shape[1] != version.storage.dimension:
            raise DimensionMismatch(
                f"Query dimension mismatch: expected {version.storage.dimension}, "
                f"got {query.shape[1]}"
            )
        if k <= 0 or not version.slots:
            return []

        query = normalize_rows(query)
        storage = version.storage
        total = storage.ntotal
        k = min(k, len(version.slots))

        # Dead or not-yet-visible rows may outrank live ones; over-fetch by their count
        fetch = min(total, k + (total - len(version.slots)))
        while True:
            scores, ids = storage.faiss.search(query, fetch)
            live = []
            for score, slot in zip(scores[0].tolist(), ids[0].tolist()):
                if slot < 0 or slot >= len(storage.entries):
                    continue
                entry = storage.entries[slot]
                if entry is None or version.slots.get(entry.chunk_id) != slot:
                    continue
                live.append(ScoredEntry(entry=entry, score=float(score)))

            # Entries tied with the k-th score might sit just past the fetch window
            last_raw = float(scores[0][-1]) if fetch else float("-inf")
            if fetch >= total or (len(live) >= k and last_raw < live[k - 1].score):
                break
            fetch = min(total, fetch * 2)

        live.sort(key=lambda s: (-s.score, -s.entry.source_modified, s.entry.chunk_id))
        results = live[:k]

        logger.debug("vector_search_completed", top_k=k, results_found=len(results))
        return results

    # Write side

    def _check_entry(self, entry: IndexEntry, txn: IndexTransaction) -> None:
        dimension = int(np.asarray(entry.vector).shape[-1])
        established = txn.dimension
        if established is not None and dimension != established:
            raise DimensionMismatch(
                f"Embedding dimension mismatch: expected {established}, got {dimension}. "
                "The index must be rebuilt."
            )
        if self.model_id is not None and entry.model_id != self.model_id and txn.remaining_live > 0:
            raise DimensionMismatch(
                f"Entry from model {entry.model_id} cannot join an index built "
                f"with {self.model_id}. The index must be rebuilt."
            )
        for pending in txn._pending.values():
            if pending.model_id != entry.model_id:
                raise DimensionMismatch("Mixed embedding models in one batch")
            break

    @asynccontextmanager
    async def transaction(self):
        """Serialize a writer and publish its changes atomically on exit.

        Usage:
            async with index.transaction() as txn:
                txn.delete_source(source_id)
                txn.insert(entries)

        If the block raises, nothing is published.
        """
        async with self._write_lock:
            txn = IndexTransaction(self, self._version)
            yield txn
            self._commit(txn)

    def _commit(self, txn: IndexTransaction) -> None:
        if txn.is_empty:
            return

        base = txn.base
        slots = dict(base.slots)
        by_source = {k: set(v) for k, v in base.by_source.items()}
        tombstones: set = set()

        def drop(chunk_id: str) -> None:
            slot = slots.pop(chunk_id, None)
            if slot is None:
                return
            entry = base.storage.entries[slot]
            members = by_source.get(entry.source_id)
            if members is not None:
                members.discard(chunk_id)
                if not members:
                    del by_source[entry.source_id]

        for chunk_id in txn._deleted_chunk_ids:
            drop(chunk_id)

        pending = list(txn._pending.values())
        for entry in pending:
            drop(entry.chunk_id)

        storage = base.storage
        if pending:
            dimension = int(np.asarray(pending[0].vector).shape[-1])
            if storage is None or storage.dimension != dimension:
                # Only reachable when nothing live remains: start fresh storage
                storage = _SlotStorage(dimension)
            if self.model_id is None or not slots:
                self.model_id = pending[0].model_id

            matrix = normalize_rows(np.vstack([np.asarray(e.vector, dtype=np.float32) for e in pending]))
            stored = [
                IndexEntry(
                    chunk_id=e.chunk_id,
                    vector=matrix[i],
                    text=e.text,
                    provenance=e.provenance,
                    model_id=e.model_id,
                    source_modified=e.source_modified,
                )
                for i, e in enumerate(pending)
            ]
            first = storage.append(stored, matrix)
            for offset, entry in enumerate(stored):
                slots[entry.chunk_id] = first + offset
                by_source.setdefault(entry.source_id, set()).add(entry.chunk_id)
            self.dimension = dimension

        if storage is not None:
            # Every stored row that no live chunk points at is dead
            tombstones = set(range(storage.ntotal)) - set(slots.values())

        version = IndexVersion(
            storage=storage,
            slots=slots,
            by_source={k: frozenset(v) for k, v in by_source.items()},
            tombstones=frozenset(tombstones),
            generation=base.generation + 1,
        )
        if version.tombstone_ratio > self.compaction_threshold:
            version = self._compacted(version)

        self._version = version

        logger.info(
            "index_commit",
            generation=version.generation,
            inserted=len(pending),
            deleted_sources=len(txn._deleted_sources),
            live_entries=len(version),
            tombstones=len(version.tombstones),
        )

    def _compacted(self, version: IndexVersion) -> IndexVersion:
        """Copy live rows into fresh storage, dropping tombstoned ones."""
        old = version.storage
        live_slots = sorted(version.slots.values())
        storage = _SlotStorage(old.dimension)
        slots: Dict[str, int] = {}
        if live_slots:
            matrix = np.vstack([old.faiss.reconstruct(int(s)) for s in live_slots]).astype(np.float32)
            entries = [old.entries[s] for s in live_slots]
            storage.append(entries, matrix)
            slots = {e.chunk_id: i for i, e in enumerate(entries)}

        logger.info(
            "index_compacted",
            removed_rows=old.ntotal - len(live_slots),
            live_entries=len(live_slots),
        )
        return IndexVersion(
            storage=storage,
            slots=slots,
            by_source=version.by_source,
            tombstones=frozenset(),
            generation=version.generation,
        )

    async def insert(self, entries: Sequence[IndexEntry]) -> None:
        """Insert entries as one atomic commit.

        Raises:
            DimensionMismatch: If an entry disagrees with the index dimension or model
        """
        async with self.transaction() as txn:
            txn.insert(entries)

    async def delete_by_source(self, source_id: str) -> int:
        """Remove all entries of a source. No-op when none match."""
        async with self.transaction() as txn:
            return txn.delete_source(source_id)

    async def compact(self) -> None:
        """Force compaction regardless of the tombstone ratio."""
        async with self._write_lock:
            if self._version.storage is not None and self._version.tombstones:
                self._version = self._compacted(self._version)

    async def clear(self) -> None:
        """Drop every entry and forget the established dimension and model."""
        async with self._write_lock:
            self._version = IndexVersion(storage=None, generation=self._version.generation + 1)
            self.dimension = None
            self.model_id = None
        logger.warning("index_cleared", index_dir=str(self.index_dir))

    # Persistence

    async def persist(self) -> None:
        """Write the committed version to disk.

        Raises:
            RuntimeError: If writing fails
        """
        async with self._write_lock:
            version = self._version
            try:
                await asyncio.to_thread(self._write, version)
            except OSError as e:
                raise RuntimeError(f"Failed to persist index: {e}") from e

        logger.info(
            "index_persisted",
            index_path=str(self.index_path),
            live_entries=len(version),
            rows=version.storage.ntotal if version.storage else 0,
        )

    def _write(self, version: IndexVersion) -> None:
        self.index_dir.mkdir(parents=True, exist_ok=True)
        storage = version.storage
        rows = storage.ntotal if storage else 0

        index_sha256 = None
        if storage is not None:
            with _atomic_path(self.index_path) as tmp:
                faiss.write_index(storage.faiss, str(tmp))
                index_sha256 = _file_sha256(tmp)
        elif self.index_path.exists():
            self.index_path.unlink()

        live = sorted(version.slots.items(), key=lambda item: item[1])
        metadata = {
            "schema_version": SCHEMA_VERSION,
            "model_id": self.model_id,
            "dimension": storage.dimension if storage else None,
            "rows": rows,
            "index_sha256": index_sha256,
            "generation": version.generation,
            "tombstones": sorted(version.tombstones),
            "entries": [_entry_to_json(storage.entries[slot], slot) for _, slot in live],
        }
        with _atomic_path(self.metadata_path) as tmp:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(metadata, f)

    async def load(self) -> bool:
        """Load the persisted index, replacing the in-memory state.

        Returns:
            True if an index was loaded, False if none exists on disk

        Raises:
            IndexCorruption: Unreadable files or an incompatible schema version
            DimensionMismatch: The index was built with a different model
        """
        if not self.metadata_path.exists():
            logger.info("no_index_found", path=str(self.metadata_path))
            return False

        async with self._write_lock:
            version, model_id = await asyncio.to_thread(self._read)
            if self.model_id is not None and model_id is not None and model_id != self.model_id:
                raise DimensionMismatch(
                    f"Index was built with {model_id}, but the current model is "
                    f"{self.model_id}. Please rebuild the index."
                )
            self._version = version
            self.model_id = model_id or self.model_id
            self.dimension = version.storage.dimension if version.storage else None

        logger.info(
            "index_loaded",
            live_entries=len(version),
            tombstones=len(version.tombstones),
            dimension=self.dimension,
            model_id=self.model_id,
        )
        return True

    def _read(self):
        try:
            with open(self.metadata_path, "r", encoding="utf-8") as f:
                metadata = json.load(f)
        except (OSError, ValueError) as e:
            raise IndexCorruption(f"Failed to load index metadata: {e}") from e

        if not isinstance(metadata, dict) or metadata.get("schema_version") != SCHEMA_VERSION:
            found = metadata.get("schema_version") if isinstance(metadata, dict) else None
            raise IndexCorruption(
                f"Index schema version {found} is not {SCHEMA_VERSION}; a rebuild is required"
            )

        try:
            rows = int(metadata["rows"])
            dimension = metadata["dimension"]
            model_id = metadata["model_id"]
            if rows == 0 and dimension is None:
                return IndexVersion(storage=None), model_id

            if not self.index_path.exists():
                raise IndexCorruption(f"Index file missing: {self.index_path}")
            if _file_sha256(self.index_path) != metadata["index_sha256"]:
                raise IndexCorruption("Index file does not match its metadata checksum")
            try:
                raw = faiss.read_index(str(self.index_path))
            except RuntimeError as e:
                raise IndexCorruption(f"Failed to read FAISS index: {e}") from e
            if raw.ntotal != rows or raw.d != int(dimension):
                raise IndexCorruption(
                    f"Index holds {raw.ntotal} rows of dim {raw.d}, metadata says "
                    f"{rows} rows of dim {dimension}"
                )

            storage = _SlotStorage(int(dimension), raw)
            storage.entries = [None] * rows
            slots: Dict[str, int] = {}
            by_source: Dict[str, set] = {}
            for item in metadata["entries"]:
                slot = int(item["slot"])
                if not 0 <= slot < rows or item["chunk_id"] in slots:
                    raise IndexCorruption(f"Invalid slot {slot} for {item['chunk_id']}")
                entry = _entry_from_json(item, raw.reconstruct(slot), model_id)
                storage.entries[slot] = entry
                slots[entry.chunk_id] = slot
                by_source.setdefault(entry.source_id, set()).add(entry.chunk_id)
            tombstones = frozenset(int(t) for t in metadata["tombstones"])
        except (KeyError, TypeError, ValueError) as e:
            raise IndexCorruption(f"Malformed index metadata: {e}") from e

        version = IndexVersion(
            storage=storage,
            slots=slots,
            by_source={k: frozenset(v) for k, v in by_source.items()},
            tombstones=tombstones | frozenset(set(range(rows)) - set(slots.values())),
            generation=int(metadata.get("generation", 0)),
        )
        return version, model_id

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the index."""
        version = self._version
        return {
            "live_entries": len(version),
            "sources": len(version.by_source),
            "rows": version.storage.ntotal if version.storage else 0,
            "tombstones": len(version.tombstones),
            "tombstone_ratio": round(version.tombstone_ratio, 3),
            "dimension": self.dimension,
            "model_id": self.model_id,
            "generation": version.generation,
            "index_exists_on_disk": self.metadata_path.exists(),
        }


def _entry_to_json(entry: IndexEntry, slot: int) -> Dict[str, Any]:
    prov = entry.provenance
    return {
        "slot": slot,
        "chunk_id": entry.chunk_id,
        "text": entry.text,
        "source_modified": entry.source_modified,
        "provenance": {
            "source_id": prov.source_id,
            "page": prov.page,
            "start_offset": prov.start_offset,
            "end_offset": prov.end_offset,
            "title": prov.title,
            "source_type": prov.source_type.value,
        },
    }


def _entry_from_json(item: Dict[str, Any], vector: np.ndarray, model_id: str) -> IndexEntry:
    prov = item["provenance"]
    return IndexEntry(
        chunk_id=item["chunk_id"],
        vector=np.asarray(vector, dtype=np.float32),
        text=item["text"],
        provenance=Provenance(
            source_id=prov["source_id"],
            page=int(prov["page"]),
            start_offset=int(prov["start_offset"]),
            end_offset=int(prov["end_offset"]),
            title=prov.get("title", ""),
            source_type=SourceType(prov.get("source_type", SourceType.USER_UPLOADED.value)),
        ),
        model_id=model_id,
        source_modified=float(item.get("source_modified", 0.0)),
    )


def _file_sha256(path: Path) -> str:
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        while block := f.read(1 << 16):
            sha256.update(block)
    return sha256.hexdigest()


@contextmanager
def _atomic_path(target: Path):
    """Yield a temp path beside target; move it into place on success.

    The temp file is fsynced before the rename and removed on any failure.
    """
    fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
    os.close(fd)
    tmp = Path(tmp_name)
    try:
        yield tmp
        with open(tmp, "rb+") as f:
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, target)
    finally:
        if tmp.exists():
            tmp.unlink()
