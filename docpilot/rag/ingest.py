"""Indexing pipeline for project documents.

Orchestrates, per file:
- Format detection and content hashing (unchanged files are skipped)
- Parsing into text blocks (worker thread)
- Chunking
- Embedding through the gateway
- One atomic delete-then-insert commit to the vector index
"""
import asyncio
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional

import structlog

from docpilot import config
from docpilot.db import SourceRegistry
from docpilot.errors import DimensionMismatch
from docpilot.rag.chunker import TextChunker
from docpilot.rag.embeddings import EmbeddingGateway
from docpilot.rag.models import (
    FileState,
    FileStatus,
    IndexEntry,
    SourceDocument,
    SourceType,
    content_hash,
)
from docpilot.rag.parsers import SUPPORTED_EXTENSIONS, DocumentParser, detect_format
from docpilot.rag.store_faiss import VectorIndex

logger = structlog.get_logger()


class ReindexTracker:
    """Tracks which sources are being re-indexed so queries can wait on them."""

    def __init__(self):
        self._events: Dict[str, asyncio.Event] = {}

    def begin(self, source_id: str) -> None:
        if source_id not in self._events:
            self._events[source_id] = asyncio.Event()

    def end(self, source_id: str) -> None:
        event = self._events.pop(source_id, None)
        if event is not None:
            event.set()

    def is_reindexing(self, source_id: str) -> bool:
        return source_id in self._events

    async def wait_for(self, source_ids: Iterable[str], timeout: float) -> bool:
        """Wait until none of the sources is being re-indexed.

        Returns:
            True if they all finished within the timeout
        """
        events = [self._events[s] for s in source_ids if s in self._events]
        if not events:
            return True
        try:
            await asyncio.wait_for(asyncio.gather(*(e.wait() for e in events)), timeout)
            return True
        except asyncio.TimeoutError:
            return False


class IndexingPipeline:
    """The single writer of the vector index."""

    def __init__(
        self,
        index: VectorIndex,
        gateway: EmbeddingGateway,
        registry: SourceRegistry,
        parser: Optional[DocumentParser] = None,
        chunker: Optional[TextChunker] = None,
        tracker: Optional[ReindexTracker] = None,
        concurrency: Optional[int] = None,
    ):
        """Initialize the pipeline.

        Args:
            index: Vector index to commit to
            gateway: Embedding gateway
            registry: Source registry remembering committed hashes
            parser: Document parser (default: all supported formats)
            chunker: Text chunker (default settings from config)
            tracker: Re-index tracker shared with the retriever
            concurrency: Files processed at once (default from config)
        """
        self.index = index
        self.gateway = gateway
        self.registry = registry
        self.parser = parser or DocumentParser()
        self.chunker = chunker or TextChunker()
        self.tracker = tracker or ReindexTracker()

        self.rebuild_required = False
        self._statuses: Dict[str, FileStatus] = {}
        self._source_locks: Dict[str, asyncio.Lock] = {}
        self._inflight: set = set()
        self._file_slots = asyncio.Semaphore(concurrency or config.INDEX_CONCURRENCY)

        # Lifetime totals; each run log entry counts its own batch
        self.stats = self._empty_stats()

        logger.info(
            "indexing_pipeline_initialized",
            model_id=self.gateway.model_id,
            chunk_size=self.chunker.chunk_size,
            chunk_overlap=self.chunker.chunk_overlap,
        )

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {
            "files_processed": 0,
            "files_failed": 0,
            "files_skipped": 0,
            "chunks_created": 0,
        }

    @staticmethod
    def discover_files(directory: Path) -> List[Path]:
        """Find supported documents under a directory, in a stable order.

        Raises:
            FileNotFoundError: If the directory doesn't exist
        """
        directory = Path(directory)
        if not directory.exists():
            raise FileNotFoundError(f"Documents directory not found: {directory}")

        files = sorted(
            p for p in directory.rglob("*")
            if p.is_file() and p.suffix.lower() in SUPPORTED_EXTENSIONS
        )
        logger.info("documents_discovered", count=len(files), directory=str(directory))
        return files

    def file_statuses(self) -> List[FileStatus]:
        return [self._statuses[k] for k in sorted(self._statuses)]

    def status(self, source_id: str) -> Optional[FileStatus]:
        return self._statuses.get(source_id)

    def _set_state(self, source_id: str, state: FileState, **fields) -> FileStatus:
        status = FileStatus(source_id=source_id, state=state, **fields)
        self._statuses[source_id] = status
        logger.debug("file_state_changed", source_id=source_id, state=state.value)
        return status

    async def index_file(
        self,
        path: Path,
        source_type: SourceType = SourceType.USER_UPLOADED,
    ) -> FileStatus:
        """Index one file. Never raises for per-file problems.

        Args:
            path: File to index; its string form is the source_id
            source_type: Static course material or user upload

        Returns:
            FileStatus, COMMITTED (possibly skipped as unchanged) or FAILED
        """
        path = Path(path)
        source_id = str(path)
        lock = self._source_locks.setdefault(source_id, asyncio.Lock())

        async with lock, self._file_slots:
            self.tracker.begin(source_id)
            try:
                return await self._index_file(path, source_id, source_type)
            finally:
                self.tracker.end(source_id)

    async def _index_file(self, path: Path, source_id: str, source_type: SourceType) -> FileStatus:
        self._set_state(source_id, FileState.PENDING)
        format_tag = None

        try:
            format_tag = detect_format(path)
            data = await asyncio.to_thread(path.read_bytes)
            modified_at = (await asyncio.to_thread(path.stat)).st_mtime
            document = SourceDocument(
                source_id=source_id,
                format=format_tag,
                content_hash=content_hash(data),
                modified_at=modified_at,
                source_type=source_type,
            )

            record = self.registry.get(source_id)
            if (
                record is not None
                and record["state"] == FileState.COMMITTED.value
                and record["content_hash"] == document.content_hash
                and (self.index.has_source(source_id) or record["chunk_count"] == 0)
            ):
                self.stats["files_skipped"] += 1
                logger.info("file_unchanged_skipped", source_id=source_id)
                return self._set_state(
                    source_id,
                    FileState.COMMITTED,
                    content_hash=document.content_hash,
                    chunk_count=record["chunk_count"],
                    skipped=True,
                )

            self._set_state(source_id, FileState.PARSING)
            blocks = await asyncio.to_thread(
                self.parser.parse, data, format_tag, source_id, source_type
            )

            self._set_state(source_id, FileState.CHUNKING)
            chunks = self.chunker.chunk(blocks)

            self._set_state(source_id, FileState.EMBEDDING)
            vectors = await self.gateway.embed([c.text for c in chunks])

            # The whole batch exists before the index is touched
            entries = [
                IndexEntry(
                    chunk_id=chunk.chunk_id,
                    vector=vector.vector,
                    text=chunk.text,
                    provenance=chunk.provenance,
                    model_id=vector.model_id,
                    source_modified=document.modified_at,
                )
                for chunk, vector in zip(chunks, vectors)
            ]

            async with self.index.transaction() as txn:
                replaced = txn.delete_source(source_id)
                txn.insert(entries)

            self.registry.upsert_committed(
                source_id,
                format_tag=format_tag.value,
                source_type=source_type,
                content_hash=document.content_hash,
                modified_at=document.modified_at,
                chunk_count=len(entries),
            )

        except Exception as e:
            return await self._fail(source_id, e, format_tag, source_type)

        self.stats["files_processed"] += 1
        self.stats["chunks_created"] += len(entries)

        logger.info(
            "file_indexed",
            source_id=source_id,
            format=format_tag.value,
            chunks_created=len(entries),
            chunks_replaced=replaced,
        )
        return self._set_state(
            source_id,
            FileState.COMMITTED,
            content_hash=document.content_hash,
            chunk_count=len(entries),
        )

    async def _fail(self, source_id: str, error: Exception, format_tag, source_type) -> FileStatus:
        reason = f"{type(error).__name__}: {error}"
        if isinstance(error, DimensionMismatch):
            self.rebuild_required = True

        logger.error(
            "file_indexing_failed",
            source_id=source_id,
            error=str(error),
            error_type=type(error).__name__,
        )

        # A failed file is excluded from retrieval until it indexes cleanly
        await self.index.delete_by_source(source_id)
        self.registry.mark_failed(
            source_id,
            reason,
            format_tag=format_tag.value if format_tag else "",
            source_type=source_type,
        )
        self.stats["files_failed"] += 1
        return self._set_state(source_id, FileState.FAILED, reason=reason)

    async def index_batch(
        self,
        paths: Iterable[Path],
        source_types: Optional[Mapping[str, SourceType]] = None,
        progress_callback: Optional[Callable[[int, int, Path], None]] = None,
    ) -> List[FileStatus]:
        """Index files concurrently, then persist the index.

        One file's failure never blocks the others.

        Args:
            paths: Files to index
            source_types: Optional source_id -> SourceType overrides
            progress_callback: Optional callback(current, total, path)

        Returns:
            One FileStatus per input path, in input order

        Raises:
            asyncio.CancelledError: If the batch was cancelled
        """
        paths = [Path(p) for p in paths]
        source_types = source_types or {}
        done = 0

        async def run(path: Path) -> FileStatus:
            nonlocal done
            status = await self.index_file(
                path, source_types.get(str(path), SourceType.USER_UPLOADED)
            )
            done += 1
            if progress_callback:
                progress_callback(done, len(paths), path)
            return status

        logger.info("index_batch_started", file_count=len(paths))

        tasks = [asyncio.ensure_future(run(p)) for p in paths]
        self._inflight.update(tasks)
        try:
            statuses = await asyncio.gather(*tasks)
        finally:
            self._inflight.difference_update(tasks)

        # Counted from this batch only; other index_file calls may overlap it
        counts = {
            "files_failed": sum(s.state == FileState.FAILED for s in statuses),
            "files_skipped": sum(s.skipped for s in statuses),
            "chunks_created": sum(
                s.chunk_count
                for s in statuses
                if s.state == FileState.COMMITTED and not s.skipped
            ),
        }

        await self.index.persist()
        self.registry.insert_index_run(
            model_id=self.index.model_id,
            dimension=self.index.dimension,
            chunk_size=self.chunker.chunk_size,
            chunk_overlap=self.chunker.chunk_overlap,
            total_files=len(paths),
            failed_files=counts["files_failed"],
            skipped_files=counts["files_skipped"],
            total_chunks=counts["chunks_created"],
            metadata={"rebuild_required": self.rebuild_required},
        )

        logger.info("index_batch_completed", file_count=len(paths), **counts)
        return list(statuses)

    async def remove_source(self, source_id: str) -> int:
        """Drop a deleted file from the index and the registry."""
        async with self._source_locks.setdefault(source_id, asyncio.Lock()):
            removed = await self.index.delete_by_source(source_id)
            self.registry.delete(source_id)
            self._statuses.pop(source_id, None)

        logger.info("source_removed", source_id=source_id, chunks_removed=removed)
        return removed

    @property
    def busy(self) -> bool:
        return any(not t.done() for t in self._inflight)

    async def cancel(self, grace: Optional[float] = None) -> bool:
        """Cancel in-flight file tasks.

        Files that have not committed keep their previous index state. Waits
        at most `grace` seconds for tasks to unwind, then stops waiting.

        Returns:
            True if every task finished within the grace period
        """
        grace = config.CANCEL_GRACE_SECONDS if grace is None else grace
        tasks = [t for t in self._inflight if not t.done()]
        if not tasks:
            return True

        for task in tasks:
            task.cancel()
        _, pending = await asyncio.wait(tasks, timeout=grace)

        if pending:
            logger.warning("indexing_cancel_grace_expired", pending=len(pending), grace=grace)
        logger.info("indexing_cancelled", cancelled=len(tasks))
        return not pending

    def reset(self) -> None:
        """Forget per-file statuses (before a full rebuild)."""
        self._statuses.clear()
        self.rebuild_required = False
