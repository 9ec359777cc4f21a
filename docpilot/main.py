"""Knowledge base facade for the host IDE.

The editor integration calls into `KnowledgeBase`: it loads (or rebuilds)
the index at startup, indexes the project on open, re-indexes files on change
and answers retrieval queries for the prompt-construction layer.
"""
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import structlog

from docpilot import config
from docpilot.db import SourceRegistry
from docpilot.embedding_client import create_embedder
from docpilot.errors import DimensionMismatch, IndexCorruption
from docpilot.rag.chunker import TextChunker
from docpilot.rag.embeddings import EmbeddingGateway
from docpilot.rag.ingest import IndexingPipeline, ReindexTracker
from docpilot.rag.models import Citation, FileState, FileStatus, RetrievalResult, SourceType
from docpilot.rag.retriever import Retriever
from docpilot.rag.store_faiss import VectorIndex
from docpilot.rag.watcher import DocumentWatcher, FileChangeDebouncer

logger = structlog.get_logger()


def configure_logging(level: str = None, fmt: str = None) -> None:
    """Configure structlog once for the process.

    Args:
        level: Log level name (default from config)
        fmt: "json" or "console" (default from config)
    """
    level = (level or config.LOG_LEVEL).upper()
    fmt = fmt or config.LOG_FORMAT

    logging.basicConfig(format="%(message)s", level=getattr(logging, level, logging.INFO))

    renderer = (
        structlog.dev.ConsoleRenderer()
        if fmt == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


class KnowledgeBase:
    """Owns the index, pipeline, retriever and watcher for one project."""

    def __init__(
        self,
        data_dir: Path = None,
        static_dirs: Iterable[Path] = (),
        embedder=None,
        chunker: Optional[TextChunker] = None,
        debounce_seconds: float = None,
        reindex_wait: float = None,
        top_k: int = None,
    ):
        """Wire up the engine.

        Args:
            data_dir: Where the index and registry live (default from config)
            static_dirs: Directories whose files count as static course material
            embedder: Embed capability (default: configured provider)
            chunker: Text chunker (default settings from config)
            debounce_seconds: Quiet period before a changed file is re-indexed
            reindex_wait: How long a query waits on a source being re-indexed
            top_k: Number of nearest chunks considered per query
        """
        self.data_dir = Path(data_dir) if data_dir else config.DATA_DIR
        self.static_dirs = [Path(d) for d in static_dirs]

        self.gateway = EmbeddingGateway(embedder or create_embedder())
        self.index = VectorIndex(self.data_dir, model_id=self.gateway.model_id)
        self.registry = SourceRegistry(self.data_dir / config.DB_PATH.name)
        self.tracker = ReindexTracker()
        self.pipeline = IndexingPipeline(
            self.index, self.gateway, self.registry, chunker=chunker, tracker=self.tracker
        )
        self.retriever = Retriever(
            self.index,
            self.gateway,
            top_k=top_k,
            tracker=self.tracker,
            reindex_wait=reindex_wait,
        )
        self.debouncer = FileChangeDebouncer(self._reindex_changed, delay=debounce_seconds)
        self.watcher: Optional[DocumentWatcher] = None
        self._batches: set = set()

    def source_type_for(self, path) -> SourceType:
        path = Path(path)
        for directory in self.static_dirs:
            try:
                path.relative_to(directory)
                return SourceType.STATIC
            except ValueError:
                continue
        return SourceType.USER_UPLOADED

    async def start(self) -> bool:
        """Load the persisted index; reset it if it is unusable.

        Returns:
            True if an existing index was loaded
        """
        try:
            return await self.index.load()
        except (IndexCorruption, DimensionMismatch) as e:
            logger.warning("index_rebuild_triggered", reason=str(e), error_type=type(e).__name__)
            await self._reset()
            return False

    async def _reset(self) -> None:
        await self.index.clear()
        self.index.model_id = self.gateway.model_id
        self.registry.clear()
        self.pipeline.reset()

    async def _run_batch(self, paths: List[Path], progress_callback=None) -> List[FileStatus]:
        types = {str(p): self.source_type_for(p) for p in paths}
        batch = asyncio.ensure_future(self.pipeline.index_batch(paths, types, progress_callback))
        self._batches.add(batch)
        try:
            return await batch
        finally:
            self._batches.discard(batch)

    async def on_project_open(
        self, source_ids: Iterable[str], progress_callback=None
    ) -> List[FileStatus]:
        """Index the project's documents and forget ones no longer present.

        Unchanged files are skipped without parsing or embedding.
        """
        paths = [Path(s) for s in source_ids]
        wanted = {str(p) for p in paths}

        known = {row["source_id"] for row in self.registry.list_all()}
        known.update(self.index.source_ids())
        for stale in sorted(known - wanted):
            await self.pipeline.remove_source(stale)

        logger.info("project_opened", sources=len(paths), removed=len(known - wanted))
        return await self._run_batch(paths, progress_callback)

    def on_file_changed(self, source_id: str) -> None:
        """Schedule a debounced re-index. Call from the event loop thread."""
        self.debouncer.touch(str(source_id))

    async def _reindex_changed(self, source_id: str) -> None:
        path = Path(source_id)
        exists = await asyncio.to_thread(path.exists)
        if exists:
            await self.pipeline.index_file(path, self.source_type_for(path))
        else:
            await self.pipeline.remove_source(source_id)
        await self.index.persist()

    async def retrieve(
        self,
        query: str,
        context_budget: Optional[int] = None,
        min_relevance: Optional[float] = None,
    ) -> RetrievalResult:
        """Retrieve context for a query.

        Raises:
            EmbeddingServiceError: If the query cannot be embedded
        """
        return await self.retriever.retrieve(query, context_budget, min_relevance)

    def citations(self, result: RetrievalResult, excerpt_chars: int = 200) -> List[Citation]:
        return result.citations(excerpt_chars)

    def file_statuses(self) -> List[FileStatus]:
        return self.pipeline.file_statuses()

    def stats(self) -> Dict[str, Any]:
        """Index, registry and embedding statistics for the settings panel."""
        failed = self.registry.list_all(FileState.FAILED)
        return {
            **self.index.get_stats(),
            "registered_sources": len(self.registry.list_all()),
            "failed_sources": [
                {"source_id": row["source_id"], "reason": row["reason"]} for row in failed
            ],
            "rebuild_required": self.pipeline.rebuild_required,
            "embedding": dict(self.gateway.stats, cache_size=self.gateway.cache_size),
            "last_run": self.registry.get_latest_index_run(),
        }

    async def rebuild(
        self, source_ids: Optional[Iterable[str]] = None, progress_callback=None
    ) -> List[FileStatus]:
        """Drop the index and re-index from scratch.

        Args:
            source_ids: Files to index (default: every source the registry knows)
            progress_callback: Optional callback(current, total, path)
        """
        if source_ids is None:
            source_ids = [row["source_id"] for row in self.registry.list_all()]
        source_ids = list(source_ids)

        await self.pipeline.cancel()
        await self._reset()
        self.gateway.clear_cache()

        logger.info("index_rebuild_started", sources=len(source_ids))
        return await self._run_batch([Path(s) for s in source_ids], progress_callback)

    def watch(self, directories: Iterable[Path]) -> DocumentWatcher:
        """Start forwarding file-system changes into on_file_changed."""
        if self.watcher is None:
            self.watcher = DocumentWatcher(list(directories), self.on_file_changed)
            self.watcher.start()
        return self.watcher

    async def close(self, grace: Optional[float] = None) -> None:
        """Stop watching, cancel in-flight indexing and persist the index."""
        if self.watcher is not None:
            self.watcher.stop()
            self.watcher = None

        self.debouncer.cancel_all()
        clean = await self.pipeline.cancel(grace)
        for batch in list(self._batches):
            batch.cancel()

        await self.index.persist()
        logger.info("knowledge_base_closed", clean_shutdown=clean)
