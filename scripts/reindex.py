#!/usr/bin/env python
"""Index project documents and optionally run a query against the index.

Usage:
    python scripts/reindex.py                        # Incremental reindex of DOCS_DIR
    python scripts/reindex.py --rebuild              # Full rebuild from scratch
    python scripts/reindex.py --query "what is X?"   # Index, then print retrieved context
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

import structlog

from docpilot import config
from docpilot.embedding_client import LocalHashEmbedder
from docpilot.errors import DocPilotError
from docpilot.main import KnowledgeBase, configure_logging
from docpilot.rag.ingest import IndexingPipeline
from docpilot.rag.models import FileState

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, file_path: Path):
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {file_path.name[:30]:<30}",
            end="",
            flush=True,
        )
        if self.verbose:
            print()

    def finish(self, statuses, kb: KnowledgeBase):
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        committed = [s for s in statuses if s.state == FileState.COMMITTED and not s.skipped]
        skipped = [s for s in statuses if s.skipped]
        failed = [s for s in statuses if s.state == FileState.FAILED]
        chunks = sum(s.chunk_count for s in committed)

        print(f"{'=' * 60}")
        print("  Indexing Complete!")
        print(f"{'=' * 60}\n")
        print(f"  Files indexed:     {len(committed)}")
        print(f"  Files unchanged:   {len(skipped)}")
        print(f"  Files failed:      {len(failed)}")
        print(f"  Chunks created:    {chunks}")
        print(f"  Index entries:     {len(kb.index)}")
        print(f"  Time elapsed:      {elapsed_seconds:.1f}s")
        print(f"\n{'=' * 60}\n")

        for status in failed:
            print(f"  FAILED {status.source_id}: {status.reason}")
        if failed:
            print()


def print_context(result):
    if not result.items:
        print("No matching material in the index.\n")
        return
    if not result.has_relevant_material:
        print("(Top result is below the relevance threshold.)\n")
    print(result.as_context())
    print(f"-- {len(result)} chunk(s), {result.size}/{result.budget} chars")
    for citation in result.citations(excerpt_chars=60):
        print(f"   {citation.score:.3f}  {citation.source} p.{citation.page}")
    print()


async def main():
    """Main entry point for reindex script."""
    parser = argparse.ArgumentParser(
        description="Index slide decks, PDFs and Word documents for retrieval",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/reindex.py                          # Incremental reindex
  python scripts/reindex.py --rebuild                # Full rebuild from scratch
  python scripts/reindex.py --query "cache design"   # Show retrieved context
        """,
    )
    parser.add_argument(
        "--docs-dir",
        type=Path,
        default=None,
        help=f"Documents directory (default: {config.DOCS_DIR})",
    )
    parser.add_argument(
        "--static-dir",
        type=Path,
        action="append",
        default=[],
        help="Directory of static course material (repeatable)",
    )
    parser.add_argument(
        "--rebuild",
        action="store_true",
        help="Rebuild index from scratch (clears existing data)",
    )
    parser.add_argument("--query", "-q", default=None, help="Run a retrieval after indexing")
    parser.add_argument(
        "--budget",
        type=int,
        default=None,
        help=f"Context budget in characters (default: {config.CONTEXT_BUDGET_CHARS})",
    )
    parser.add_argument(
        "--local-embeddings",
        action="store_true",
        help="Use the offline hashing embedder instead of the Ollama service",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show verbose progress output")

    args = parser.parse_args()

    configure_logging(level="DEBUG" if args.verbose else "WARNING", fmt="console")
    progress = ProgressReporter(verbose=args.verbose)
    docs_dir = args.docs_dir or config.DOCS_DIR

    try:
        config.validate()
        embedder = LocalHashEmbedder() if args.local_embeddings else None
        kb = KnowledgeBase(static_dirs=args.static_dir, embedder=embedder)

        print("\nConfiguration:")
        print(f"   Documents directory: {docs_dir}")
        print(f"   Data directory:      {kb.data_dir}")
        print(f"   Embedding model:     {kb.gateway.model_id}")
        print(f"   Chunk size:          {config.CHUNK_SIZE} chars")
        print(f"   Chunk overlap:       {config.CHUNK_OVERLAP} chars")

        await kb.start()
        paths = IndexingPipeline.discover_files(docs_dir)
        for static_dir in args.static_dir:
            paths.extend(p for p in IndexingPipeline.discover_files(static_dir) if p not in paths)

        action = "Rebuilding" if args.rebuild else "Indexing"
        progress.start(f"{action} {len(paths)} document(s)")

        if args.rebuild:
            statuses = await kb.rebuild([str(p) for p in paths], progress.update)
        else:
            statuses = await kb.on_project_open([str(p) for p in paths], progress.update)
        progress.finish(statuses, kb)

        if args.query:
            result = await kb.retrieve(args.query, args.budget)
            print_context(result)

        await kb.close()

        if any(s.state == FileState.FAILED for s in statuses):
            sys.exit(1)

    except KeyboardInterrupt:
        print("\n\nIndexing cancelled by user.\n")
        sys.exit(1)

    except FileNotFoundError as e:
        print(f"\nError: {e}\n")
        sys.exit(1)

    except DocPilotError as e:
        print(f"\nError: {e}\n")
        logger.error("reindex_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
