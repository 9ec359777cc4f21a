"""SQLite source registry for the indexing pipeline.

Stores:
- One row per known source file: content hash, state, failure reason
- A log of indexing runs (model, chunk settings, counts)

The vector index owns the entries themselves; this registry only remembers
what was committed, so unchanged files can be skipped on the next pass.
"""
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from docpilot import config
from docpilot.rag.models import FileState, SourceType

logger = structlog.get_logger()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SourceRegistry:
    """Per-source indexing state backed by a SQLite file."""

    def __init__(self, db_path: Path = None):
        self.db_path = Path(db_path) if db_path else config.DB_PATH
        self.init_database()

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection with row_factory set to sqlite3.Row."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_database(self) -> None:
        """Create tables if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sources (
                    source_id TEXT PRIMARY KEY,
                    format TEXT NOT NULL,
                    source_type TEXT NOT NULL,
                    content_hash TEXT,
                    modified_at REAL NOT NULL DEFAULT 0,
                    state TEXT NOT NULL,
                    reason TEXT,
                    chunk_count INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS index_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    indexed_at TEXT NOT NULL,
                    model_id TEXT,
                    dimension INTEGER,
                    chunk_size INTEGER NOT NULL,
                    chunk_overlap INTEGER NOT NULL,
                    total_files INTEGER NOT NULL,
                    failed_files INTEGER NOT NULL,
                    skipped_files INTEGER NOT NULL,
                    total_chunks INTEGER NOT NULL,
                    metadata_json TEXT
                )
            """)

            conn.commit()
            logger.debug("database_initialized", db_path=str(self.db_path))

        except Exception as e:
            conn.rollback()
            logger.error("database_init_failed", error=str(e))
            raise
        finally:
            conn.close()

    def get(self, source_id: str) -> Optional[Dict[str, Any]]:
        """Get the registry row for a source, or None if unknown."""
        conn = self.get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM sources WHERE source_id = ?", (source_id,)
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def upsert_committed(
        self,
        source_id: str,
        format_tag: str,
        source_type: SourceType,
        content_hash: str,
        modified_at: float,
        chunk_count: int,
    ) -> None:
        """Record that a source's entries are committed to the index."""
        self._upsert(
            source_id,
            format_tag=format_tag,
            source_type=source_type,
            content_hash=content_hash,
            modified_at=modified_at,
            state=FileState.COMMITTED,
            reason=None,
            chunk_count=chunk_count,
        )

    def mark_failed(
        self,
        source_id: str,
        reason: str,
        format_tag: str = "",
        source_type: SourceType = SourceType.USER_UPLOADED,
    ) -> None:
        """Record a failed source. Its hash is cleared so the next pass retries it."""
        self._upsert(
            source_id,
            format_tag=format_tag,
            source_type=source_type,
            content_hash=None,
            modified_at=0.0,
            state=FileState.FAILED,
            reason=reason,
            chunk_count=0,
        )

    def _upsert(self, source_id: str, **fields) -> None:
        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute("""
                INSERT INTO sources (
                    source_id, format, source_type, content_hash, modified_at,
                    state, reason, chunk_count, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(source_id) DO UPDATE SET
                    format = excluded.format,
                    source_type = excluded.source_type,
                    content_hash = excluded.content_hash,
                    modified_at = excluded.modified_at,
                    state = excluded.state,
                    reason = excluded.reason,
                    chunk_count = excluded.chunk_count,
                    updated_at = excluded.updated_at
            """, (
                source_id,
                str(getattr(fields["format_tag"], "value", fields["format_tag"])),
                SourceType(fields["source_type"]).value,
                fields["content_hash"],
                fields["modified_at"],
                FileState(fields["state"]).value,
                fields["reason"],
                fields["chunk_count"],
                _now(),
            ))
            conn.commit()

        except Exception as e:
            conn.rollback()
            logger.error("source_upsert_failed", error=str(e), source_id=source_id)
            raise
        finally:
            conn.close()

    def delete(self, source_id: str) -> bool:
        """Forget a source. Returns True if a row was removed."""
        conn = self.get_connection()
        try:
            cursor = conn.execute("DELETE FROM sources WHERE source_id = ?", (source_id,))
            conn.commit()
            return cursor.rowcount > 0
        except Exception as e:
            conn.rollback()
            logger.error("source_delete_failed", error=str(e), source_id=source_id)
            raise
        finally:
            conn.close()

    def list_all(self, state: Optional[FileState] = None) -> List[Dict[str, Any]]:
        """List known sources, optionally filtered by state."""
        conn = self.get_connection()
        try:
            if state is None:
                rows = conn.execute("SELECT * FROM sources ORDER BY source_id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM sources WHERE state = ? ORDER BY source_id",
                    (FileState(state).value,),
                ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def clear(self) -> int:
        """Delete all source rows. Used when rebuilding the index from scratch.

        Returns:
            Number of rows deleted
        """
        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            count = cursor.execute("SELECT COUNT(*) FROM sources").fetchone()[0]
            cursor.execute("DELETE FROM sources")
            conn.commit()

            logger.info("sources_cleared", count=count)
            return count

        except Exception as e:
            conn.rollback()
            logger.error("sources_clear_failed", error=str(e))
            raise
        finally:
            conn.close()

    def insert_index_run(
        self,
        model_id: Optional[str],
        dimension: Optional[int],
        chunk_size: int,
        chunk_overlap: int,
        total_files: int,
        failed_files: int,
        skipped_files: int,
        total_chunks: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Record an indexing run.

        Args:
            model_id: Embedding model identifier
            dimension: Embedding dimension, if known
            chunk_size: Chunk size in characters
            chunk_overlap: Chunk overlap in characters
            total_files: Files in the batch
            failed_files: Files that ended Failed
            skipped_files: Files short-circuited as unchanged
            total_chunks: Chunks committed during the run
            metadata: Optional additional metadata as dict

        Returns:
            ID of the inserted row
        """
        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute("""
                INSERT INTO index_runs (
                    indexed_at, model_id, dimension, chunk_size, chunk_overlap,
                    total_files, failed_files, skipped_files, total_chunks,
                    metadata_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                _now(),
                model_id,
                dimension,
                chunk_size,
                chunk_overlap,
                total_files,
                failed_files,
                skipped_files,
                total_chunks,
                json.dumps(metadata) if metadata else None,
            ))

            conn.commit()
            row_id = cursor.lastrowid
            logger.info("index_run_recorded", id=row_id, total_files=total_files)
            return row_id

        except Exception as e:
            conn.rollback()
            logger.error("index_run_insert_failed", error=str(e))
            raise
        finally:
            conn.close()

    def get_latest_index_run(self) -> Optional[Dict[str, Any]]:
        """Get the most recent indexing run, or None."""
        conn = self.get_connection()
        try:
            row = conn.execute("SELECT * FROM index_runs ORDER BY id DESC LIMIT 1").fetchone()
            if row is None:
                return None
            run = dict(row)
            if run["metadata_json"]:
                run["metadata"] = json.loads(run["metadata_json"])
            return run
        finally:
            conn.close()
