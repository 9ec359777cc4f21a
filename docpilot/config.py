"""Application configuration with sensible defaults."""
import os
from pathlib import Path

from docpilot.errors import InvalidConfig

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DOCPILOT_DATA_DIR", str(BASE_DIR / "data")))
DOCS_DIR = Path(os.getenv("DOCPILOT_DOCS_DIR", str(BASE_DIR / "docs")))

# Embedding service
EMBEDDING_PROVIDER = os.getenv("EMBEDDING_PROVIDER", "ollama")  # ollama | local
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "mxbai-embed-large:latest")
EMBED_TIMEOUT = float(os.getenv("EMBED_TIMEOUT", "60.0"))
EMBED_BATCH_SIZE = int(os.getenv("EMBED_BATCH_SIZE", "16"))
EMBED_CONCURRENCY = int(os.getenv("EMBED_CONCURRENCY", "4"))
EMBED_QUERY_CONCURRENCY = int(os.getenv("EMBED_QUERY_CONCURRENCY", "2"))  # separate from indexing
EMBED_MAX_ATTEMPTS = int(os.getenv("EMBED_MAX_ATTEMPTS", "3"))
EMBED_BACKOFF_BASE = float(os.getenv("EMBED_BACKOFF_BASE", "0.5"))
EMBED_BACKOFF_MAX = float(os.getenv("EMBED_BACKOFF_MAX", "8.0"))

# Chunking (character-based to avoid tokenizer inconsistencies)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "1000"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "150"))
CHUNK_LOOKBACK = int(os.getenv("CHUNK_LOOKBACK", "80"))  # max chars scanned for a boundary

# Retrieval
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "8"))
RELEVANCE_THRESHOLD = float(os.getenv("RELEVANCE_THRESHOLD", "0.3"))
LEXICAL_BOOST = float(os.getenv("LEXICAL_BOOST", "0.1"))    # 0 disables re-ranking
CONTEXT_BUDGET_CHARS = int(os.getenv("CONTEXT_BUDGET_CHARS", "4000"))
REINDEX_WAIT_TIMEOUT = float(os.getenv("REINDEX_WAIT_TIMEOUT", "2.0"))

# Index maintenance
COMPACTION_THRESHOLD = float(os.getenv("COMPACTION_THRESHOLD", "0.3"))
DEBOUNCE_SECONDS = float(os.getenv("DEBOUNCE_SECONDS", "1.5"))
CANCEL_GRACE_SECONDS = float(os.getenv("CANCEL_GRACE_SECONDS", "5.0"))
INDEX_CONCURRENCY = int(os.getenv("INDEX_CONCURRENCY", "4"))  # files processed at once

# Storage
VECTOR_INDEX_PATH = DATA_DIR / "vectors.index"
INDEX_METADATA_PATH = DATA_DIR / "index.json"
DB_PATH = DATA_DIR / "sources.sqlite"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")  # json | console


def validate_chunking(chunk_size: int, chunk_overlap: int) -> None:
    """Reject chunk settings that cannot make forward progress.

    Raises:
        InvalidConfig: If chunk_size <= 0, overlap is negative, or
            overlap >= chunk_size
    """
    if chunk_size <= 0:
        raise InvalidConfig(f"Chunk size must be positive, got {chunk_size}")
    if chunk_overlap < 0:
        raise InvalidConfig(f"Chunk overlap must not be negative, got {chunk_overlap}")
    if chunk_overlap >= chunk_size:
        raise InvalidConfig(
            f"Overlap ({chunk_overlap}) must be less than chunk size ({chunk_size})"
        )


def validate() -> None:
    """Validate the environment-derived settings at startup."""
    validate_chunking(CHUNK_SIZE, CHUNK_OVERLAP)
    if min(EMBED_BATCH_SIZE, EMBED_CONCURRENCY, EMBED_QUERY_CONCURRENCY, EMBED_MAX_ATTEMPTS) <= 0:
        raise InvalidConfig("Embedding batch size, concurrency and attempts must be positive")
    if INDEX_CONCURRENCY <= 0:
        raise InvalidConfig(f"Index concurrency must be positive, got {INDEX_CONCURRENCY}")
    if not 0.0 < COMPACTION_THRESHOLD <= 1.0:
        raise InvalidConfig(
            f"Compaction threshold must be in (0, 1], got {COMPACTION_THRESHOLD}"
        )
    if EMBEDDING_PROVIDER not in ("ollama", "local"):
        raise InvalidConfig(f"Unknown embedding provider: {EMBEDDING_PROVIDER}")
