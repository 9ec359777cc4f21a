"""Data model shared by the ingestion and retrieval components."""
import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np


class FormatTag(str, Enum):
    """Document formats the parser understands."""

    SLIDES = "slides"
    PDF = "pdf"
    LEGACY_DOC = "legacy-doc"


class SourceType(str, Enum):
    """Where a document came from."""

    STATIC = "static"  # course material bundled with the project
    USER_UPLOADED = "user_uploaded"


class FileState(str, Enum):
    """Per-file indexing state machine."""

    PENDING = "pending"
    PARSING = "parsing"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    COMMITTED = "committed"
    FAILED = "failed"


def content_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def text_hash(text: str) -> str:
    """SHA-256 hex digest of UTF-8 text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SourceDocument:
    """One ingested file. Replaced, never mutated, on re-index."""

    source_id: str
    format: FormatTag
    content_hash: str
    modified_at: float
    source_type: SourceType = SourceType.USER_UPLOADED


@dataclass(frozen=True)
class Provenance:
    """Where a piece of text came from.

    page is 1-based (page or slide number). Offsets are character offsets
    relative to the block text.
    """

    source_id: str
    page: int
    start_offset: int
    end_offset: int
    title: str = ""
    source_type: SourceType = SourceType.USER_UPLOADED


@dataclass(frozen=True)
class TextBlock:
    """Raw text of one page/slide/section with its provenance."""

    text: str
    provenance: Provenance


@dataclass(frozen=True)
class Chunk:
    """A bounded span of block text, the unit that gets embedded."""

    chunk_id: str
    text: str
    provenance: Provenance
    block_index: int

    @property
    def length(self) -> int:
        return len(self.text)

    @staticmethod
    def make_id(source_id: str, block_index: int, start_offset: int) -> str:
        """Deterministic chunk ID so unchanged files re-chunk to the same IDs."""
        key = f"{source_id}\x00{block_index}\x00{start_offset}"
        return hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


@dataclass(frozen=True, eq=False)
class EmbeddingVector:
    """A fixed-dimension vector tagged with the model that produced it."""

    vector: np.ndarray
    model_id: str
    chunk_id: Optional[str] = None

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])


@dataclass(frozen=True, eq=False)
class IndexEntry:
    """The unit stored in and returned by the vector index."""

    chunk_id: str
    vector: np.ndarray
    text: str
    provenance: Provenance
    model_id: str
    source_modified: float = 0.0

    @property
    def source_id(self) -> str:
        return self.provenance.source_id


@dataclass(frozen=True)
class ScoredEntry:
    """An index entry with its relevance score for one query."""

    entry: IndexEntry
    score: float


@dataclass(frozen=True)
class Citation:
    """A reference to retrieved material for display next to an answer."""

    source: str
    page: int
    excerpt: str
    score: float


@dataclass
class RetrievalResult:
    """Ranked chunks for one query, truncated to a context budget."""

    items: List[ScoredEntry] = field(default_factory=list)
    budget: int = 0
    relevance_threshold: float = 0.0

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)

    @property
    def size(self) -> int:
        """Combined character size of the assembled chunks."""
        return sum(len(item.entry.text) for item in self.items)

    @property
    def has_relevant_material(self) -> bool:
        return bool(self.items) and self.items[0].score >= self.relevance_threshold

    def pairs(self) -> List[Tuple[IndexEntry, float]]:
        return [(item.entry, item.score) for item in self.items]

    def citations(self, excerpt_chars: int = 200) -> List[Citation]:
        """Build citations for the prompt layer and the chat UI."""
        return [
            Citation(
                source=item.entry.provenance.source_id,
                page=item.entry.provenance.page,
                excerpt=item.entry.text[:excerpt_chars],
                score=item.score,
            )
            for item in self.items
        ]

    def as_context(self) -> str:
        """Format the chunks as numbered sources for an LLM prompt."""
        parts = []
        for i, item in enumerate(self.items, 1):
            prov = item.entry.provenance
            label = prov.title or f"p.{prov.page}"
            parts.append(f"[Source {i}: {prov.source_id} {label}]\n{item.entry.text.strip()}\n")
        return "\n".join(parts)


@dataclass(frozen=True)
class FileStatus:
    """Outcome of indexing one file."""

    source_id: str
    state: FileState
    reason: Optional[str] = None
    content_hash: Optional[str] = None
    chunk_count: int = 0
    skipped: bool = False  # unchanged content, short-circuited
