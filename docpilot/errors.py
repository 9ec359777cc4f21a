"""Error taxonomy for ingestion and retrieval.

Per-file errors (parsing, chunking, embedding) are reported as a file
status by the indexing pipeline. Index-level errors (dimension mismatch,
corruption) require a full rebuild.
"""
from typing import Optional


class DocPilotError(Exception):
    """Base class for all engine errors."""


class UnsupportedFormat(DocPilotError):
    """The format tag is unknown or the bytes do not carry its magic."""


class CorruptDocument(DocPilotError):
    """The container could not be decoded by the format's reader."""


class EmptyDocument(DocPilotError):
    """No extractable text. Non-fatal: the parser logs it and yields nothing."""


class InvalidConfig(DocPilotError, ValueError):
    """Chunking or embedding settings are inconsistent."""


class EmbeddingServiceError(DocPilotError):
    """The external embedding capability failed.

    Attributes:
        retryable: Whether retrying the same request may succeed
        retry_after: Seconds the service asked us to wait, if it said so
    """

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.retryable = retryable
        self.retry_after = retry_after


class DimensionMismatch(DocPilotError):
    """Vector dimensionality or embedding model disagrees with the index.

    Surfaced to the user as "index must be rebuilt".
    """


class IndexCorruption(DocPilotError):
    """The persisted index is unreadable or from an incompatible schema."""
