"""Embedding service clients.

Two implementations of the embed capability:
- OllamaEmbedder: remote embeddings over the Ollama HTTP API
- LocalHashEmbedder: deterministic offline embeddings from hashed text features
"""
import hashlib
import re
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import List, Optional

import httpx
import numpy as np
import structlog

from docpilot import config
from docpilot.errors import EmbeddingServiceError

logger = structlog.get_logger()

RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header (delta seconds or HTTP date) into seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class OllamaEmbedder:
    """Async client for the Ollama embedding endpoint."""

    def __init__(
        self,
        base_url: str = None,
        model: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the embedder.

        Args:
            base_url: Ollama API base URL (defaults to config.OLLAMA_BASE_URL)
            model: Embedding model name (defaults to config.EMBEDDING_MODEL)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url or config.OLLAMA_BASE_URL
        self.model = model or config.EMBEDDING_MODEL
        self.timeout = timeout or config.EMBED_TIMEOUT
        self.transport = transport

    @property
    def model_id(self) -> str:
        return f"ollama:{self.model}"

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Embed a batch of texts.

        Args:
            texts: Texts to embed

        Returns:
            One vector per input text, in input order

        Raises:
            EmbeddingServiceError: On transport, HTTP or payload errors
        """
        if not texts:
            return []

        payload = {"model": self.model, "input": list(texts)}

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                logger.debug(
                    "ollama_embedding_request",
                    model=self.model,
                    batch_size=len(texts),
                )
                response = await client.post(f"{self.base_url}/api/embed", json=payload)
                response.raise_for_status()
                data = response.json()

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            retry_after = parse_retry_after(e.response.headers.get("Retry-After"))
            logger.error(
                "ollama_embedding_http_error",
                status_code=status,
                retry_after=retry_after,
            )
            raise EmbeddingServiceError(
                f"Embedding request failed with HTTP {status}",
                retryable=status in RETRYABLE_STATUS,
                retry_after=retry_after,
            ) from e
        except httpx.TransportError as e:
            logger.error("ollama_connection_error", error=str(e), base_url=self.base_url)
            raise EmbeddingServiceError(
                f"Embedding service unreachable: {e}", retryable=True
            ) from e
        except ValueError as e:
            raise EmbeddingServiceError(f"Invalid embedding response: {e}") from e

        embeddings = data.get("embeddings") if isinstance(data, dict) else None
        if not isinstance(embeddings, list) or len(embeddings) != len(texts):
            raise EmbeddingServiceError(
                f"Expected {len(texts)} embeddings, got "
                f"{len(embeddings) if isinstance(embeddings, list) else 'none'}"
            )

        logger.debug(
            "ollama_embedding_response",
            model=self.model,
            dimension=len(embeddings[0]) if embeddings else 0,
        )
        return embeddings


class LocalHashEmbedder:
    """Deterministic embedder that needs no service.

    Character n-grams and words are hashed into a fixed number of signed
    buckets, weighted by relative frequency, then L2-normalized. Identical
    text always yields the identical vector.
    """

    WORD_PATTERN = re.compile(r"[\w]+", re.UNICODE)
    STOP_WORDS = frozenset(
        "the is at which on a an and or but in with to for of as by that this "
        "it from be are was were been has have had do does did will would "
        "should could may might can must shall".split()
    )

    def __init__(self, dimension: int = 384, ngram_range: tuple = (2, 4)):
        self.dimension = dimension
        self.ngram_range = ngram_range

    @property
    def model_id(self) -> str:
        return f"local-hash-{self.dimension}"

    def _bucket(self, feature: str) -> tuple:
        digest = hashlib.md5(feature.encode("utf-8")).digest()
        index = int.from_bytes(digest[:4], "little") % self.dimension
        sign = 1.0 if digest[4] & 1 else -1.0
        return index, sign

    def embed_one(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimension, dtype=np.float32)
        text = text.lower().strip()
        if not text:
            return vector

        features = {}
        low, high = self.ngram_range
        for n in range(low, high + 1):
            for i in range(len(text) - n + 1):
                gram = text[i : i + n]
                if gram.strip():
                    features[f"c:{gram}"] = features.get(f"c:{gram}", 0) + 1
        for word in self.WORD_PATTERN.findall(text):
            if word not in self.STOP_WORDS:
                # Whole words weigh more than fragments
                features[f"w:{word}"] = features.get(f"w:{word}", 0) + 3

        total = float(sum(features.values())) or 1.0
        for feature, count in features.items():
            index, sign = self._bucket(feature)
            vector[index] += sign * (count / total)

        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector /= norm
        return vector

    async def embed(self, texts: List[str]) -> List[List[float]]:
        return [self.embed_one(text).tolist() for text in texts]


def create_embedder(provider: str = None):
    """Create the configured embedding capability."""
    provider = provider or config.EMBEDDING_PROVIDER
    if provider == "local":
        return LocalHashEmbedder()
    return OllamaEmbedder()
