"""Embedding gateway: batching, caching and retries around the embed capability."""
import asyncio
from typing import Dict, List, Optional, Sequence

import numpy as np
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from docpilot import config
from docpilot.errors import DimensionMismatch, EmbeddingServiceError
from docpilot.rag.models import EmbeddingVector, text_hash

logger = structlog.get_logger()


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, EmbeddingServiceError) and error.retryable


class EmbeddingGateway:
    """Wraps an embedder (anything with model_id and async embed(texts)).

    Vectors are memoized by content hash for the lifetime of the gateway,
    so identical chunk text across files and re-indexes is embedded once.
    Texts already in flight are shared with concurrent indexing callers.
    """

    def __init__(
        self,
        embedder,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
    ):
        self.embedder = embedder
        self.batch_size = batch_size or config.EMBED_BATCH_SIZE
        self.max_attempts = max_attempts or config.EMBED_MAX_ATTEMPTS
        self.backoff_base = config.EMBED_BACKOFF_BASE if backoff_base is None else backoff_base
        self.backoff_max = config.EMBED_BACKOFF_MAX if backoff_max is None else backoff_max
        self._semaphore = asyncio.Semaphore(concurrency or config.EMBED_CONCURRENCY)
        self._query_semaphore = asyncio.Semaphore(config.EMBED_QUERY_CONCURRENCY)
        self._backoff = wait_exponential(multiplier=self.backoff_base, max=self.backoff_max)
        self._cache: Dict[str, np.ndarray] = {}
        self._inflight: Dict[str, asyncio.Future] = {}

        self.stats = {
            "requests": 0,
            "texts_embedded": 0,
            "cache_hits": 0,
            "shared_hits": 0,
            "retries": 0,
        }

        logger.info(
            "embedding_gateway_initialized",
            model=self.model_id,
            batch_size=self.batch_size,
            max_attempts=self.max_attempts,
        )

    @property
    def model_id(self) -> str:
        return self.embedder.model_id

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def clear_cache(self) -> None:
        """Forget memoized vectors (on explicit rebuild)."""
        self._cache.clear()
        logger.info("embedding_cache_cleared")

    def _wait(self, retry_state: RetryCallState) -> float:
        delay = self._backoff(retry_state)
        error = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        self.stats["retries"] += 1
        logger.warning(
            "embedding_retry_scheduled",
            attempt=retry_state.attempt_number,
            wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(retry_state.outcome.exception()),
        )

    async def _call(self, batch: List[str]) -> List[List[float]]:
        try:
            vectors = await self.embedder.embed(batch)
        except EmbeddingServiceError:
            raise
        except Exception as e:
            raise EmbeddingServiceError(
                f"Embedding capability failed: {e}", retryable=False
            ) from e

        if len(vectors) != len(batch):
            raise EmbeddingServiceError(
                f"Embedding capability returned {len(vectors)} vectors for {len(batch)} texts"
            )
        return vectors

    async def _embed_batch(
        self, batch: List[str], semaphore: asyncio.Semaphore
    ) -> List[List[float]]:
        async with semaphore:
            self.stats["requests"] += 1
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.max_attempts),
                    wait=self._wait,
                    retry=retry_if_exception(_is_retryable),
                    before_sleep=self._before_sleep,
                    reraise=True,
                ):
                    with attempt:
                        vectors = await self._call(batch)
            except EmbeddingServiceError as e:
                logger.error(
                    "embedding_batch_failed",
                    batch_size=len(batch),
                    retryable=e.retryable,
                    error=str(e),
                )
                raise
        return vectors

    async def embed(self, texts: Sequence[str]) -> List[EmbeddingVector]:
        """Embed texts, one vector per input in input order.

        Texts already being embedded by another caller are awaited rather
        than requested again.

        Raises:
            EmbeddingServiceError: The capability failed after retries
            DimensionMismatch: Returned vectors differ in dimensionality
        """
        return await self._embed(texts, self._semaphore, shared=True)

    async def embed_query(self, text: str) -> EmbeddingVector:
        """Embed one query text.

        Queries use their own concurrency slots and never wait on indexing
        requests, so retrieval stays responsive while files are embedded.
        """
        return (await self._embed([text], self._query_semaphore, shared=False))[0]

    async def _embed(
        self, texts: Sequence[str], semaphore: asyncio.Semaphore, shared: bool
    ) -> List[EmbeddingVector]:
        if not texts:
            return []

        keys = [text_hash(t) for t in texts]
        found: Dict[str, np.ndarray] = {}
        missing: Dict[str, str] = {}
        joined: Dict[str, asyncio.Future] = {}
        for key, text in zip(keys, texts):
            if key in found or key in missing or key in joined:
                continue
            if key in self._cache:
                found[key] = self._cache[key]
            elif shared and key in self._inflight:
                joined[key] = self._inflight[key]
            else:
                missing[key] = text
        self.stats["cache_hits"] += len(texts) - len(missing) - len(joined)
        self.stats["shared_hits"] += len(joined)

        if missing:
            found.update(await self._embed_missing(missing, semaphore, shared))
        if joined:
            # shield: a cancelled waiter must not cancel another caller's request
            results = await asyncio.gather(*(asyncio.shield(f) for f in joined.values()))
            found.update(zip(joined, results))

        vectors = [found[key] for key in keys]
        if len({v.shape[0] for v in vectors}) > 1:
            raise DimensionMismatch("Cached and fresh embeddings differ in dimension")

        model_id = self.model_id
        return [EmbeddingVector(vector=v, model_id=model_id) for v in vectors]

    async def _embed_missing(
        self, missing: Dict[str, str], semaphore: asyncio.Semaphore, shared: bool
    ) -> Dict[str, np.ndarray]:
        futures: Dict[str, asyncio.Future] = {}
        if shared:
            loop = asyncio.get_running_loop()
            for key in missing:
                futures[key] = self._inflight[key] = loop.create_future()

        pending_keys = list(missing)
        batches = [
            pending_keys[i : i + self.batch_size]
            for i in range(0, len(pending_keys), self.batch_size)
        ]
        tasks = [
            asyncio.ensure_future(self._embed_batch([missing[k] for k in batch], semaphore))
            for batch in batches
        ]
        try:
            results = await asyncio.gather(*tasks)

            fresh: Dict[str, np.ndarray] = {}
            for batch, vectors in zip(batches, results):
                for key, vector in zip(batch, vectors):
                    fresh[key] = np.asarray(vector, dtype=np.float32)

            dimensions = {v.shape[0] for v in fresh.values()}
            if len(dimensions) > 1:
                raise DimensionMismatch(
                    f"Embedding capability returned mixed dimensions {sorted(dimensions)}"
                )
        except BaseException as e:
            for task in tasks:
                task.cancel()
            self._settle(futures, error=e)
            raise

        self._cache.update(fresh)
        self.stats["texts_embedded"] += len(fresh)
        self._settle(futures, fresh=fresh)
        return fresh

    def _settle(self, futures: Dict[str, asyncio.Future], fresh=None, error=None) -> None:
        """Resolve in-flight futures and drop them from the shared table."""
        for key, future in futures.items():
            if self._inflight.get(key) is future:
                del self._inflight[key]
            if future.done():
                continue
            if error is None:
                future.set_result(fresh[key])
                continue
            if not isinstance(error, Exception):
                error = EmbeddingServiceError("Embedding request was cancelled", retryable=True)
            future.set_exception(error)
            # Mark retrieved; there may be no waiter
            future.exception()
