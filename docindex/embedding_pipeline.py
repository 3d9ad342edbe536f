"""Batched, rate-limited, fault-tolerant embedding of chunks.

Flow for one call to EmbeddingPipeline.embed:
1) fill cache hits (content hash + model keyed)
2) pack misses in order into batches bounded by item count and token count
3) run batches on a bounded worker pool; every attempt passes the circuit
   breaker, then the rate limiter, then the provider call under a timeout,
   with transient failures retried by the RetryPolicy
4) validate vector count and dimensionality, fill vectors, update the cache
5) report chunks that could not be embedded through PartialEmbeddingFailure

Successfully embedded chunks keep their vectors even when others fail.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from redis.exceptions import RedisError

from docindex.cache import EmbeddingCache
from docindex.circuit_breaker import CircuitBreaker
from docindex.clock import Clock, SystemClock
from docindex.config import embedding_dim_for
from docindex.embedding import EmbeddingProvider, EmbeddingResponse
from docindex.errors import (
    CircuitOpenError,
    EmbeddingDimensionMismatch,
    EmbeddingError,
    JobCancelledError,
    PartialEmbeddingFailure,
    ProviderError,
    ProviderTimeoutError,
)
from docindex.obs import span
from docindex.rate_limit import SlidingWindowRateLimiter
from docindex.retry import RetryPolicy, run_with_retry
from docindex.schemas import Chunk
from docindex.tokens import count_tokens

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

# Cache outages degrade to misses and skipped writes.
CACHE_ERRORS = (RedisError, OSError)


@dataclass
class Batch:
    texts: List[str]
    tokens: int
    chunks: List[Chunk] = field(default_factory=list)


def _should_retry(exc: BaseException) -> bool:
    # An open circuit fails the batch immediately; the breaker decides when to probe.
    if isinstance(exc, CircuitOpenError):
        return False
    return bool(getattr(exc, "retryable", False))


class EmbeddingPipeline:
    """Embeds chunks through a provider while respecting provider limits.

    Args:
        provider: Embedding provider (one call per batch).
        model_id: Default model id.
        dimensions: Expected vector length; derived from the model (or the
            first vector observed) when None.
        rate_limiter / breaker / retry_policy: Provider protection.
        cache: Optional embedding cache.
        max_batch_items / max_batch_tokens: Batch bounds.
        max_workers: Concurrent batches in flight.
        call_timeout: Seconds allowed per provider call.
        strict_dimensions: Raise on a dimension mismatch instead of fixing it.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        model_id: str,
        dimensions: Optional[int] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        breaker: Optional[CircuitBreaker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        cache: Optional[EmbeddingCache] = None,
        max_batch_items: int = 128,
        max_batch_tokens: int = 100_000,
        max_workers: int = 4,
        call_timeout: float = 30.0,
        clock: Optional[Clock] = None,
        strict_dimensions: bool = False,
    ):
        self.provider = provider
        self.model_id = model_id
        self.clock = clock or SystemClock()
        self.dimensions = dimensions
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(clock=self.clock)
        self.breaker = breaker or CircuitBreaker(clock=self.clock)
        self.retry_policy = retry_policy or RetryPolicy()
        self.cache = cache
        self.max_batch_items = max(1, int(max_batch_items))
        self.max_batch_tokens = max(1, int(max_batch_tokens))
        self.max_workers = max(1, int(max_workers))
        self.call_timeout = call_timeout
        self.strict_dimensions = strict_dimensions
        self._observed_dims: Dict[str, int] = {}

    # --- Planning -------------------------------------------------------------

    def plan_batches(self, chunks: Sequence[Chunk], model_id: Optional[str] = None) -> Tuple[List[Batch], List[Chunk]]:
        """Partition chunks in order into bounded batches.

        Returns:
            Tuple[List[Batch], List[Chunk]]: Batches to dispatch, and chunks that
                alone exceed max_batch_tokens (never dispatched).
        """
        model = model_id or self.model_id
        batches: List[Batch] = []
        rejected: List[Chunk] = []
        current: List[Chunk] = []
        tokens = 0
        for c in chunks:
            n = count_tokens(c.content, model)
            if n > self.max_batch_tokens:
                rejected.append(c)
                continue
            if current and (len(current) >= self.max_batch_items or tokens + n > self.max_batch_tokens):
                batches.append(Batch(texts=[x.content for x in current], tokens=tokens, chunks=current))
                current, tokens = [], 0
            current.append(c)
            tokens += n
        if current:
            batches.append(Batch(texts=[x.content for x in current], tokens=tokens, chunks=current))
        return batches, rejected

    # --- Provider calls -------------------------------------------------------

    async def _call_provider(self, batch: Batch, model: str) -> EmbeddingResponse:
        await self.rate_limiter.admit(batch.tokens)
        try:
            response = await asyncio.wait_for(self.provider.embed(batch.texts, model), timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(
                f"Embedding call exceeded {self.call_timeout}s", timeout=self.call_timeout
            ) from e
        self.rate_limiter.update_from_headers(response.headers)
        if len(response.vectors) != len(batch.texts):
            raise ProviderError(
                "Provider returned a different number of vectors than inputs",
                retryable=False,
                details={"expected": len(batch.texts), "received": len(response.vectors)},
            )
        return response

    async def _embed_batch(self, batch: Batch, model: str) -> List[List[float]]:
        async def attempt() -> EmbeddingResponse:
            return await self.breaker.call(lambda: self._call_provider(batch, model))

        with span("embedding.batch", {"model": model, "items": len(batch.texts), "tokens": batch.tokens}):
            response = await run_with_retry(attempt, self.retry_policy, is_retryable=_should_retry, sleep=self.clock.sleep)
        return response.vectors

    # --- Dimensions -----------------------------------------------------------

    def expected_dimensions(self, model: str) -> Optional[int]:
        return self.dimensions or embedding_dim_for(model) or self._observed_dims.get(model)

    def _fit(self, vector: List[float], model: str, chunk: Optional[Chunk] = None) -> Tuple[List[float], bool]:
        """Return (vector, ok); a wrong-length vector is padded/truncated unless strict."""
        expected = self.expected_dimensions(model)
        if expected is None:
            self._observed_dims[model] = len(vector)
            return vector, True
        if len(vector) == expected:
            return vector, True
        chunk_id = chunk.id if chunk is not None else None
        if self.strict_dimensions:
            raise EmbeddingDimensionMismatch(expected, len(vector), chunk_id)
        logger.warning(
            "Embedding dimension mismatch for %s: expected %d, got %d; adjusting",
            chunk_id or "query", expected, len(vector),
        )
        if chunk is not None:
            chunk.metadata.dimension_mismatch = {"expected": expected, "actual": len(vector)}
        fixed = list(vector[:expected]) + [0.0] * max(0, expected - len(vector))
        return fixed, False

    # --- Cache ----------------------------------------------------------------

    async def _cache_get(self, model: str, texts: List[str]) -> List[Optional[List[float]]]:
        if self.cache is None:
            return [None] * len(texts)
        try:
            return await self.cache.get_many(model, texts)
        except CACHE_ERRORS as e:
            logger.warning("Embedding cache read failed, treating %d text(s) as misses: %s", len(texts), e)
            return [None] * len(texts)

    async def _cache_set(self, model: str, items: List[Tuple[str, List[float]]]) -> None:
        if self.cache is None or not items:
            return
        try:
            await self.cache.set_many(model, items)
        except CACHE_ERRORS as e:
            logger.warning("Embedding cache write failed for %d vector(s): %s", len(items), e)

    # --- Public API -----------------------------------------------------------

    async def embed(
        self,
        chunks: List[Chunk],
        model_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[Chunk]:
        """Fill `embedding` on every chunk.

        Args:
            chunks: Chunks to embed (mutated in place).
            model_id: Model override.
            cancel_event: When set, batches not yet dispatched are skipped.
            on_progress: Called with (embedded_count, total) as batches finish.

        Returns:
            List[Chunk]: The same chunks, all embedded.

        Raises:
            PartialEmbeddingFailure: Some chunks could not be embedded; the
                others keep their vectors.
            EmbeddingDimensionMismatch: Only with strict_dimensions.
        """
        model = model_id or self.model_id
        total = len(chunks)
        if not chunks:
            return []

        done = 0

        def progress() -> None:
            if on_progress is not None:
                on_progress(done, total)

        pending = list(chunks)
        cached = 0
        if self.cache is not None:
            hits = await self._cache_get(model, [c.content for c in chunks])
            expected = self.expected_dimensions(model)
            pending = []
            for c, vector in zip(chunks, hits):
                if vector is not None and (expected is None or len(vector) == expected):
                    c.embedding = vector
                    cached += 1
                else:
                    pending.append(c)
            done = cached
            if cached:
                progress()

        failed: Dict[str, BaseException] = {}
        batches, rejected = self.plan_batches(pending, model)
        for c in rejected:
            failed[c.id] = EmbeddingError(
                "Chunk exceeds the per-batch token limit",
                {"chunk_id": c.id, "max_batch_tokens": self.max_batch_tokens},
            )
        if rejected:
            logger.warning("%d chunk(s) exceed max_batch_tokens=%d and were not sent", len(rejected), self.max_batch_tokens)

        workers = asyncio.Semaphore(self.max_workers)

        async def run(batch: Batch) -> None:
            nonlocal done
            async with workers:
                if cancel_event is not None and cancel_event.is_set():
                    document_id = batch.chunks[0].document_id
                    cancelled = JobCancelledError(document_id, "embedding cancelled")
                    for c in batch.chunks:
                        failed[c.id] = cancelled
                    return
                try:
                    vectors = await self._embed_batch(batch, model)
                except Exception as e:
                    logger.warning("Embedding batch of %d chunk(s) failed: %s", len(batch.chunks), e)
                    for c in batch.chunks:
                        failed[c.id] = e
                    return
            fresh: List[Tuple[str, List[float]]] = []
            for c, vector in zip(batch.chunks, vectors):
                try:
                    fitted, ok = self._fit(vector, model, c)
                except EmbeddingDimensionMismatch as e:
                    failed[c.id] = e
                    continue
                c.embedding = fitted
                if ok:
                    fresh.append((c.content, fitted))
            await self._cache_set(model, fresh)
            done += len(batch.chunks)
            progress()

        await asyncio.gather(*(run(b) for b in batches))

        logger.info(
            "Embedded %d/%d chunks with %s (%d cached, %d batches, %d failed)",
            total - len(failed), total, model, cached, len(batches), len(failed),
        )
        if failed:
            if self.strict_dimensions:
                for cause in failed.values():
                    if isinstance(cause, EmbeddingDimensionMismatch):
                        raise cause
            causes: List[BaseException] = []
            for cause in failed.values():
                if not any(cause is seen for seen in causes):
                    causes.append(cause)
            raise PartialEmbeddingFailure(
                failed_chunk_ids=[c.id for c in chunks if c.id in failed],
                causes=causes,
                embedded_chunk_ids=[c.id for c in chunks if c.id not in failed],
            )
        return chunks

    async def embed_query(self, text: str, model_id: Optional[str] = None) -> List[float]:
        """Embed a single query through the same cache / breaker / limiter / retry path."""
        model = model_id or self.model_id
        if self.cache is not None:
            hit = (await self._cache_get(model, [text]))[0]
            expected = self.expected_dimensions(model)
            if hit is not None and (expected is None or len(hit) == expected):
                return hit
        tokens = count_tokens(text, model)
        if tokens > self.max_batch_tokens:
            raise EmbeddingError("Query exceeds the per-batch token limit", {"tokens": tokens})
        vectors = await self._embed_batch(Batch(texts=[text], tokens=tokens), model)
        vector, ok = self._fit(vectors[0], model)
        if ok:
            await self._cache_set(model, [(text, vector)])
        return vector
