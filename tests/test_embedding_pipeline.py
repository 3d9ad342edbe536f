"""Tests for batched, protected embedding of chunks."""
import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from docindex.cache import InMemoryEmbeddingCache
from docindex.embedding import EmbeddingResponse
from docindex.errors import (
    CircuitOpenError,
    EmbeddingDimensionMismatch,
    EmbeddingError,
    JobCancelledError,
    PartialEmbeddingFailure,
    ProviderError,
    ProviderTimeoutError,
)
from docindex.retry import RetryPolicy
from docindex.schemas import Chunk
from tests.conftest import (
    DIMS,
    FakeProvider,
    fake_vector,
    make_chunks,
    make_pipeline,
    rate_limited,
    server_error,
)


class TestBatchPlanning:
    def test_five_hundred_chunks_make_four_batches(self, provider, clock):
        """Should split 500 chunks into batches of 128, 128, 128 and 116."""
        pipeline = make_pipeline(provider, clock, max_batch_items=128)
        batches, rejected = pipeline.plan_batches(make_chunks(500))
        assert [len(b.chunks) for b in batches] == [128, 128, 128, 116]
        assert rejected == []

    def test_token_bound_closes_batches(self, provider, clock):
        """Should start a new batch before the token bound would be exceeded."""
        pipeline = make_pipeline(provider, clock, max_batch_items=100, max_batch_tokens=14)
        chunks = make_chunks(4, prefix="x" * 16)  # 7 tokens each
        batches, _ = pipeline.plan_batches(chunks)
        assert [len(b.chunks) for b in batches] == [2, 2]
        assert all(b.tokens <= 14 for b in batches)

    @pytest.mark.asyncio
    async def test_dispatches_planned_batches(self, provider, clock):
        """Should make exactly one provider call per batch and embed every chunk."""
        pipeline = make_pipeline(provider, clock, max_batch_items=128)
        chunks = make_chunks(500)
        await pipeline.embed(chunks)
        assert sorted(len(call) for call in provider.calls) == [116, 128, 128, 128]
        assert all(c.embedding is not None and len(c.embedding) == DIMS for c in chunks)
        assert chunks[7].embedding == fake_vector(chunks[7].content)


class TestProviderFailures:
    @pytest.mark.asyncio
    async def test_rate_limited_twice_then_succeeds(self, clock):
        """Should succeed after exactly two backoff delays without losing chunks."""
        provider = FakeProvider(failures=[rate_limited(), rate_limited()])
        pipeline = make_pipeline(provider, clock)
        chunks = make_chunks(3)
        await pipeline.embed(chunks)
        assert provider.call_count == 3
        assert clock.sleeps == [pytest.approx(0.5), pytest.approx(1.0)]
        assert all(c.embedding is not None for c in chunks)

    @pytest.mark.asyncio
    async def test_open_circuit_skips_provider(self, clock):
        """Should stop contacting the provider once five failures open the circuit."""
        provider = FakeProvider(failures=[server_error() for _ in range(10)])
        pipeline = make_pipeline(provider, clock)

        with pytest.raises(PartialEmbeddingFailure):
            await pipeline.embed(make_chunks(2))
        assert provider.call_count == 5

        with pytest.raises(PartialEmbeddingFailure) as exc:
            await pipeline.embed(make_chunks(2, document_id="doc-2"))
        assert provider.call_count == 5
        assert any(isinstance(c, CircuitOpenError) for c in exc.value.causes)
        assert exc.value.retry_after is not None

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_successful_vectors(self, clock):
        """Should report failed chunks while keeping vectors for the rest."""
        provider = FakeProvider(failures=[ProviderError("Bad Request", status=400)])
        pipeline = make_pipeline(provider, clock, max_batch_items=2, max_workers=1)
        chunks = make_chunks(4)

        with pytest.raises(PartialEmbeddingFailure) as exc:
            await pipeline.embed(chunks)
        err = exc.value
        assert err.failed_chunk_ids == [chunks[0].id, chunks[1].id]
        assert err.embedded_chunk_ids == [chunks[2].id, chunks[3].id]
        assert not err.retryable
        assert chunks[0].embedding is None
        assert chunks[2].embedding is not None

    @pytest.mark.asyncio
    async def test_call_timeout_becomes_provider_timeout(self, clock):
        """Should treat a slow provider call as a transient timeout."""

        class SlowProvider(FakeProvider):
            async def embed(self, texts, model_id):
                await asyncio.sleep(1.0)
                return await super().embed(texts, model_id)

        pipeline = make_pipeline(
            SlowProvider(), clock, call_timeout=0.01, retry_policy=RetryPolicy(max_attempts=1)
        )
        with pytest.raises(PartialEmbeddingFailure) as exc:
            await pipeline.embed(make_chunks(1))
        assert isinstance(exc.value.causes[0], ProviderTimeoutError)
        assert exc.value.retryable

    @pytest.mark.asyncio
    async def test_vector_count_mismatch_is_fatal(self, clock):
        """Should reject a response with fewer vectors than inputs without retrying."""

        class ShortProvider(FakeProvider):
            async def embed(self, texts, model_id):
                response = await super().embed(texts, model_id)
                return EmbeddingResponse(vectors=response.vectors[:-1])

        provider = ShortProvider()
        pipeline = make_pipeline(provider, clock)
        with pytest.raises(PartialEmbeddingFailure) as exc:
            await pipeline.embed(make_chunks(3))
        assert provider.call_count == 1
        assert isinstance(exc.value.causes[0], ProviderError)

    @pytest.mark.asyncio
    async def test_chunk_over_batch_token_limit_rejected(self, provider, clock):
        """Should never send a chunk larger than max_batch_tokens."""
        pipeline = make_pipeline(provider, clock, max_batch_tokens=10)
        small = make_chunks(1)[0]
        big = Chunk(id="big", document_id="doc-1", index=1, content="x" * 100, start_offset=0, end_offset=100, token_count=25)

        with pytest.raises(PartialEmbeddingFailure) as exc:
            await pipeline.embed([small, big])
        assert exc.value.failed_chunk_ids == ["big"]
        assert isinstance(exc.value.causes[0], EmbeddingError)
        assert provider.calls == [[small.content]]
        assert small.embedding is not None


class TestCacheAndDimensions:
    @pytest.mark.asyncio
    async def test_cache_hits_skip_provider(self, provider, clock):
        """Should serve identical content from the cache."""
        cache = InMemoryEmbeddingCache()
        pipeline = make_pipeline(provider, clock, cache=cache)
        await pipeline.embed(make_chunks(3))
        assert provider.call_count == 1
        assert len(cache) == 3

        again = make_chunks(3, document_id="doc-2")
        await pipeline.embed(again)
        assert provider.call_count == 1
        assert again[0].embedding == fake_vector(again[0].content)

    @pytest.mark.asyncio
    async def test_dimension_mismatch_adjusted_and_flagged(self, clock):
        """Should pad a short vector, flag the chunk and keep it out of the cache."""
        cache = InMemoryEmbeddingCache()
        pipeline = make_pipeline(FakeProvider(dims=6), clock, cache=cache)
        chunks = make_chunks(2)
        await pipeline.embed(chunks)
        assert len(chunks[0].embedding) == DIMS
        assert chunks[0].embedding[6:] == [0.0, 0.0]
        assert chunks[0].metadata.dimension_mismatch == {"expected": DIMS, "actual": 6}
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_dimension_mismatch_strict(self, clock):
        """Should raise on a wrong-length vector in strict mode."""
        pipeline = make_pipeline(FakeProvider(dims=12), clock, strict_dimensions=True)
        with pytest.raises(EmbeddingDimensionMismatch) as exc:
            await pipeline.embed(make_chunks(1))
        assert exc.value.expected == DIMS
        assert exc.value.actual == 12

    @pytest.mark.asyncio
    async def test_query_embedding_uses_cache(self, provider, clock):
        """Should embed a query once and reuse the cached vector."""
        pipeline = make_pipeline(provider, clock, cache=InMemoryEmbeddingCache())
        first = await pipeline.embed_query("hybrid search")
        second = await pipeline.embed_query("hybrid search")
        assert first == second == fake_vector("hybrid search")
        assert provider.call_count == 1

    @pytest.mark.asyncio
    async def test_unreachable_cache_degrades_to_misses(self, provider, clock):
        """Should embed through the provider when cache reads and writes fail."""

        class DownCache(InMemoryEmbeddingCache):
            async def get_many(self, model_id, texts):
                raise RedisConnectionError("redis down")

            async def set_many(self, model_id, items):
                raise RedisConnectionError("redis down")

        pipeline = make_pipeline(provider, clock, cache=DownCache(), max_batch_items=2, max_workers=1)
        chunks = make_chunks(5)
        seen = []
        await pipeline.embed(chunks, on_progress=lambda done, total: seen.append((done, total)))

        assert all(c.embedding == fake_vector(c.content) for c in chunks)
        assert seen[-1] == (5, 5)
        assert provider.call_count == 3

    @pytest.mark.asyncio
    async def test_failed_cache_write_keeps_vectors(self, provider, clock):
        """Should keep embedded vectors when only the cache write fails."""

        class ReadOnlyCache(InMemoryEmbeddingCache):
            async def set_many(self, model_id, items):
                raise ConnectionError("connection reset")

        pipeline = make_pipeline(provider, clock, cache=ReadOnlyCache())
        chunks = make_chunks(3)
        await pipeline.embed(chunks)
        assert all(c.embedding is not None for c in chunks)

    @pytest.mark.asyncio
    async def test_query_embedding_with_unreachable_cache(self, provider, clock):
        """Should embed a query through the provider when the cache is down."""

        class DownCache(InMemoryEmbeddingCache):
            async def get_many(self, model_id, texts):
                raise ConnectionError("redis down")

            async def set_many(self, model_id, items):
                raise ConnectionError("redis down")

        pipeline = make_pipeline(provider, clock, cache=DownCache())
        assert await pipeline.embed_query("hybrid search") == fake_vector("hybrid search")
        assert provider.call_count == 1


class TestProgressAndCancellation:
    @pytest.mark.asyncio
    async def test_progress_reaches_total(self, provider, clock):
        """Should report monotonically increasing progress ending at the total."""
        pipeline = make_pipeline(provider, clock, max_batch_items=3, max_workers=1)
        seen = []
        await pipeline.embed(make_chunks(10), on_progress=lambda done, total: seen.append((done, total)))
        assert seen[-1] == (10, 10)
        assert [d for d, _ in seen] == sorted(d for d, _ in seen)

    @pytest.mark.asyncio
    async def test_cancelled_before_dispatch(self, provider, clock):
        """Should skip every batch once the cancel event is set."""
        cancel = asyncio.Event()
        cancel.set()
        pipeline = make_pipeline(provider, clock)
        with pytest.raises(PartialEmbeddingFailure) as exc:
            await pipeline.embed(make_chunks(3), cancel_event=cancel)
        assert provider.call_count == 0
        assert all(isinstance(c, JobCancelledError) for c in exc.value.causes)

    @pytest.mark.asyncio
    async def test_empty_input(self, provider, clock):
        """Should return immediately for no chunks."""
        pipeline = make_pipeline(provider, clock)
        assert await pipeline.embed([]) == []
        assert provider.call_count == 0
