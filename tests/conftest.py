"""Shared fakes: a manual clock and a scripted embedding provider."""
import hashlib
from typing import Dict, List, Optional

import pytest

from docindex.cache import InMemoryEmbeddingCache
from docindex.circuit_breaker import CircuitBreaker
from docindex.config import Settings
from docindex.embedding import EmbeddingResponse
from docindex.embedding_pipeline import EmbeddingPipeline
from docindex.errors import ProviderError
from docindex.rate_limit import SlidingWindowRateLimiter
from docindex.retry import RetryPolicy
from docindex.schemas import Chunk
from docindex.services import Services, build_services
from docindex.store import InMemoryStore

DIMS = 8
MODEL = "voyage-3"


class FakeClock:
    """Clock whose time only moves when something sleeps (or a test advances it)."""

    def __init__(self, start: float = 1000.0):
        self.t = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.t

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += max(0.0, seconds)

    def advance(self, seconds: float) -> None:
        self.t += seconds


def fake_vector(text: str, dims: int = DIMS) -> List[float]:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(digest[i] - 127.5) / 127.5 for i in range(dims)]


class FakeProvider:
    """Deterministic provider; `failures` are raised, in order, by the first calls."""

    def __init__(self, dims: int = DIMS, failures: Optional[List[BaseException]] = None, headers: Optional[Dict[str, str]] = None):
        self.dims = dims
        self.failures = list(failures or [])
        self.headers = headers or {}
        self.calls: List[List[str]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def embed(self, texts: List[str], model_id: str) -> EmbeddingResponse:
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        return EmbeddingResponse(
            vectors=[fake_vector(t, self.dims) for t in texts],
            tokens_used=sum(len(t) // 4 for t in texts),
            headers=dict(self.headers),
        )


def rate_limited(retry_after: Optional[float] = None) -> ProviderError:
    return ProviderError("Too Many Requests", status=429, retry_after=retry_after)


def server_error() -> ProviderError:
    return ProviderError("Service Unavailable", status=503)


def make_chunks(n: int, document_id: str = "doc-1", prefix: str = "chunk text") -> List[Chunk]:
    return [
        Chunk(
            id=f"{document_id}-{i}",
            document_id=document_id,
            index=i,
            content=f"{prefix} number {i}",
            start_offset=i * 10,
            end_offset=i * 10 + 9,
            token_count=4,
        )
        for i in range(n)
    ]


def make_pipeline(provider, clock, **overrides) -> EmbeddingPipeline:
    options = dict(
        provider=provider,
        model_id=MODEL,
        dimensions=DIMS,
        rate_limiter=SlidingWindowRateLimiter(requests_per_window=1000, tokens_per_window=10_000_000, clock=clock),
        breaker=CircuitBreaker(failure_threshold=5, cooldown_seconds=30, clock=clock),
        retry_policy=RetryPolicy(max_attempts=5, base_delay=0.5, multiplier=2.0, max_delay=30.0, jitter=0.0),
        max_workers=2,
        clock=clock,
    )
    options.update(overrides)
    return EmbeddingPipeline(**options)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        EMBEDDING_MODEL=MODEL,
        EMBEDDING_DIMENSIONS=DIMS,
        CHUNK_MAX_TOKENS=50,
        CHUNK_MIN_TOKENS=5,
        CHUNK_OVERLAP_TOKENS=10,
        RETRY_JITTER=0.0,
        SEARCH_DEFAULT_ALPHA=0.7,
    )


@pytest.fixture
def services(test_settings, provider, clock) -> Services:
    return build_services(
        settings=test_settings,
        store=InMemoryStore(),
        provider=provider,
        cache=InMemoryEmbeddingCache(),
        clock=clock,
    )
