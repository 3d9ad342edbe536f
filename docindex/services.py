"""Wiring of the pipeline components from settings.

build_services(settings) assembles store, cache, provider protection,
embedding pipeline, index, job tracker, processor, search and reporting into one
Services bundle shared by the API and the CLI.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from docindex.cache import EmbeddingCache, InMemoryEmbeddingCache, RedisEmbeddingCache, get_redis
from docindex.chunking import ChunkingOptions
from docindex.circuit_breaker import CircuitBreaker
from docindex.clock import Clock, SystemClock
from docindex.config import Settings, settings as default_settings
from docindex.embedding import EmbeddingProvider, OpenAIEmbeddingProvider
from docindex.embedding_pipeline import EmbeddingPipeline
from docindex.extractors import TextExtractor
from docindex.index import VectorKeywordIndex
from docindex.jobs import JobTracker
from docindex.processor import DocumentProcessor, Extractor
from docindex.rate_limit import SlidingWindowRateLimiter
from docindex.reporting import ProcessingMetrics, Reporting
from docindex.retry import RetryPolicy
from docindex.search import HybridSearch
from docindex.store import SqlStore, Store

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: Store
    tracker: JobTracker
    pipeline: EmbeddingPipeline
    index: VectorKeywordIndex
    processor: DocumentProcessor
    search: HybridSearch
    reporting: Reporting


def build_cache(settings: Settings) -> EmbeddingCache:
    if settings.REDIS_URL:
        return RedisEmbeddingCache(get_redis(settings.REDIS_URL), ttl_seconds=settings.CACHE_TTL_SECONDS)
    return InMemoryEmbeddingCache()


def build_provider(settings: Settings) -> EmbeddingProvider:
    # Only the text-embedding-3 family accepts a custom output size.
    dims = settings.EMBEDDING_DIMENSIONS if settings.EMBEDDING_MODEL.startswith("text-embedding-3") else 0
    return OpenAIEmbeddingProvider(
        api_key=settings.OPENAI_API_KEY,
        base_url=settings.OPENAI_BASE_URL,
        dimensions=dims or None,
    )


def build_services(
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
    provider: Optional[EmbeddingProvider] = None,
    cache: Optional[EmbeddingCache] = None,
    extractor: Optional[Extractor] = None,
    clock: Optional[Clock] = None,
) -> Services:
    """Assemble the pipeline from settings; any component can be injected."""
    settings = settings or default_settings
    clock = clock or SystemClock()
    store = store if store is not None else SqlStore(settings.DATABASE_URL)

    pipeline = EmbeddingPipeline(
        provider=provider or build_provider(settings),
        model_id=settings.EMBEDDING_MODEL,
        dimensions=settings.EMBEDDING_DIM,
        rate_limiter=SlidingWindowRateLimiter(
            requests_per_window=settings.RATE_LIMIT_REQUESTS,
            tokens_per_window=settings.RATE_LIMIT_TOKENS,
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
            clock=clock,
        ),
        breaker=CircuitBreaker(
            name="embeddings",
            failure_threshold=settings.BREAKER_FAILURE_THRESHOLD,
            cooldown_seconds=settings.BREAKER_COOLDOWN_SECONDS,
            failure_window_seconds=settings.BREAKER_FAILURE_WINDOW_SECONDS,
            clock=clock,
        ),
        retry_policy=RetryPolicy.from_settings(settings),
        cache=cache if cache is not None else build_cache(settings),
        max_batch_items=settings.EMBED_MAX_BATCH_ITEMS,
        max_batch_tokens=settings.EMBED_MAX_BATCH_TOKENS,
        max_workers=settings.EMBED_WORKERS,
        call_timeout=settings.EMBED_TIMEOUT_SECONDS,
        clock=clock,
    )

    tracker = JobTracker(store)
    metrics = ProcessingMetrics()
    index = VectorKeywordIndex.from_store(store)

    processor = DocumentProcessor(
        store=store,
        tracker=tracker,
        extractor=extractor or TextExtractor(),
        pipeline=pipeline,
        index=index,
        chunking_options=ChunkingOptions.from_settings(settings),
        extract_timeout=settings.EXTRACT_TIMEOUT_SECONDS,
        max_concurrent_documents=settings.MAX_CONCURRENT_DOCUMENTS,
        metrics=metrics,
    )
    search = HybridSearch(
        index=index,
        pipeline=pipeline,
        store=store,
        default_alpha=settings.SEARCH_DEFAULT_ALPHA,
        default_k=settings.SEARCH_TOP_K,
        keyword_mode=settings.KEYWORD_MODE,
    )
    logger.info("Services ready: %d indexed chunks, model %s", len(index), settings.EMBEDDING_MODEL)
    return Services(
        settings=settings,
        store=store,
        tracker=tracker,
        pipeline=pipeline,
        index=index,
        processor=processor,
        search=search,
        reporting=Reporting(store, tracker, metrics, stuck_after=timedelta(hours=settings.STUCK_AFTER_HOURS)),
    )
