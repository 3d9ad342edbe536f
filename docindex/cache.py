"""Embedding caches keyed by model and chunk content hash.

Provides:
- EmbeddingCache: protocol used by the embedding pipeline.
- InMemoryEmbeddingCache: process-local dict guarded by an asyncio lock.
- RedisEmbeddingCache: shared cache on redis.asyncio with TTL from settings.CACHE_TTL_SECONDS.
- get_redis: cached asyncio Redis client from REDIS_URL.
"""
import asyncio
import json
import logging
from typing import Dict, List, Optional, Protocol, Tuple

import redis.asyncio as aioredis

from docindex.config import settings
from docindex.utils import content_hash

logger = logging.getLogger(__name__)

_redis_client: Optional[aioredis.Redis] = None


def get_redis(url: Optional[str] = None) -> aioredis.Redis:
    """Return a cached asyncio Redis client configured from settings.REDIS_URL.

    Returns:
        redis.asyncio.Redis: Client with decode_responses=True.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(url or settings.REDIS_URL, decode_responses=True)
    return _redis_client


def _key_for(model_id: str, text: str) -> str:
    return f"docindex:emb:v1:{model_id}:{content_hash(text)}"


class EmbeddingCache(Protocol):
    async def get_many(self, model_id: str, texts: List[str]) -> List[Optional[List[float]]]:
        ...

    async def set_many(self, model_id: str, items: List[Tuple[str, List[float]]]) -> None:
        ...


class InMemoryEmbeddingCache:
    def __init__(self):
        self._data: Dict[str, List[float]] = {}
        self._lock = asyncio.Lock()

    async def get_many(self, model_id: str, texts: List[str]) -> List[Optional[List[float]]]:
        async with self._lock:
            return [self._data.get(_key_for(model_id, t)) for t in texts]

    async def set_many(self, model_id: str, items: List[Tuple[str, List[float]]]) -> None:
        async with self._lock:
            for text, vector in items:
                self._data[_key_for(model_id, text)] = list(vector)

    def __len__(self) -> int:
        return len(self._data)


class RedisEmbeddingCache:
    """Embedding vectors stored as JSON strings with a TTL."""

    def __init__(self, client: Optional[aioredis.Redis] = None, ttl_seconds: Optional[int] = None):
        self._client = client or get_redis()
        self.ttl_seconds = ttl_seconds or settings.CACHE_TTL_SECONDS

    async def get_many(self, model_id: str, texts: List[str]) -> List[Optional[List[float]]]:
        if not texts:
            return []
        raws = await self._client.mget([_key_for(model_id, t) for t in texts])
        out: List[Optional[List[float]]] = []
        for raw in raws:
            if not raw:
                out.append(None)
                continue
            try:
                out.append(json.loads(raw))
            except json.JSONDecodeError:
                logger.warning("Discarding corrupt cached embedding entry")
                out.append(None)
        return out

    async def set_many(self, model_id: str, items: List[Tuple[str, List[float]]]) -> None:
        if not items:
            return
        async with self._client.pipeline(transaction=False) as pipe:
            for text, vector in items:
                pipe.setex(_key_for(model_id, text), self.ttl_seconds, json.dumps(vector))
            await pipe.execute()
