"""Embedding provider contract and the OpenAI implementation.

Provides:
- EmbeddingResponse: vectors plus token usage and response headers.
- EmbeddingProvider: protocol any provider implements (one network call per batch).
- OpenAIEmbeddingProvider: openai.AsyncOpenAI wrapper mapping SDK errors to ProviderError.

Retries are owned by the pipeline, so the SDK's own retries are disabled.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
)

from docindex.config import settings
from docindex.errors import ProviderError, ProviderTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingResponse:
    vectors: List[List[float]]
    tokens_used: int = 0
    headers: Dict[str, str] = field(default_factory=dict)


class EmbeddingProvider(Protocol):
    async def embed(self, texts: List[str], model_id: str) -> EmbeddingResponse:
        """Embed a batch of texts in a single provider call.

        Raises:
            ProviderError: With status, retryable and retry_after populated.
        """
        ...


def _retry_after(headers) -> Optional[float]:
    if not headers:
        return None
    raw_ms = headers.get("retry-after-ms")
    if raw_ms:
        try:
            return float(raw_ms) / 1000.0
        except ValueError:
            pass
    raw = headers.get("retry-after")
    if raw:
        try:
            return float(raw)
        except ValueError:
            return None
    return None


class OpenAIEmbeddingProvider:
    """Embeddings through the OpenAI API (or any OpenAI-compatible base URL)."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        dimensions: Optional[int] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.dimensions = dimensions
        self._client = client or AsyncOpenAI(
            api_key=api_key or settings.OPENAI_API_KEY or None,
            base_url=base_url or settings.OPENAI_BASE_URL or None,
            max_retries=0,
        )

    async def embed(self, texts: List[str], model_id: str) -> EmbeddingResponse:
        """Embed a batch of texts with one API request.

        Args:
            texts: Inputs, in order.
            model_id: OpenAI embedding model name.

        Returns:
            EmbeddingResponse: One vector per input (ordered by input index),
                total tokens billed and lowercase response headers.
        """
        if not texts:
            return EmbeddingResponse(vectors=[])
        kwargs = {"model": model_id, "input": texts}
        if self.dimensions:
            kwargs["dimensions"] = self.dimensions
        try:
            raw = await self._client.embeddings.with_raw_response.create(**kwargs)
        except APITimeoutError as e:
            raise ProviderTimeoutError(f"Embedding request timed out: {e}") from e
        except APIConnectionError as e:
            raise ProviderError(f"Embedding provider unreachable: {e}", status=None, retryable=True) from e
        except APIStatusError as e:
            headers = e.response.headers if e.response is not None else None
            raise ProviderError(
                f"Embedding provider returned {e.status_code}: {e.message}",
                status=e.status_code,
                retry_after=_retry_after(headers),
            ) from e

        headers = {k.lower(): v for k, v in raw.headers.items()}
        resp = raw.parse()
        data = sorted(resp.data, key=lambda d: d.index)
        tokens_used = resp.usage.total_tokens if resp.usage is not None else 0
        logger.debug("Embedded %d texts with %s (%d tokens)", len(texts), model_id, tokens_used)
        return EmbeddingResponse(
            vectors=[list(d.embedding) for d in data],
            tokens_used=tokens_used,
            headers=headers,
        )
