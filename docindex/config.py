"""Application configuration and environment-driven settings.

Defines the Settings class based on pydantic-settings to centralize configuration for:
- Embedding provider credentials, model name and dimensionality
- Data stores (SQL store, Redis embedding cache) and cache TTL
- Chunking bounds and embedding batch bounds
- Provider protection: rate-limit window, circuit breaker, retry policy, timeouts
- Retrieval knobs (default alpha, top-k, keyword scoring mode)
- Logging and tracing
"""
from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Known embedding dimensionalities; unknown models adopt the first vector length seen.
EMBEDDING_DIMENSIONS: Dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
    "voyage-3": 1024,
    "voyage-3-lite": 512,
    "voyage-large-2-instruct": 1024,
    "voyage-code-3": 1024,
    "voyage-multimodal-3": 1024,
}


def embedding_dim_for(model_id: str) -> Optional[int]:
    """Return the declared vector dimension for an embedding model, if known.

    Args:
        model_id: Embedding model identifier.

    Returns:
        Optional[int]: Dimension, or None when the model is not registered.
    """
    model = (model_id or "").lower()
    if model in EMBEDDING_DIMENSIONS:
        return EMBEDDING_DIMENSIONS[model]
    for name, dim in EMBEDDING_DIMENSIONS.items():
        if model.startswith(name):
            return dim
    return None


class Settings(BaseSettings):
    """Strongly-typed application settings loaded from environment variables.

    Uses pydantic-settings to populate fields from a .env file or process env.
    See individual field names for semantics and safe defaults.
    """
    # Provider
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")
    OPENAI_BASE_URL: str = ""
    EMBEDDING_MODEL: str = "text-embedding-3-small"  # 1536 dims
    EMBEDDING_DIMENSIONS: int = 0  # 0 = derive from EMBEDDING_MODEL

    # Data stores
    DATABASE_URL: str = "sqlite:///./docindex.db"
    REDIS_URL: str = ""  # empty = in-process embedding cache
    CACHE_TTL_SECONDS: int = 7 * 24 * 3600

    # Chunking
    CHUNK_MAX_TOKENS: int = 1000
    CHUNK_MIN_TOKENS: int = 100
    CHUNK_OVERLAP_TOKENS: int = 200
    CHUNK_STRATEGY: str = "auto"

    # Embedding batches
    EMBED_MAX_BATCH_ITEMS: int = 128
    EMBED_MAX_BATCH_TOKENS: int = 100_000
    EMBED_WORKERS: int = 4
    EMBED_TIMEOUT_SECONDS: float = 30.0

    # Processing
    EXTRACT_TIMEOUT_SECONDS: float = 120.0
    MAX_CONCURRENT_DOCUMENTS: int = 4
    # Diagnostics report pending or processing documents older than this as stuck
    STUCK_AFTER_HOURS: float = 24.0

    # Provider rate limits (sliding window)
    RATE_LIMIT_WINDOW_SECONDS: float = 60.0
    RATE_LIMIT_REQUESTS: int = 300
    RATE_LIMIT_TOKENS: int = 1_000_000

    # Circuit breaker
    BREAKER_FAILURE_THRESHOLD: int = 5
    BREAKER_COOLDOWN_SECONDS: float = 30.0
    BREAKER_FAILURE_WINDOW_SECONDS: float = 60.0

    # Retry policy
    RETRY_MAX_ATTEMPTS: int = 5
    RETRY_BASE_DELAY: float = 0.5
    RETRY_MULTIPLIER: float = 2.0
    RETRY_MAX_DELAY: float = 30.0
    RETRY_JITTER: float = 0.25

    # Retrieval
    SEARCH_DEFAULT_ALPHA: float = 0.7  # 0-1, weight of vector score
    SEARCH_TOP_K: int = 8
    KEYWORD_MODE: str = "overlap"  # overlap | tf | bm25

    # Observability
    LOG_LEVEL: str = "INFO"
    OTEL_CONSOLE_EXPORT: bool = False

    # Derived
    @property
    def EMBEDDING_DIM(self) -> Optional[int]:
        """Embedding dimension for the configured embedding model.

        Returns:
            Optional[int]: EMBEDDING_DIMENSIONS when set explicitly, otherwise the
                dimension registered for EMBEDDING_MODEL (None if unknown).
        """
        if self.EMBEDDING_DIMENSIONS > 0:
            return self.EMBEDDING_DIMENSIONS
        return embedding_dim_for(self.EMBEDDING_MODEL)

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


settings = Settings()
