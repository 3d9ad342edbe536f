"""Chunking options and their validation."""
from dataclasses import dataclass
from typing import Optional

from docindex.errors import ConfigurationError

TEXT_STRATEGIES = ("auto", "semantic", "recursive", "code")


@dataclass(frozen=True)
class ChunkingOptions:
    """Token budget and strategy selection for one chunking run.

    Attributes:
        max_tokens: Ceiling per chunk (oversized single units excepted).
        min_tokens: Chunks below this are merge candidates.
        overlap_tokens: Trailing context copied into the next chunk.
        strategy: Text strategy, or "auto" to pick by content shape. Tables and
            images always use their dedicated strategies.
        model_id: Model whose tokenizer measures the budget.
    """
    max_tokens: int = 1000
    min_tokens: int = 100
    overlap_tokens: int = 200
    strategy: str = "auto"
    model_id: Optional[str] = None

    @classmethod
    def from_settings(cls, settings) -> "ChunkingOptions":
        return cls(
            max_tokens=settings.CHUNK_MAX_TOKENS,
            min_tokens=settings.CHUNK_MIN_TOKENS,
            overlap_tokens=settings.CHUNK_OVERLAP_TOKENS,
            strategy=settings.CHUNK_STRATEGY,
            model_id=settings.EMBEDDING_MODEL,
        )


def validate_options(options: ChunkingOptions) -> None:
    """Reject unusable token budgets before any work starts.

    Raises:
        ConfigurationError: On non-positive max_tokens, negative bounds,
            max_tokens <= overlap_tokens, min_tokens > max_tokens or an unknown strategy.
    """
    if options.max_tokens <= 0:
        raise ConfigurationError("max_tokens must be positive", field="max_tokens")
    if options.overlap_tokens < 0:
        raise ConfigurationError("overlap_tokens must not be negative", field="overlap_tokens")
    if options.min_tokens < 0:
        raise ConfigurationError("min_tokens must not be negative", field="min_tokens")
    if options.max_tokens <= options.overlap_tokens:
        raise ConfigurationError(
            "max_tokens must be greater than overlap_tokens",
            field="overlap_tokens",
            details={"max_tokens": options.max_tokens, "overlap_tokens": options.overlap_tokens},
        )
    if options.min_tokens > options.max_tokens:
        raise ConfigurationError(
            "min_tokens must not exceed max_tokens",
            field="min_tokens",
            details={"max_tokens": options.max_tokens, "min_tokens": options.min_tokens},
        )
    if options.strategy not in TEXT_STRATEGIES:
        raise ConfigurationError(
            f"Unknown chunking strategy: {options.strategy}",
            field="strategy",
            details={"allowed": list(TEXT_STRATEGIES)},
        )
