from docindex.chunking.options import ChunkingOptions, validate_options
from docindex.chunking.orchestrator import chunk, select_strategy
from docindex.chunking.strategies import (
    Code,
    Multimodal,
    Recursive,
    Semantic,
    Strategy,
    TableStrategy,
)

__all__ = [
    "ChunkingOptions",
    "validate_options",
    "chunk",
    "select_strategy",
    "Strategy",
    "Semantic",
    "Recursive",
    "Code",
    "TableStrategy",
    "Multimodal",
]
