"""Token counting for chunk budgets and batch budgets.

Provides:
- count_tokens: model-aware token length of a string (tiktoken backed).
- encoding_for: cached tokenizer lookup per model id.

OpenAI models resolve to their tiktoken encoding; unknown ids use cl100k_base.
Providers whose tokenizers tiktoken cannot describe (Voyage, Cohere, ...) and
environments where the encoding files cannot be loaded use a chars/4 estimate.
"""
import logging
import math
from functools import lru_cache
from typing import Optional

import tiktoken

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "cl100k_base"
CHARS_PER_TOKEN = 4
# Model families estimated by character count instead of a BPE vocabulary.
HEURISTIC_PREFIXES = ("voyage", "cohere", "embed-", "nomic", "mistral-embed", "heuristic")


@lru_cache(maxsize=64)
def encoding_for(model_id: Optional[str]) -> Optional[tiktoken.Encoding]:
    """Return the tiktoken encoding for a model, or None for the chars/4 estimate.

    Args:
        model_id: Model identifier; None selects the default encoding.

    Returns:
        Optional[tiktoken.Encoding]: Encoding instance, or None when the model is
            counted heuristically.
    """
    name = (model_id or "").lower()
    if name.startswith(HEURISTIC_PREFIXES):
        return None
    try:
        if name:
            try:
                return tiktoken.encoding_for_model(name)
            except KeyError:
                logger.debug("No tiktoken mapping for %s, using %s", name, DEFAULT_ENCODING)
        return tiktoken.get_encoding(DEFAULT_ENCODING)
    except (OSError, ValueError) as e:
        # Encoding files unavailable (offline).
        logger.warning("tiktoken encoding unavailable (%s); estimating tokens from length", e)
        return None


def count_tokens(text: str, model_id: Optional[str] = None) -> int:
    """Count tokens of `text` for `model_id`.

    Args:
        text: Input string.
        model_id: Embedding/LLM model id; unknown ids fall back to the default scheme.

    Returns:
        int: Token count (0 for empty text).
    """
    if not text:
        return 0
    encoding = encoding_for(model_id)
    if encoding is None:
        return math.ceil(len(text) / CHARS_PER_TOKEN)
    return len(encoding.encode(text, disallowed_special=()))
