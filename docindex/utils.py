"""Utility helpers for identifiers, hashing, keyword tokenization and score scaling.

This module provides:
- stable_id: stable SHA-1 based identifier for documents/chunks
- content_hash: SHA-256 of chunk text, used for embedding cache keys
- tokenize: lowercase alphanumeric tokenization used by keyword scoring
- min_max_norm: min-max normalization of score lists
"""
import hashlib
import re
import uuid
from typing import List


_TERM_RE = re.compile(r"[a-z0-9]+")


def stable_id(*parts: object) -> str:
    """Compute a stable 40-char SHA-1 hex identifier from the given parts.

    Args:
        parts: Values joined with "::" before hashing.

    Returns:
        str: Hex digest.
    """
    s = "::".join(str(p) for p in parts)
    return hashlib.sha1(s.encode("utf-8")).hexdigest()[:40]


def new_id() -> str:
    return uuid.uuid4().hex


def content_hash(text: str) -> str:
    """SHA-256 hex digest of a text, independent of the chunk it belongs to."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def tokenize(s: str) -> List[str]:
    """Lowercase alphanumeric tokenization used by keyword scoring.

    Args:
        s: Input string.

    Returns:
        List[str]: Alphanumeric tokens in lowercase.
    """
    return _TERM_RE.findall(s.lower())


def min_max_norm(xs: List[float]) -> List[float]:
    """Min-max normalize a list of scores to [0, 1].

    Args:
        xs: Sequence of numeric scores.

    Returns:
        List[float]: Normalized scores, or zeros if constant/empty.
    """
    if not xs:
        return []
    mn, mx = min(xs), max(xs)
    if mx - mn <= 1e-12:
        return [0.0 for _ in xs]
    return [(x - mn) / (mx - mn) for x in xs]
