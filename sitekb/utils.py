"""Utility helpers for URL normalization, stable identifiers, text cleanup and vector math.

This module provides:
- stable_doc_id: stable SHA-1 based identifier for documents/URLs
- normalize_url: normalization to make URLs consistent for deduplication
- normalize_whitespace / strip_non_printable: text cleanup used by the crawler
- tokenize: lowercase alphanumeric tokenization used for keyword heuristics
- cosine_similarity / vector_magnitude: pure vector math
- utcnow: naive UTC timestamp matching the DateTime columns
"""
import hashlib
import math
import re
from datetime import datetime, timezone
from typing import List, Sequence
from urllib.parse import urldefrag, urlparse

_WS = re.compile(r"\s+")


def stable_doc_id(s: str) -> str:
    """Compute a stable 40-char SHA-1 hex identifier for a string.

    Args:
        s: Input string (e.g., normalized URL or path).

    Returns:
        str: First 40 hex characters of the SHA-1 digest.
    """
    return hashlib.sha1(s.encode("utf-8")).hexdigest()[:40]


def normalize_url(u: str) -> str:
    """Normalize URLs by removing fragments and trailing slashes.

    Args:
        u: Raw URL.

    Returns:
        str: Normalized URL suitable for stable IDs and deduplication.
    """
    # Strip fragments and trailing slashes for stability
    u, _ = urldefrag(u.strip())
    if len(u) > 1 and u.endswith("/"):
        u = u[:-1]
    return u


def same_host(url: str, other: str) -> bool:
    """True when both URLs share a hostname (case-insensitive)."""
    return (urlparse(url).hostname or "").lower() == (urlparse(other).hostname or "").lower()


def normalize_whitespace(text: str) -> str:
    """Collapse any whitespace run into a single space and trim."""
    return _WS.sub(" ", text or "").strip()


def strip_non_printable(text: str) -> str:
    """Drop control and other non-printable characters, keeping whitespace."""
    return "".join(ch for ch in (text or "") if ch.isprintable() or ch.isspace())


def tokenize(s: str) -> List[str]:
    """Lowercase alphanumeric tokenization.

    Args:
        s: Input string.

    Returns:
        List[str]: Alphanumeric tokens in lowercase.
    """
    return re.findall(r"[a-z0-9]+", s.lower())


def vector_magnitude(v: Sequence[float]) -> float:
    return math.sqrt(sum(x * x for x in v))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity ``dot(a, b) / (|a| * |b|)``.

    Args:
        a: First vector.
        b: Second vector, same length as ``a``.

    Returns:
        float: Similarity in [-1, 1]; 0.0 when either vector has zero magnitude.

    Raises:
        ValueError: If the vectors differ in length.
    """
    if len(a) != len(b):
        raise ValueError(f"Embeddings must have the same dimension ({len(a)} != {len(b)})")
    denom = vector_magnitude(a) * vector_magnitude(b)
    if denom == 0.0:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    return dot / denom


def utcnow() -> datetime:
    """Current UTC time without tzinfo, as stored in the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
