"""Text cleaning and word-window chunking for embedding.

Provides:
- clean_text: whitespace collapse, disallowed-character removal and length cap
- chunk_words: sliding window over whitespace-separated words with overlap
- chunk_id: deterministic chunk id from document type, URL and chunk index
- build_chunks: turn a CrawledDocument into TextChunk objects
"""
import re
from typing import List

from sitekb.schemas import ChunkMetadata, CrawledDocument, TextChunk
from sitekb.utils import normalize_whitespace, stable_doc_id

# Word characters, whitespace and common punctuation survive; everything else is dropped.
_DISALLOWED = re.compile(r"[^\w\s.,!?;:()\[\]{}\"'`~@#$%^&*+=|\\/<>-]")


def clean_text(text: str, max_chars: int = 8000) -> str:
    """Prepare text for embedding.

    Args:
        text: Raw document text.
        max_chars: Provider-imposed maximum input length.

    Returns:
        str: Whitespace-collapsed text without disallowed characters, truncated to max_chars.
    """
    cleaned = normalize_whitespace(_DISALLOWED.sub("", text or ""))
    return cleaned[:max_chars].strip()


def chunk_words(text: str, size: int = 1000, overlap: int = 200) -> List[str]:
    """Split text into overlapping windows of at most ``size`` words.

    The window advances by ``size - overlap`` words and stops once a window
    reaches the end of the text, so the last chunk is never a strict suffix of
    the previous one.

    Args:
        text: Input text; tokenized on whitespace.
        size: Window size in words.
        overlap: Words shared by consecutive windows; must be smaller than size.

    Returns:
        List[str]: Non-empty chunks in document order.

    Raises:
        ValueError: If size < 1 or overlap is outside [0, size).
    """
    if size < 1:
        raise ValueError("size must be >= 1")
    if overlap < 0 or overlap >= size:
        raise ValueError("overlap must be in [0, size)")

    words = text.split()
    step = size - overlap
    chunks: List[str] = []
    for start in range(0, len(words), step):
        window = " ".join(words[start:start + size]).strip()
        if window:
            chunks.append(window)
        if start + size >= len(words):
            break
    return chunks


def chunk_id(document_type: str, url: str, index: int) -> str:
    """Deterministic chunk id, stable across crawls of the same document."""
    return f"{document_type}-{stable_doc_id(url)[:16]}-{index}"


def build_chunks(
    document: CrawledDocument,
    size: int = 1000,
    overlap: int = 200,
    max_chars: int = 8000,
) -> List[TextChunk]:
    """Clean and chunk a crawled document.

    Args:
        document: Source document.
        size: Window size in words.
        overlap: Window overlap in words.
        max_chars: Cleaning length cap applied before chunking.

    Returns:
        List[TextChunk]: Chunks carrying site/document metadata and their position.
    """
    pieces = chunk_words(clean_text(document.content, max_chars), size, overlap)
    total = len(pieces)
    return [
        TextChunk(
            id=chunk_id(document.document_type, document.url, i),
            text=piece,
            metadata=ChunkMetadata(
                site_id=document.site_id,
                document_type=document.document_type,
                url=document.url,
                title=document.title,
                chunk_index=i,
                total_chunks=total,
            ),
        )
        for i, piece in enumerate(pieces)
    ]
