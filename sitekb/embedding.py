"""Embedding utilities wrapping OpenAI's embeddings API.

Provides:
- get_client: Cached OpenAI client using the configured API key.
- EmbeddingGenerator: query embedding, batched chunk embedding with a fixed
  inter-batch delay, and per-vector validation (length + finite components).
- embedding_stats: count / average magnitude / dimension of a record set.

A vector that fails validation is dropped together with its chunk; it is never
replaced with zeros.
"""
import logging
import math
import time
from typing import Callable, Dict, List, Sequence

from openai import OpenAI

from sitekb.config import settings
from sitekb.errors import EmbeddingError
from sitekb.schemas import TextChunk, VectorRecord
from sitekb.utils import vector_magnitude

logger = logging.getLogger(__name__)

_client: OpenAI | None = None


def get_client() -> OpenAI:
    """Return a cached OpenAI client initialized with the configured API key.

    Returns:
        OpenAI: A singleton-like client instance reused across calls.
    """
    global _client
    if _client is None:
        _client = OpenAI(api_key=settings.OPENAI_API_KEY)
    return _client


class EmbeddingGenerator:
    """Turns query text and text chunks into fixed-dimension vectors.

    Args:
        client: An OpenAI-compatible client exposing ``embeddings.create``.
        model: Embedding model name.
        dimension: Expected vector length; anything else is rejected.
        batch_size: Maximum inputs per API call.
        batch_delay: Seconds to sleep between batches (blocking).
        sleep: Sleep function, injectable for tests.
    """

    def __init__(
        self,
        client: OpenAI,
        model: str,
        dimension: int,
        batch_size: int = 100,
        batch_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.client = client
        self.model = model
        self.dimension = dimension
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self._sleep = sleep

    def validate(self, embedding: Sequence[float]) -> bool:
        """Check vector length and that every component is a finite number."""
        if len(embedding) != self.dimension:
            return False
        for v in embedding:
            if isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v):
                return False
        return True

    def _create(self, texts: List[str]) -> List[List[float]]:
        try:
            resp = self.client.embeddings.create(model=self.model, input=texts, encoding_format="float")
        except Exception as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc
        vectors = [d.embedding for d in resp.data]
        if len(vectors) != len(texts):
            raise EmbeddingError(f"Expected {len(texts)} embeddings, got {len(vectors)}")
        return vectors

    def embed(self, text: str) -> List[float]:
        """Embed a single string (typically a query).

        Raises:
            EmbeddingError: If the API fails or returns an invalid vector.
        """
        vector = self._create([text])[0]
        if not self.validate(vector):
            raise EmbeddingError(
                f"Invalid embedding returned (length={len(vector)}, expected={self.dimension})"
            )
        return list(vector)

    def embed_batch(self, chunks: List[TextChunk]) -> List[VectorRecord]:
        """Embed chunks in batches of ``batch_size``, sleeping between batches.

        A failed batch is retried one chunk at a time so only the offending
        chunks are skipped. Invalid vectors are dropped with their chunk.

        Args:
            chunks: Chunks to embed.

        Returns:
            List[VectorRecord]: One record per successfully embedded chunk, in input order.
        """
        if not chunks:
            return []

        records: List[VectorRecord] = []
        total_batches = (len(chunks) + self.batch_size - 1) // self.batch_size
        for b, start in enumerate(range(0, len(chunks), self.batch_size), start=1):
            batch = chunks[start:start + self.batch_size]
            logger.info("Processing embedding batch %d/%d (%d chunks)", b, total_batches, len(batch))
            records.extend(self._embed_one_batch(batch))
            # Rate limiting - wait between batches
            if b < total_batches and self.batch_delay > 0:
                self._sleep(self.batch_delay)

        skipped = len(chunks) - len(records)
        if skipped:
            logger.warning("Skipped %d of %d chunks during embedding", skipped, len(chunks))
        logger.info("Generated %d embeddings", len(records))
        return records

    def _embed_one_batch(self, batch: List[TextChunk]) -> List[VectorRecord]:
        try:
            vectors = self._create([c.text for c in batch])
        except EmbeddingError as exc:
            if len(batch) == 1:
                logger.warning("Skipping chunk %s: %s", batch[0].id, exc)
                return []
            logger.warning("Batch of %d failed (%s); retrying chunk by chunk", len(batch), exc)
            out: List[VectorRecord] = []
            for chunk in batch:
                out.extend(self._embed_one_batch([chunk]))
            return out

        out = []
        for chunk, vector in zip(batch, vectors):
            if not self.validate(vector):
                logger.warning("Dropping chunk %s: invalid embedding (length=%d)", chunk.id, len(vector))
                continue
            out.append(_to_record(chunk, vector))
        return out


def _to_record(chunk: TextChunk, vector: Sequence[float]) -> VectorRecord:
    meta = chunk.metadata
    return VectorRecord(
        id=chunk.id,
        embedding=list(vector),
        metadata={
            "content": chunk.text,
            "title": meta.title,
            "url": meta.url,
            "documentType": meta.document_type,
            "siteId": meta.site_id,
            "chunkIndex": meta.chunk_index,
            "totalChunks": meta.total_chunks,
        },
    )


def embedding_stats(records: List[VectorRecord], dimension: int) -> Dict[str, float]:
    """Summarize a set of embedded records.

    Returns:
        Dict[str, float]: total_count, average_magnitude and dimension.
    """
    if not records:
        return {"total_count": 0, "average_magnitude": 0.0, "dimension": dimension}
    mags = [vector_magnitude(r.embedding) for r in records]
    return {
        "total_count": len(records),
        "average_magnitude": sum(mags) / len(mags),
        "dimension": dimension,
    }
