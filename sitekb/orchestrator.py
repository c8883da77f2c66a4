"""Knowledge base pipeline orchestration.

KnowledgeBaseOrchestrator drives crawl -> chunk -> embed -> upsert -> profile
synthesis for a site and owns the status state machine:

    (none) / disabled --initialize--> initializing -> processing -> ready | error
    ready | error     --refresh-->    processing -> ready | error
    any               --delete-->     disabled

Pipeline runs for one site are serialized through a per-site lock. A failed run
is recorded as ``error`` with its message and the original exception is
re-raised to the caller. get_status never raises.
"""
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Set

from sitekb.business_intel import BusinessIntelligenceSynthesizer
from sitekb.chunking import build_chunks, chunk_id
from sitekb.crawler import SiteCrawler
from sitekb.embedding import EmbeddingGenerator, embedding_stats
from sitekb.errors import CrawlError, EmbeddingError, InvalidStateError, SiteNotFoundError
from sitekb.locks import SiteLockRegistry
from sitekb.obs import span
from sitekb.schemas import (
    DocumentInfo,
    KnowledgeBaseStatistics,
    KnowledgeBaseStatus,
    TextChunk,
)
from sitekb.store import KnowledgeBaseStore
from sitekb.utils import utcnow
from sitekb.vector_store import VectorIndex

logger = logging.getLogger(__name__)


class KnowledgeBaseOrchestrator:
    """Runs and tracks the per-site knowledge base pipeline.

    Args:
        store: Relational store.
        crawler: Site crawler.
        embedder: Chunk embedder.
        index: Vector index.
        synthesizer: Business intelligence synthesizer.
        locks: Per-site lock provider (anything with ``hold(site_id)``).
        chunk_size: Chunk window in words.
        chunk_overlap: Chunk overlap in words.
        max_input_chars: Cleaning cap applied to document text before chunking.
    """

    def __init__(
        self,
        store: KnowledgeBaseStore,
        crawler: SiteCrawler,
        embedder: EmbeddingGenerator,
        index: VectorIndex,
        synthesizer: BusinessIntelligenceSynthesizer,
        locks=None,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        max_input_chars: int = 8000,
    ):
        self.store = store
        self.crawler = crawler
        self.embedder = embedder
        self.index = index
        self.synthesizer = synthesizer
        self.locks = locks or SiteLockRegistry()
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.max_input_chars = max_input_chars

    # -- transitions --------------------------------------------------------

    def initialize(self, site_id: str) -> KnowledgeBaseStatus:
        """Enable the knowledge base for a site and run the full pipeline.

        Raises:
            SiteNotFoundError: If the site does not exist (no status is written).
            KnowledgeBaseError: Whatever failed the pipeline; status is ``error``.
        """
        with self.locks.hold(site_id):
            url = self.store.get_site_url(site_id)
            logger.info("Initializing knowledge base for site %s", site_id)
            self.store.set_status(site_id, "initializing", total_documents=0)
            self.store.set_rag_enabled(site_id, True)
            return self._run(site_id, url)

    def refresh(self, site_id: str) -> KnowledgeBaseStatus:
        """Re-run the pipeline for an enabled knowledge base.

        Raises:
            InvalidStateError: If the knowledge base was never initialized or is disabled.
        """
        with self.locks.hold(site_id):
            current = self.store.get_status(site_id)
            if current is None or current.status == "disabled":
                raise InvalidStateError(
                    f"Knowledge base for site {site_id} is "
                    f"{'not initialized' if current is None else 'disabled'}"
                )
            url = self.store.get_site_url(site_id)
            logger.info("Refreshing knowledge base for site %s (was %s)", site_id, current.status)
            return self._run(site_id, url)

    def delete(self, site_id: str) -> KnowledgeBaseStatus:
        """Wipe vectors, documents, profile and flag; always ends ``disabled``.

        The site is disabled before its vectors are wiped, so a failing vector
        backend still leaves it ``disabled``; the vector error is then re-raised.
        """
        with self.locks.hold(site_id):
            with span("kb.delete", {"site_id": site_id}):
                try:
                    self.store.clear_profile(site_id)
                    self.store.set_rag_enabled(site_id, False)
                except SiteNotFoundError:
                    logger.warning("Site %s no longer exists; only knowledge base data removed", site_id)
                self.store.delete_documents(site_id)
                status = self.store.set_status(site_id, "disabled", total_documents=0)
                try:
                    removed = self.index.delete_site(site_id)
                except Exception:
                    logger.exception("Vector wipe failed for disabled site %s", site_id)
                    raise
            logger.info("Deleted knowledge base for site %s (%d vectors)", site_id, removed)
            return status

    # -- reads --------------------------------------------------------------

    def get_status(self, site_id: str) -> Optional[KnowledgeBaseStatus]:
        """Status record of a site, None if it has none. Never raises."""
        try:
            return self.store.get_status(site_id)
        except Exception as exc:
            logger.exception("Failed to read knowledge base status for site %s", site_id)
            return KnowledgeBaseStatus(site_id=site_id, status="error", error_message=str(exc))

    def get_documents(self, site_id: str) -> List[DocumentInfo]:
        return self.store.list_documents(site_id)

    def get_statistics(self, site_id: str) -> KnowledgeBaseStatistics:
        total, by_type, avg_words = self.store.document_summary(site_id)
        status = self.store.get_status(site_id)
        return KnowledgeBaseStatistics(
            site_id=site_id,
            total_documents=total,
            documents_by_type=by_type,
            average_word_count=avg_words,
            last_refresh=status.last_refresh if status else None,
            vector_count=self.index.count(site_id),
        )

    # -- pipeline -----------------------------------------------------------

    def _previous_vector_ids(self, site_id: str) -> Set[str]:
        return {
            chunk_id(doc_type, url, i)
            for doc_type, url, total in self.store.document_chunk_layout(site_id)
            for i in range(total)
        }

    def _run(self, site_id: str, url: str) -> KnowledgeBaseStatus:
        self.store.set_status(site_id, "processing")
        try:
            with span("kb.pipeline", {"site_id": site_id}):
                status = self._process(site_id, url)
        except Exception as exc:
            logger.exception("Knowledge base pipeline failed for site %s", site_id)
            self.store.set_status(site_id, "error", error_message=str(exc) or type(exc).__name__)
            raise
        logger.info("Knowledge base for site %s is ready (%d documents)", site_id, status.total_documents)
        return status

    def _process(self, site_id: str, url: str) -> KnowledgeBaseStatus:
        with span("kb.crawl", {"site_id": site_id}):
            crawl = self.crawler.crawl(site_id, url)
        if not crawl.pages:
            raise CrawlError(f"Crawl of {url} produced no usable pages ({len(crawl.errors)} errors)")

        chunks: List[TextChunk] = []
        chunks_per_url: Dict[str, int] = {}
        for doc in crawl.pages:
            doc_chunks = build_chunks(doc, self.chunk_size, self.chunk_overlap, self.max_input_chars)
            chunks_per_url[doc.url] = len(doc_chunks)
            chunks.extend(doc_chunks)
        logger.info("Built %d chunks from %d documents for site %s", len(chunks), len(crawl.pages), site_id)

        with span("kb.embed", {"site_id": site_id, "chunks": len(chunks)}):
            records = self.embedder.embed_batch(chunks)
        if not records:
            raise EmbeddingError(f"None of the {len(chunks)} chunks for site {site_id} could be embedded")
        logger.info("Embedding stats for site %s: %s", site_id, embedding_stats(records, self.embedder.dimension))

        embedded_per_url: Dict[str, int] = defaultdict(int)
        for r in records:
            embedded_per_url[r.metadata["url"]] += 1
        # A document with no embedded chunk is stored with zero chunks (status "error")
        chunk_counts = {u: n for u, n in chunks_per_url.items() if embedded_per_url[u]}

        previous_ids = self._previous_vector_ids(site_id)
        with span("kb.upsert", {"site_id": site_id, "records": len(records)}):
            self.index.upsert(site_id, records)
            stale = previous_ids - {r.id for r in records}
            if stale:
                removed = self.index.delete(site_id, sorted(stale))
                logger.info("Removed %d stale vectors for site %s", removed, site_id)

        self.store.replace_documents(site_id, crawl.pages, chunk_counts)

        with span("kb.synthesize", {"site_id": site_id}):
            profile = self.synthesizer.synthesize(site_id, url)
        self.store.save_profile(site_id, profile)

        return self.store.set_status(
            site_id,
            "ready",
            total_documents=len(crawl.pages),
            last_refresh=utcnow(),
        )
