"""Relational store boundary.

KnowledgeBaseStore wraps the SQLAlchemy models behind the narrow operations the
pipeline needs:
- site lookups (base URL) and the ragEnabled flag
- the business intelligence profile blob
- the per-site KnowledgeBase status record
- the crawled document rows of the latest run, plus aggregates for statistics

Each method opens its own transactional scope through ``session_scope`` and
returns plain pydantic/dict values, never ORM instances.
"""
import logging
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from sitekb.db import get_sessionmaker, session_scope
from sitekb.errors import SiteNotFoundError
from sitekb.models import KnowledgeBase, Site, SiteDocument
from sitekb.schemas import (
    BusinessIntelligenceProfile,
    CrawledDocument,
    DocumentInfo,
    KnowledgeBaseStatus,
)

logger = logging.getLogger(__name__)


class KnowledgeBaseStore:
    """Relational store used by the orchestrator.

    Args:
        session_factory: Optional session factory; defaults to the process-wide one.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or get_sessionmaker()

    # -- sites --------------------------------------------------------------

    def _site(self, db, site_id: str) -> Site:
        site = db.get(Site, site_id)
        if site is None:
            raise SiteNotFoundError(f"Site {site_id} not found")
        return site

    def get_site_url(self, site_id: str) -> str:
        """Base URL to crawl for a site.

        Raises:
            SiteNotFoundError: If the site does not exist.
        """
        with session_scope(self.session_factory) as db:
            return self._site(db, site_id).url

    def set_rag_enabled(self, site_id: str, enabled: bool) -> None:
        with session_scope(self.session_factory) as db:
            self._site(db, site_id).rag_enabled = enabled

    def is_rag_enabled(self, site_id: str) -> bool:
        with session_scope(self.session_factory) as db:
            site = db.get(Site, site_id)
            return bool(site and site.rag_enabled)

    # -- profile ------------------------------------------------------------

    def save_profile(self, site_id: str, profile: BusinessIntelligenceProfile) -> None:
        """Persist the profile blob and its denormalized sections on the site row."""
        data = profile.model_dump(mode="json")
        with session_scope(self.session_factory) as db:
            site = self._site(db, site_id)
            site.business_intelligence = data
            site.brand_voice = data["brand_voice"]
            site.target_audience = data["target_audience"]
            site.services_summary = data["services"]

    def get_profile(self, site_id: str) -> Optional[BusinessIntelligenceProfile]:
        """Stored profile, or None if the site has none yet."""
        with session_scope(self.session_factory) as db:
            site = db.get(Site, site_id)
            data = site.business_intelligence if site is not None else None
        if not data:
            return None
        return BusinessIntelligenceProfile.model_validate(data)

    def clear_profile(self, site_id: str) -> None:
        with session_scope(self.session_factory) as db:
            site = self._site(db, site_id)
            site.business_intelligence = None
            site.brand_voice = None
            site.target_audience = None
            site.services_summary = None

    # -- status -------------------------------------------------------------

    def get_status(self, site_id: str) -> Optional[KnowledgeBaseStatus]:
        with session_scope(self.session_factory) as db:
            kb = db.execute(
                select(KnowledgeBase).where(KnowledgeBase.site_id == site_id)
            ).scalar_one_or_none()
            if kb is None:
                return None
            return _status_of(kb)

    def set_status(
        self,
        site_id: str,
        status: str,
        error_message: Optional[str] = None,
        total_documents: Optional[int] = None,
        last_refresh: Optional[datetime] = None,
    ) -> KnowledgeBaseStatus:
        """Create or update the status record for a site.

        ``error_message`` is always overwritten so a successful transition
        clears a previous error. ``total_documents`` and ``last_refresh`` are
        only written when given.
        """
        with session_scope(self.session_factory) as db:
            kb = db.execute(
                select(KnowledgeBase).where(KnowledgeBase.site_id == site_id)
            ).scalar_one_or_none()
            if kb is None:
                kb = KnowledgeBase(site_id=site_id, total_documents=0)
                db.add(kb)
            kb.status = status
            kb.error_message = error_message
            if total_documents is not None:
                kb.total_documents = total_documents
            if last_refresh is not None:
                kb.last_refresh = last_refresh
            db.flush()
            logger.debug("Knowledge base %s -> %s", site_id, status)
            return _status_of(kb)

    # -- documents ----------------------------------------------------------

    def replace_documents(self, site_id: str, documents: List[CrawledDocument], chunk_counts: Dict[str, int]) -> int:
        """Replace the site's document rows with the given crawl output.

        Args:
            site_id: Site id.
            documents: Documents of the current run.
            chunk_counts: url -> number of chunks embedded for that document.

        Returns:
            int: Number of rows written.
        """
        with session_scope(self.session_factory) as db:
            db.execute(delete(SiteDocument).where(SiteDocument.site_id == site_id))
            for doc in documents:
                n = chunk_counts.get(doc.url, 0)
                db.add(
                    SiteDocument(
                        site_id=site_id,
                        url=doc.url,
                        title=doc.title[:512],
                        document_type=doc.document_type,
                        content=doc.content,
                        word_count=doc.word_count,
                        total_chunks=n,
                        status="embedded" if n else "error",
                        last_crawled=doc.last_crawled_at,
                    )
                )
        return len(documents)

    def list_documents(self, site_id: str) -> List[DocumentInfo]:
        with session_scope(self.session_factory) as db:
            rows = db.execute(
                select(SiteDocument)
                .where(SiteDocument.site_id == site_id)
                .order_by(SiteDocument.last_crawled.desc(), SiteDocument.id)
            ).scalars().all()
            return [
                DocumentInfo(
                    id=r.id,
                    url=r.url,
                    title=r.title or "",
                    document_type=r.document_type,
                    status=r.status,
                    word_count=r.word_count,
                    total_chunks=r.total_chunks,
                    last_crawled=r.last_crawled,
                )
                for r in rows
            ]

    def document_chunk_layout(self, site_id: str) -> List[Tuple[str, str, int]]:
        """(document_type, url, total_chunks) for every stored document.

        Chunk ids are derived from these three values, so this is enough to
        reconstruct the vector ids written by the previous run.
        """
        with session_scope(self.session_factory) as db:
            rows = db.execute(
                select(SiteDocument.document_type, SiteDocument.url, SiteDocument.total_chunks)
                .where(SiteDocument.site_id == site_id)
            ).all()
            return [(r.document_type, r.url, int(r.total_chunks or 0)) for r in rows]

    def delete_documents(self, site_id: str) -> int:
        with session_scope(self.session_factory) as db:
            return db.execute(delete(SiteDocument).where(SiteDocument.site_id == site_id)).rowcount or 0

    def document_summary(self, site_id: str) -> Tuple[int, Dict[str, int], float]:
        """Total count, per-type counts and average word count of stored documents."""
        with session_scope(self.session_factory) as db:
            rows = db.execute(
                select(SiteDocument.document_type, SiteDocument.word_count)
                .where(SiteDocument.site_id == site_id)
            ).all()
        by_type = Counter(r.document_type for r in rows)
        total = len(rows)
        avg = (sum(r.word_count or 0 for r in rows) / total) if total else 0.0
        return total, dict(by_type), round(avg, 1)


def _status_of(kb: KnowledgeBase) -> KnowledgeBaseStatus:
    return KnowledgeBaseStatus(
        site_id=kb.site_id,
        status=kb.status,
        total_documents=kb.total_documents or 0,
        last_refresh=kb.last_refresh,
        error_message=kb.error_message,
    )
