"""Database ORM models.

Relational store (Base):
- Site: the site record read for crawling; holds the ragEnabled flag and the
  business intelligence profile blob.
- KnowledgeBase: one status record per site (the pipeline state machine).
- SiteDocument: crawled documents of the latest pipeline run.

Vector store (VectorBase):
- VectorEntry: an embedded chunk in a per-site namespace with a pgvector
  embedding used for cosine similarity search.
"""

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB

from sitekb.config import settings
from sitekb.db import Base, VectorBase
from sitekb.utils import utcnow


class Site(Base):
    """Site owned by the surrounding application.

    The knowledge base only reads ``url`` and writes ``rag_enabled`` and the
    profile columns.
    """
    __tablename__ = "sites"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=True)
    url = Column(String(512), nullable=False)
    rag_enabled = Column(Boolean, nullable=False, default=False)

    # Business intelligence profile
    business_intelligence = Column(JSON, nullable=True)
    brand_voice = Column(JSON, nullable=True)
    target_audience = Column(JSON, nullable=True)
    services_summary = Column(JSON, nullable=True)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class KnowledgeBase(Base):
    """Pipeline status for a site.

    ``status`` is one of initializing, processing, ready, error, disabled.
    """
    __tablename__ = "site_knowledge_bases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    site_id = Column(String(64), nullable=False, unique=True)
    status = Column(String(32), nullable=False, default="initializing")
    total_documents = Column(Integer, nullable=False, default=0)
    last_refresh = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class SiteDocument(Base):
    """A crawled document from the latest run for a site."""
    __tablename__ = "site_documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    site_id = Column(String(64), nullable=False)
    url = Column(String(1024), nullable=False)
    title = Column(String(512), nullable=True)
    document_type = Column(String(32), nullable=False)
    content = Column(Text, nullable=False)
    word_count = Column(Integer, nullable=False, default=0)
    total_chunks = Column(Integer, nullable=False, default=0)
    status = Column(String(32), nullable=False, default="pending")  # pending | embedded | error
    last_crawled = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("site_id", "url", name="uq_site_documents_site_url"),
        Index("idx_site_documents_site", "site_id"),
    )


class VectorEntry(VectorBase):
    """Vector-embedded chunk in a site namespace.

    Ids are unique within a namespace; the VectorIndex additionally prefixes
    them with the site id.

    Notes:
        The embedding dimension is derived from settings.EMBEDDING_DIM and should
        match the embedding model configured in sitekb.config.Settings.
    """
    __tablename__ = "kb_vectors"

    namespace = Column(String(64), primary_key=True)
    id = Column(String(255), primary_key=True)
    embedding = Column(Vector(dim=settings.EMBEDDING_DIM), nullable=False)
    meta = Column("metadata", JSONB, nullable=False, default=dict)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_kb_vectors_namespace", "namespace"),
    )
