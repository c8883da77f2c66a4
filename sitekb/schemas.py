"""Pydantic models for the knowledge base data model and API contracts.

Data model:
- CrawledDocument / CrawlResult: output of one crawl pass.
- TextChunk / ChunkMetadata: bounded word windows derived from a document.
- VectorRecord / QueryResult: what goes into and comes out of the vector index.
- KnowledgeBaseStatus: the per-site pipeline state record.
- BusinessIntelligenceProfile and its sections: synthesized site profile.

API contracts:
- RAGQuery / RAGResponse: retrieval-augmented generation request and result.
- GenerateContentRequest, AnalyzeContentRequest / ContentQualityReport.
- DocumentInfo, KnowledgeBaseStatistics: read models for the documents/statistics routes.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


DocumentType = Literal["page", "blog", "service", "about", "contact", "testimonial", "faq"]
DOCUMENT_TYPES = ("page", "blog", "service", "about", "contact", "testimonial", "faq")

KnowledgeBaseState = Literal["initializing", "processing", "ready", "error", "disabled"]

ContentType = Literal["title", "description", "faq", "paragraph"]


class CrawledDocument(BaseModel):
    """A single page produced by a crawl pass.

    Immutable once produced; a refresh supersedes the whole set rather than
    merging into it.
    """
    model_config = ConfigDict(frozen=True)

    site_id: str
    url: str
    title: str = ""
    content: str
    document_type: DocumentType = "page"
    word_count: int = 0
    headings: List[str] = Field(default_factory=list)
    last_crawled_at: datetime


class CrawlResult(BaseModel):
    """Pages collected by one crawl invocation plus per-page failure messages."""
    site_id: str
    pages: List[CrawledDocument] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @property
    def total_pages(self) -> int:
        return len(self.pages)


class ChunkMetadata(BaseModel):
    site_id: str
    document_type: DocumentType
    url: str
    title: str = ""
    chunk_index: int
    total_chunks: int


class TextChunk(BaseModel):
    """A word window of a document. ``id`` is stable per document and chunk index."""
    id: str
    text: str
    metadata: ChunkMetadata


class VectorRecord(BaseModel):
    """An embedded chunk ready for the vector index.

    Attributes:
        id: Chunk id; the index prefixes it with the site id on upsert.
        embedding: Fixed-length float vector.
        metadata: content/title/url/documentType/siteId plus chunk bookkeeping.
    """
    id: str
    embedding: List[float]
    metadata: Dict[str, Any] = Field(default_factory=dict)


class QueryResult(BaseModel):
    """A single similarity match; score is cosine similarity in [-1, 1]."""
    id: str
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class KnowledgeBaseStatus(BaseModel):
    site_id: str
    status: KnowledgeBaseState
    total_documents: int = 0
    last_refresh: Optional[datetime] = None
    error_message: Optional[str] = None


class DocumentInfo(BaseModel):
    id: int
    url: str
    title: str = ""
    document_type: str
    status: str
    word_count: int = 0
    total_chunks: int = 0
    last_crawled: Optional[datetime] = None


class KnowledgeBaseStatistics(BaseModel):
    site_id: str
    total_documents: int
    documents_by_type: Dict[str, int]
    average_word_count: float
    last_refresh: Optional[datetime] = None
    vector_count: int


# ---------------------------------------------------------------------------
# Business intelligence profile
# ---------------------------------------------------------------------------


class BrandVoice(BaseModel):
    tone: str = Field(..., min_length=1)
    style: str = ""
    personality: List[str] = Field(default_factory=list)
    key_phrases: List[str] = Field(default_factory=list)


class ContentGuidelines(BaseModel):
    dos: List[str] = Field(default_factory=list)
    donts: List[str] = Field(default_factory=list)
    preferred_terms: List[str] = Field(default_factory=list)


class TargetAudience(BaseModel):
    primary_audience: str = Field(..., min_length=1)
    demographics: List[str] = Field(default_factory=list)
    pain_points: List[str] = Field(default_factory=list)
    goals: List[str] = Field(default_factory=list)


class BusinessContext(BaseModel):
    company_name: str = Field(..., min_length=1)
    industry: str = ""
    value_proposition: str = ""
    differentiators: List[str] = Field(default_factory=list)
    location: str = ""


class ContactInfo(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    website: Optional[str] = None


class Service(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""


class BusinessIntelligenceProfile(BaseModel):
    """Synthesized description of a site, rewritten on every successful pipeline run."""
    brand_voice: BrandVoice
    target_audience: TargetAudience
    business_context: BusinessContext
    content_guidelines: ContentGuidelines = Field(default_factory=ContentGuidelines)
    services: List[Service] = Field(default_factory=list)
    contact_info: ContactInfo = Field(default_factory=ContactInfo)
    generated_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# RAG requests/responses
# ---------------------------------------------------------------------------


class RAGQuery(BaseModel):
    """Request for the retrieval-augmented generation pipeline.

    Attributes:
        site_id: Site whose namespace is searched.
        query: Free-text query to embed and answer.
        context_type: Optional narrowing; a document type restricts retrieval to
            that type, anything else (content kinds, "all") searches every type.
        max_results: topK for the vector query (defaults server-side).
        similarity_threshold: Minimum cosine score for a match to be used.
    """
    site_id: str = Field(..., min_length=1)
    query: str = Field(..., min_length=1)
    context_type: Optional[str] = None
    max_results: Optional[int] = Field(default=None, ge=1, le=100)
    similarity_threshold: Optional[float] = Field(default=None, ge=-1.0, le=1.0)


class PerformanceMetrics(BaseModel):
    response_time_ms: int
    embedding_time_ms: int
    context_retrieval_time_ms: int
    generation_time_ms: int
    similarity_scores: List[float] = Field(default_factory=list)


class RAGResponseMetadata(BaseModel):
    query: str
    site_id: str
    model: str
    timestamp: datetime


class RAGResponse(BaseModel):
    response: str
    context_used: List[QueryResult]
    performance_metrics: PerformanceMetrics
    metadata: RAGResponseMetadata


class GenerateContentRequest(BaseModel):
    site_id: str = Field(..., min_length=1)
    content_type: ContentType
    topic: str = Field(..., min_length=1)
    context: Optional[str] = None


class AnalyzeContentRequest(BaseModel):
    site_id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    target_query: str = Field(..., min_length=1)


class ContentQualityReport(BaseModel):
    relevance_score: float
    brand_alignment_score: float
    seo_score: float
    suggestions: List[str] = Field(default_factory=list)
