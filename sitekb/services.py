"""Explicit service wiring and the operations exposed to routes and the CLI.

build_services constructs every service object from a Settings instance with
its dependencies injected (HTTP session, OpenAI client, vector client, session
factory, lock provider). get_services caches one container per process and is
the FastAPI dependency overridden in tests.

Upward operations:
- initialize_knowledge_base, refresh_knowledge_base, delete_knowledge_base
- get_knowledge_base_status, get_documents, get_statistics
- process_query, generate_content, analyze_content_quality
"""
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional

import requests
from openai import OpenAI
from sqlalchemy.orm import sessionmaker

from sitekb import embedding, generation
from sitekb.business_intel import BusinessIntelligenceSynthesizer
from sitekb.config import Settings, settings
from sitekb.crawler import DocumentClassifier, SiteCrawler
from sitekb.db import get_engine, get_sessionmaker
from sitekb.embedding import EmbeddingGenerator
from sitekb.generation import GenerationClient
from sitekb.locks import RedisSiteLocks, SiteLockRegistry, get_redis
from sitekb.orchestrator import KnowledgeBaseOrchestrator
from sitekb.retrieval import RetrievalGenerator
from sitekb.schemas import (
    ContentQualityReport,
    DocumentInfo,
    KnowledgeBaseStatistics,
    KnowledgeBaseStatus,
    RAGQuery,
    RAGResponse,
)
from sitekb.store import KnowledgeBaseStore
from sitekb.vector_store import InMemoryVectorClient, PgVectorClient, VectorClient, VectorIndex

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: KnowledgeBaseStore
    crawler: SiteCrawler
    embedder: EmbeddingGenerator
    index: VectorIndex
    rag: RetrievalGenerator
    synthesizer: BusinessIntelligenceSynthesizer
    orchestrator: KnowledgeBaseOrchestrator


def build_vector_client(cfg: Settings) -> VectorClient:
    if cfg.VECTOR_BACKEND == "pgvector":
        return PgVectorClient(get_engine())
    if cfg.VECTOR_BACKEND == "memory":
        return InMemoryVectorClient()
    raise ValueError(f"Unknown VECTOR_BACKEND: {cfg.VECTOR_BACKEND}")


def build_locks(cfg: Settings):
    if cfg.LOCK_BACKEND == "redis":
        return RedisSiteLocks(get_redis(), timeout=cfg.LOCK_TIMEOUT_SECONDS)
    if cfg.LOCK_BACKEND == "memory":
        return SiteLockRegistry()
    raise ValueError(f"Unknown LOCK_BACKEND: {cfg.LOCK_BACKEND}")


def build_services(
    cfg: Settings = settings,
    openai_client: Optional[OpenAI] = None,
    http_session: Optional[requests.Session] = None,
    vector_client: Optional[VectorClient] = None,
    session_factory: Optional[sessionmaker] = None,
    locks=None,
) -> Services:
    """Construct the service graph.

    Every argument after ``cfg`` replaces the default collaborator, which is how
    tests substitute fakes.
    """
    embed_client = openai_client or embedding.get_client()
    chat_client = openai_client or generation.get_client()

    store = KnowledgeBaseStore(session_factory or get_sessionmaker())
    generator = GenerationClient(
        chat_client, cfg.OPENAI_MODEL, cfg.MAX_OUTPUT_TOKENS, cfg.GENERATION_TEMPERATURE
    )
    classifier = DocumentClassifier(GenerationClient(chat_client, cfg.OPENAI_CLASSIFIER_MODEL))
    crawler = SiteCrawler(
        session=http_session,
        classifier=classifier,
        max_pages=cfg.CRAWL_MAX_PAGES,
        max_depth=cfg.CRAWL_MAX_DEPTH,
        timeout=cfg.CRAWL_TIMEOUT_SECONDS,
        user_agent=cfg.CRAWL_USER_AGENT,
        min_content_chars=cfg.CRAWL_MIN_CONTENT_CHARS,
        min_container_chars=cfg.CRAWL_MIN_CONTAINER_CHARS,
    )
    embedder = EmbeddingGenerator(
        embed_client,
        cfg.OPENAI_EMBEDDING_MODEL,
        cfg.EMBEDDING_DIM,
        batch_size=cfg.EMBEDDING_BATCH_SIZE,
        batch_delay=cfg.EMBEDDING_BATCH_DELAY_SECONDS,
    )
    index = VectorIndex(
        vector_client or build_vector_client(cfg),
        cfg.EMBEDDING_DIM,
        poll_interval=cfg.INDEX_POLL_INTERVAL_SECONDS,
        ready_timeout=cfg.INDEX_READY_TIMEOUT_SECONDS,
        max_polls=cfg.INDEX_MAX_POLLS,
        wipe_page_size=cfg.SITE_WIPE_PAGE_SIZE,
    )
    rag = RetrievalGenerator(
        embedder,
        index,
        generator,
        profile_loader=store.get_profile,
        default_max_results=cfg.RAG_MAX_RESULTS,
        default_threshold=cfg.RAG_SIMILARITY_THRESHOLD,
        content_max_results=cfg.CONTENT_MAX_RESULTS,
        content_threshold=cfg.CONTENT_SIMILARITY_THRESHOLD,
    )
    synthesizer = BusinessIntelligenceSynthesizer(
        rag,
        generator,
        max_results=cfg.BI_MAX_RESULTS,
        threshold=cfg.BI_SIMILARITY_THRESHOLD,
        temperature=cfg.BI_TEMPERATURE,
    )
    orchestrator = KnowledgeBaseOrchestrator(
        store,
        crawler,
        embedder,
        index,
        synthesizer,
        locks=locks or build_locks(cfg),
        chunk_size=cfg.CHUNK_SIZE,
        chunk_overlap=cfg.CHUNK_OVERLAP,
        max_input_chars=cfg.EMBEDDING_MAX_INPUT_CHARS,
    )
    return Services(store, crawler, embedder, index, rag, synthesizer, orchestrator)


@lru_cache(maxsize=1)
def get_services() -> Services:
    """Process-wide service container built from the global settings."""
    logger.info(
        "Building services (vector backend=%s, lock backend=%s)", settings.VECTOR_BACKEND, settings.LOCK_BACKEND
    )
    return build_services(settings)


# ---------------------------------------------------------------------------
# Upward operations
# ---------------------------------------------------------------------------


def initialize_knowledge_base(site_id: str, services: Optional[Services] = None) -> KnowledgeBaseStatus:
    return (services or get_services()).orchestrator.initialize(site_id)


def get_knowledge_base_status(site_id: str, services: Optional[Services] = None) -> Optional[KnowledgeBaseStatus]:
    return (services or get_services()).orchestrator.get_status(site_id)


def refresh_knowledge_base(site_id: str, services: Optional[Services] = None) -> KnowledgeBaseStatus:
    return (services or get_services()).orchestrator.refresh(site_id)


def delete_knowledge_base(site_id: str, services: Optional[Services] = None) -> KnowledgeBaseStatus:
    return (services or get_services()).orchestrator.delete(site_id)


def get_documents(site_id: str, services: Optional[Services] = None) -> List[DocumentInfo]:
    return (services or get_services()).orchestrator.get_documents(site_id)


def get_statistics(site_id: str, services: Optional[Services] = None) -> KnowledgeBaseStatistics:
    return (services or get_services()).orchestrator.get_statistics(site_id)


def process_query(req: RAGQuery, services: Optional[Services] = None) -> RAGResponse:
    return (services or get_services()).rag.query(req)


def generate_content(
    site_id: str,
    content_type: str,
    topic: str,
    context: Optional[str] = None,
    services: Optional[Services] = None,
) -> RAGResponse:
    return (services or get_services()).rag.generate_content(site_id, content_type, topic, context)


def analyze_content_quality(
    site_id: str, content: str, target_query: str, services: Optional[Services] = None
) -> ContentQualityReport:
    return (services or get_services()).rag.analyze_content_quality(site_id, content, target_query)
