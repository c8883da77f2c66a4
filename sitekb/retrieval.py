"""Retrieval-augmented generation over a site's knowledge base.

This module implements:
- build_filter: maps a context type to a vector metadata filter
- format_context: the context block handed to the generation call
- build_system_prompt / build_user_prompt: prompt construction around the site profile
- RetrievalGenerator: embed -> retrieve -> threshold filter -> generate, with
  per-phase timings; content generation helper; content quality analysis

Threshold filtering happens here, never in the vector index. When nothing
survives the threshold, generation still runs with an empty context block.
"""
import json
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from sitekb.embedding import EmbeddingGenerator
from sitekb.generation import GenerationClient
from sitekb.obs import span
from sitekb.schemas import (
    DOCUMENT_TYPES,
    BusinessIntelligenceProfile,
    ContentQualityReport,
    PerformanceMetrics,
    QueryResult,
    RAGQuery,
    RAGResponse,
    RAGResponseMetadata,
)
from sitekb.utils import cosine_similarity, tokenize, utcnow
from sitekb.vector_store import VectorIndex

logger = logging.getLogger(__name__)

ProfileLoader = Callable[[str], Optional[BusinessIntelligenceProfile]]


def build_filter(context_type: Optional[str]) -> Optional[Dict[str, str]]:
    """Metadata filter for a context type.

    Only document types narrow the search. Content kinds (title, paragraph,
    ...), "all" and None search every document type.
    """
    if context_type and context_type in DOCUMENT_TYPES:
        return {"documentType": context_type}
    return None


def format_context(results: List[QueryResult]) -> str:
    """Concatenate ``[Document: title]`` headers and chunk text, separated by ``---``."""
    parts = []
    for r in results:
        title = r.metadata.get("title") or "Untitled"
        parts.append(f"[Document: {title}]\n{r.metadata.get('content', '')}\n")
    return "\n---\n".join(parts)


def build_system_prompt(profile: Optional[BusinessIntelligenceProfile]) -> str:
    brand_voice = profile.brand_voice.model_dump() if profile else {}
    audience = profile.target_audience.model_dump() if profile else {}
    business = profile.business_context.model_dump() if profile else {}
    return (
        "You are an AI content assistant for a website. Use the provided context to generate "
        "high-quality, relevant content that matches the site's brand voice and target audience.\n\n"
        "Key Guidelines:\n"
        "- Maintain consistency with the site's existing content style\n"
        "- Use the provided context to ensure accuracy and relevance\n"
        "- Focus on providing value to the target audience\n"
        "- Keep the tone professional but approachable\n"
        "- Ensure the content is SEO-friendly and engaging\n\n"
        f"Brand Voice: {json.dumps(brand_voice)}\n"
        f"Target Audience: {json.dumps(audience)}\n"
        f"Business Context: {json.dumps(business)}\n\n"
        "Generate content that aligns with these characteristics while addressing the user's specific query."
    )


def build_user_prompt(query: str, context_text: str) -> str:
    return (
        f"User Query: {query}\n\n"
        "Relevant Context from the website:\n"
        f"{context_text}\n\n"
        "Please generate a response that:\n"
        "1. Directly addresses the user's query\n"
        "2. Incorporates relevant information from the provided context\n"
        "3. Maintains the site's brand voice and style\n"
        "4. Provides actionable and valuable information\n"
        "5. Is optimized for both users and search engines\n\n"
        "Response:"
    )


def build_content_query(content_type: str, topic: str, extra_context: Optional[str] = None) -> str:
    base = f"Generate {content_type} for: {topic}"
    if extra_context:
        return f"{base}\n\nAdditional context: {extra_context}"
    return base


def _ms(since: float) -> int:
    return int((time.perf_counter() - since) * 1000)


class RetrievalGenerator:
    """RAG service for one deployment.

    Args:
        embedder: Query embedder.
        index: Vector index holding every site's namespace.
        generator: Completion client.
        profile_loader: Returns the stored profile of a site (or None).
        default_max_results: topK when a query does not specify one.
        default_threshold: Similarity threshold when a query does not specify one.
        content_max_results: topK used by generate_content.
        content_threshold: Threshold used by generate_content.
    """

    def __init__(
        self,
        embedder: EmbeddingGenerator,
        index: VectorIndex,
        generator: GenerationClient,
        profile_loader: Optional[ProfileLoader] = None,
        default_max_results: int = 5,
        default_threshold: float = 0.7,
        content_max_results: int = 8,
        content_threshold: float = 0.6,
    ):
        self.embedder = embedder
        self.index = index
        self.generator = generator
        self.profile_loader = profile_loader
        self.default_max_results = default_max_results
        self.default_threshold = default_threshold
        self.content_max_results = content_max_results
        self.content_threshold = content_threshold

    def retrieve(
        self,
        site_id: str,
        query: str,
        top_k: int,
        threshold: float,
        context_type: Optional[str] = None,
    ) -> Tuple[List[QueryResult], int, int]:
        """Embed a query and return matches at or above ``threshold``.

        Returns:
            Tuple[List[QueryResult], int, int]: (filtered matches, embedding ms, retrieval ms).
        """
        t0 = time.perf_counter()
        with span("rag.embed", {"site_id": site_id}):
            vector = self.embedder.embed(query)
        embed_ms = _ms(t0)

        t1 = time.perf_counter()
        with span("rag.retrieve", {"site_id": site_id, "top_k": top_k}):
            matches = self.index.query(site_id, vector, top_k, build_filter(context_type))
        kept = [m for m in matches if m.score >= threshold]
        retrieve_ms = _ms(t1)
        logger.info(
            "Retrieved %d matches for site %s, %d above threshold %.2f",
            len(matches), site_id, len(kept), threshold,
        )
        return kept, embed_ms, retrieve_ms

    def query(self, req: RAGQuery) -> RAGResponse:
        """Answer a query grounded in the site's retrieved context.

        Raises:
            EmbeddingError: If the query cannot be embedded.
            VectorStoreError: If the index query fails.
            GenerationError: If the completion call fails.
        """
        start = time.perf_counter()
        top_k = self.default_max_results if req.max_results is None else req.max_results
        threshold = self.default_threshold if req.similarity_threshold is None else req.similarity_threshold

        context, embed_ms, retrieve_ms = self.retrieve(
            req.site_id, req.query, top_k, threshold, req.context_type
        )
        profile = self.profile_loader(req.site_id) if self.profile_loader else None

        t2 = time.perf_counter()
        with span("rag.generate", {"site_id": req.site_id, "context_size": len(context)}):
            answer = self.generator.complete(
                build_system_prompt(profile),
                build_user_prompt(req.query, format_context(context)),
            )
        generation_ms = _ms(t2)

        if not answer:
            answer = "No response generated"

        return RAGResponse(
            response=answer,
            context_used=context,
            performance_metrics=PerformanceMetrics(
                response_time_ms=_ms(start),
                embedding_time_ms=embed_ms,
                context_retrieval_time_ms=retrieve_ms,
                generation_time_ms=generation_ms,
                similarity_scores=[m.score for m in context],
            ),
            metadata=RAGResponseMetadata(
                query=req.query,
                site_id=req.site_id,
                model=self.generator.model,
                timestamp=utcnow(),
            ),
        )

    def generate_content(
        self,
        site_id: str,
        content_type: str,
        topic: str,
        extra_context: Optional[str] = None,
    ) -> RAGResponse:
        """Generate a title/description/faq/paragraph for a topic with broader context.

        Retrieval spans every document type; the content kind only shapes the query.
        """
        return self.query(
            RAGQuery(
                site_id=site_id,
                query=build_content_query(content_type, topic, extra_context),
                max_results=self.content_max_results,
                similarity_threshold=self.content_threshold,
            )
        )

    def analyze_content_quality(self, site_id: str, content: str, target_query: str) -> ContentQualityReport:
        """Score a piece of content against a target query and the site's indexed content.

        - relevance: cosine similarity of content and query embeddings
        - brand alignment: mean score of the content's three nearest site chunks
        - SEO: query-term coverage blended with a length heuristic
        """
        content_vec = self.embedder.embed(content)
        query_vec = self.embedder.embed(target_query)
        relevance = cosine_similarity(content_vec, query_vec)

        nearest = self.index.query(site_id, content_vec, 3)
        brand = sum(m.score for m in nearest) / len(nearest) if nearest else 0.0

        terms = set(tokenize(target_query))
        words = tokenize(content)
        coverage = len(terms & set(words)) / len(terms) if terms else 0.0
        n = len(words)
        if 300 <= n <= 2000:
            length_score = 1.0
        elif n < 300:
            length_score = n / 300
        else:
            length_score = max(0.5, 2000 / n)
        seo = round(0.6 * coverage + 0.4 * length_score, 3)

        suggestions: List[str] = []
        if coverage < 1.0 and terms:
            missing = sorted(terms - set(words))
            suggestions.append(f"Include the target terms: {', '.join(missing)}")
        if n < 300:
            suggestions.append("Expand the content; it is shorter than 300 words")
        elif n > 2000:
            suggestions.append("Consider splitting the content; it is longer than 2000 words")
        if relevance < 0.5:
            suggestions.append("Focus the content more directly on the target query")
        if not nearest:
            suggestions.append("No indexed site content found; initialize the knowledge base to score brand alignment")
        elif brand < 0.5:
            suggestions.append("Align wording and topics more closely with existing site content")

        return ContentQualityReport(
            relevance_score=round(relevance, 4),
            brand_alignment_score=round(brand, 4),
            seo_score=seo,
            suggestions=suggestions,
        )
