from datetime import datetime

import pytest

from conftest import DIM, FakeOpenAI
from sitekb.chunking import build_chunks
from sitekb.embedding import EmbeddingGenerator
from sitekb.errors import GenerationError
from sitekb.generation import GenerationClient
from sitekb.retrieval import RetrievalGenerator, build_content_query, build_filter, format_context
from sitekb.schemas import (
    BrandVoice,
    BusinessContext,
    BusinessIntelligenceProfile,
    CrawledDocument,
    QueryResult,
    RAGQuery,
    TargetAudience,
)
from sitekb.vector_store import InMemoryVectorClient, VectorIndex

DOCS = [
    ("https://acme.test/services", "service", "Pipe Repair", "pipe repair leak fixing fast emergency plumber"),
    ("https://acme.test/blog/heaters", "blog", "Water Heaters", "water heater installation tank boiler guide"),
    ("https://acme.test/about", "about", "About Acme", "family business founded neighbours story"),
]


@pytest.fixture
def openai():
    return FakeOpenAI()


@pytest.fixture
def index():
    return VectorIndex(InMemoryVectorClient(), DIM, sleep=lambda s: None)


@pytest.fixture
def rag(openai, index):
    embedder = EmbeddingGenerator(openai, "emb", DIM, sleep=lambda s: None)
    for url, doc_type, title, text in DOCS:
        doc = CrawledDocument(
            site_id="s1", url=url, title=title, content=text, document_type=doc_type,
            word_count=len(text.split()), last_crawled_at=datetime(2024, 1, 1),
        )
        index.upsert("s1", embedder.embed_batch(build_chunks(doc)))
    profile = BusinessIntelligenceProfile(
        brand_voice=BrandVoice(tone="warm"),
        target_audience=TargetAudience(primary_audience="homeowners"),
        business_context=BusinessContext(company_name="Acme Plumbing"),
    )
    return RetrievalGenerator(
        embedder, index, GenerationClient(openai, "gpt-test"),
        profile_loader=lambda site_id: profile if site_id == "s1" else None,
    )


def test_query_returns_context_above_threshold_and_metrics(rag, openai):
    resp = rag.query(RAGQuery(site_id="s1", query="pipe repair leak", similarity_threshold=0.3))
    assert resp.response == "Generated answer grounded in the site."
    assert resp.context_used
    assert all(r.score >= 0.3 for r in resp.context_used)
    assert resp.context_used[0].metadata["title"] == "Pipe Repair"
    assert resp.performance_metrics.similarity_scores == [r.score for r in resp.context_used]
    assert resp.metadata.model == "gpt-test"

    call = openai.chat.completions.calls[-1]
    assert "[Document: Pipe Repair]" in call["user"]
    assert "User Query: pipe repair leak" in call["user"]
    assert "Acme Plumbing" in call["system"]
    assert '"tone": "warm"' in call["system"]


@pytest.mark.parametrize("threshold", [0.0, 0.2, 0.5, 0.9])
def test_every_returned_result_meets_threshold(rag, threshold):
    resp = rag.query(RAGQuery(site_id="s1", query="water heater pipe", similarity_threshold=threshold, max_results=10))
    assert all(r.score >= threshold for r in resp.context_used)


def test_unrelated_query_degrades_gracefully(rag, openai):
    resp = rag.query(RAGQuery(site_id="s1", query="unrelated nonsense", similarity_threshold=0.99))
    assert resp.context_used == []
    assert resp.response
    assert "Relevant Context from the website:\n\n" in openai.chat.completions.calls[-1]["user"]


def test_default_threshold_and_max_results(rag, index, monkeypatch):
    seen = {}
    original = index.query

    def spy(site_id, vector, top_k=5, filter=None):
        seen.update(top_k=top_k, filter=filter)
        return original(site_id, vector, top_k, filter)

    monkeypatch.setattr(index, "query", spy)
    rag.query(RAGQuery(site_id="s1", query="pipe"))
    assert seen == {"top_k": 5, "filter": None}


def test_document_type_context_filters_results(rag):
    resp = rag.query(
        RAGQuery(site_id="s1", query="pipe repair water heater", context_type="blog", similarity_threshold=0.0)
    )
    assert resp.context_used
    assert {r.metadata["documentType"] for r in resp.context_used} == {"blog"}


def test_other_site_sees_nothing(rag):
    resp = rag.query(RAGQuery(site_id="s2", query="pipe repair leak", similarity_threshold=0.0))
    assert resp.context_used == []


def test_generation_failure_propagates(rag, openai):
    def boom(system, user, kwargs):
        raise RuntimeError("rate limited")

    openai.chat.completions.responder = boom
    with pytest.raises(GenerationError, match="rate limited"):
        rag.query(RAGQuery(site_id="s1", query="pipe"))


def test_generate_content_uses_canned_query_and_broader_defaults(rag, openai, monkeypatch):
    captured = {}
    original = rag.query

    def spy(req):
        captured["req"] = req
        return original(req)

    monkeypatch.setattr(rag, "query", spy)
    rag.generate_content("s1", "faq", "pipe repair", "mention emergencies")
    req = captured["req"]
    assert req.query == "Generate faq for: pipe repair\n\nAdditional context: mention emergencies"
    assert req.max_results == 8
    assert req.similarity_threshold == 0.6
    assert req.context_type is None


def test_build_filter():
    assert build_filter("service") == {"documentType": "service"}
    assert build_filter("paragraph") is None
    assert build_filter("all") is None
    assert build_filter(None) is None


def test_format_context_and_content_query():
    results = [
        QueryResult(id="a", score=0.9, metadata={"title": "One", "content": "first"}),
        QueryResult(id="b", score=0.8, metadata={"content": "second"}),
    ]
    assert format_context(results) == "[Document: One]\nfirst\n\n---\n[Document: Untitled]\nsecond\n"
    assert format_context([]) == ""
    assert build_content_query("title", "pipes") == "Generate title for: pipes"


def test_analyze_content_quality(rag):
    report = rag.analyze_content_quality("s1", "pipe repair leak fixing fast", "pipe repair")
    assert 0.0 < report.relevance_score <= 1.0
    assert report.brand_alignment_score > 0.0
    assert 0.0 <= report.seo_score <= 1.0
    assert any("300 words" in s for s in report.suggestions)


def test_analyze_content_quality_without_indexed_content(rag):
    report = rag.analyze_content_quality("empty-site", "pipe repair", "boiler")
    assert report.brand_alignment_score == 0.0
    assert any("initialize the knowledge base" in s for s in report.suggestions)
    assert any("boiler" in s for s in report.suggestions)
