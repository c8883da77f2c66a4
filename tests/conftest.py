"""Shared fakes and fixtures.

- FakeOpenAI: embeddings + chat completions with the OpenAI client's shape.
  Embeddings are hashed bags of words, so texts sharing words are similar.
- FakeSession: requests.Session stand-in serving canned HTML per URL.
- session_factory: SQLite-backed sessionmaker with the relational tables.
"""
import hashlib
import json
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sitekb import models
from sitekb.config import Settings
from sitekb.db import Base

DIM = 32


def hashed_embedding(text: str, dim: int = DIM) -> List[float]:
    vec = [0.0] * dim
    for tok in text.lower().split():
        tok = "".join(ch for ch in tok if ch.isalnum())
        if not tok:
            continue
        vec[int(hashlib.md5(tok.encode()).hexdigest()[:8], 16) % dim] += 1.0
    return vec


class FakeEmbeddings:
    def __init__(self, dim: int = DIM):
        self.dim = dim
        self.calls: List[List[str]] = []
        self.fail: Optional[Callable[[List[str]], bool]] = None
        self.override: Dict[str, List[float]] = {}

    def create(self, model, input, encoding_format="float"):
        texts = [input] if isinstance(input, str) else list(input)
        self.calls.append(texts)
        if self.fail is not None and self.fail(texts):
            raise RuntimeError("embedding provider unavailable")
        return SimpleNamespace(
            data=[
                SimpleNamespace(embedding=self.override.get(t, hashed_embedding(t, self.dim)))
                for t in texts
            ]
        )


BI_RESPONSES = {
    '"brand_voice"': {
        "brand_voice": {"tone": "friendly", "style": "conversational", "personality": ["helpful"]},
        "content_guidelines": {"dos": ["be clear"], "donts": ["use jargon"]},
    },
    '"target_audience"': {
        "target_audience": {"primary_audience": "small business owners", "pain_points": ["leaky pipes"]},
    },
    '"business_context"': {
        "business_context": {"company_name": "Acme Plumbing", "industry": "plumbing"},
        "contact_info": {"email": "hello@acme.test", "phone": "555-0100"},
    },
    '"services"': {
        "services": [{"name": "Pipe repair", "description": "Fixing leaks fast"}],
    },
}


def default_responder(system: str, user: str, kwargs: dict) -> str:
    if "classifying web pages" in system:
        return "page"
    if "structured business information" in system:
        shape = user.rsplit("shape:", 1)[-1]
        for marker, payload in BI_RESPONSES.items():
            if shape.lstrip().startswith("{" + marker):
                return json.dumps(payload)
        return "{}"
    return "Generated answer grounded in the site."


class FakeCompletions:
    def __init__(self, responder):
        self.responder = responder
        self.calls: List[dict] = []

    def create(self, model, messages, temperature, max_tokens, **kwargs):
        system = messages[0]["content"]
        user = messages[1]["content"]
        self.calls.append(
            {"model": model, "system": system, "user": user, "temperature": temperature,
             "max_tokens": max_tokens, **kwargs}
        )
        content = self.responder(system, user, kwargs)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class FakeOpenAI:
    def __init__(self, dim: int = DIM, responder=default_responder):
        self.embeddings = FakeEmbeddings(dim)
        self.chat = SimpleNamespace(completions=FakeCompletions(responder))


class FakeResponse:
    def __init__(self, status_code: int, text: str, content_type: str = "text/html; charset=utf-8"):
        self.status_code = status_code
        self.text = text
        self.headers = {"Content-Type": content_type}


class FakeSession:
    """Serves ``pages[url]``; a missing URL is a 404, an exception value is raised."""

    def __init__(self, pages: Dict[str, object]):
        self.pages = pages
        self.requested: List[str] = []

    def get(self, url, headers=None, timeout=None):
        self.requested.append(url)
        value = self.pages.get(url)
        if value is None:
            return FakeResponse(404, "not found")
        if isinstance(value, Exception):
            raise value
        if isinstance(value, FakeResponse):
            return value
        return FakeResponse(200, value)


def html_page(title: str, body: str, links: List[str] = ()) -> str:
    nav = "".join(f'<a href="{href}">{href}</a>' for href in links)
    return (
        f"<html><head><title>{title}</title><script>var x = 1;</script></head>"
        f"<body><nav>{nav}</nav><main><h1>{title}</h1><p>{body}</p></main>"
        f"<footer>Copyright footer text</footer></body></html>"
    )


HOME_TEXT = (
    "Acme Plumbing is a friendly family business serving homeowners and small business owners. "
    "We repair leaky pipes, install water heaters and clear blocked drains across the city."
)
SERVICES_TEXT = (
    "Our services include pipe repair, water heater installation and drain cleaning. "
    "What we do is fix leaks fast with upfront pricing and licensed plumbers on every job."
)
ABOUT_TEXT = (
    "About us: Acme Plumbing was founded in 1990. Our story started with one van and a "
    "promise to treat every customer like a neighbour. Contact us at hello@acme.test."
)


@pytest.fixture
def site_pages() -> Dict[str, object]:
    return {
        "https://acme.test": html_page(
            "Acme Plumbing", HOME_TEXT,
            ["/services/", "/about", "mailto:hello@acme.test", "/login", "/logo.png", "https://other.test/x"],
        ),
        "https://acme.test/services": html_page("Our Services", SERVICES_TEXT, ["/", "/about"]),
        "https://acme.test/about": html_page("About Acme", ABOUT_TEXT, ["/", "/services/"]),
    }


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool, future=True
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, future=True)


@pytest.fixture
def add_site(session_factory):
    def _add(site_id: str = "site-1", url: str = "https://acme.test/") -> str:
        with session_factory() as db:
            db.add(models.Site(id=site_id, name="Acme", url=url, rag_enabled=False))
            db.commit()
        return site_id
    return _add


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        OPENAI_API_KEY="test-key",
        VECTOR_BACKEND="memory",
        LOCK_BACKEND="memory",
        EMBEDDING_BATCH_DELAY_SECONDS=0.0,
        INDEX_POLL_INTERVAL_SECONDS=0.0,
        RAG_SIMILARITY_THRESHOLD=0.1,
        CONTENT_SIMILARITY_THRESHOLD=0.05,
        BI_SIMILARITY_THRESHOLD=0.05,
    )


@pytest.fixture
def fake_openai(test_settings) -> FakeOpenAI:
    return FakeOpenAI(dim=test_settings.EMBEDDING_DIM)


@pytest.fixture
def kb_services(test_settings, fake_openai, site_pages, session_factory, add_site):
    from sitekb.locks import SiteLockRegistry
    from sitekb.services import build_services
    from sitekb.vector_store import InMemoryVectorClient

    add_site("site-1", "https://acme.test/")
    services = build_services(
        test_settings,
        openai_client=fake_openai,
        http_session=FakeSession(site_pages),
        vector_client=InMemoryVectorClient(),
        session_factory=session_factory,
        locks=SiteLockRegistry(),
    )
    services.embedder._sleep = lambda s: None
    services.index._sleep = lambda s: None
    return services
