"""Site crawler and page classifier.

Crawls a site breadth-first from its base URL, extracts the main text of each
page, classifies it into a document type, and returns CrawledDocument objects.

Main pieces:
- should_skip_url: skip-pattern filter (assets, mailto/tel/fragments, auth/account/admin paths)
- extract_links: find and normalize same-host links from a page
- extract_page: strip non-content markup and pick the main content container
- fallback_classify: deterministic URL/keyword classifier
- DocumentClassifier: generation-API classification with the deterministic fallback
- SiteCrawler: BFS over (url, depth) bounded by max_pages and max_depth

A failure on one page is recorded in the result's ``errors`` and never aborts the crawl.
"""
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional, Set, Tuple
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from sitekb.errors import FetchError, GenerationError
from sitekb.generation import GenerationClient
from sitekb.schemas import DOCUMENT_TYPES, CrawledDocument, CrawlResult, DocumentType
from sitekb.utils import normalize_url, normalize_whitespace, same_host, strip_non_printable, utcnow

logger = logging.getLogger(__name__)


HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

# Markup that never carries page content
NON_CONTENT_TAGS = ["script", "style", "noscript", "iframe", "nav", "footer", "header", "aside"]

# Priority order for content extraction
CONTENT_SELECTORS = [
    "main",
    "article",
    ".content",
    ".main-content",
    ".post-content",
    ".entry-content",
    "#content",
    "#main",
    ".container",
    "body",
]

SKIP_PATTERNS = [
    re.compile(r"\.(pdf|doc|docx|xls|xlsx|ppt|pptx|zip|rar|exe|dmg)$", re.I),
    re.compile(r"\.(jpg|jpeg|png|gif|svg|ico|webp|mp4|mp3|avi|mov)$", re.I),
    re.compile(r"\.(css|js|xml|json|txt|log)$", re.I),
    re.compile(r"^(mailto|tel|javascript):", re.I),
    re.compile(r"#"),
    re.compile(r"/(wp-)?admin\b", re.I),
    re.compile(r"/(login|logout|signin|signup|register|auth)\b", re.I),
    re.compile(r"/(cart|checkout|account|dashboard|profile|settings)\b", re.I),
]


def should_skip_url(url: str) -> bool:
    """True for URLs the crawler must not queue."""
    path_and_query = url
    parsed = urlparse(url)
    if parsed.scheme in ("http", "https"):
        path_and_query = parsed.path + (f"?{parsed.query}" if parsed.query else "")
        if parsed.fragment:
            path_and_query += "#"
    return any(p.search(path_and_query) for p in SKIP_PATTERNS)


def extract_links(page_url: str, hrefs: List[str], root_url: str) -> List[str]:
    """Resolve, filter and deduplicate outgoing links.

    Args:
        page_url: URL used to resolve relative hrefs.
        hrefs: Raw href attribute values.
        root_url: Crawl root; only links on the same hostname are kept.

    Returns:
        List[str]: Absolute, normalized URLs in first-seen order.
    """
    seen: Set[str] = set()
    out: List[str] = []
    for href in hrefs:
        href = href.strip()
        if not href or should_skip_url(href):
            continue
        abs_url = urljoin(page_url, href)
        if urlparse(abs_url).scheme not in ("http", "https"):
            continue
        if not same_host(abs_url, root_url) or should_skip_url(abs_url):
            continue
        abs_url = normalize_url(abs_url)
        if abs_url not in seen:
            seen.add(abs_url)
            out.append(abs_url)
    return out


@dataclass
class ExtractedPage:
    title: str
    content: str
    links: List[str] = field(default_factory=list)
    headings: List[str] = field(default_factory=list)


def clean_content(text: str) -> str:
    """Whitespace-normalize and drop non-printable characters."""
    return normalize_whitespace(strip_non_printable(text))


def extract_page(html: str, min_container_chars: int = 200) -> ExtractedPage:
    """Extract title, main content, raw links and headings from HTML.

    Links and headings are collected before non-content markup (nav, footer,
    ...) is removed so navigation links still feed the crawl queue. Content
    falls back through CONTENT_SELECTORS and takes the first container whose
    text is longer than ``min_container_chars``; otherwise the last matching
    container wins.

    Args:
        html: Raw HTML string.
        min_container_chars: Minimum text length for a container to be accepted.

    Returns:
        ExtractedPage: Title, cleaned content, hrefs and headings.
    """
    soup = BeautifulSoup(html, "lxml")

    links = [a["href"] for a in soup.find_all("a", href=True)]
    headings = [
        h.get_text(" ", strip=True)
        for h in soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"])
        if h.get_text(strip=True)
    ]

    title = ""
    if soup.title and soup.title.string:
        title = soup.title.string.strip()
    if not title:
        h1 = soup.find("h1")
        title = h1.get_text(" ", strip=True) if h1 else ""

    for tag in soup(NON_CONTENT_TAGS):
        tag.decompose()

    content = ""
    for selector in CONTENT_SELECTORS:
        el = soup.select_one(selector)
        if el is None:
            continue
        candidate = clean_content(el.get_text(" ", strip=True))
        if candidate:
            content = candidate
        if len(candidate) > min_container_chars:
            break

    return ExtractedPage(title=clean_content(title)[:500], content=content, links=links, headings=headings)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_AUTH_PATHS = (
    "/signup/", "/login/", "/register/", "/auth/", "/admin/", "/dashboard/",
    "/cart/", "/checkout/", "/account/", "/profile/", "/settings/",
)


def fallback_classify(url: str, title: str, content: str) -> DocumentType:
    """Deterministic URL/keyword classifier; always returns a valid document type."""
    u = urlparse(url.lower()).path.rstrip("/") + "/"
    t = title.lower()
    c = content.lower()

    if any(p in u for p in _AUTH_PATHS):
        return "page"

    if any(p in u for p in ("/blog/", "/blogs/", "/post/", "/posts/", "/article/", "/articles/")) \
            or "blog" in t or "blog post" in c:
        return "blog"

    if any(p in u for p in ("/services/", "/service/", "/features/", "/solutions/")) \
            or "our services" in c or "what we do" in c:
        return "service"

    if "/about/" in u or "about" in t or "about us" in c or "our story" in c:
        return "about"

    if "/contact/" in u or "contact" in t or "contact us" in c or "get in touch" in c:
        return "contact"

    if any(p in u for p in ("/testimonials", "/testimonial", "/reviews", "/review")) \
            or (("testimonial" in c or "review" in c) and "blog" not in c):
        return "testimonial"

    if "/faq/" in u or "/help/" in u or "faq" in t or "frequently asked" in c:
        return "faq"

    return "page"


CLASSIFIER_SYSTEM_PROMPT = (
    "You are an expert at classifying web pages into content categories. "
    "Respond with only the category name."
)


class DocumentClassifier:
    """Two-tier page classifier.

    The generation API is asked first; if it fails or answers with a label
    outside DOCUMENT_TYPES, the deterministic fallback decides.

    Args:
        generator: Optional generation client; None means fallback only.
        preview_chars: Content characters sent to the model.
    """

    def __init__(self, generator: Optional[GenerationClient] = None, preview_chars: int = 2000):
        self.generator = generator
        self.preview_chars = preview_chars

    def _prompt(self, url: str, title: str, content: str) -> str:
        return (
            "Analyze this webpage and classify it into one of these categories:\n"
            "- blog: Blog posts, articles, news, tutorials, guides\n"
            "- service: Service pages, product pages, what we offer, features, solutions\n"
            "- about: About us, company information, team pages, our story\n"
            "- contact: Contact information, contact forms, get in touch\n"
            "- testimonial: Customer reviews, testimonials, case studies\n"
            "- faq: Frequently asked questions, help pages, support\n"
            "- page: General pages, landing pages, other content\n\n"
            "IMPORTANT: Avoid classifying signup, login, auth, admin, or account pages as services.\n\n"
            f"URL: {url}\n"
            f"Title: {title}\n"
            f"Content Preview: {content[:self.preview_chars]}\n\n"
            "Respond with only the category name (blog, service, about, contact, testimonial, faq, or page):"
        )

    def classify(self, url: str, title: str, content: str) -> DocumentType:
        if self.generator is None:
            return fallback_classify(url, title, content)
        try:
            raw = self.generator.complete(
                CLASSIFIER_SYSTEM_PROMPT,
                self._prompt(url, title, content),
                max_tokens=50,
                temperature=0.1,
            )
        except GenerationError as exc:
            logger.warning("Classification call failed for %s (%s); using fallback", url, exc)
            return fallback_classify(url, title, content)

        label = raw.strip().strip(".\"'` ").lower()
        if label in DOCUMENT_TYPES:
            logger.debug("Classified %s as %s", url, label)
            return label  # type: ignore[return-value]
        logger.info("Model returned invalid label %r for %s; using fallback", raw, url)
        return fallback_classify(url, title, content)


# ---------------------------------------------------------------------------
# Crawler
# ---------------------------------------------------------------------------


class SiteCrawler:
    """Breadth-first single-site crawler.

    Args:
        session: HTTP session (anything with ``get(url, headers=..., timeout=...)``).
        classifier: Document type classifier.
        max_pages: Maximum number of documents collected per crawl.
        max_depth: Maximum link depth from the base URL (base URL is depth 0).
        timeout: Per-page request timeout in seconds.
        user_agent: User-Agent header value.
        min_content_chars: Pages with less extracted text are skipped.
        min_container_chars: Threshold for accepting a content container.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        classifier: Optional[DocumentClassifier] = None,
        max_pages: int = 50,
        max_depth: int = 3,
        timeout: float = 10.0,
        user_agent: str = "SiteKB-Bot/1.0",
        min_content_chars: int = 50,
        min_container_chars: int = 200,
    ):
        self.session = session or requests.Session()
        self.classifier = classifier or DocumentClassifier()
        self.max_pages = max_pages
        self.max_depth = max_depth
        self.timeout = timeout
        self.headers = {**HEADERS, "User-Agent": user_agent}
        self.min_content_chars = min_content_chars
        self.min_container_chars = min_container_chars

    def fetch(self, url: str) -> str:
        """GET a page and return its HTML.

        Raises:
            FetchError: On network errors, HTTP errors or non-HTML responses.
        """
        try:
            resp = self.session.get(url, headers=self.headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise FetchError(url, str(exc)) from exc
        if resp.status_code != 200:
            raise FetchError(url, f"HTTP {resp.status_code}")
        ctype = resp.headers.get("Content-Type", "text/html")
        if "html" not in ctype.lower():
            raise FetchError(url, f"unsupported content type {ctype}")
        return resp.text

    def crawl(self, site_id: str, base_url: str) -> CrawlResult:
        """Crawl a site breadth-first from ``base_url``.

        Args:
            site_id: Site the documents belong to.
            base_url: Crawl root; only its hostname is followed.

        Returns:
            CrawlResult: At most ``max_pages`` documents, none deeper than
            ``max_depth``, and one message per failed page.
        """
        root = normalize_url(base_url)
        logger.info("Starting crawl for site %s at %s", site_id, root)

        queue: Deque[Tuple[str, int]] = deque([(root, 0)])
        visited: Set[str] = set()
        pages: List[CrawledDocument] = []
        errors: List[str] = []

        while queue and len(pages) < self.max_pages:
            url, depth = queue.popleft()
            if url in visited or depth > self.max_depth:
                continue
            visited.add(url)

            try:
                doc, links = self._crawl_page(site_id, url, root, depth)
            except FetchError as exc:
                logger.warning("%s", exc)
                errors.append(str(exc))
                continue

            if doc is not None:
                pages.append(doc)
            if depth < self.max_depth:
                for nxt in links:
                    if nxt not in visited:
                        queue.append((nxt, depth + 1))

        logger.info(
            "Completed crawl for site %s: %d pages, %d errors, %d urls visited",
            site_id, len(pages), len(errors), len(visited),
        )
        return CrawlResult(site_id=site_id, pages=pages, errors=errors)

    def _crawl_page(
        self, site_id: str, url: str, root: str, depth: int
    ) -> Tuple[Optional[CrawledDocument], List[str]]:
        logger.debug("Crawling page: %s (depth: %d)", url, depth)
        html = self.fetch(url)
        try:
            page = extract_page(html, self.min_container_chars)
        except Exception as exc:
            raise FetchError(url, f"unparseable HTML: {exc}") from exc

        links = extract_links(url, page.links, root)
        if len(page.content) < self.min_content_chars:
            logger.info("Skipping %s: insufficient content (%d chars)", url, len(page.content))
            return None, links

        doc = CrawledDocument(
            site_id=site_id,
            url=url,
            title=page.title,
            content=page.content,
            document_type=self.classifier.classify(url, page.title, page.content),
            word_count=len(page.content.split()),
            headings=page.headings,
            last_crawled_at=utcnow(),
        )
        return doc, links
