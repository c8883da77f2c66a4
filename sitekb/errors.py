"""Exception hierarchy for the knowledge base pipeline.

Recovered locally (logged, pipeline continues):
- FetchError: one crawled page failed.
- EmbeddingError: one chunk or batch could not be embedded.
- ProfileParseError: one business-intelligence pass produced unusable output.

Propagated to the caller:
- IndexNotReadyError / IndexTimeoutError: the vector index never became ready.
- VectorStoreError: upsert/query/delete failed.
- GenerationError: the completion API failed.
- CrawlError: a crawl produced no usable pages at all.
- SiteNotFoundError, InvalidStateError: relational store / state machine violations.
"""


class KnowledgeBaseError(Exception):
    """Root of all errors raised by sitekb."""


class FetchError(KnowledgeBaseError):
    """A single page could not be fetched or parsed."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Failed to crawl {url}: {reason}")
        self.url = url
        self.reason = reason


class CrawlError(KnowledgeBaseError):
    """A crawl finished without producing any usable document."""


class EmbeddingError(KnowledgeBaseError):
    """The embedding API failed or returned an invalid vector."""


class IndexNotReadyError(KnowledgeBaseError):
    """The vector index exists but does not accept requests yet."""


class IndexTimeoutError(IndexNotReadyError):
    """The vector index did not become ready within the polling window."""

    def __init__(self, index_name: str, attempts: int, elapsed: float):
        super().__init__(
            f"Index {index_name} failed to become ready after {attempts} polls ({elapsed:.1f}s)"
        )
        self.index_name = index_name
        self.attempts = attempts
        self.elapsed = elapsed


class VectorStoreError(KnowledgeBaseError):
    """A vector upsert, query or delete failed."""


class GenerationError(KnowledgeBaseError):
    """The completion API call failed."""


class ProfileParseError(KnowledgeBaseError):
    """A business-intelligence pass returned malformed or placeholder output."""

    def __init__(self, section: str, reason: str):
        super().__init__(f"Unusable {section} profile: {reason}")
        self.section = section
        self.reason = reason


class SiteNotFoundError(KnowledgeBaseError):
    """The relational store has no site with the given id."""


class InvalidStateError(KnowledgeBaseError):
    """The requested transition is not allowed from the current status."""
