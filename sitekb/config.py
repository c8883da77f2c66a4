"""Application configuration and environment-driven settings.

Defines the Settings class based on pydantic-settings to centralize configuration for:
- API keys and model names
- Data stores (PostgreSQL, Redis) and backend selection for vectors and locks
- Crawl limits and extraction thresholds
- Chunking/embedding knobs (batch size, inter-batch delay, input cap)
- Vector index readiness polling
- Retrieval/generation knobs for queries, content generation and business intelligence
- Logging and tracing

A light-weight local safety warning is printed if OPENAI_API_KEY is not set when not running in Docker.
"""
import os
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Strongly-typed application settings loaded from environment variables.

    Uses pydantic-settings to populate fields from a .env file or process env.
    See individual field names for semantics and safe defaults.
    """
    # Required
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")

    # Models
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_CLASSIFIER_MODEL: str = "gpt-4o-mini"
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"  # 1536 dims

    # Data stores
    DATABASE_URL: str = "postgresql+psycopg2://kb_user:kb_pass@db:5432/kb_db"
    REDIS_URL: str = "redis://redis:6379/0"
    VECTOR_BACKEND: str = "pgvector"  # pgvector | memory
    LOCK_BACKEND: str = "memory"  # memory | redis
    LOCK_TIMEOUT_SECONDS: int = 1800

    # Crawl
    CRAWL_MAX_PAGES: int = 50
    CRAWL_MAX_DEPTH: int = 3
    CRAWL_TIMEOUT_SECONDS: float = 10.0
    CRAWL_USER_AGENT: str = "SiteKB-Bot/1.0"
    CRAWL_MIN_CONTENT_CHARS: int = 50
    CRAWL_MIN_CONTAINER_CHARS: int = 200

    # Chunking / embeddings
    CHUNK_SIZE: int = 1000  # words
    CHUNK_OVERLAP: int = 200  # words
    EMBEDDING_BATCH_SIZE: int = 100
    EMBEDDING_BATCH_DELAY_SECONDS: float = 1.0
    EMBEDDING_MAX_INPUT_CHARS: int = 8000

    # Vector index
    INDEX_POLL_INTERVAL_SECONDS: float = 2.0
    INDEX_READY_TIMEOUT_SECONDS: float = 60.0
    INDEX_MAX_POLLS: int = 30
    SITE_WIPE_PAGE_SIZE: int = 1000

    # Retrieval/Generation
    RAG_MAX_RESULTS: int = 5
    RAG_SIMILARITY_THRESHOLD: float = 0.7
    CONTENT_MAX_RESULTS: int = 8
    CONTENT_SIMILARITY_THRESHOLD: float = 0.6
    BI_MAX_RESULTS: int = 8
    BI_SIMILARITY_THRESHOLD: float = 0.5
    MAX_OUTPUT_TOKENS: int = 2000
    GENERATION_TEMPERATURE: float = 0.7
    BI_TEMPERATURE: float = 0.2

    # Observability
    LOG_LEVEL: str = "INFO"
    OTEL_CONSOLE_EXPORT: bool = False

    # Derived
    @property
    def EMBEDDING_DIM(self) -> int:
        """Embedding dimension for the configured embedding model.

        Returns:
            int: The vector dimension inferred from OPENAI_EMBEDDING_MODEL.
        """
        # Map common OpenAI embedding models to dimensions
        model = self.OPENAI_EMBEDDING_MODEL.lower()
        if "text-embedding-3-small" in model:
            return 1536
        if "text-embedding-3-large" in model:
            return 3072
        # Fallback
        return 1536

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()

# Safety check for local dev (inside API container this must be set)
if os.environ.get("RUNNING_IN_DOCKER", "0") == "0":
    # Only warn in local context; container will require it
    if not settings.OPENAI_API_KEY:
        # Avoid raising to allow local scaffolding before setting .env
        print("[WARN] OPENAI_API_KEY not set. Set it in .env before crawling or querying.")
