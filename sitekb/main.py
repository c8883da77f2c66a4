"""FastAPI application entrypoint and routes.

Exposes health and the /api/rag endpoints (initialize, status, documents,
statistics, refresh, delete, query, generate, analyze), configures CORS, and
initializes the relational schema and tracing at startup. Knowledge base errors
are translated into HTTP responses by a single exception handler.
"""
from typing import List

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sitekb.db import init_db
from sitekb.errors import (
    GenerationError,
    InvalidStateError,
    KnowledgeBaseError,
    SiteNotFoundError,
)
from sitekb.obs import configure_tracing
from sitekb.schemas import (
    AnalyzeContentRequest,
    ContentQualityReport,
    DocumentInfo,
    GenerateContentRequest,
    KnowledgeBaseStatistics,
    KnowledgeBaseStatus,
    RAGQuery,
    RAGResponse,
)
from sitekb.services import Services, get_services

app = FastAPI(title="Site Knowledge Base API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_credentials=True,
    allow_headers=["*"],
)

router = APIRouter(prefix="/api/rag", tags=["rag"])


@app.on_event("startup")
def on_startup() -> None:
    """Initialize database schema and tracing at application startup."""
    init_db()
    configure_tracing()


@app.exception_handler(KnowledgeBaseError)
def knowledge_base_error_handler(request: Request, exc: KnowledgeBaseError) -> JSONResponse:
    if isinstance(exc, SiteNotFoundError):
        code = 404
    elif isinstance(exc, InvalidStateError):
        code = 409
    elif isinstance(exc, GenerationError):
        code = 502
    else:
        code = 500
    return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})


@app.get("/health")
def health():
    """Liveness probe endpoint.

    Returns:
        dict: {"status": "ok"} when the service is running.
    """
    return {"status": "ok"}


@router.post("/initialize/{site_id}", response_model=KnowledgeBaseStatus)
def initialize(site_id: str, services: Services = Depends(get_services)) -> KnowledgeBaseStatus:
    """Enable the knowledge base for a site and run the pipeline synchronously."""
    return services.orchestrator.initialize(site_id)


@router.get("/status/{site_id}")
def status(site_id: str, services: Services = Depends(get_services)):
    """Current pipeline status; ``not_found`` when the site never had a knowledge base."""
    current = services.orchestrator.get_status(site_id)
    if current is None:
        return {"site_id": site_id, "status": "not_found"}
    return current.model_dump(mode="json")


@router.get("/documents/{site_id}", response_model=List[DocumentInfo])
def documents(site_id: str, services: Services = Depends(get_services)) -> List[DocumentInfo]:
    return services.orchestrator.get_documents(site_id)


@router.get("/statistics/{site_id}", response_model=KnowledgeBaseStatistics)
def statistics(site_id: str, services: Services = Depends(get_services)) -> KnowledgeBaseStatistics:
    return services.orchestrator.get_statistics(site_id)


@router.post("/refresh/{site_id}", response_model=KnowledgeBaseStatus)
def refresh(site_id: str, services: Services = Depends(get_services)) -> KnowledgeBaseStatus:
    return services.orchestrator.refresh(site_id)


@router.delete("/delete/{site_id}", response_model=KnowledgeBaseStatus)
def delete(site_id: str, services: Services = Depends(get_services)) -> KnowledgeBaseStatus:
    return services.orchestrator.delete(site_id)


@router.post("/query", response_model=RAGResponse)
def query(req: RAGQuery, services: Services = Depends(get_services)) -> RAGResponse:
    """Answer a query from the site's retrieved context.

    Workflow:
    - Embed the query
    - Retrieve matches from the site namespace (optionally by document type)
    - Drop matches below the similarity threshold
    - Generate with the site's profile and the surviving context
    """
    return services.rag.query(req)


@router.post("/generate", response_model=RAGResponse)
def generate(req: GenerateContentRequest, services: Services = Depends(get_services)) -> RAGResponse:
    return services.rag.generate_content(req.site_id, req.content_type, req.topic, req.context)


@router.post("/analyze", response_model=ContentQualityReport)
def analyze(req: AnalyzeContentRequest, services: Services = Depends(get_services)) -> ContentQualityReport:
    return services.rag.analyze_content_quality(req.site_id, req.content, req.target_query)


app.include_router(router)
