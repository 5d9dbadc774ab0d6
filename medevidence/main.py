"""
MedEvidence - FastAPI Application Entry Point

Evidence retrieval and answer synthesis over PubMed, web and user sources.
Searches run asynchronously: submit, poll the status, then fetch the result.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from medevidence import __version__
from medevidence.api.auth import get_current_user_id
from medevidence.db.store import RESULT_STORE_BACKEND, create_result_store
from medevidence.literature.cache import get_literature_cache
from medevidence.llm.citations import CitationResolver, render_markdown
from medevidence.llm.ollama_client import OllamaClient
from medevidence.models import SearchQuery, TaskStatus
from medevidence.observability.metrics import get_metrics_text, reset_metrics
from medevidence.worker import TaskRunner, build_pipeline

# Configure logging
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    logger.info("Starting MedEvidence API v%s", __version__)

    if RESULT_STORE_BACKEND == "postgres":
        try:
            from medevidence.db.postgres import init_db

            await init_db()
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.warning("Database initialization failed: %s", e)

    app.state.ollama_client = OllamaClient()
    if await app.state.ollama_client.health_check():
        logger.info("Ollama client initialized and healthy")
    else:
        logger.warning("Ollama client initialized but service is unreachable")

    app.state.task_runner = TaskRunner(
        store=create_result_store(),
        pipeline=build_pipeline(app.state.ollama_client),
    )
    app.state.citation_resolver = CitationResolver()

    yield

    # Shutdown
    logger.info("Shutting down MedEvidence API")
    await app.state.task_runner.drain()
    await get_literature_cache().close()
    if RESULT_STORE_BACKEND == "postgres":
        from medevidence.db.postgres import close_db

        await close_db()


# Create FastAPI application
app = FastAPI(
    title="MedEvidence",
    description="Evidence Retrieval & Synthesis for Clinical Questions",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:8000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _runner(request: Request) -> TaskRunner:
    runner = getattr(request.app.state, "task_runner", None)
    if runner is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Task runner not available",
        )
    return runner


# ============================================
# Health Check Endpoints
# ============================================


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, Any]:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
        "service": "medevidence-api",
    }


@app.get("/ready", tags=["Health"])
async def readiness_check(request: Request) -> dict[str, Any]:
    """Readiness check with dependency status."""
    ollama_client = getattr(request.app.state, "ollama_client", None)
    ollama_status = "unavailable"
    if ollama_client:
        try:
            ollama_status = "ok" if await ollama_client.health_check() else "degraded"
        except Exception:
            ollama_status = "error"

    database_status = "not_configured"
    if RESULT_STORE_BACKEND == "postgres":
        from medevidence.db.postgres import check_database_health

        health = await check_database_health()
        database_status = "ok" if health["status"] == "healthy" else "error"

    return {
        "ready": getattr(request.app.state, "task_runner", None) is not None,
        "checks": {
            "database": database_status,
            "ollama": ollama_status,
            "result_store": RESULT_STORE_BACKEND,
        },
    }


# ============================================
# API v1 Routes
# ============================================


@app.post("/api/v1/search", tags=["Search"], status_code=status.HTTP_202_ACCEPTED)
async def submit_search(
    query: SearchQuery,
    request: Request,
    user_id: str | None = Depends(get_current_user_id),
) -> dict[str, Any]:
    """
    Submit an evidence search.

    Returns the task id immediately; the pipeline runs in the background.
    """
    runner = _runner(request)
    task_id = await runner.submit(query, user_id=user_id)
    return {"task_id": task_id, "status": TaskStatus.RUNNING.value}


@app.get("/api/v1/search/{task_id}/status", tags=["Search"])
async def search_status(
    task_id: str,
    request: Request,
    user_id: str | None = Depends(get_current_user_id),
) -> dict[str, Any]:
    """Poll the lifecycle state of a search task."""
    task = await _runner(request).get_status(task_id, user_id=user_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return task.to_dict()


@app.get("/api/v1/search/{task_id}", tags=["Search"])
async def search_result(
    task_id: str,
    request: Request,
    user_id: str | None = Depends(get_current_user_id),
):
    """
    Fetch the synthesized answer with citation markers resolved.

    202 while the task is still running, 404 when nothing is stored.
    """
    runner = _runner(request)
    answer = await runner.get_result(task_id, user_id=user_id)
    if answer is None:
        # recovery, if any, already ran in get_result()
        task = await runner.get_status(task_id)
        if task is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Result not found")
        if task.status is TaskStatus.RUNNING:
            return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=task.to_dict())
        return JSONResponse(status_code=status.HTTP_200_OK, content=task.to_dict())

    resolver: CitationResolver = getattr(request.app.state, "citation_resolver", None) or CitationResolver()
    segments = resolver.resolve(
        answer.text,
        answer.literature_records,
        answer.web_records,
        answer.user_records,
    )
    return {
        "status": TaskStatus.COMPLETED.value,
        **answer.to_dict(),
        "segments": [s.to_dict() for s in segments],
        "markdown": render_markdown(segments),
    }


# ============================================
# Metrics Endpoint
# ============================================


@app.get("/metrics", tags=["Monitoring"])
async def metrics_endpoint():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(content=get_metrics_text(), media_type="text/plain")


@app.post("/metrics/reset", tags=["Monitoring"])
async def reset_metrics_endpoint():
    """Reset all metrics counters (for testing/demo)."""
    reset_metrics()
    return {"status": "metrics_reset"}


# ============================================
# Exception Handlers
# ============================================


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": str(exc) if app.debug else "An unexpected error occurred",
        },
    )


# ============================================
# Main Entry Point
# ============================================


def main():
    """Run the application using uvicorn."""
    import uvicorn

    uvicorn.run(
        "medevidence.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8000")),
        reload=os.environ.get("RELOAD", "false").lower() == "true",
    )


if __name__ == "__main__":
    main()
