from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import structlog

from picturebook.core.config import settings
from picturebook.core.exceptions import APIError, api_exception_handler
from picturebook.core.logging_config import configure_logging
from picturebook.queues.monitor import get_queue_metrics
from picturebook.queues.queue import JobQueue
from picturebook.routers import books
from picturebook.services.status_store import StatusStore

configure_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Picture Book Pipeline API", version=settings.app_version)

    queue = getattr(app.state, "queue", None) or JobQueue()
    await queue.open()
    app.state.queue = queue
    if getattr(app.state, "store", None) is None:
        app.state.store = StatusStore()

    yield

    # Shutdown
    logger.info("Shutting down Picture Book Pipeline API")
    await queue.close()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
# Picture Book Pipeline API

Turns a set of uploaded photos into an illustrated picture book.

## Flow

* **Draft**: create a book from uploaded photos, then set title, child name and art style
* **Story**: generate one short passage per page from the photos
* **Illustrations**: restyle every photo in the chosen art style; the book ends
  COMPLETED, PARTIAL or FAILED depending on how many pages succeeded

## Authentication

Every `/v1` endpoint requires the `X-User-Id` header.
    """,
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "Books",
            "description": "Book drafts, story generation and illustration",
        },
    ],
)

# CORS - Configurable via CORS_ORIGINS env var
cors_origins = (
    ["*"]
    if settings.cors_origins == "*"
    else [origin.strip() for origin in settings.cors_origins.split(",")]
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["X-User-Id", "Content-Type", "Authorization"],
)


# API error handler for standardized responses
app.add_exception_handler(APIError, api_exception_handler)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": str(exc) if settings.debug else "Something went wrong",
            }
        },
    )


# Health check
@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "version": settings.app_version,
    }


@app.get("/health/detailed")
async def detailed_health_check(request: Request):
    """Detailed health check with queue counts and provider settings"""
    redis_status = "healthy"
    try:
        queue_metrics = await get_queue_metrics(request.app.state.queue)
    except Exception as e:
        logger.error("Failed to get queue metrics", error=str(e))
        queue_metrics = {"error": str(e)}
        redis_status = "unhealthy"

    return {
        "status": "healthy" if redis_status == "healthy" else "degraded",
        "version": settings.app_version,
        "queues": queue_metrics,
        "services": {
            "redis": redis_status,
            "llm_provider": settings.llm_provider,
            "image_provider": settings.image_provider,
        },
        "config": {
            "job_attempts": settings.job_attempts,
            "job_backoff_ms": settings.job_backoff_ms,
            "illustration_concurrency": settings.illustration_concurrency,
        },
    }


app.include_router(books.router, prefix="/v1/books", tags=["Books"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("picturebook.main:app", host="0.0.0.0", port=8000, reload=True)
