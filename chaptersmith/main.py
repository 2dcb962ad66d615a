"""
Chaptersmith API Service

Turns source text into multi-chapter books through queued or streamed
AI generation, with a credit ledger that charges each book once.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from chaptersmith.api.v1.router import api_router
from chaptersmith.core.config import settings
from chaptersmith.core.exceptions import ChaptersmithError
from chaptersmith.db.base import engine

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown."""
    logger.info("Starting up Chaptersmith API...")
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("Database connection established")
    except Exception as e:
        # Don't fail startup, allow health endpoint to report status
        logger.error(f"Database connection failed: {e}")
    yield
    engine.dispose()
    logger.info("Shutting down Chaptersmith API...")


# Create FastAPI instance
app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
    redirect_slashes=False,
)

# Set up CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChaptersmithError)
async def domain_exception_handler(request: Request, exc: ChaptersmithError):
    """Map domain errors to `{"ok": false, "error": ...}` with their HTTP status."""
    content = {"ok": False, "error": exc.public_message}
    if exc.chapter_number is not None:
        content["chapterNumber"] = exc.chapter_number
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"ok": False, "error": "Invalid request body"},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions."""
    logger.exception(f"Unhandled exception: {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"ok": False, "error": "Internal server error"},
    )


# Include API router
app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "chaptersmith-api",
        "version": settings.VERSION,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "chaptersmith.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
