"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Response
from prometheus_fastapi_instrumentator import Instrumentator

from ammo_search import metrics
from ammo_search.api.deps import price_statistics_cache
from ammo_search.api.routes import outbound, search
from ammo_search.config import settings
from ammo_search.db.models import Base
from ammo_search.db.session import AsyncSessionLocal, engine
from ammo_search.db.vector_store import vector_store

# Configure structured logging
from ammo_search.logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting Ammo Search...")
    metrics.app_info.info({"version": app.version})

    is_postgres = engine.dialect.name == "postgresql"

    # pgvector must exist before tables that cast to it are queried
    if is_postgres:
        async with AsyncSessionLocal() as db:
            await vector_store.ensure_extension(db)

    # Initialize database
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if is_postgres and settings.vector_search_enabled:
        async with AsyncSessionLocal() as db:
            try:
                await vector_store.create_vector_index(db, settings.embedding_dimension)
            except Exception as e:
                logger.warning(f"Vector index unavailable, vector search will fall back: {e}")

    try:
        warmed = await price_statistics_cache.warm_up()
        logger.info(f"Warmed price statistics for {warmed} categories")
    except Exception:
        logger.exception("Price statistics warm-up failed")

    yield

    # Shutdown
    logger.info("Shutting down...")
    await engine.dispose()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Ammo Search",
    description="Ammunition search with descriptive price context",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics", "/health", "/favicon.ico"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

# Include API routes
app.include_router(search.router)
app.include_router(outbound.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/favicon.ico")
async def favicon():
    """Return empty favicon response to avoid 404 noise."""
    return Response(status_code=204)


if __name__ == "__main__":
    # Run with uvicorn
    uvicorn.run(
        "ammo_search.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
