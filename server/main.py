"""
FastAPI entry point for the media cache core.

Owns process lifecycle only: the cache engines themselves are plain services
resolved from the container by route handlers.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import ORJSONResponse

from core.container import container
from core.config import Settings
from core.logging import configure_logging, get_logger
from routers import cache

settings = Settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting media cache core",
                image_cache_dir=str(settings.image_cache_dir))

    await container.database().startup()
    await container.cache().startup()

    generation = await container.cache_state().current_generation()
    logger.info("Services started successfully", cache_generation=generation)
    yield

    await container.http_client().aclose()
    await container.cache().shutdown()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


app = FastAPI(
    title="Media Cache Core",
    version="1.0.0",
    description="Generation-scoped image and metadata caching with stale-while-revalidate",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)

app.include_router(cache.router)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "redis": container.cache().is_available(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host=settings.host, port=settings.port, reload=settings.debug)
