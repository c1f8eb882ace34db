"""
On-demand image version server.

Serves resized and cropped versions of originals held in a blob store,
generating each version once and coordinating workers through a shared
key/value store.
"""

from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.logging import configure_logging, get_logger
from routers import images
from services.blob_store import get_blob_root
from services.errors import StoreError

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)

# Suppress noisy loggers
import logging
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("botocore").setLevel(logging.WARNING)
logging.getLogger("PIL").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting image version server",
                environment=settings.environment,
                store_backend=settings.store_backend,
                blob_backend=settings.blob_backend)

    if settings.store_backend == "sql":
        await container.database().startup()
    await container.store().startup()

    logger.info("Services started successfully")
    yield

    await container.store().shutdown()
    if settings.store_backend == "sql":
        await container.database().shutdown()
    logger.info("Services shutdown complete")


app = FastAPI(
    title="Image Version Server",
    version="1.0.0",
    description="Single-flight image version generation and caching",
    lifespan=lifespan,
)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Unhandled exception: {type(e).__name__}: {str(e)}", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


app.add_middleware(CatchAllExceptionsMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "DELETE"],
    allow_headers=["*"],
)

app.include_router(images.router)

# Locally stored versions are served directly so redirects resolve
blob_root = get_blob_root(settings)
if blob_root is not None and not settings.cdn_root:
    blob_root.mkdir(parents=True, exist_ok=True)
    app.mount("/blobs", StaticFiles(directory=str(blob_root)), name="blobs")


@app.get("/health")
async def health_check():
    """Store liveness check."""
    store = container.store()
    try:
        await store.ping()
        store_status = "OK"
    except StoreError as e:
        logger.warning("Health check store ping failed", error=str(e))
        store_status = "UNAVAILABLE"

    body = {
        "status": "OK" if store_status == "OK" else "DEGRADED",
        "service": "image-version-server",
        "environment": settings.environment,
        "store_backend": store.backend_name,
        "store": store_status,
        "timestamp": datetime.now().isoformat()
    }
    code = status.HTTP_200_OK if store_status == "OK" else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content=body)


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting image version server",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers
    )
