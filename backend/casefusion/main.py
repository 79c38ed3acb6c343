import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from casefusion.api.dependencies import get_reasoning_client, get_run_manager, get_store
from casefusion.api.routes import router as api_router
from casefusion.config import settings
from casefusion.middleware.request_logging import RequestLoggingMiddleware
from casefusion.services.file_storage import UPLOADS_URL_PREFIX
from casefusion.services.reconstruction_images import reconstruction_image_service

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting CaseFusion application")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Debug mode: {settings.debug}")

    settings.validate_config()
    os.makedirs(settings.uploads_dir, exist_ok=True)

    db = get_store()
    await db.initialize()

    yield

    # Shutdown
    await get_run_manager().shutdown()
    await db.close()
    logger.info("Shutting down CaseFusion application")


app = FastAPI(
    title="CaseFusion API",
    description="Multimodal case evidence analysis",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler to provide consistent error responses.
    Includes request ID for debugging and detailed error context in debug mode.
    """
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        f"Unhandled exception in {request.method} {request.url.path} | "
        f"ID: {request_id} | Error: {str(exc)}",
        exc_info=True
    )

    error_detail = {
        "detail": "Internal server error",
        "request_id": request_id,
        "path": str(request.url.path)
    }
    if settings.debug:
        error_detail["error_type"] = exc.__class__.__name__
        error_detail["error_message"] = str(exc)

    return JSONResponse(
        status_code=500,
        content=error_detail,
        headers={"X-Request-ID": request_id}
    )


# CORS middleware
is_wildcard = settings.allowed_origins == ["*"]
if is_wildcard and settings.environment == "production":
    logger.warning(
        "CORS is set to allow ALL origins (*) in production. "
        "Set ALLOWED_ORIGINS to specific domains for security."
    )
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=not is_wildcard,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(api_router, tags=["cases"])

app.mount(
    UPLOADS_URL_PREFIX,
    StaticFiles(directory=settings.uploads_dir, check_dir=False),
    name="uploads",
)


@app.get("/health")
async def health_check(store=Depends(get_store), client=Depends(get_reasoning_client)):
    """Health check endpoint."""
    database_ok = await store.health_check()
    return {
        "status": "ok" if database_ok else "degraded",
        "database": database_ok,
        "reasoning_model": client.available,
        "image_generation": reconstruction_image_service.health_check(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("casefusion.main:app", host=settings.host, port=settings.port, reload=settings.debug)
