from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from iptv_service.config import settings, setup_logging
from iptv_service.database import close_db, init_db
from iptv_service.dependencies import close_dependencies, get_repository, get_scheduler
from iptv_service.errors import PlaylistError
from iptv_service.routers import main_router
from iptv_service.schemas import StandardErrorResponse
from iptv_service.utils.timezone import utc_now


setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info("=" * 60)
    logger.info("Starting IPTV Guide Service...")
    logger.info("=" * 60)

    try:
        logger.info("Initializing database...")
        await init_db(settings.database_path)

        # Cache-only warmup never touches the network
        snapshot = await get_repository().warmup_from_cache_only()
        if snapshot is not None:
            logger.info(f"Warmed {len(snapshot.channels)} channels from disk cache")

        logger.info("Starting scheduler...")
        get_scheduler().start()

        logger.info("=" * 60)
        logger.info("IPTV Guide Service started successfully")
        logger.info("=" * 60)
    except Exception as e:
        logger.error("=" * 60)
        logger.error(f"Failed to start IPTV Guide Service: {e}", exc_info=True)
        logger.error("=" * 60)
        raise

    yield

    logger.info("=" * 60)
    logger.info("Shutting down IPTV Guide Service...")
    logger.info("=" * 60)

    try:
        get_scheduler().shutdown()
    except Exception as e:
        logger.error(f"Error during scheduler shutdown: {e}", exc_info=True)

    await close_dependencies()
    await close_db()

    logger.info("=" * 60)
    logger.info("IPTV Guide Service stopped")
    logger.info("=" * 60)


app = FastAPI(
    title="IPTV Guide Service",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(main_router)


@app.exception_handler(PlaylistError)
async def playlist_exception_handler(request: Request, exc: PlaylistError):
    """Playlist failures with nothing cached to fall back on"""
    logger.error(f"Playlist unavailable for {request.method} {request.url.path}: {exc}")
    body = StandardErrorResponse.build(
        "PLAYLIST_FAILED",
        str(exc) or "Playlist could not be loaded",
        utc_now(),
        {"upstream_status": exc.status_code} if exc.status_code else None,
    )
    return JSONResponse(status_code=502, content=body.model_dump())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log validation errors with details"""
    logger.error(f"Validation error for {request.method} {request.url.path}")
    logger.error(f"Validation details: {exc.errors()}")

    errors = []
    for error in exc.errors():
        error_dict = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": str(error.get("input", ""))[:100],
        }
        errors.append(error_dict)

    return JSONResponse(
        status_code=422,
        content={
            "detail": errors
        },
    )
