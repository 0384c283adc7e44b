import logging

import redis
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from uploadguard import __version__
from uploadguard.api.middleware.logging import RequestLoggingMiddleware
from uploadguard.api.routes.media import router as media_router
from uploadguard.api.routes.uploads import router as uploads_router
from uploadguard.config import settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title="UploadGuard API",
    description="Quarantine, scan and validate untrusted uploads before publishing them",
    version=__version__,
    docs_url="/v1/docs",
    openapi_url="/v1/openapi.json",
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(uploads_router)
app.include_router(media_router)

# Shared clients stored on app state so routes and tests can reach them
app.state.redis = None
app.state.orchestrator = None


@app.get("/healthz", tags=["health"])
async def health_check() -> JSONResponse:
    return JSONResponse({"status": "ok"})


@app.on_event("startup")
async def startup_event() -> None:
    logger.info("UploadGuard API starting up")
    if app.state.redis is None:
        app.state.redis = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        logger.info("Redis client initialised")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    if app.state.redis is not None:
        app.state.redis.close()
        logger.info("Redis client closed")
    logger.info("UploadGuard API shutting down")
