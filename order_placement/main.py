from fastapi import FastAPI, Request
from contextlib import asynccontextmanager
from sqlalchemy import text
from starlette.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware
from order_placement.api import orders, two_factor
from order_placement.core.config import settings
from order_placement.core.redis import init_redis, close_redis, get_redis
from order_placement.core.metrics import request_count, request_duration, db_connected, redis_connected, get_metrics_text
from order_placement.db.session import engine
import time
import logging

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def _endpoint_label(request: Request) -> str:
    # Route template, so order ids and challenge tokens don't become label values
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        status = 500

        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            endpoint = _endpoint_label(request)
            request_count.labels(method=request.method, endpoint=endpoint, status=status).inc()
            request_duration.labels(method=request.method, endpoint=endpoint).observe(time.time() - start_time)


async def _database_ready() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False


def _redis_ready() -> bool:
    try:
        get_redis()
        return True
    except RuntimeError:
        return False


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting...")

    logger.info("Initializing Redis connection...")
    try:
        await init_redis()
        redis_connected.set(1)
        logger.info("Redis connected")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        redis_connected.set(0)

    db_connected.set(1 if await _database_ready() else 0)

    yield

    logger.info("Application shutting down...")
    await close_redis()
    redis_connected.set(0)
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.API_TITLE,
    description=settings.API_DESCRIPTION,
    version=settings.API_VERSION,
    lifespan=lifespan
)

app.add_middleware(MetricsMiddleware)

app.include_router(orders.router)
app.include_router(two_factor.router)


@app.get("/metrics", tags=["monitoring"])
async def metrics():
    return Response(
        content=get_metrics_text(),
        media_type="text/plain; version=0.0.4; charset=utf-8"
    )


@app.get("/health", tags=["monitoring"])
async def health_check():
    redis_healthy = _redis_ready()

    return {
        "status": "healthy",
        "service": settings.API_TITLE,
        "version": settings.API_VERSION,
        "dependencies": {
            "redis": "connected" if redis_healthy else "disconnected",
            "database": "connected"
        }
    }


@app.get("/readiness", tags=["monitoring"])
async def readiness_check():
    if not _redis_ready():
        return JSONResponse({"ready": False, "reason": "Redis not available"}, status_code=503)

    if not await _database_ready():
        return JSONResponse({"ready": False, "reason": "Database not available"}, status_code=503)

    return {
        "ready": True,
        "service": settings.API_TITLE
    }


@app.get("/", tags=["root"])
async def root():
    return {
        "message": settings.API_TITLE,
        "version": settings.API_VERSION,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics"
    }
