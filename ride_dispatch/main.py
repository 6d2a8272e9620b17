from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
import sys
import time
import uuid
import structlog

from .config import settings
from .database import dispose_engine
from .dependencies import broadcaster
from .services.exceptions import BackingStoreUnavailableError
from .utils.redis_client import redis_client
from .routes import health, trips, location, realtime


def configure_logging(level: str) -> None:
    """JSON logs on stdout through the stdlib logging tree"""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(settings.log_level)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Ride Dispatch Service", geo_backend=settings.geo_backend, port=settings.port)

    try:
        await redis_client.connect()
        yield
    except Exception as e:
        logger.error("Failed to start application", error=str(e))
        raise
    finally:
        logger.info("Shutting down Ride Dispatch Service", connections=broadcaster.connection_count)
        await broadcaster.close_all()
        try:
            await redis_client.disconnect()
            await dispose_engine()
        except Exception as e:
            logger.error("Error during shutdown", error=str(e))


app = FastAPI(
    title="Ride Dispatch Service",
    description="Driver proximity index, trip dispatch and realtime fan-out",
    version="1.0.0",
    debug=settings.debug,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BackingStoreUnavailableError)
async def backing_store_unavailable(request: Request, exc: BackingStoreUnavailableError):
    """Redis or Postgres did not answer; the caller may retry"""
    logger.error("Backing store unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Service temporarily unavailable"},
    )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    correlation_id = request.headers.get("x-correlation-id") or uuid.uuid4().hex
    log = logger.bind(method=request.method, path=request.url.path, correlation_id=correlation_id)
    started = time.perf_counter()

    response = await call_next(request)

    log.info(
        "Request completed",
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 1),
    )
    response.headers["x-correlation-id"] = correlation_id
    return response


app.include_router(health.router)
app.include_router(trips.router)
app.include_router(location.router)
app.include_router(realtime.router)


@app.get("/")
async def root():
    return {
        "service": "ride-dispatch",
        "version": "1.0.0",
        "endpoints": {
            "health": "/api/dispatch/health",
            "trips": "/api/trips",
            "location": "/api/location",
            "realtime": "/ws",
        }
    }


# Liveness probe for load balancers
@app.get("/health")
async def simple_health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ride_dispatch.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
