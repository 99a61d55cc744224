"""
Main FastAPI application for the FX Rate Aggregator Service.
Includes lifespan management for the refresh timer and service initialization.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
import time

from .core.config import settings
from .core.logging_config import setup_logging, create_logger
from .api.endpoints import router as api_router, set_fx_service
from .api.schemas import ErrorResponse
from .services.cache import SnapshotCache
from .services.factories import build_fx_service_from_settings

# Setup logging first
setup_logging()
logger = create_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI application.
    Starts the FX service on startup and stops it on shutdown.
    """
    logger.info("Starting FX Rate Aggregator Service", extra={
        "version": settings.app_version,
        "debug": settings.debug
    })

    service = build_fx_service_from_settings()
    snapshot_cache = None
    if settings.redis_enabled:
        snapshot_cache = SnapshotCache()
        await snapshot_cache.connect()
        service.subscribe(snapshot_cache.subscriber_for(service))

    try:
        await service.start()
    except Exception as e:
        logger.error("Failed to start FX Rate Aggregator Service", extra={
            "error": str(e)
        })
        raise

    set_fx_service(service)
    app.state.fx_service = service
    app.state.snapshot_cache = snapshot_cache
    app.state.startup_time = datetime.utcnow()
    logger.info("FX Rate Aggregator Service started successfully", extra={
        "pairs": [pair.as_string() for pair in service.currency_pairs]
    })

    yield  # Application is running

    logger.info("Shutting down FX Rate Aggregator Service")
    set_fx_service(None)
    try:
        await service.stop()
        if service.calculator is not None:
            await service.calculator.disconnect()
        if snapshot_cache is not None:
            await snapshot_cache.disconnect()
        logger.info("FX Rate Aggregator Service shutdown completed")
    except Exception as e:
        logger.error("Error during service shutdown", extra={
            "error": str(e)
        })


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    description="Near-realtime FX rates aggregated from redundant rate sources",
    version=settings.app_version,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else ["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests and responses."""
    start_time = time.time()

    logger.info("Request received", extra={
        "method": request.method,
        "url": str(request.url),
        "client_ip": request.client.host if request.client else None
    })

    try:
        response = await call_next(request)
    except Exception as e:
        process_time = time.time() - start_time
        logger.error("Request failed", extra={
            "method": request.method,
            "url": str(request.url),
            "error": str(e),
            "process_time": round(process_time, 4)
        })
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="Internal server error",
                error_code="INTERNAL_ERROR"
            ).model_dump(mode='json')
        )

    process_time = time.time() - start_time
    logger.info("Request completed", extra={
        "method": request.method,
        "url": str(request.url),
        "status_code": response.status_code,
        "process_time": round(process_time, 4)
    })
    response.headers["X-Process-Time"] = str(process_time)
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with structured error response."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=str(exc.detail),
            error_code=f"HTTP_{exc.status_code}",
            details={
                "path": request.url.path,
                "method": request.method
            }
        ).model_dump(mode='json')
    )


# Include API routes
app.include_router(api_router, tags=["FX Rates API"])


# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    """Root endpoint with service information."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "status": "running",
        "docs_url": "/docs" if settings.debug else "disabled",
        "timestamp": datetime.utcnow()
    }


# Alternative health check endpoint (for load balancers)
@app.get("/healthz", include_in_schema=False)
async def healthz(request: Request):
    """Simple health check endpoint for load balancers."""
    service = getattr(request.app.state, "fx_service", None)
    if service is not None and service.is_scheduled:
        return {"status": "healthy"}
    return JSONResponse(
        status_code=503,
        content={"status": "unhealthy", "scheduled": False}
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "fx_aggregator.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=True
    )
