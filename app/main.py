import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import health, prospects
from app.config import settings
from app.services.prospecting.attempt_store import attempt_store_backend
from app.services.prospecting.errors import ProspectingError
from app.services.prospecting.service import shutdown_pipeline_service

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log the pipeline configuration on startup and release workers on shutdown."""
    logger.info(
        "app.startup",
        extra={
            "app_version": settings.app_version,
            "attempt_store": attempt_store_backend(),
            "rubric_path": settings.qualification_rubric_path,
            "completeness_threshold": settings.pipeline_completeness_threshold,
        },
    )
    yield
    shutdown_pipeline_service()
    logger.info("app.shutdown")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Multi-pass prospect research with confidence fusion and retry bookkeeping",
    lifespan=lifespan,
    debug=settings.debug,
)

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["*"] if settings.debug else ["localhost", "127.0.0.1", "testserver"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "http.request",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        },
    )
    return response


@app.exception_handler(ProspectingError)
async def prospecting_error_handler(request: Request, exc: ProspectingError) -> JSONResponse:
    """Errors that escape a route keep their code in the response body."""
    logger.error("http.prospecting_error", extra={"path": request.url.path, "code": exc.code})
    return JSONResponse(status_code=500, content={"detail": str(exc), "code": exc.code})


app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(prospects.router, prefix="/api", tags=["prospects"])


@app.get("/")
async def root():
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "attempt_store": attempt_store_backend(),
    }

