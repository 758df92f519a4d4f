"""FastAPI application for the intranet expenses service."""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from intranet.core.config import settings
from intranet.core.exceptions import ServiceError, ConflictError
from intranet.core.init_db import create_tables
from intranet.core.logging import logger
from intranet.core.middleware import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    get_correlation_id,
)

from intranet.modules.expenses import router as expenses_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown."""
    logger.info("Starting intranet expenses service...")
    await create_tables()
    logger.info("Database tables created/verified")

    yield

    logger.info("Shutting down intranet expenses service...")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="Expense claims, approval workflow and reporting for the corporate intranet",
    lifespan=lifespan,
)

# Note: allow_credentials=True is incompatible with allow_origins=["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.cors_allows_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

# First added = last executed
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)

app.include_router(expenses_router, prefix=settings.API_V1_PREFIX)

# Prometheus metrics instrumentation
Instrumentator().instrument(app).expose(app, endpoint="/metrics")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.PROJECT_NAME,
        "version": settings.VERSION,
        "status": "running",
        "modules": ["expenses"],
    }


# =============================================================================
# Error handlers
# =============================================================================

def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, **extra},
    )


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    """Map service errors to their HTTP status."""
    if isinstance(exc, ConflictError):
        logger.error(
            f"Persistence conflict: {exc.message}",
            path=request.url.path,
            correlation_id=get_correlation_id(request),
        )
        return _error(exc.status_code, ConflictError.default_message)
    return _error(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed requests are reported as 400 with per-field messages."""
    errors = [
        {
            "field": ".".join(str(p) for p in err.get("loc", ())[1:]),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    return _error(400, "Validation error", errors=errors)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    """Render HTTP errors in the response envelope."""
    response = _error(exc.status_code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    """Database failures never leak driver details."""
    logger.error(
        f"Database error: {exc}",
        path=request.url.path,
        correlation_id=get_correlation_id(request),
    )
    return _error(500, ConflictError.default_message)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.exception(
        f"Unhandled error: {exc}",
        method=request.method,
        path=request.url.path,
        correlation_id=get_correlation_id(request),
    )
    return _error(500, "Internal server error")
