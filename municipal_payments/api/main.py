"""
HTTP entry point for the municipal payments service.

Every failure is rendered in the shared `{"error": {...}}` envelope and
every request carries an ID for log correlation.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from municipal_payments import __version__
from municipal_payments.config import get_settings
from municipal_payments.core.errors import PaymentError, StoreError
from municipal_payments.database.connection import close_db, init_db
from municipal_payments.monitoring.logging import setup_logging
from municipal_payments.monitoring.metrics import metrics

from .routes import admin_router, monitoring_router, payment_router, qr_router


setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Create the ledger tables on boot and release the pool on shutdown."""
    logger.info("payments_api_booting", app_name=settings.app_name, env=settings.app_env)
    await init_db()
    logger.info("ledger_schema_ready")

    yield

    await close_db()
    logger.info("payments_api_stopped")


app = FastAPI(
    title="Municipal Payments",
    description=(
        "Payments for municipal services with QR code redemption. "
        "Features: payment state machine with audit trail, unique expiring "
        "redemption codes, and a stale payment expiration sweep."
    ),
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["*"],
    expose_headers=[REQUEST_ID_HEADER],
)


@app.middleware("http")
async def request_context(request: Request, call_next: Any) -> Response:
    """Tag each request with an ID, bind it to the log context and time it."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    structlog.contextvars.bind_contextvars(
        request_id=request_id, method=request.method, path=request.url.path
    )
    started = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error("request_errored", error=str(e), elapsed=time.perf_counter() - started)
        raise
    else:
        elapsed = time.perf_counter() - started
        response.headers[REQUEST_ID_HEADER] = request_id
        metrics.record_request_duration(request.method, response.status_code, elapsed)
        logger.info("request_served", status_code=response.status_code, elapsed=elapsed)
        return response
    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    """Map typed payment errors to their status code and error body."""
    if isinstance(exc, StoreError):
        logger.error(
            "store_error",
            error=str(exc),
            cause=str(exc.__cause__) if exc.__cause__ else None,
            path=request.url.path,
        )
    else:
        logger.warning("payment_error", code=exc.code, error=str(exc), path=request.url.path)

    return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed request bodies in the invalid_input shape."""
    details = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ())[1:]),
            "message": error.get("msg", "Invalid value"),
        }
        for error in exc.errors()
    ]
    logger.warning("request_validation_failed", path=request.url.path, details=details)

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": {
                "code": "invalid_input",
                "message": "Request validation failed",
                "details": details,
            }
        },
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", error_type=type(exc).__name__, path=request.url.path)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "internal_error",
                "message": "Internal server error",
            }
        },
    )


# Include routers
app.include_router(payment_router)
app.include_router(qr_router)
app.include_router(admin_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    return {"service": settings.app_name, "version": __version__, "env": settings.app_env}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "municipal_payments.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
