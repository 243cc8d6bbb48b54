import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from app.core.config import get_settings
from app.core.exceptions import (
    AppError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from app.core.logging import bind_request_context, configure_logging, get_logger
from app.routers import admin, credits

settings = get_settings()
configure_logging(debug=settings.debug, level=settings.log_level)
log = get_logger(__name__)


def _init_sentry() -> None:
    import sentry_sdk

    sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.env, traces_sample_rate=0.1)
    log.info("startup", msg="Sentry enabled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.sentry_dsn:
        _init_sentry()
    client = None
    if settings.storage_backend == "mongo":
        from app.db.init import init_db

        client = await init_db()
        log.info("startup", msg="DB connected", db=settings.mongodb_db_name)
    else:
        log.warning("startup", msg="Ledger kept in process memory; data is lost on restart")
    yield
    if client is not None:
        await client.close()
        log.info("shutdown", msg="DB connection closed")


app = FastAPI(
    title="Coin Ledger API",
    version="1.0.0",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    bind_request_context(request_id)
    start = time.perf_counter()
    response = await call_next(request)
    log.info(
        "request",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - start) * 1000, 2),
    )
    response.headers["X-Request-ID"] = request_id
    return response


app.add_exception_handler(AppError, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

app.include_router(credits.router, prefix="/v1/credits", tags=["credits"])
app.include_router(admin.router, prefix="/v1/admin", tags=["admin"])


@app.get("/health")
async def health():
    """Liveness check; also reports which ledger backend is active."""
    return {"status": "ok", "storage": settings.storage_backend}
