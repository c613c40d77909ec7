import time
import uuid

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from creditledger.core.config import get_settings
from creditledger.core.exceptions import (
    AppError,
    app_exception_handler,
    generic_exception_handler,
    store_exception_handler,
    validation_exception_handler,
)
from creditledger.core.logging import bind_request_id, clear_request_context, configure_logging, get_logger
from creditledger.ledger.records import StoreError
from creditledger.routers import admin, auth, credits, executions, payments

settings = get_settings()
configure_logging(debug=settings.debug)
log = get_logger(__name__)

app = FastAPI(
    title="Credit Ledger API",
    version="1.0.0",
    default_response_class=ORJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
)


@app.middleware("http")
async def request_id_middleware(request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    clear_request_context()
    bind_request_id(request_id)
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    log.info(
        "request",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
    )
    response.headers["X-Request-ID"] = request_id
    return response


app.add_exception_handler(AppError, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(StoreError, store_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Routers
app.include_router(auth.router, prefix="/v1/auth", tags=["auth"])
app.include_router(payments.router, prefix="/v1/payments", tags=["payments"])
app.include_router(executions.router, prefix="/v1/executions", tags=["executions"])
app.include_router(credits.router, prefix="/v1/credits", tags=["credits"])
app.include_router(admin.router, prefix="/v1/admin", tags=["admin"])


@app.on_event("startup")
async def startup():
    if settings.sentry_dsn:
        import sentry_sdk
        sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.env, traces_sample_rate=0.1)
        log.info("startup", msg="Sentry enabled")
    if settings.ledger_backend == "mongo":
        from creditledger.db.init import init_db
        app.state.mongo_client = await init_db()
        log.info("startup", msg="DB connected")
    else:
        log.info("startup", msg="Using in-memory ledger", ledger_backend=settings.ledger_backend)


@app.on_event("shutdown")
async def shutdown():
    client = getattr(app.state, "mongo_client", None)
    if client is not None:
        client.close()


@app.get("/health")
async def health():
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}
