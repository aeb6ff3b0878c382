import logging
import logging.config

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

# ------------------------------------------------------------
# 1. CONFIG & LOGGING
# ------------------------------------------------------------
from app.core.config import settings
from app.core.errors import MalipoError, ValidationError
from app.services.ledger_store import LedgerStore, get_store
from app.utils.firebase import firestore_run

LOG_LEVEL = "INFO" if settings.ENVIRONMENT == "production" else "DEBUG"

logging_config = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
        },
    },
    "loggers": {
        "uvicorn": {"handlers": ["console"], "level": LOG_LEVEL},
        "uvicorn.error": {"handlers": ["console"], "level": LOG_LEVEL},
        "uvicorn.access": {"handlers": ["console"], "level": LOG_LEVEL},
        "malipo": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
    },
}

logging.config.dictConfig(logging_config)
logger = logging.getLogger("malipo")


class CustomProxyHeadersMiddleware(BaseHTTPMiddleware):
    """
    Rewrite the client address and scheme from X-Forwarded-For / X-Forwarded-Proto.
    Callback IP checks depend on this when running behind a load balancer.
    """
    async def dispatch(self, request, call_next):
        x_forwarded_for = request.headers.get("x-forwarded-for")
        if x_forwarded_for:
            # First hop is the original caller
            request.scope["client"] = (x_forwarded_for.split(",")[0].strip(), 0)

        x_forwarded_proto = request.headers.get("x-forwarded-proto")
        if x_forwarded_proto:
            request.scope["scheme"] = x_forwarded_proto

        return await call_next(request)


# ------------------------------------------------------------
# 2. FASTAPI APP
# ------------------------------------------------------------
app = FastAPI(
    title="Malipo API",
    description="M-Pesa collections, disbursements, callbacks and daily reconciliation.",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)

# ------------------------------------------------------------
# 3. MIDDLEWARE
# ------------------------------------------------------------
@app.middleware("http")
async def log_requests(request: Request, call_next):
    client = request.client.host if request.client else "-"
    logger.info(f"➡️ {client} {request.method} {request.url.path}")
    try:
        response = await call_next(request)
    except Exception as e:
        logger.exception(f"💥 Exception during {request.method} {request.url.path}: {e}")
        raise
    logger.info(f"⬅️ {request.method} {request.url.path} → {response.status_code}")
    return response


# Added last so it runs first: the logger above sees the rewritten client
app.add_middleware(CustomProxyHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)

# ------------------------------------------------------------
# 4. ROUTERS (API ROUTES)
# ------------------------------------------------------------
from app.routers import (
    callback_router,
    customer_router,
    dashboard_router,
    mpesa_router,
    reconciliation_router,
    subscription_router,
)

app.include_router(mpesa_router.router, prefix="/api", tags=["M-Pesa"])
app.include_router(callback_router.router, prefix="/api", tags=["Callbacks"])
app.include_router(reconciliation_router.router, prefix="/api", tags=["Reconciliation"])
app.include_router(dashboard_router.router, prefix="/api", tags=["Dashboard"])
app.include_router(customer_router.router, prefix="/api", tags=["Customers"])
app.include_router(subscription_router.router, prefix="/api", tags=["Ratiba"])


# ------------------------------------------------------------
# 5. SYSTEM ROUTES
# ------------------------------------------------------------
@app.get("/health", tags=["System"])
async def health_check(store: LedgerStore = Depends(get_store)):
    try:
        await firestore_run(store.ping)
        return {"status": "healthy", "db": "connected"}
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "unhealthy", "error": str(e)})


# ------------------------------------------------------------
# 6. EXCEPTION HANDLERS
# ------------------------------------------------------------
@app.exception_handler(MalipoError)
async def malipo_exception_handler(request: Request, exc: MalipoError):
    if exc.http_status >= 500:
        logger.error(f"{exc.__class__.__name__} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.warning(f"{exc.__class__.__name__} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = {}
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        errors[".".join(loc) or "body"] = err.get("msg", "Invalid value")
    return JSONResponse(status_code=400, content=ValidationError(errors).to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Something went wrong. We're on it.",
            "request_id": request.headers.get("X-Request-ID"),
        },
    )


# ------------------------------------------------------------
# 7. STARTUP
# ------------------------------------------------------------
@app.on_event("startup")
async def startup_event():
    logger.info(f"🚀 {settings.PROJECT_NAME} API started | Env: {settings.ENVIRONMENT} | Debug: {settings.DEBUG}")
    logger.info(f"🔗 M-Pesa callbacks → {settings.callback_url('callback')}")
    if settings.MPESA_VALIDATE_IP:
        logger.info(f"🛡️ Callback IP allow-list active ({len(settings.MPESA_ALLOWED_IPS)} addresses)")


# ------------------------------------------------------------
# 8. RUN LOCALLY
# ------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug",
        access_log=True
    )
