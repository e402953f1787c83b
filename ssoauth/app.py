from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from ssoauth.api.error_handling import register_exception_handlers
from ssoauth.api.routes import router
from ssoauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from ssoauth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("startup_complete", version=__version__)

    yield

    try:
        await runtime.close()
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="SSO Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every request with an id for log correlation.

    Taken from ``X-Request-ID`` when the client sends one, generated
    otherwise, and echoed back in the response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def healthz():
    from ssoauth.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await runtime.registry.verify_connection()
    except Exception as exc:
        logger.warning("healthcheck_store_failed", error=str(exc))
        return {"status": "degraded", "store": "unavailable"}
    return {"status": "healthy", "store": "ok"}
