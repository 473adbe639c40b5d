import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from psyche import __version__
from psyche.api.v1.router import api_v1_router
from psyche.core.config import settings, validate_settings_for_production
from psyche.core.container import build_sql_container
from psyche.core.exceptions import GOVERNANCE_HTTP_STATUS, GovernanceError
from psyche.core.logging import setup_logging
from psyche.core.metrics import PrometheusMiddleware, metrics_response
from psyche.core.rate_limit import limiter
from psyche.core.sentry import init_sentry
from psyche.db.postgres import async_session_factory, engine

# Configure logging before anything else
setup_logging()
init_sentry()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    logger.info("Starting Psyche inference engine %s...", __version__)

    # Tests install their own container before startup
    if getattr(app.state, "container", None) is None:
        app.state.container = build_sql_container(async_session_factory)
    logger.info("Gateway ready: model=%s", app.state.container.gateway.invoker.model_tag)

    yield

    # Shutdown
    await engine.dispose()
    logger.info("Psyche inference engine shut down")


app = FastAPI(
    title="Psyche",
    description="Adaptive multi-layer psychographic inference with LLM governance",
    version=__version__,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


@app.exception_handler(GovernanceError)
async def _governance_error_handler(request: Request, exc: GovernanceError):
    status_code = GOVERNANCE_HTTP_STATUS.get(exc.code, 500)
    headers = None
    retry_after = exc.details.get("retry_after")
    if retry_after is not None:
        headers = {"Retry-After": str(retry_after)}
    logger.info("%s on %s %s: %s", exc.code.value, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)


# Log unhandled exceptions with their traceback
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"detail": f"{type(exc).__name__}: {exc}"})


# Rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Prometheus request metrics
app.add_middleware(PrometheusMiddleware)

# CORS: parse allowed_origins from settings (comma-separated)
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(api_v1_router)


@app.get("/api/v1/health")
async def health(request: Request):
    container = getattr(request.app.state, "container", None)
    open_circuits = []
    if container is not None:
        open_circuits = [c["operation"] for c in container.breakers.all_states() if c["state"] != "closed"]
    return {
        "status": "ok",
        "version": __version__,
        "services_ready": container is not None,
        "open_circuits": open_circuits,
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
