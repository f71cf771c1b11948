import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from narrative_dispatch.api.v2.router import router as v2_router
from narrative_dispatch.core.config import settings
from narrative_dispatch.core.logging_utils import setup_logging
from narrative_dispatch.services.llm.analysis_service import build_analysis_service
from narrative_dispatch.services.llm.errors import (
    BudgetExceededError,
    DispatchError,
    JobNotFoundError,
    NoProviderAvailableError,
    UnauthorizedError,
    UnknownJobTypeError,
    UnknownProviderError,
)
from narrative_dispatch.services.llm.health_monitor import start_health_log, stop_health_log

# Configurar Logging
setup_logging(to_file=settings.LOG_TO_FILE)
logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    JobNotFoundError: 404,
    UnknownJobTypeError: 422,
    UnknownProviderError: 422,
    BudgetExceededError: 402,
    UnauthorizedError: 403,
    NoProviderAvailableError: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "analysis_service", None) is None:
        app.state.analysis_service = build_analysis_service(settings)
    service = app.state.analysis_service
    logger.info(
        f"🚀 Narrative Dispatch iniciado: {len(service.registry)} providers "
        f"({', '.join(service.registry.provider_ids)})"
    )
    start_health_log(service.health_monitor, settings.HEALTH_LOG_INTERVAL_SECONDS)
    yield
    stop_health_log()


app = FastAPI(title="Narrative Dispatch", lifespan=lifespan)

# --- Global Exception Handlers ---


@app.exception_handler(DispatchError)
async def dispatch_exception_handler(request: Request, exc: DispatchError):
    status_code = next(
        (code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)),
        500,
    )
    if status_code >= 500:
        logger.error(f"Dispatch Error: {exc.kind}: {exc}", exc_info=True)
    else:
        logger.warning(f"Dispatch Error: {exc.kind}: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": exc.to_dict()})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global Error: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error", "error": str(exc)}
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail}
    )


app.include_router(v2_router, prefix="/api/v2")


@app.get("/")
async def root():
    return {"status": "ok", "service": "Narrative Dispatch"}
