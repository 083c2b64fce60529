import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from widget_engine.api.routes import router, runtime_summary
from widget_engine.errors import EngineError
from widget_engine.settings import get_settings

settings = get_settings()
logger = logging.getLogger("uvicorn.error")


def _error_response(status_code: int, code: str, message: str, error_id: str, *, retryable: bool = False) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "retryable": retryable, "error_id": error_id}},
    )


@asynccontextmanager
async def lifespan(_app: FastAPI):
    logger.info("engine.startup | %s", {"environment": settings.environment, **runtime_summary()})
    yield
    logger.info("engine.shutdown | %s", {"environment": settings.environment})


def create_app() -> FastAPI:
    logger.setLevel(settings.log_level)
    public_docs = settings.environment != "production"
    app = FastAPI(
        title="Widget Query Engine",
        description="Parameterized widget query execution over pluggable data sources",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if public_docs else None,
        redoc_url="/redoc" if public_docs else None,
        openapi_url="/openapi.json" if public_docs else None,
    )

    # Failures inside a widget run come back as envelopes; these handlers only see
    # errors raised before a run starts (unknown widget, unknown plugin instance).
    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
        logger.warning(
            "engine.request_rejected | %s",
            {"path": request.url.path, "code": exc.code, "status_code": exc.status_code, "error_id": exc.error_id},
        )
        return _error_response(exc.status_code, exc.code, exc.message, exc.error_id, retryable=exc.retryable)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        error_id = str(uuid.uuid4())
        logger.exception("engine.unhandled_error | %s", {"path": request.url.path, "error_id": error_id})
        return _error_response(500, "internal_error", "Unexpected internal error", error_id)

    @app.middleware("http")
    async def request_deadline(request: Request, call_next):  # type: ignore[override]
        try:
            return await asyncio.wait_for(call_next(request), timeout=settings.execution_timeout_seconds)
        except TimeoutError:
            error_id = str(uuid.uuid4())
            logger.warning("engine.request_timeout | %s", {"path": request.url.path, "error_id": error_id})
            return _error_response(504, "request_timeout", "Request timed out", error_id, retryable=True)

    app.include_router(router)
    return app


app = create_app()
