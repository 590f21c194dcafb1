import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend import engine
from backend.routes import router
from novel_engine.errors import (
    AlreadyInProgress,
    BackendUnavailable,
    CallerError,
    CharacterNotFound,
    InsufficientBalance,
    NovelEngineError,
    ScenarioLocked,
    ScenarioNotFound,
    ScenarioValidationError,
    SessionEnded,
    SessionNotFound,
    SessionOwnershipError,
    StaleSession,
)

load_dotenv(Path(__file__).parent.parent / ".env")

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"

# first match wins, so subclasses come before their bases
_STATUS_CODES: list[tuple[type[NovelEngineError], int]] = [
    (InsufficientBalance, 402),
    (ScenarioValidationError, 422),
    (SessionOwnershipError, 403),
    (ScenarioLocked, 403),
    (SessionNotFound, 404),
    (ScenarioNotFound, 404),
    (CharacterNotFound, 404),
    (AlreadyInProgress, 409),
    (SessionEnded, 409),
    (StaleSession, 409),
    (BackendUnavailable, 503),
    (CallerError, 400),
]


def status_for(exc: NovelEngineError) -> int:
    for cls, status in _STATUS_CODES:
        if isinstance(exc, cls):
            return status
    return 500


async def engine_error_handler(request: Request, exc: NovelEngineError) -> JSONResponse:
    status = status_for(exc)
    if isinstance(exc, InsufficientBalance):
        body = {
            "error": "insufficient_balance",
            "current_balance": exc.current,
            "required": exc.required,
        }
    else:
        body = {"error": type(exc).__name__, "detail": str(exc)}
        if isinstance(exc, ScenarioValidationError):
            body["errors"] = exc.report.errors
            body["warnings"] = exc.report.warnings
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content=body)


def create_app(data_dir: Path | None = None) -> FastAPI:
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
    engine.init_engine(resolved)

    app = FastAPI(title="Novel Engine")
    app.add_exception_handler(NovelEngineError, engine_error_handler)
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
