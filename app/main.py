import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.api.router import api_router
from app.core.config import settings
from app.core.errors import (
    NotFoundError,
    PlatformError,
    QueryValidationError,
    TransientIOError,
)
from app.core.platform import PlatformClient
from app.core.registry.orchestrator import SyncOrchestrator
from app.core.registry.store import SchemaStore
from app.core.schemas import ToolResponse

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)


def build_orchestrator() -> SyncOrchestrator:
    store = SchemaStore(settings.DATABASE_URL, echo=settings.DB_ECHO)
    platform = PlatformClient(
        settings.BUDIBASE_URL,
        settings.BUDIBASE_API_KEY,
        timeout_ms=settings.REQUEST_TIMEOUT_MS,
        max_retries=settings.MAX_RETRIES,
    )
    return SyncOrchestrator(store, platform, max_age_ms=settings.SCHEMA_MAX_AGE_MS)


# Open the registry once, and stop timers / close the store on shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    orchestrator = build_orchestrator()
    await orchestrator.initialize()
    if not await orchestrator.platform.check_connection():
        logging.warning("Platform unreachable - server starts, remote calls may fail")
    app.state.orchestrator = orchestrator

    yield
    await orchestrator.close()
    await orchestrator.platform.close()


app = FastAPI(title="Schema Registry API", lifespan=lifespan)


def _envelope(status_code: int, error: str, message: str, data=None) -> JSONResponse:
    body = ToolResponse(success=False, data=data, error=error, message=message)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _envelope(status.HTTP_404_NOT_FOUND, "not_found", str(exc))


@app.exception_handler(QueryValidationError)
async def validation_handler(request: Request, exc: QueryValidationError):
    return _envelope(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "invalid_query",
        str(exc),
        data={"valid": False, "errors": exc.errors, "warnings": exc.warnings},
    )


# Malformed tool input gets the same envelope as every other failure
@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = [
        f"{'.'.join(str(part) for part in error['loc'] if part != 'body')}: {error['msg']}"
        for error in exc.errors()
    ]
    return _envelope(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "invalid_request",
        f"Invalid request: {'; '.join(problems)}",
        data={"errors": problems},
    )


@app.exception_handler(TransientIOError)
async def transient_handler(request: Request, exc: TransientIOError):
    message = exc.to_user_message() if isinstance(exc, PlatformError) else str(exc)
    return _envelope(status.HTTP_503_SERVICE_UNAVAILABLE, "unavailable", message)


# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/")
async def root():
    return {"message": "Welcome to the Schema Registry API"}
