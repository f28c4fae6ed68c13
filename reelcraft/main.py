import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from reelcraft.api import compositions
from reelcraft.config import get_settings
from reelcraft.exceptions import ReelcraftError
from reelcraft.models.database import async_session_maker, engine, init_db
from reelcraft.render.limiter import ConcurrencyLimiter
from reelcraft.render.pipeline import CompositionPipeline
from reelcraft.services.composition_store import SqlCompositionStore
from reelcraft.services.job_manager import CompositionJobManager
from reelcraft.services.storage_service import get_storage_service

settings = get_settings()
logger = logging.getLogger(__name__)


def create_job_manager() -> CompositionJobManager:
    return CompositionJobManager(
        store=SqlCompositionStore(async_session_maker),
        pipeline=CompositionPipeline(),
        storage=get_storage_service(),
        limiter=ConcurrencyLimiter(settings.render_max_concurrency),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    await init_db()
    manager = create_job_manager()
    # Runs are not resumed across restarts
    await manager.store.fail_interrupted()
    app.state.job_manager = manager
    yield
    # Shutdown
    if manager.active_runs:
        logger.info(f"[JOB] Waiting for {manager.active_runs} composition run(s) to finish")
    await manager.wait_idle()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ReelcraftError)
async def reelcraft_exception_handler(request: Request, exc: ReelcraftError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_encoder(exc.errors()), "code": "VALIDATION_ERROR"},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=exc.headers,
    )


# Global exception handler to ensure errors return proper JSON
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Routers
app.include_router(compositions.router, prefix="/api/compositions", tags=["compositions"])


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy", "version": settings.app_version, "git_hash": settings.git_hash}


# =============================================================================
# Main Entry Point
# =============================================================================


def run() -> None:
    import uvicorn

    logger.info(f"Starting {settings.app_name} on {settings.host}:{settings.port}")
    uvicorn.run("reelcraft.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
