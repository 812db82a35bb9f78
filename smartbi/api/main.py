"""
FastAPI application entry-point.
"""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from smartbi.api.deps import get_cache, get_executor, get_service
from smartbi.api.routers import cache, datasets
from smartbi.cache.store import CacheSweeper
from smartbi.core.config import get_settings
from smartbi.core.errors import NotFound, PermissionDenied, ValidationError
from smartbi.core.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = CacheSweeper(get_cache(), get_settings().cache_cleanup_interval_seconds)
    sweeper.start()
    try:
        yield
    finally:
        sweeper.stop()
        # Only tear down what was actually created during the app's lifetime.
        if get_service.cache_info().currsize:
            get_service().shutdown()
        if get_executor.cache_info().currsize:
            get_executor().close()
        logger.info("Dataset API stopped")


app = FastAPI(
    title="SmartBI Datasets",
    version="0.1.0",
    description="Dataset definitions, schema inference and cached structured queries",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(datasets.router, prefix="/datasets", tags=["Datasets"])
app.include_router(cache.router, prefix="/cache", tags=["Cache"])


@app.exception_handler(PermissionDenied)
def _permission_denied(request: Request, exc: PermissionDenied) -> JSONResponse:
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(NotFound)
def _not_found(request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
def _invalid(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.get("/health")
def health():
    return {"status": "ok"}
