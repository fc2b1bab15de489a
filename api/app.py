from __future__ import annotations

import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from notebook_scanner.scanning import (
    Conflict,
    InvalidTransition,
    NotFound,
    OwnerResolutionError,
    RecognitionFailure,
    ScanError,
)

from api.dependencies import image_storage_root
from api.routes.content import router as content_router
from api.routes.notebooks import router as notebooks_router
from api.routes.pages import router as pages_router
from api.routes.scans import router as scans_router

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (NotFound, 404),
    (Conflict, 409),
    (InvalidTransition, 409),
    (OwnerResolutionError, 422),
    (RecognitionFailure, 502),
)


def status_for_error(exc: ScanError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


def create_app() -> FastAPI:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    app = FastAPI(title="Notebook Scanner API", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ScanError)
    async def scan_error_handler(request: Request, exc: ScanError) -> JSONResponse:
        status = status_for_error(exc)
        if status >= 500:
            logger.error("Unhandled scan error on %s: %s", request.url.path, exc.message)
        return JSONResponse(status_code=status, content={"error": exc.kind, "detail": exc.message})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": "InvalidRequest", "detail": str(exc)})

    app.include_router(notebooks_router)
    app.include_router(pages_router)
    app.include_router(scans_router)
    app.include_router(content_router)
    app.mount("/images", StaticFiles(directory=str(image_storage_root()), check_dir=False), name="images")

    @app.get("/healthz")
    def health() -> dict:
        return {"status": "ok"}

    return app


app = create_app()
