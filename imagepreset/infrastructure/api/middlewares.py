from __future__ import annotations

import logging
import os

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from imagepreset.application.dtos.common_dto import ErrorResponse
from imagepreset.domain.errors import (
    DeletionError,
    ImagePresetError,
    InvalidImageError,
    NotFoundError,
    StorageIOError,
    TransformError,
    UnknownPlaceholderError,
    UnknownPresetError,
    UnsupportedFormatError,
)

_log = logging.getLogger("imagepreset.api")

# most specific first; the first match wins
_STATUS_BY_ERROR: list[tuple[type[ImagePresetError], int]] = [
    (InvalidImageError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (UnknownPresetError, status.HTTP_404_NOT_FOUND),
    (UnknownPlaceholderError, status.HTTP_404_NOT_FOUND),
    (UnsupportedFormatError, status.HTTP_415_UNSUPPORTED_MEDIA_TYPE),
    (TransformError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (DeletionError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def status_for(exc: ImagePresetError) -> int:
    if isinstance(exc, StorageIOError) and exc.transient:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def add_default_middlewares(app: FastAPI) -> None:
    # CORS configuration
    # In development/staging, allow common frontend origins
    env = os.getenv("ENV", "development")

    if env in ("development", "staging"):
        allowed_origins = [
            "http://localhost:3000",
            "http://localhost:5173",  # Vite default
            "http://127.0.0.1:3000",
            "http://127.0.0.1:5173",
        ]
    else:
        allowed_origins = [o.strip() for o in os.getenv("CORS_ALLOWED_ORIGINS", "*").split(",") if o.strip()]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )


def add_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ImagePresetError)
    async def handle_image_preset_error(request: Request, exc: ImagePresetError) -> JSONResponse:
        code = status_for(exc)
        if code >= 500:
            _log.error("%s %s failed: %s: %s", request.method, request.url.path, type(exc).__name__, exc)
        body = ErrorResponse(detail=str(exc), error=type(exc).__name__)
        return JSONResponse(status_code=code, content=body.model_dump())
