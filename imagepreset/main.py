from __future__ import annotations

import logging
import os

from fastapi import FastAPI

from imagepreset.application.dtos.common_dto import HealthResponse, RootResponse
from imagepreset.infrastructure.api.middlewares import add_default_middlewares, add_exception_handlers
from imagepreset.infrastructure.api.routes.image_routes import router as image_router
from imagepreset.infrastructure.api.routes.preset_routes import router as preset_router


def create_app() -> FastAPI:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = FastAPI(
        title="imagepreset",
        version="0.1.0",
        description="""
        ## imagepreset API

        Stores original images and serves named preset renderings of them
        (resize, crop and format presets), generated on first access and
        cached afterwards.

        ### Features
        - **Upload**: Store an original; the format is detected from content
        - **Presets**: Each preset has fixed dimensions, fit mode and output format
        - **On-demand renderings**: `/images/{id}/presets/{preset}` generates once, then serves the cached result
        - **Deletion**: Removing an image removes all of its renderings

        ### Error Responses
        - **400 Bad Request**: Upload is not a supported image
        - **404 Not Found**: Unknown image or preset
        - **415 Unsupported Media Type**: Stored original can no longer be decoded
        - **500 Internal Server Error**: Rendering or deletion failed
        - **503 Service Unavailable**: Transient storage failure, retry later
        """,
        license_info={
            "name": "MIT License",
            "url": "https://opensource.org/licenses/MIT",
        },
    )
    add_default_middlewares(app)
    add_exception_handlers(app)

    @app.get("/", response_model=RootResponse, summary="API Root")
    def root():
        return {"status": "ok", "service": "imagepreset", "version": app.version}

    @app.get("/health", response_model=HealthResponse, summary="Health Check")
    def health():
        return {"status": "healthy"}

    app.include_router(image_router)
    app.include_router(preset_router)
    return app


app = create_app()
