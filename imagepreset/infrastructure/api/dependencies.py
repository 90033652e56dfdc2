from __future__ import annotations

from functools import lru_cache

from imagepreset.application.services.image_manager import ImageManager, build_image_manager


@lru_cache(maxsize=1)
def get_image_manager() -> ImageManager:
    # one shared manager per process: in-flight generations are tracked on it
    return build_image_manager()
