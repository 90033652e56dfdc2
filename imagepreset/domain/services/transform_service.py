from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO

import numpy as np
from PIL import Image, UnidentifiedImageError

from imagepreset.domain.entities.preset import FitMode, PresetSpec
from imagepreset.domain.errors import TransformError, UnsupportedFormatError


@dataclass(frozen=True)
class TransformResult:
    data: bytes
    width: int
    height: int
    mime_type: str


class TransformService:
    """Deterministic preset rendering: Pillow decodes and encodes, NumPy does the geometry.

    Arrays are uint8 with channel convention (H, W, C). The service keeps no
    state, so one instance may be shared by any number of threads.
    """

    def transform(self, source: bytes, preset: PresetSpec) -> TransformResult:
        matrix = self.decode(source, keep_alpha=preset.format != "jpeg")
        try:
            out = self.apply_fit(matrix, preset.width, preset.height, preset.fit)
            data = self.encode(out, preset)
        except (ValueError, OSError) as exc:
            raise TransformError(f"Rendering preset {preset.name!r} failed: {exc}") from exc
        height, width = out.shape[:2]
        return TransformResult(data=data, width=width, height=height, mime_type=preset.mime_type)

    # --------- codec ---------
    @staticmethod
    def decode(source: bytes, *, keep_alpha: bool = False) -> np.ndarray:
        try:
            img = Image.open(BytesIO(source))
        except UnidentifiedImageError as exc:
            raise UnsupportedFormatError(f"Unsupported image data: {exc}") from exc
        except Image.DecompressionBombError as exc:
            raise TransformError(f"Image too large: {exc}") from exc
        try:
            img.load()
            has_alpha = img.mode in ("RGBA", "LA", "PA") or (
                img.mode == "P" and "transparency" in img.info
            )
            img = img.convert("RGBA" if keep_alpha and has_alpha else "RGB")
        except (OSError, ValueError) as exc:
            raise TransformError(f"Decoding failed: {exc}") from exc
        return np.asarray(img, dtype=np.uint8)

    @staticmethod
    def encode(matrix: np.ndarray, preset: PresetSpec) -> bytes:
        # (H, W, 3) maps to RGB and (H, W, 4) to RGBA
        img = Image.fromarray(np.ascontiguousarray(matrix))
        buf = BytesIO()
        fmt = preset.pil_format
        # encoder settings are pinned so output bytes are reproducible
        if fmt == "JPEG":
            img.convert("RGB").save(
                buf, format=fmt, quality=preset.quality, optimize=False, progressive=False, subsampling=0
            )
        elif fmt == "PNG":
            img.save(buf, format=fmt, compress_level=6, optimize=False)
        else:
            img.save(buf, format=fmt, quality=preset.quality, method=4, lossless=False)
        return buf.getvalue()

    # --------- geometry ---------
    @staticmethod
    def fit_size(src_w: int, src_h: int, width: int, height: int, fit: FitMode) -> tuple[int, int]:
        """Size of the resampled image before any crop."""
        if fit is FitMode.STRETCH:
            return width, height
        # integer arithmetic; float scale factors can land one pixel off
        box_is_wider = width * src_h >= height * src_w
        if fit is FitMode.COVER:
            if box_is_wider:
                return width, -(-src_h * width // src_w)
            return -(-src_w * height // src_h), height
        if box_is_wider:
            return max(1, round(src_w * height / src_h)), height
        return width, max(1, round(src_h * width / src_w))

    @staticmethod
    def apply_fit(matrix: np.ndarray, width: int, height: int, fit: FitMode) -> np.ndarray:
        h, w = matrix.shape[:2]
        if w == 0 or h == 0:
            raise ValueError("empty image")
        tw, th = TransformService.fit_size(w, h, width, height, fit)
        out = TransformService._resize_nearest(matrix, (th, tw))
        if fit is FitMode.COVER:
            out = TransformService._crop_center(out, width, height)
        return out

    @staticmethod
    def _crop_center(matrix: np.ndarray, width: int, height: int) -> np.ndarray:
        h, w = matrix.shape[:2]
        x0 = (w - width) // 2
        y0 = (h - height) // 2
        return matrix[y0 : y0 + height, x0 : x0 + width]

    @staticmethod
    def _resize_nearest(img: np.ndarray, target_hw: tuple[int, int]) -> np.ndarray:
        th, tw = target_hw
        h, w = img.shape[:2]
        if h == th and w == tw:
            return img
        # sample at pixel centers so downscales stay symmetric
        ys = ((np.arange(th) + 0.5) * (h / th)).astype(np.int64)
        xs = ((np.arange(tw) + 0.5) * (w / tw)).astype(np.int64)
        ys = np.clip(ys, 0, h - 1)
        xs = np.clip(xs, 0, w - 1)
        return img[ys[:, None], xs[None, :], :]
