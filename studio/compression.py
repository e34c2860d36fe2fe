from __future__ import annotations

import io
import logging
from dataclasses import dataclass, replace

from PIL import Image

from .buffer import Dimensions, PixelBuffer
from .config import (
    COMPRESS_MAX_BYTES,
    COMPRESS_MAX_DIMENSION,
    COMPRESS_QUALITY_FLOOR,
    COMPRESS_QUALITY_START,
    COMPRESS_QUALITY_STEP,
)
from .io import has_transparency, open_image, sniff_mime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Upload:
    """One raw file as received from the user."""

    name: str
    data: bytes
    mime_type: str = ""

    def __post_init__(self) -> None:
        if not self.mime_type:
            object.__setattr__(self, "mime_type", sniff_mime(self.data))

    @property
    def size_bytes(self) -> int:
        return len(self.data)


def needs_compression(upload: Upload, dims: Dimensions) -> bool:
    return (
        upload.size_bytes > COMPRESS_MAX_BYTES
        or dims.width > COMPRESS_MAX_DIMENSION
        or dims.height > COMPRESS_MAX_DIMENSION
    )


def _fit_within(img: Image.Image, max_dim: int) -> Image.Image:
    w, h = img.size
    if max(w, h) <= max_dim:
        return img
    scale = max_dim / float(max(w, h))
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    return img.resize((new_w, new_h), Image.Resampling.LANCZOS)


def compress(upload: Upload, max_bytes: int = COMPRESS_MAX_BYTES, max_dim: int = COMPRESS_MAX_DIMENSION) -> Upload:
    """
    Shrink an upload to fit `max_dim` and `max_bytes`.

    Opaque images are re-encoded as JPEG at the highest quality under the byte
    limit (stepping down from 100). Transparent images are only resized and kept
    as PNG so cutouts never lose their alpha.
    """
    img = open_image(upload.data)
    img = _fit_within(img, max_dim)

    if has_transparency(PixelBuffer.from_pil(img)):
        out = io.BytesIO()
        img.convert("RGBA").save(out, format="PNG", optimize=True)
        data = out.getvalue()
        logger.info("Resized transparent %s: %d -> %d bytes", upload.name, upload.size_bytes, len(data))
        return replace(upload, data=data, mime_type="image/png")

    rgb = img.convert("RGB")
    quality = COMPRESS_QUALITY_START
    data = b""
    while quality >= COMPRESS_QUALITY_FLOOR - 1e-9:
        data = _encode_jpeg(rgb, quality)
        if len(data) <= max_bytes:
            logger.info(
                "Compressed %s at quality %d%%: %d -> %d bytes",
                upload.name,
                int(round(quality * 100)),
                upload.size_bytes,
                len(data),
            )
            return replace(upload, data=data, mime_type="image/jpeg")
        quality -= COMPRESS_QUALITY_STEP

    # Even the lowest quality is over the limit: keep the smallest encoding.
    data = _encode_jpeg(rgb, COMPRESS_QUALITY_FLOOR)
    logger.warning("%s still %d bytes at minimum quality", upload.name, len(data))
    return replace(upload, data=data, mime_type="image/jpeg")


def _encode_jpeg(img: Image.Image, quality: float) -> bytes:
    out = io.BytesIO()
    img.save(out, format="JPEG", quality=max(1, min(100, int(round(quality * 100)))))
    return out.getvalue()
