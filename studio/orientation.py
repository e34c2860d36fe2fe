from __future__ import annotations

import io
import logging
from typing import Dict

from PIL import Image, ImageOps

from .buffer import PixelBuffer
from .io import open_image

logger = logging.getLogger(__name__)

ORIENTATION_TAG = 0x0112
UPRIGHT = 1

# EXIF orientation -> Pillow transpose producing the upright raster.
# 5-8 swap width/height.
_TRANSPOSE: Dict[int, Image.Transpose] = {
    2: Image.Transpose.FLIP_LEFT_RIGHT,
    3: Image.Transpose.ROTATE_180,
    4: Image.Transpose.FLIP_TOP_BOTTOM,
    5: Image.Transpose.TRANSPOSE,
    6: Image.Transpose.ROTATE_270,
    7: Image.Transpose.TRANSVERSE,
    8: Image.Transpose.ROTATE_90,
}


def read_orientation(data: bytes) -> int:
    """
    Return the EXIF orientation (1-8) embedded in encoded bytes.

    Missing tag, unknown container, out-of-range values and any parse failure all
    mean "upright" (1).
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            value = img.getexif().get(ORIENTATION_TAG, UPRIGHT)
        value = int(value)
    except Exception as e:  # noqa: BLE001 - orientation must never abort the pipeline
        logger.debug("Orientation parse failed (%s); assuming upright", type(e).__name__)
        return UPRIGHT
    if value < 1 or value > 8:
        return UPRIGHT
    return value


def apply_orientation(buf: PixelBuffer, orientation: int) -> PixelBuffer:
    method = _TRANSPOSE.get(int(orientation))
    if method is None:
        return buf
    return PixelBuffer.from_pil(buf.to_pil().transpose(method))


def normalize(data: bytes) -> PixelBuffer:
    """
    Decode raw upload bytes and render them upright.

    Orientation 1 returns the decoded buffer untouched. Undecodable bytes raise
    DecodeError; metadata problems fall back to the unrotated buffer.
    """
    img = open_image(data)
    orientation = read_orientation(data)
    if orientation == UPRIGHT:
        return PixelBuffer.from_pil(img)
    try:
        upright = ImageOps.exif_transpose(img)
    except Exception as e:  # noqa: BLE001
        logger.debug("Orientation %d correction failed (%s); keeping raw pixels", orientation, e)
        return PixelBuffer.from_pil(img)
    logger.debug(
        "Corrected orientation %d: %dx%d -> %dx%d",
        orientation,
        img.width,
        img.height,
        upright.width,
        upright.height,
    )
    return PixelBuffer.from_pil(upright)


def rotate_quarter(buf: PixelBuffer, clockwise: bool = True) -> PixelBuffer:
    """Permanent 90 degree rotation (manual user rotation)."""
    method = Image.Transpose.ROTATE_270 if clockwise else Image.Transpose.ROTATE_90
    return PixelBuffer.from_pil(buf.to_pil().transpose(method))
