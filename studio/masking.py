from __future__ import annotations

import cv2
import numpy as np

from .buffer import Dimensions, PixelBuffer
from .config import NEAR_BLACK_THRESHOLD


def mask_to_alpha(mask: PixelBuffer, threshold: int = NEAR_BLACK_THRESHOLD) -> PixelBuffer:
    """
    Turn the near-black background of a generated mask into transparency.

    Pixels with R, G and B all below `threshold` get alpha 0; every other pixel is
    left untouched (alpha included).
    """
    out = mask.writable_copy()
    rgb = out[..., :3]
    near_black = np.all(rgb < int(threshold), axis=-1)
    out[near_black, 3] = 0
    return PixelBuffer(out)


def resample_mask(mask: PixelBuffer, size: Dimensions) -> PixelBuffer:
    """
    Resize a mask to `size` (bilinear). Same-size masks are returned as-is.
    """
    if mask.size == size:
        return mask
    resized = cv2.resize(
        np.ascontiguousarray(mask.pixels),
        (size.width, size.height),
        interpolation=cv2.INTER_LINEAR,
    )
    return PixelBuffer(resized.astype(np.uint8, copy=False))


def apply_mask(source: PixelBuffer, mask: PixelBuffer) -> PixelBuffer:
    """
    Destination-in cutout: keep `source` where the mask is opaque.

    Output alpha is min(source alpha, mask alpha), so applying the same mask again
    is a no-op. Color channels are zeroed wherever the result is fully transparent.
    """
    mask = resample_mask(mask, source.size)

    src = source.pixels
    alpha = np.minimum(src[..., 3], mask.alpha)
    keep = alpha > 0

    out = np.zeros_like(src)
    out[keep, :3] = src[keep, :3]
    out[..., 3] = alpha
    return PixelBuffer(out)


def cutout_from_mask(source: PixelBuffer, raw_mask: PixelBuffer) -> PixelBuffer:
    """Generated black/white mask -> finished transparent cutout."""
    return apply_mask(source, mask_to_alpha(raw_mask))
