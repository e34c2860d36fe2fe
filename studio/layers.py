"""
Float RGBA scratch-surface helpers shared by reflection synthesis and assembly.

Scratch arrays are float32 (H, W, 4) with straight (non-premultiplied) alpha in
[0, 255]. They live only inside the transform that created them.
"""

from __future__ import annotations

from typing import Tuple

import cv2
import numpy as np

from .buffer import PixelBuffer


def to_float(buf: PixelBuffer) -> np.ndarray:
    return buf.pixels.astype(np.float32)


def to_buffer(arr: np.ndarray, *, truncate: bool = False) -> PixelBuffer:
    """
    float scratch -> immutable uint8 buffer.

    `truncate` floors instead of rounding (keeps opacity upper bounds exact).
    """
    arr = np.clip(arr, 0.0, 255.0)
    if not truncate:
        arr = np.rint(arr)
    return PixelBuffer(arr.astype(np.uint8))


def _premultiply(arr: np.ndarray) -> np.ndarray:
    out = arr.copy()
    out[..., :3] *= arr[..., 3:4] / 255.0
    return out


def _unpremultiply(arr: np.ndarray) -> np.ndarray:
    out = arr.copy()
    a = arr[..., 3:4]
    safe = np.where(a > 1e-6, a, 1.0)
    out[..., :3] = np.where(a > 1e-6, arr[..., :3] * 255.0 / safe, 0.0)
    return np.clip(out, 0.0, 255.0)


def resize_rgba(arr: np.ndarray, width: int, height: int) -> np.ndarray:
    """
    Premultiplied resize so transparent pixels do not bleed color into edges.
    """
    h, w = arr.shape[:2]
    if (w, h) == (width, height):
        return arr.copy()
    interp = cv2.INTER_AREA if width * height < w * h else cv2.INTER_CUBIC
    pm = _premultiply(arr)
    resized = cv2.resize(pm, (int(width), int(height)), interpolation=interp)
    return _unpremultiply(np.clip(resized, 0.0, 255.0))


def blur_rgba(arr: np.ndarray, sigma: float, border: int = cv2.BORDER_REFLECT_101) -> np.ndarray:
    """
    Gaussian blur in premultiplied space; output has the input's shape.
    """
    if sigma <= 0:
        return arr.copy()
    pm = _premultiply(arr)
    blurred = cv2.GaussianBlur(pm, (0, 0), sigmaX=float(sigma), sigmaY=float(sigma), borderType=border)
    return _unpremultiply(blurred)


def clip_region(
    canvas_w: int, canvas_h: int, x: int, y: int, w: int, h: int
) -> Tuple[slice, slice, slice, slice] | None:
    """
    Intersect a (x, y, w, h) layer with the canvas.

    Returns (canvas_rows, canvas_cols, layer_rows, layer_cols) or None when the
    layer is entirely off-canvas.
    """
    x0, y0 = max(0, x), max(0, y)
    x1, y1 = min(canvas_w, x + w), min(canvas_h, y + h)
    if x1 <= x0 or y1 <= y0:
        return None
    return (
        slice(y0, y1),
        slice(x0, x1),
        slice(y0 - y, y1 - y),
        slice(x0 - x, x1 - x),
    )


def alpha_over(dst: np.ndarray, src: np.ndarray, x: int = 0, y: int = 0) -> None:
    """
    Source-over `src` onto `dst` at (x, y), in place on the scratch surface.
    """
    h, w = src.shape[:2]
    region = clip_region(dst.shape[1], dst.shape[0], x, y, w, h)
    if region is None:
        return
    rows, cols, src_rows, src_cols = region
    s = src[src_rows, src_cols]
    d = dst[rows, cols]

    sa = s[..., 3:4] / 255.0
    da = d[..., 3:4] / 255.0
    out_a = sa + da * (1.0 - sa)
    safe = np.where(out_a > 1e-6, out_a, 1.0)
    out_rgb = np.where(
        out_a > 1e-6,
        (s[..., :3] * sa + d[..., :3] * da * (1.0 - sa)) / safe,
        0.0,
    )
    dst[rows, cols, :3] = out_rgb
    dst[rows, cols, 3:4] = out_a * 255.0
