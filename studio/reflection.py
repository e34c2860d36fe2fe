from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence, Tuple

import cv2
import numpy as np

from .buffer import Dimensions, PixelBuffer, Rect
from .config import (
    REFLECTION_BLUR_PX,
    REFLECTION_BRIGHTNESS,
    REFLECTION_CONTRAST,
    REFLECTION_FADE_STOPS,
    REFLECTION_HEIGHT_FRACTION,
    REFLECTION_OPACITY,
    REFLECTION_SATURATION,
)
from .errors import FormatError
from .layers import blur_rgba, clip_region, resize_rgba, to_buffer, to_float

logger = logging.getLogger(__name__)

# Rec. 601 luma weights; saturation pivots on each pixel's luminance.
_LUMA = np.array([0.299, 0.587, 0.114], dtype=np.float32)
_MAX_TOP_OPACITY = 0.5


@dataclass(frozen=True)
class ReflectionOptions:
    height_fraction: float = REFLECTION_HEIGHT_FRACTION
    fade_stops: Tuple[Tuple[float, float], ...] = REFLECTION_FADE_STOPS
    brightness: float = REFLECTION_BRIGHTNESS
    contrast: float = REFLECTION_CONTRAST
    saturation: float = REFLECTION_SATURATION
    opacity: float = REFLECTION_OPACITY
    blur_px: float = REFLECTION_BLUR_PX

    def __post_init__(self) -> None:
        if not 0.0 < self.height_fraction <= 1.0:
            raise ValueError(f"height_fraction must be in (0, 1], got {self.height_fraction}")
        _validate_fade(self.fade_stops)


def _validate_fade(stops: Sequence[Tuple[float, float]]) -> None:
    positions = [p for p, _ in stops]
    values = [v for _, v in stops]
    if len(stops) < 2 or positions[0] != 0.0 or positions[-1] != 1.0:
        raise ValueError("Fade stops must start at 0.0 and end at 1.0")
    if any(b <= a for a, b in zip(positions, positions[1:])):
        raise ValueError("Fade stop positions must be strictly increasing")
    if any(b > a for a, b in zip(values, values[1:])):
        raise ValueError("Fade must be monotonically decreasing")
    if values[0] > _MAX_TOP_OPACITY or values[-1] != 0.0:
        raise ValueError("Fade must start at <= 0.5 opacity and reach 0 at the bottom")


def fade_profile(height: int, stops: Sequence[Tuple[float, float]] = REFLECTION_FADE_STOPS) -> np.ndarray:
    """Per-row opacity multiplier, linear between stops, shape (height,)."""
    if height <= 1:
        return np.array([stops[0][1]] * max(0, height), dtype=np.float32)
    t = np.arange(height, dtype=np.float32) / float(height - 1)
    return np.interp(t, [p for p, _ in stops], [v for _, v in stops]).astype(np.float32)


def adjust_photometry(
    arr: np.ndarray,
    brightness: float = REFLECTION_BRIGHTNESS,
    contrast: float = REFLECTION_CONTRAST,
    saturation: float = REFLECTION_SATURATION,
    opacity: float = REFLECTION_OPACITY,
) -> np.ndarray:
    """
    Glossy-surface look on non-transparent pixels, in this order, clamping to
    [0, 255] after each step: brightness, contrast about 128, saturation about
    luminance, then alpha * opacity.
    """
    out = arr.copy()
    visible = out[..., 3] > 0
    rgb = out[visible, :3]

    rgb = np.clip(rgb * brightness, 0.0, 255.0)
    rgb = np.clip((rgb - 128.0) * contrast + 128.0, 0.0, 255.0)
    lum = (rgb @ _LUMA)[:, None]
    rgb = np.clip(lum + (rgb - lum) * saturation, 0.0, 255.0)

    out[visible, :3] = rgb
    out[..., 3] = np.clip(out[..., 3] * opacity, 0.0, 255.0)
    return out


def synthesize(
    clean_subject: PixelBuffer,
    rect: Rect,
    canvas: Dimensions,
    options: ReflectionOptions = ReflectionOptions(),
) -> PixelBuffer:
    """
    Canvas-sized layer holding a faded, glossy mirror of `clean_subject`.

    The mirror spans the subject's columns and starts on the row directly
    below `rect`; everything else is transparent. A rect whose reflection
    band falls outside the canvas yields a fully transparent layer.
    """
    if canvas.width <= 0 or canvas.height <= 0:
        raise FormatError(f"Invalid canvas size: {(canvas.width, canvas.height)}")

    layer = np.zeros((canvas.height, canvas.width, 4), dtype=np.float32)

    # Same rounding as the subject layer so the band starts on the next row.
    x, y_px, width, h_px = rect.to_pixels()
    top = y_px + h_px
    height = int(round(h_px * options.height_fraction))

    region = clip_region(canvas.width, canvas.height, x, top, width, height) if width > 0 and height > 0 else None
    if region is None:
        logger.debug("Reflection band for %s is off-canvas; returning empty layer", rect)
        return to_buffer(layer, truncate=True)

    # 1) mirror the bottom part of the subject, sized to the band
    start = int(clean_subject.height * (1.0 - options.height_fraction))
    flipped = to_float(clean_subject)[start:][::-1]
    band = resize_rgba(np.ascontiguousarray(flipped), width, height)

    # 2) top-to-bottom fade
    band[..., 3] *= fade_profile(height, options.fade_stops)[:, None]

    # 3) photometric adjustment + global opacity
    band = adjust_photometry(
        band,
        brightness=options.brightness,
        contrast=options.contrast,
        saturation=options.saturation,
        opacity=options.opacity,
    )

    # 4) blur confined to the band (zero border keeps it inside the band)
    band = blur_rgba(band, options.blur_px, border=cv2.BORDER_CONSTANT)

    rows, cols, band_rows, band_cols = region
    layer[rows, cols] = band[band_rows, band_cols]
    return to_buffer(layer, truncate=True)
