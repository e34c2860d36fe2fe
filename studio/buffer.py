from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np
from PIL import Image

from .errors import FormatError


@dataclass(frozen=True)
class Dimensions:
    width: int
    height: int


@dataclass(frozen=True)
class Rect:
    """Drawing rectangle in canvas pixels (floats; may lie partly off-canvas)."""

    x: float
    y: float
    width: float
    height: float

    def to_pixels(self) -> Tuple[int, int, int, int]:
        return (
            int(round(self.x)),
            int(round(self.y)),
            max(0, int(round(self.width))),
            max(0, int(round(self.height))),
        )


@dataclass(frozen=True, eq=False)
class PixelBuffer:
    """
    Immutable RGBA raster: uint8 ndarray of shape (H, W, 4), row-major.

    Every transform returns a new buffer; the wrapped array is marked read-only.
    """

    pixels: np.ndarray

    def __post_init__(self) -> None:
        arr = self.pixels
        if arr.ndim != 3 or arr.shape[2] != 4:
            raise FormatError(f"Expected RGBA array (H,W,4), got shape={arr.shape}")
        if arr.dtype != np.uint8:
            raise FormatError(f"Expected uint8 pixels, got {arr.dtype}")
        if arr.shape[0] <= 0 or arr.shape[1] <= 0:
            raise FormatError(f"Invalid buffer size: {arr.shape[:2]}")
        if arr.flags.writeable:
            arr = np.ascontiguousarray(arr).copy()
            arr.setflags(write=False)
            object.__setattr__(self, "pixels", arr)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Dimensions:
        return Dimensions(self.width, self.height)

    @property
    def alpha(self) -> np.ndarray:
        return self.pixels[..., 3]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PixelBuffer):
            return NotImplemented
        return self.pixels.shape == other.pixels.shape and bool(np.array_equal(self.pixels, other.pixels))

    @classmethod
    def blank(cls, width: int, height: int) -> "PixelBuffer":
        return cls(np.zeros((height, width, 4), dtype=np.uint8))

    @classmethod
    def from_pil(cls, img: Image.Image) -> "PixelBuffer":
        if img.mode != "RGBA":
            img = img.convert("RGBA")
        return cls(np.array(img, dtype=np.uint8))

    def to_pil(self) -> Image.Image:
        return Image.fromarray(np.array(self.pixels))

    def writable_copy(self) -> np.ndarray:
        """Scratch copy for a single transform; never escapes that transform."""
        return np.array(self.pixels, dtype=np.uint8, copy=True)
