from __future__ import annotations

from .buffer import Dimensions, Rect
from .contracts import Placement
from .errors import FormatError


def resolve(subject: Dimensions, canvas: Dimensions, placement: Placement) -> Rect:
    """
    Scaled drawing rectangle for a subject on a canvas.

    Width follows the canvas (scale * canvas width), height follows the subject's
    own aspect ratio, and (x, y) is the subject's center. The result is not
    clamped: off-canvas placements are returned as-is.
    """
    if subject.width <= 0 or subject.height <= 0:
        raise FormatError(f"Invalid subject size: {(subject.width, subject.height)}")
    if canvas.width <= 0 or canvas.height <= 0:
        raise FormatError(f"Invalid canvas size: {(canvas.width, canvas.height)}")

    width = canvas.width * placement.scale
    height = width / (subject.width / subject.height)
    x = placement.x * canvas.width - width / 2.0
    y = placement.y * canvas.height - height / 2.0
    return Rect(x=x, y=y, width=width, height=height)
