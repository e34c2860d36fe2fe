from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from .buffer import PixelBuffer, Rect
from .config import DOF_BLUR_SIGMA
from .errors import FormatError
from .io import encode_png
from .layers import alpha_over, blur_rgba, resize_rgba, to_buffer, to_float

logger = logging.getLogger(__name__)


def validate_cutout(subject: PixelBuffer) -> None:
    """
    A subject must carry real transparency; a fully opaque "subject" is almost
    certainly an uncut photo.
    """
    if not bool(np.any(subject.alpha < 255)):
        raise FormatError(
            f"Subject {subject.width}x{subject.height} is fully opaque; expected a transparent cutout"
        )


def assemble(
    backdrop: PixelBuffer,
    subject_with_shadow: PixelBuffer,
    reflection: Optional[PixelBuffer],
    rect: Rect,
    add_depth_of_field: bool = False,
    dof_sigma: float = DOF_BLUR_SIGMA,
) -> PixelBuffer:
    """
    Layered composite at the backdrop's size.

    Draw order, back to front:
      1) backdrop (blurred first when `add_depth_of_field` is set)
      2) reflection layer, if any (canvas-sized)
      3) subject at `rect`
    The subject is drawn last and never blurred.
    """
    validate_cutout(subject_with_shadow)
    if reflection is not None and reflection.size != backdrop.size:
        raise FormatError(
            f"Reflection layer {reflection.width}x{reflection.height} does not match "
            f"backdrop {backdrop.width}x{backdrop.height}"
        )

    canvas = to_float(backdrop)
    if add_depth_of_field:
        canvas = blur_rgba(canvas, dof_sigma)

    if reflection is not None:
        alpha_over(canvas, to_float(reflection))

    x, y, w, h = rect.to_pixels()
    if w > 0 and h > 0:
        subject = resize_rgba(to_float(subject_with_shadow), w, h)
        alpha_over(canvas, subject, x, y)
    else:
        logger.debug("Subject rect %s rounds to an empty area; skipping subject layer", rect)

    return to_buffer(canvas)


def assemble_png(
    backdrop: PixelBuffer,
    subject_with_shadow: PixelBuffer,
    reflection: Optional[PixelBuffer],
    rect: Rect,
    add_depth_of_field: bool = False,
) -> bytes:
    """Lossless encoding of `assemble` for hand-off to enhancement services."""
    return encode_png(assemble(backdrop, subject_with_shadow, reflection, rect, add_depth_of_field))
