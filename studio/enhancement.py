from __future__ import annotations

import logging
from typing import Protocol

from .config import ENHANCE_PROMPT, GEMINI_ENHANCE_MODEL
from .gemini import first_image_part, generate_content, inline_part

logger = logging.getLogger(__name__)


class Enhancer(Protocol):
    def enhance(self, composite: bytes, guidance: bytes) -> bytes: ...


class GeminiEnhancer:
    """
    Final lighting/color pass on a composite.

    The guidance image (the clean cutout) tells the model what must not change.
    A response without an image payload falls back to the composite unchanged.
    """

    def __init__(self, model: str = GEMINI_ENHANCE_MODEL, prompt: str = ENHANCE_PROMPT):
        self.model = model
        self.prompt = prompt

    def enhance(self, composite: bytes, guidance: bytes) -> bytes:
        data = generate_content(
            self.model,
            parts=[
                {"text": self.prompt},
                {"text": "COMPOSITE:"},
                inline_part(composite, "image/png"),
                {"text": "PRODUCT REFERENCE:"},
                inline_part(guidance, "image/png"),
            ],
        )
        enhanced = first_image_part(data)
        if enhanced is None:
            logger.info("Enhancement returned no image payload; keeping the composite")
            return composite
        return enhanced
