"""
Background-removal collaborators.

Both return a transparent PNG cutout for one encoded image, or raise
ServiceFailure. The workflow treats any raise as that item's stage failure.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Optional, Protocol

import requests

from .config import GEMINI_MASK_MODEL, MASK_PROMPT
from .errors import DecodeError, ServiceFailure
from .gemini import first_image_part, generate_content, inline_part
from .io import decode_image, encode_png, sniff_mime
from .masking import cutout_from_mask
from .orientation import normalize

logger = logging.getLogger(__name__)

PHOTOROOM_PRODUCTION_URL = "https://sdk.photoroom.com/v1/segment"


class BackgroundRemover(Protocol):
    def remove(self, image: bytes) -> bytes: ...


def _get_photoroom_key() -> Optional[str]:
    key = os.getenv("PHOTOROOM_API_KEY")
    if key:
        key = key.strip()
    return key or None


def _get_photoroom_url() -> str:
    return os.getenv("PHOTOROOM_BASE_URL", PHOTOROOM_PRODUCTION_URL)


def _get_timeout_s() -> float:
    try:
        return float(os.getenv("PHOTOROOM_TIMEOUT_S", "60"))
    except ValueError:
        return 60.0


class PhotoRoomRemover:
    """PhotoRoom segment API: multipart upload in, transparent PNG out."""

    def remove(self, image: bytes) -> bytes:
        api_key = _get_photoroom_key()
        if not api_key:
            raise ServiceFailure("Missing PHOTOROOM_API_KEY")
        if not image:
            raise ServiceFailure("Empty image bytes provided")

        mime = sniff_mime(image)
        ext = mime.split("/", 1)[-1] if mime.startswith("image/") else "bin"
        t0 = time.perf_counter()
        try:
            resp = requests.post(
                _get_photoroom_url(),
                headers={"x-api-key": api_key},
                files={"image_file": (f"image.{ext}", image, mime)},
                data={"size": "full", "format": "png", "crop": "false"},
                timeout=_get_timeout_s(),
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise ServiceFailure(f"PhotoRoom request failed: {e}") from e

        content = resp.content
        if sniff_mime(content) != "image/png":
            raise ServiceFailure("PhotoRoom response is not a PNG image")
        logger.debug(
            "PhotoRoom cutout: %d -> %d bytes in %.0fms",
            len(image),
            len(content),
            (time.perf_counter() - t0) * 1000,
        )
        return content


class GeminiMaskRemover:
    """
    Ask the Gemini image model for a white-on-black product mask, then cut the
    subject out locally (near-black -> transparent, destination-in).
    """

    def __init__(self, model: str = GEMINI_MASK_MODEL, prompt: str = MASK_PROMPT):
        self.model = model
        self.prompt = prompt

    def remove(self, image: bytes) -> bytes:
        data = generate_content(self.model, parts=[{"text": self.prompt}, inline_part(image)])
        mask_bytes = first_image_part(data)
        if mask_bytes is None:
            raise ServiceFailure("No mask image found in model response")
        try:
            mask = decode_image(mask_bytes)
        except DecodeError as e:
            raise ServiceFailure(f"Mask response could not be decoded: {e}") from e
        return encode_png(cutout_from_mask(normalize(image), mask))
