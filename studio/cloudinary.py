"""
Cloudinary image-transformation CDN: instant positioning previews and the
contact drop shadow used while compositing.
"""

from __future__ import annotations

import hashlib
import logging
import os
import time
from typing import Optional, Protocol

import requests

from .config import (
    DROP_SHADOW_EFFECT,
    PREVIEW_BLUR_STRENGTH,
    PREVIEW_CANVAS_H,
    PREVIEW_CANVAS_W,
    PREVIEW_FORMAT,
)
from .contracts import Placement
from .errors import ServiceFailure
from .io import sniff_mime, to_data_url

logger = logging.getLogger(__name__)


class ShadowService(Protocol):
    def drop_shadow(self, cutout: bytes) -> bytes: ...


def _get_timeout_s() -> float:
    try:
        return float(os.getenv("CLOUDINARY_TIMEOUT_S", "30"))
    except ValueError:
        return 30.0


def preview_transformations(
    subject_id: str,
    placement: Placement,
    *,
    blur: bool = False,
    canvas_w: int = PREVIEW_CANVAS_W,
    canvas_h: int = PREVIEW_CANVAS_H,
    fmt: str = PREVIEW_FORMAT,
) -> str:
    """
    Transformation chain: fixed backdrop canvas, optional blur, subject overlay
    offset from the canvas center (Cloudinary's y axis points down).
    """
    center_x = int(round(placement.x * canvas_w))
    center_y = int(round(placement.y * canvas_h))
    scaled_w = int(round(canvas_w * placement.scale))
    overlay = ",".join(
        [
            f"l_{subject_id.replace('/', ':')}",
            "c_fit",
            f"w_{scaled_w}",
            "g_center",
            f"x_{center_x - canvas_w // 2}",
            f"y_{center_y - canvas_h // 2}",
            "fl_layer_apply",
        ]
    )
    steps = [f"w_{canvas_w},h_{canvas_h},c_fill,f_{fmt}"]
    if blur:
        steps.append(f"e_blur:{PREVIEW_BLUR_STRENGTH}")
    steps.append(overlay)
    return "/".join(steps)


def sign_params(params: dict, api_secret: str) -> str:
    """Cloudinary SHA-1 request signature over the sorted params."""
    to_sign = "&".join(f"{k}={params[k]}" for k in sorted(params))
    return hashlib.sha1(f"{to_sign}{api_secret}".encode("utf-8")).hexdigest()


class CloudinaryClient:
    def __init__(
        self,
        cloud_name: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        upload_preset: Optional[str] = None,
    ):
        self.cloud_name = cloud_name or os.getenv("CLOUDINARY_CLOUD_NAME", "")
        self.api_key = api_key or os.getenv("CLOUDINARY_API_KEY", "")
        self.api_secret = api_secret or os.getenv("CLOUDINARY_API_SECRET", "")
        self.upload_preset = upload_preset or os.getenv("CLOUDINARY_UPLOAD_PRESET", "unsigned_preset")

    @property
    def delivery_base(self) -> str:
        return f"https://res.cloudinary.com/{self.cloud_name}/image/upload"

    @property
    def api_base(self) -> str:
        return f"https://api.cloudinary.com/v1_1/{self.cloud_name}/image"

    def _require_credentials(self) -> None:
        if not (self.cloud_name and self.api_key and self.api_secret):
            raise ServiceFailure("Cloudinary credentials not configured")

    def preview_url(self, backdrop_id: str, subject_id: str, placement: Placement, *, blur: bool = False) -> str:
        """Instant preview; no request is made."""
        return f"{self.delivery_base}/{preview_transformations(subject_id, placement, blur=blur)}/{backdrop_id}"

    def upload(self, image: bytes, folder: Optional[str] = None) -> str:
        """Upload an image and return its public_id."""
        self._require_credentials()
        data = {
            "file": to_data_url(image),
            "upload_preset": self.upload_preset,
            "api_key": self.api_key,
        }
        if folder:
            data["folder"] = folder
        try:
            resp = requests.post(f"{self.api_base}/upload", data=data, timeout=_get_timeout_s())
            resp.raise_for_status()
            public_id = resp.json().get("public_id")
        except requests.RequestException as e:
            raise ServiceFailure(f"Cloudinary upload failed: {e}") from e
        except ValueError as e:
            raise ServiceFailure("Cloudinary upload returned a non-JSON body") from e
        if not public_id:
            raise ServiceFailure("Cloudinary upload response has no public_id")
        return str(public_id)

    def destroy(self, public_id: str) -> None:
        self._require_credentials()
        timestamp = int(time.time())
        signature = sign_params({"public_id": public_id, "timestamp": timestamp}, self.api_secret)
        try:
            resp = requests.post(
                f"{self.api_base}/destroy",
                data={
                    "public_id": public_id,
                    "timestamp": str(timestamp),
                    "api_key": self.api_key,
                    "signature": signature,
                },
                timeout=_get_timeout_s(),
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise ServiceFailure(f"Cloudinary destroy failed: {e}") from e

    def drop_shadow(self, cutout: bytes) -> bytes:
        """
        Contact drop shadow via a transformation URL on a temporary upload.

        The temporary asset is deleted afterwards; a failed cleanup is only logged.
        """
        public_id = self.upload(cutout)
        url = f"{self.delivery_base}/{DROP_SHADOW_EFFECT}/{public_id}.png"
        try:
            resp = requests.get(url, timeout=_get_timeout_s())
            resp.raise_for_status()
            shadowed = resp.content
        except requests.RequestException as e:
            raise ServiceFailure(f"Cloudinary shadow fetch failed: {e}") from e
        finally:
            try:
                self.destroy(public_id)
            except ServiceFailure as e:
                logger.warning("Failed to clean up temporary asset %s: %s", public_id, e)

        if sniff_mime(shadowed) != "image/png":
            raise ServiceFailure("Cloudinary shadow response is not a PNG image")
        return shadowed
