from __future__ import annotations

import base64
import binascii
import os
from typing import Any, Dict, List, Optional

import requests

from .errors import ServiceFailure
from .io import sniff_mime


def _get_base_url() -> str:
    return os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com").rstrip("/")


def _get_timeout_s() -> float:
    try:
        return float(os.getenv("GEMINI_TIMEOUT_S", "45"))
    except ValueError:
        return 45.0


def inline_part(data: bytes, mime: Optional[str] = None) -> Dict[str, Any]:
    return {
        "inlineData": {
            "mimeType": mime or sniff_mime(data),
            "data": base64.b64encode(data).decode("utf-8"),
        }
    }


def generate_content(model: str, parts: List[dict]) -> Dict[str, Any]:
    """
    POST a single-turn generateContent request and return the decoded JSON body.

    Network errors, non-2xx responses and non-JSON bodies raise ServiceFailure.
    """
    api_key = os.getenv("GEMINI_API_KEY")
    if not api_key:
        raise ServiceFailure("Missing GEMINI_API_KEY")

    url = f"{_get_base_url()}/v1beta/models/{model}:generateContent"
    payload = {"contents": [{"role": "user", "parts": parts}]}
    try:
        resp = requests.post(url, params={"key": api_key}, json=payload, timeout=_get_timeout_s())
        resp.raise_for_status()
        data = resp.json()
    except requests.RequestException as e:
        raise ServiceFailure(f"Gemini {model} request failed: {e}") from e
    except ValueError as e:
        raise ServiceFailure(f"Gemini {model} returned a non-JSON body") from e
    if not isinstance(data, dict):
        raise ServiceFailure(f"Gemini {model} returned an unexpected payload: {type(data).__name__}")
    return data


def first_image_part(data: Dict[str, Any]) -> Optional[bytes]:
    """
    Bytes of the first inline image in the first candidate, or None.
    """
    candidates = data.get("candidates") or []
    if not candidates:
        return None
    content = (candidates[0] or {}).get("content") or {}
    for part in content.get("parts") or []:
        inline = part.get("inlineData") if isinstance(part, dict) else None
        if not isinstance(inline, dict):
            continue
        mime = inline.get("mimeType") or ""
        raw = inline.get("data")
        if not (isinstance(raw, str) and raw) or not mime.startswith("image/"):
            continue
        try:
            return base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ServiceFailure("Gemini returned a malformed image payload") from e
    return None
