from __future__ import annotations

import base64
import binascii
import io
import json
from pathlib import Path
from typing import Any, Dict, Tuple

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from .buffer import PixelBuffer
from .config import TRANSPARENCY_MIN_RATIO, TRANSPARENCY_SAMPLE_SIZE
from .errors import DecodeError

_MAGIC = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"BM", "image/bmp"),
)


def sniff_mime(data: bytes) -> str:
    for magic, mime in _MAGIC:
        if data.startswith(magic):
            return mime
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "application/octet-stream"


def open_image(data: bytes) -> Image.Image:
    """
    Open encoded bytes with Pillow and force pixel decode.

    Raises DecodeError for anything Pillow cannot read (fail closed).
    """
    if not data:
        raise DecodeError("Empty image payload")
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise DecodeError(f"Could not decode image: {e}") from e
    return img


def decode_image(data: bytes) -> PixelBuffer:
    """Decode to RGBA exactly as stored (no orientation correction)."""
    return PixelBuffer.from_pil(open_image(data))


def encode_png(buf: PixelBuffer) -> bytes:
    """
    Lossless RGBA PNG.
    """
    out = io.BytesIO()
    buf.to_pil().save(out, format="PNG", optimize=False)
    return out.getvalue()


def to_data_url(data: bytes, mime: str | None = None) -> str:
    mime = mime or sniff_mime(data)
    return f"data:{mime};base64,{base64.b64encode(data).decode('utf-8')}"


def buffer_to_data_url(buf: PixelBuffer) -> str:
    return to_data_url(encode_png(buf), "image/png")


def parse_data_url(payload: str) -> Tuple[str, bytes]:
    """
    Split an inline image payload into (mime, bytes).

    Accepts "data:<mime>;base64,<data>" or bare base64; bare payloads get their
    mime type from the decoded magic bytes.
    """
    if not payload:
        raise DecodeError("Empty inline image payload")
    mime = ""
    data = payload
    if payload.startswith("data:"):
        header, sep, data = payload.partition(",")
        if not sep or ";base64" not in header:
            raise DecodeError("Inline payload is not base64 encoded")
        mime = header[len("data:") :].split(";", 1)[0]
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError("Invalid base64 in inline image payload") from e
    return (mime or sniff_mime(raw)), raw


def has_transparency(buf: PixelBuffer, sample_size: int = TRANSPARENCY_SAMPLE_SIZE) -> bool:
    """
    True when a downsampled copy has more than TRANSPARENCY_MIN_RATIO non-opaque pixels.
    """
    alpha = buf.alpha
    h, w = alpha.shape
    scale = min(1.0, float(sample_size) / float(max(h, w)))
    if scale < 1.0:
        alpha = cv2.resize(
            np.ascontiguousarray(alpha),
            (max(1, int(round(w * scale))), max(1, int(round(h * scale)))),
            interpolation=cv2.INTER_NEAREST,
        )
    ratio = float((alpha < 255).mean())
    return ratio > TRANSPARENCY_MIN_RATIO


def save_png(buf: PixelBuffer, path: str) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(encode_png(buf))


def write_json(path: str, data: Dict[str, Any]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")


def safe_name_from_relpath(relpath: str) -> str:
    """
    Make a stable, filesystem-safe item name from a relative path.
    Example: "foo/bar/img 1.png" -> "foo__bar__img_1"
    """
    p = Path(relpath)
    stem = p.with_suffix("").as_posix()
    stem = stem.replace("/", "__")
    stem = "".join(ch if ch.isalnum() or ch in ("_", "-", ".") else "_" for ch in stem)
    return stem
