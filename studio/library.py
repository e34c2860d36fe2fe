from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import List, Protocol, Sequence, Tuple

from .buffer import PixelBuffer
from .contracts import LibraryBatch, LibraryImageType, LibraryRecord
from .io import encode_png, safe_name_from_relpath, write_json
from .workflow import WorkItem

logger = logging.getLogger(__name__)

NamedImage = Tuple[str, PixelBuffer]


class LibraryStore(Protocol):
    def save_batch(
        self,
        batch_name: str,
        transparent: Sequence[NamedImage],
        final: Sequence[NamedImage],
        enhanced: Sequence[NamedImage] = (),
    ) -> LibraryBatch: ...


def collect_outputs(items: Sequence[WorkItem]) -> Tuple[List[NamedImage], List[NamedImage], List[NamedImage]]:
    """(transparent cutouts, finalized images, AI-enhanced images) of every succeeded item."""
    transparent: List[NamedImage] = []
    final: List[NamedImage] = []
    enhanced: List[NamedImage] = []
    for item in sorted(items, key=lambda i: i.index):
        if item.failure is not None:
            continue
        if item.cutout is not None:
            transparent.append((item.name, item.cutout))
        if item.finalized is not None:
            final.append((item.name, item.finalized))
        if item.enhanced is not None:
            enhanced.append((item.name, item.enhanced))
    return transparent, final, enhanced


class LocalLibraryStore:
    """
    Filesystem library:

      <root>/<batch_id>/batch.json
      <root>/<batch_id>/<type>/<name>.png
      <root>/<batch_id>/<type>/<name>.json
    """

    def __init__(self, root: str):
        self.root = Path(root)

    def _write_images(self, batch_dir: Path, image_type: LibraryImageType, images: Sequence[NamedImage]) -> List[LibraryRecord]:
        records: List[LibraryRecord] = []
        for order, (name, buf) in enumerate(images):
            stem = safe_name_from_relpath(name) or f"image_{order}"
            png_path = batch_dir / image_type / f"{stem}.png"
            png_path.parent.mkdir(parents=True, exist_ok=True)
            data = encode_png(buf)
            png_path.write_bytes(data)

            record = LibraryRecord(
                name=name,
                image_type=image_type,
                width=buf.width,
                height=buf.height,
                size_bytes=len(data),
                path=str(png_path.relative_to(self.root)),
                sort_order=order,
            )
            write_json(str(png_path.with_suffix(".json")), record.model_dump())
            records.append(record)
        return records

    def save_batch(
        self,
        batch_name: str,
        transparent: Sequence[NamedImage],
        final: Sequence[NamedImage],
        enhanced: Sequence[NamedImage] = (),
    ) -> LibraryBatch:
        batch_id = uuid.uuid4().hex
        batch_dir = self.root / batch_id

        images: List[LibraryRecord] = []
        images += self._write_images(batch_dir, "transparent", transparent)
        images += self._write_images(batch_dir, "final", final)
        images += self._write_images(batch_dir, "ai-enhanced", enhanced)

        thumbnail = next((r.path for r in images if r.image_type == "final"), None)
        batch = LibraryBatch(batch_id=batch_id, name=batch_name, thumbnail_path=thumbnail, images=images)
        write_json(str(batch_dir / "batch.json"), batch.model_dump())
        logger.info("Saved batch %r (%d image(s)) to %s", batch_name, len(images), batch_dir)
        return batch
