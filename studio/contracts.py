from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

ItemStatus = Literal["pending", "processing", "succeeded", "failed"]
LibraryImageType = Literal["transparent", "ai-enhanced", "final"]


class Placement(BaseModel):
    """
    Subject anchor on a canvas: x/y are the center as a fraction of canvas
    width/height, scale is rendered width as a fraction of canvas width.
    """

    model_config = {"frozen": True}

    x: float = Field(0.5, ge=0.0, le=1.0)
    y: float = Field(0.5, ge=0.0, le=1.0)
    scale: float = Field(0.5, gt=0.0, le=1.0)

    @classmethod
    def clamped(cls, x: float, y: float, scale: float) -> "Placement":
        """Build from raw pointer/slider input, clamping into the valid ranges."""
        return cls(
            x=max(0.0, min(1.0, float(x))),
            y=max(0.0, min(1.0, float(y))),
            scale=max(0.01, min(1.0, float(scale))),
        )


class ItemResult(BaseModel):
    index: int
    name: str
    status: ItemStatus
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    cutout_data: Optional[str] = None
    composite_data: Optional[str] = None
    finalized_data: Optional[str] = Field(default=None, alias="finalizedData")

    model_config = {"populate_by_name": True}


class StageReport(BaseModel):
    stage: str
    succeeded: int
    total: int
    failures: List[str] = Field(default_factory=list)

    @property
    def summary(self) -> str:
        return f"{self.succeeded} of {self.total} images succeeded"


class LibraryRecord(BaseModel):
    name: str
    image_type: LibraryImageType
    width: int
    height: int
    size_bytes: int
    mime_type: str = "image/png"
    path: str
    sort_order: int = 0


class LibraryBatch(BaseModel):
    batch_id: str
    name: str
    thumbnail_path: Optional[str] = None
    images: List[LibraryRecord] = Field(default_factory=list)
