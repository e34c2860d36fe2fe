from __future__ import annotations

from typing import Optional


class StudioError(Exception):
    """Base class for every error raised by the studio pipeline."""


class DecodeError(StudioError):
    """Raw bytes could not be interpreted as an image."""


class FormatError(StudioError):
    """An input violates a shape assumption (size, channels, missing alpha)."""


class ServiceFailure(StudioError):
    """An external call returned an error, a malformed payload, or timed out."""


class WorkflowError(StudioError):
    """Batch-fatal setup error or an illegal state transition."""


class BatchItemFailure(StudioError):
    """
    Failure recorded against a single work item.

    Never raised out of a stage; stored in the item's stage results so sibling
    items keep going.
    """

    def __init__(self, index: int, name: str, stage: str, cause: BaseException):
        self.index = index
        self.name = name
        self.stage = stage
        self.cause = cause
        super().__init__(f"{name} failed at {stage}: {type(cause).__name__}: {cause}")

    @property
    def message(self) -> Optional[str]:
        return str(self.cause) or type(self.cause).__name__
