"""
Stage-synchronous batch orchestrator.

A batch moves through:

  Analyzing -> [Compressing] -> Previewing -> RemovingBackground -> Positioning
            -> Compositing -> [Enhancing] -> Complete

Every live item finishes the current stage before the batch advances. Per-item
work runs in worker threads (`asyncio.to_thread`) in fixed-size groups; each
group settles completely before the next one is dispatched. Workers never touch
batch state: they return a result, which the orchestrator turns into a
StageDelta and applies serially.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from .assembler import assemble
from .buffer import PixelBuffer
from .cloudinary import ShadowService
from .compression import Upload, compress, needs_compression
from .config import DISPATCH_GROUP_SIZE
from .contracts import ItemResult, ItemStatus, Placement, StageReport
from .enhancement import Enhancer
from .errors import BatchItemFailure, FormatError, WorkflowError
from .io import buffer_to_data_url, decode_image, encode_png, has_transparency
from .orientation import UPRIGHT, normalize, read_orientation, rotate_quarter
from .placement import resolve
from .reflection import ReflectionOptions, synthesize
from .removal import BackgroundRemover

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    ANALYZING = "Analyzing"
    COMPRESSING = "Compressing"
    PREVIEWING = "Previewing"
    REMOVING_BACKGROUND = "RemovingBackground"
    POSITIONING = "Positioning"
    COMPOSITING = "Compositing"
    ENHANCING = "Enhancing"
    COMPLETE = "Complete"


# Stages that produce a per-item result, in pipeline order.
ITEM_STAGES = (
    Stage.ANALYZING,
    Stage.COMPRESSING,
    Stage.REMOVING_BACKGROUND,
    Stage.COMPOSITING,
    Stage.ENHANCING,
)

StageResult = Union[PixelBuffer, BatchItemFailure]


@dataclass
class WorkItem:
    """One uploaded photo and everything the batch has produced for it."""

    index: int
    name: str
    upload: Upload
    stage_results: Dict[Stage, StageResult] = field(default_factory=dict)
    status: ItemStatus = "pending"
    precut: bool = False
    finalized: Optional[PixelBuffer] = None

    @property
    def failure(self) -> Optional[BatchItemFailure]:
        for stage in ITEM_STAGES:
            result = self.stage_results.get(stage)
            if isinstance(result, BatchItemFailure):
                return result
        return None

    @property
    def failed_stage(self) -> Optional[Stage]:
        failure = self.failure
        return Stage(failure.stage) if failure is not None else None

    def output(self, stage: Stage) -> Optional[PixelBuffer]:
        result = self.stage_results.get(stage)
        return result if isinstance(result, PixelBuffer) else None

    @property
    def source(self) -> Optional[PixelBuffer]:
        return self.output(Stage.COMPRESSING) or self.output(Stage.ANALYZING)

    @property
    def cutout(self) -> Optional[PixelBuffer]:
        return self.output(Stage.REMOVING_BACKGROUND)

    @property
    def composite(self) -> Optional[PixelBuffer]:
        return self.output(Stage.COMPOSITING)

    @property
    def enhanced(self) -> Optional[PixelBuffer]:
        return self.output(Stage.ENHANCING)


@dataclass
class BatchState:
    items: List[WorkItem]
    current_stage: Stage = Stage.ANALYZING
    # Per-item stages the whole batch has already gone through.
    completed: List[Stage] = field(default_factory=list)


@dataclass(frozen=True)
class StageDelta:
    """Outcome of one item's stage call; applied to BatchState by the orchestrator only."""

    index: int
    stage: Stage
    result: StageResult
    upload: Optional[Upload] = None


@dataclass(frozen=True)
class PositioningSettings:
    """Single placement shared by every item in the batch; fixed once set."""

    backdrop: PixelBuffer
    placement: Placement
    add_depth_of_field: bool = False
    with_reflection: bool = True
    quarter_turns: int = 0


class CancelToken:
    """
    Cooperative cancellation, checked between dispatch groups.

    Calls already in flight are always allowed to settle.
    """

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class Workflow:
    def __init__(
        self,
        remover: BackgroundRemover,
        *,
        shadow: Optional[ShadowService] = None,
        enhancer: Optional[Enhancer] = None,
        group_size: int = DISPATCH_GROUP_SIZE,
        cancel_token: Optional[CancelToken] = None,
        reflection_options: ReflectionOptions = ReflectionOptions(),
    ):
        if group_size < 1:
            raise ValueError(f"group_size must be >= 1, got {group_size}")
        self.remover = remover
        self.shadow = shadow
        self.enhancer = enhancer
        self.group_size = int(group_size)
        self.cancel_token = cancel_token or CancelToken()
        self.reflection_options = reflection_options

        self._state: Optional[BatchState] = None
        self._positioning: Optional[PositioningSettings] = None
        self._enhancement_declined = False
        self._busy = False

    # ---------------------------------------------------------------- state

    @property
    def stage(self) -> Optional[Stage]:
        return self._state.current_stage if self._state is not None else None

    @property
    def items(self) -> Tuple[WorkItem, ...]:
        return tuple(self._state.items) if self._state is not None else ()

    @property
    def positioning(self) -> Optional[PositioningSettings]:
        return self._positioning

    def _batch(self) -> BatchState:
        if self._state is None:
            raise WorkflowError("No batch started")
        return self._state

    def _require(self, stage: Stage) -> BatchState:
        state = self._batch()
        if self._busy:
            raise WorkflowError("A stage is already running")
        if state.current_stage != stage:
            raise WorkflowError(f"Expected stage {stage.value}, batch is at {state.current_stage.value}")
        return state

    def _advance(self, to: Stage) -> None:
        state = self._batch()
        logger.info("Batch stage %s -> %s", state.current_stage.value, to.value)
        state.current_stage = to

    def _live(self) -> List[WorkItem]:
        return [item for item in self._batch().items if item.failure is None]

    def _apply(self, delta: StageDelta) -> None:
        item = self._batch().items[delta.index]
        item.stage_results[delta.stage] = delta.result
        if isinstance(delta.result, BatchItemFailure):
            item.status = "failed"
            logger.warning(
                "Item %d (%s) failed at %s: %s",
                item.index,
                item.name,
                delta.stage.value,
                delta.result.message,
            )
            return
        if delta.upload is not None:
            item.upload = delta.upload
        if delta.stage == Stage.ANALYZING:
            item.precut = has_transparency(delta.result)
        item.status = "succeeded"

    def _failure(self, item: WorkItem, stage: Stage, cause: BaseException) -> StageDelta:
        return StageDelta(item.index, stage, BatchItemFailure(item.index, item.name, stage.value, cause))

    # ------------------------------------------------------------- dispatch

    async def _run_one(
        self,
        stage: Stage,
        item: WorkItem,
        work: Callable[[WorkItem], Union[PixelBuffer, Tuple[PixelBuffer, Upload]]],
    ) -> StageDelta:
        out = await asyncio.to_thread(work, item)
        if isinstance(out, tuple):
            buf, upload = out
            return StageDelta(item.index, stage, buf, upload=upload)
        return StageDelta(item.index, stage, out)

    async def _dispatch(
        self,
        stage: Stage,
        items: Sequence[WorkItem],
        work: Callable[[WorkItem], Union[PixelBuffer, Tuple[PixelBuffer, Upload]]],
    ) -> StageReport:
        """
        Run `work` for every item in groups of `group_size`.

        Each group is awaited to completion (successes and failures) before the
        next group starts. Deltas are applied in input order.
        """
        items = list(items)
        logger.info("%s: %d item(s) in groups of %d", stage.value, len(items), self.group_size)
        self._busy = True
        try:
            for start in range(0, len(items), self.group_size):
                if self.cancel_token.cancelled:
                    skipped = items[start:]
                    logger.warning("%s cancelled; %d item(s) not dispatched", stage.value, len(skipped))
                    for item in skipped:
                        self._apply(self._failure(item, stage, WorkflowError("cancelled")))
                    break

                group = items[start : start + self.group_size]
                for item in group:
                    item.status = "processing"
                outcomes = await asyncio.gather(
                    *(self._run_one(stage, item, work) for item in group),
                    return_exceptions=True,
                )
                for item, outcome in zip(group, outcomes):
                    if isinstance(outcome, BaseException):
                        if not isinstance(outcome, Exception):
                            raise outcome
                        outcome = self._failure(item, stage, outcome)
                    self._apply(outcome)
        finally:
            self._busy = False

        report = self._report(stage, items)
        logger.info("%s finished: %s", stage.value, report.summary)
        return report

    def _report(self, stage: Stage, items: Sequence[WorkItem]) -> StageReport:
        failures = []
        succeeded = 0
        for item in items:
            result = item.stage_results.get(stage)
            if isinstance(result, BatchItemFailure):
                failures.append(f"{item.name}: {result.message}")
            elif result is not None:
                succeeded += 1
        return StageReport(stage=stage.value, succeeded=succeeded, total=len(items), failures=failures)

    # ---------------------------------------------------------- item stages

    def _analyze_one(self, item: WorkItem) -> Tuple[PixelBuffer, Upload]:
        data = item.upload.data
        upright = normalize(data)
        if read_orientation(data) == UPRIGHT:
            return upright, item.upload
        # Later stages send bytes to services that ignore EXIF; ship upright pixels.
        return upright, replace(item.upload, data=encode_png(upright), mime_type="image/png")

    def _compress_one(self, item: WorkItem) -> Tuple[PixelBuffer, Upload]:
        smaller = compress(item.upload)
        return decode_image(smaller.data), smaller

    def _remove_one(self, item: WorkItem) -> PixelBuffer:
        if item.precut:
            if item.source is None:
                raise WorkflowError(f"{item.name} has no analyzed source")
            return item.source
        return decode_image(self.remover.remove(item.upload.data))

    def _composite_one(self, item: WorkItem) -> PixelBuffer:
        settings = self._positioning
        if settings is None:
            raise WorkflowError("Positioning has not been set")
        if item.cutout is None:
            raise WorkflowError(f"{item.name} has no cutout to composite")

        cutout = item.cutout
        turns = settings.quarter_turns % 4
        for _ in range(turns):
            cutout = rotate_quarter(cutout, clockwise=True)

        subject = cutout
        if self.shadow is not None:
            subject = decode_image(self.shadow.drop_shadow(encode_png(cutout)))

        backdrop = settings.backdrop
        rect = resolve(subject.size, backdrop.size, settings.placement)
        reflection = None
        if settings.with_reflection:
            reflection = synthesize(cutout, rect, backdrop.size, self.reflection_options)
        return assemble(backdrop, subject, reflection, rect, settings.add_depth_of_field)

    def _enhance_one(self, item: WorkItem) -> PixelBuffer:
        if self.enhancer is None:
            raise WorkflowError("No enhancement service configured")
        composite, cutout = item.composite, item.cutout
        if composite is None or cutout is None:
            raise FormatError(f"{item.name} has no composite to enhance")
        return decode_image(self.enhancer.enhance(encode_png(composite), encode_png(cutout)))

    def _finalize(self) -> None:
        for item in self._live():
            item.finalized = item.enhanced or item.composite
        self._advance(Stage.COMPLETE)

    # ------------------------------------------------------------ batch API

    async def start(self, uploads: Sequence[Upload]) -> StageReport:
        """Create the batch and run Analyzing (decode + orientation + pre-cut detection)."""
        if self._state is not None:
            raise WorkflowError("Batch already started")
        if not uploads:
            raise WorkflowError("No images to process")

        self._state = BatchState(
            items=[WorkItem(index=i, name=u.name, upload=u) for i, u in enumerate(uploads)]
        )
        report = await self._dispatch(Stage.ANALYZING, self._state.items, self._analyze_one)
        self._state.completed.append(Stage.ANALYZING)

        precut = sum(1 for item in self._live() if item.precut)
        if precut:
            logger.info("%d pre-cut upload(s) will skip background removal", precut)

        if any(self._needs_compression(item) for item in self._live()):
            self._advance(Stage.COMPRESSING)
        else:
            self._advance(Stage.PREVIEWING)
        return report

    def _needs_compression(self, item: WorkItem) -> bool:
        source = item.source
        return source is not None and needs_compression(item.upload, source.size)

    async def compress(self) -> StageReport:
        state = self._require(Stage.COMPRESSING)
        targets = [item for item in self._live() if self._needs_compression(item)]
        report = await self._dispatch(Stage.COMPRESSING, targets, self._compress_one)
        state.completed.append(Stage.COMPRESSING)
        self._advance(Stage.PREVIEWING)
        return report

    def confirm_preview(self) -> None:
        self._require(Stage.PREVIEWING)
        self._advance(Stage.REMOVING_BACKGROUND)

    async def remove_backgrounds(self) -> StageReport:
        state = self._require(Stage.REMOVING_BACKGROUND)
        report = await self._dispatch(Stage.REMOVING_BACKGROUND, self._live(), self._remove_one)
        state.completed.append(Stage.REMOVING_BACKGROUND)
        self._advance(Stage.POSITIONING)
        return report

    def set_positioning(
        self,
        backdrop: Optional[PixelBuffer],
        placement: Optional[Placement],
        *,
        add_depth_of_field: bool = False,
        with_reflection: bool = True,
        quarter_turns: int = 0,
    ) -> PositioningSettings:
        """
        Fix the backdrop and placement for the whole batch.

        Missing inputs are batch-fatal and rejected before any item is touched.
        """
        self._require(Stage.POSITIONING)
        if backdrop is None:
            raise WorkflowError("No backdrop selected")
        if placement is None:
            raise WorkflowError("No placement set")
        self._positioning = PositioningSettings(
            backdrop=backdrop,
            placement=placement,
            add_depth_of_field=bool(add_depth_of_field),
            with_reflection=bool(with_reflection),
            quarter_turns=int(quarter_turns),
        )
        logger.info(
            "Positioning: backdrop %dx%d, placement=(%.3f, %.3f, %.3f), dof=%s, reflection=%s",
            backdrop.width,
            backdrop.height,
            placement.x,
            placement.y,
            placement.scale,
            add_depth_of_field,
            with_reflection,
        )
        self._advance(Stage.COMPOSITING)
        return self._positioning

    async def composite(self) -> StageReport:
        state = self._require(Stage.COMPOSITING)
        report = await self._dispatch(Stage.COMPOSITING, self._live(), self._composite_one)
        state.completed.append(Stage.COMPOSITING)
        self._advance(Stage.ENHANCING)
        return report

    async def enhance(self) -> StageReport:
        state = self._require(Stage.ENHANCING)
        if self.enhancer is None:
            raise WorkflowError("No enhancement service configured")
        report = await self._dispatch(Stage.ENHANCING, self._live(), self._enhance_one)
        state.completed.append(Stage.ENHANCING)
        self._finalize()
        return report

    def decline_enhancement(self) -> None:
        self._require(Stage.ENHANCING)
        self._enhancement_declined = True
        self._finalize()

    async def retry_item(self, index: int) -> ItemResult:
        """
        Re-run a failed item's failed stage, then every later stage the batch has
        already been through, so the item catches up with its siblings.
        """
        if self._state is None:
            raise WorkflowError("No batch started")
        if self._busy:
            raise WorkflowError("A stage is already running")
        if not 0 <= index < len(self._state.items):
            raise WorkflowError(f"No item at index {index}")
        item = self._state.items[index]
        failed = item.failed_stage
        if failed is None:
            raise WorkflowError(f"Item {index} ({item.name}) has not failed")

        logger.info("Retrying item %d (%s) from %s", index, item.name, failed.value)
        del item.stage_results[failed]
        item.status = "pending"

        runners = {
            Stage.ANALYZING: self._analyze_one,
            Stage.COMPRESSING: self._compress_one,
            Stage.REMOVING_BACKGROUND: self._remove_one,
            Stage.COMPOSITING: self._composite_one,
            Stage.ENHANCING: self._enhance_one,
        }
        pending = [s for s in ITEM_STAGES[ITEM_STAGES.index(failed) :] if s in self._state.completed]
        self._busy = True
        try:
            for stage in pending:
                if stage == Stage.COMPRESSING and stage != failed and not self._needs_compression(item):
                    continue
                item.status = "processing"
                try:
                    delta = await self._run_one(stage, item, runners[stage])
                except Exception as e:  # noqa: BLE001 - recorded against the item
                    delta = self._failure(item, stage, e)
                self._apply(delta)
                if item.failure is not None:
                    break
        finally:
            self._busy = False

        if item.failure is None and self._state.current_stage == Stage.COMPLETE:
            item.finalized = item.enhanced or item.composite
        return self._result(item)

    # -------------------------------------------------------------- results

    def _result(self, item: WorkItem) -> ItemResult:
        failure = item.failure
        return ItemResult(
            index=item.index,
            name=item.name,
            status=item.status,
            failed_stage=failure.stage if failure is not None else None,
            error=failure.message if failure is not None else None,
            cutout_data=buffer_to_data_url(item.cutout) if item.cutout is not None else None,
            composite_data=buffer_to_data_url(item.composite) if item.composite is not None else None,
            finalized_data=buffer_to_data_url(item.finalized) if item.finalized is not None else None,
        )

    def results(self) -> List[ItemResult]:
        """Per-item outcomes in original upload order."""
        if self._state is None:
            return []
        return [self._result(item) for item in sorted(self._state.items, key=lambda i: i.index)]

    @property
    def enhancement_declined(self) -> bool:
        return self._enhancement_declined


async def run_batch(
    uploads: Sequence[Upload],
    backdrop: PixelBuffer,
    placement: Placement,
    remover: BackgroundRemover,
    *,
    shadow: Optional[ShadowService] = None,
    enhancer: Optional[Enhancer] = None,
    add_depth_of_field: bool = False,
    with_reflection: bool = True,
    quarter_turns: int = 0,
    group_size: int = DISPATCH_GROUP_SIZE,
    cancel_token: Optional[CancelToken] = None,
    on_stage: Optional[Callable[[StageReport], None]] = None,
) -> Tuple[Workflow, List[StageReport]]:
    """
    Drive a batch through every stage without user interaction.

    Enhancement runs only when an `enhancer` is given; otherwise it is declined.
    """
    wf = Workflow(
        remover,
        shadow=shadow,
        enhancer=enhancer,
        group_size=group_size,
        cancel_token=cancel_token,
    )
    reports: List[StageReport] = []

    def _record(report: StageReport) -> None:
        reports.append(report)
        if on_stage is not None:
            on_stage(report)

    _record(await wf.start(uploads))
    if wf.stage == Stage.COMPRESSING:
        _record(await wf.compress())
    wf.confirm_preview()
    _record(await wf.remove_backgrounds())
    wf.set_positioning(
        backdrop,
        placement,
        add_depth_of_field=add_depth_of_field,
        with_reflection=with_reflection,
        quarter_turns=quarter_turns,
    )
    _record(await wf.composite())
    if enhancer is not None:
        _record(await wf.enhance())
    else:
        wf.decline_enhancement()
    return wf, reports
