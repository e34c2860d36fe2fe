from __future__ import annotations

import asyncio
import io
import threading
import time
from pathlib import Path
from typing import Set

import numpy as np
import pytest
from PIL import Image

from studio.buffer import PixelBuffer
from studio.compression import Upload
from studio.contracts import Placement
from studio.errors import ServiceFailure, WorkflowError
from studio.io import decode_image, encode_png, parse_data_url
from studio.library import LocalLibraryStore, collect_outputs
from studio.workflow import CancelToken, Stage, Workflow, run_batch


def _photo(index: int, w: int = 24, h: int = 16, alpha: bool = False) -> bytes:
    arr = np.zeros((h, w, 4), dtype=np.uint8)
    arr[..., 0] = 40 * index
    arr[..., 1] = 100
    arr[..., 2] = 50
    arr[..., 3] = 255
    if alpha:
        arr[: h // 2, :, 3] = 0
    buf = io.BytesIO()
    Image.fromarray(arr if alpha else arr[..., :3]).save(buf, format="PNG")
    return buf.getvalue()


def _uploads(n: int = 5):
    return [Upload(name=f"item_{i + 1}", data=_photo(i)) for i in range(n)]


class _FakeRemover:
    """Cuts a 2px transparent border; fails for payloads in `bad`."""

    def __init__(self, bad: Set[bytes] = frozenset(), delay_s: float = 0.0):
        self.bad = set(bad)
        self.delay_s = delay_s
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def remove(self, image: bytes) -> bytes:
        with self._lock:
            self.calls += 1
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay_s:
                time.sleep(self.delay_s)
            if image in self.bad:
                raise ServiceFailure("segmentation service returned 502")
            arr = decode_image(image).writable_copy()
            arr[:2, :, 3] = 0
            arr[-2:, :, 3] = 0
            arr[:, :2, 3] = 0
            arr[:, -2:, 3] = 0
            return encode_png(PixelBuffer(arr))
        finally:
            with self._lock:
                self.in_flight -= 1


class _FakeShadow:
    def __init__(self):
        self.calls = 0

    def drop_shadow(self, cutout: bytes) -> bytes:
        self.calls += 1
        return cutout


class _FakeEnhancer:
    def __init__(self):
        self.calls = 0

    def enhance(self, composite: bytes, guidance: bytes) -> bytes:
        self.calls += 1
        arr = decode_image(composite).writable_copy()
        arr[..., :3] = 255 - arr[..., :3]
        return encode_png(PixelBuffer(arr))


def _backdrop(w: int = 64, h: int = 64) -> PixelBuffer:
    arr = np.zeros((h, w, 4), dtype=np.uint8)
    arr[..., 2] = 200
    arr[..., 3] = 255
    return PixelBuffer(arr)


def test_failures_are_isolated_and_results_keep_input_order():
    uploads = _uploads(5)
    remover = _FakeRemover(bad={uploads[1].data, uploads[3].data})

    async def _drive():
        wf = Workflow(remover)
        await wf.start(uploads)
        assert wf.stage == Stage.PREVIEWING
        wf.confirm_preview()
        report = await wf.remove_backgrounds()
        return wf, report

    wf, report = asyncio.run(_drive())

    assert report.stage == "RemovingBackground"
    assert report.summary == "3 of 5 images succeeded"
    assert len(report.failures) == 2
    assert wf.stage == Stage.POSITIONING

    results = wf.results()
    assert [r.index for r in results] == [0, 1, 2, 3, 4]
    assert [r.name for r in results] == [u.name for u in uploads]
    for r in results:
        if r.index in (1, 3):
            assert r.status == "failed"
            assert r.failed_stage == "RemovingBackground"
            assert "502" in r.error
            assert r.cutout_data is None
        else:
            assert r.status == "succeeded"
            mime, data = parse_data_url(r.cutout_data)
            assert mime == "image/png"
            assert decode_image(data).alpha[0, 0] == 0


def test_groups_bound_outstanding_calls():
    remover = _FakeRemover(delay_s=0.02)

    async def _drive():
        wf = Workflow(remover, group_size=2)
        await wf.start(_uploads(5))
        wf.confirm_preview()
        return await wf.remove_backgrounds()

    report = asyncio.run(_drive())
    assert report.succeeded == 5
    assert remover.calls == 5
    assert remover.max_in_flight <= 2


def test_full_batch_reaches_complete():
    shadow = _FakeShadow()
    enhancer = _FakeEnhancer()

    async def _drive():
        return await run_batch(
            _uploads(3),
            _backdrop(),
            Placement(x=0.5, y=0.4, scale=0.5),
            _FakeRemover(),
            shadow=shadow,
            enhancer=enhancer,
            add_depth_of_field=True,
        )

    wf, reports = asyncio.run(_drive())
    assert wf.stage == Stage.COMPLETE
    assert [r.stage for r in reports] == ["Analyzing", "RemovingBackground", "Compositing", "Enhancing"]
    assert all(r.succeeded == 3 for r in reports)
    assert shadow.calls == 3
    assert enhancer.calls == 3
    for item in wf.items:
        assert item.finalized is not None
        assert item.finalized.size == _backdrop().size
        assert item.finalized == item.enhanced
    assert all(r.finalized_data for r in wf.results())


def test_declined_enhancement_finalizes_composites():
    async def _drive():
        wf = Workflow(_FakeRemover())
        await wf.start(_uploads(2))
        wf.confirm_preview()
        await wf.remove_backgrounds()
        wf.set_positioning(_backdrop(), Placement(), with_reflection=False)
        await wf.composite()
        assert wf.stage == Stage.ENHANCING
        wf.decline_enhancement()
        return wf

    wf = asyncio.run(_drive())
    assert wf.stage == Stage.COMPLETE
    assert wf.enhancement_declined
    for item in wf.items:
        assert item.finalized == item.composite
        # backdrop is visible in the corner, subject in the middle
        assert tuple(item.finalized.pixels[0, 0]) == (0, 0, 200, 255)
        assert item.finalized.pixels[32, 32, 1] == 100


def test_positioning_setup_errors_are_batch_fatal():
    async def _drive():
        wf = Workflow(_FakeRemover())
        await wf.start(_uploads(2))
        wf.confirm_preview()
        await wf.remove_backgrounds()
        return wf

    wf = asyncio.run(_drive())
    with pytest.raises(WorkflowError):
        wf.set_positioning(None, Placement())
    with pytest.raises(WorkflowError):
        wf.set_positioning(_backdrop(), None)
    assert wf.stage == Stage.POSITIONING
    assert all(item.composite is None for item in wf.items)


def test_illegal_transitions_raise():
    wf = Workflow(_FakeRemover())
    with pytest.raises(WorkflowError):
        wf.confirm_preview()
    with pytest.raises(WorkflowError):
        asyncio.run(wf.start([]))

    async def _drive():
        await wf.start(_uploads(1))
        with pytest.raises(WorkflowError):
            await wf.composite()
        with pytest.raises(WorkflowError):
            await wf.start(_uploads(1))

    asyncio.run(_drive())


def test_item_work_without_prerequisites_raises_workflow_error():
    async def _drive():
        wf = Workflow(_FakeRemover())
        await wf.start(_uploads(1))
        wf.confirm_preview()
        await wf.remove_backgrounds()
        return wf

    wf = asyncio.run(_drive())
    item = wf.items[0]
    with pytest.raises(WorkflowError, match="Positioning"):
        wf._composite_one(item)
    with pytest.raises(WorkflowError, match="enhancement service"):
        wf._enhance_one(item)


def test_retry_catches_item_up_with_batch():
    uploads = _uploads(3)
    remover = _FakeRemover(bad={uploads[1].data})

    async def _drive():
        wf = Workflow(remover)
        await wf.start(uploads)
        wf.confirm_preview()
        await wf.remove_backgrounds()
        wf.set_positioning(_backdrop(), Placement())
        await wf.composite()
        wf.decline_enhancement()
        assert wf.results()[1].status == "failed"

        with pytest.raises(WorkflowError):
            await wf.retry_item(0)  # not failed

        remover.bad.clear()
        return wf, await wf.retry_item(1)

    wf, result = asyncio.run(_drive())
    assert result.status == "succeeded"
    assert result.failed_stage is None
    assert result.composite_data is not None
    assert result.finalized_data is not None
    assert wf.items[1].finalized == wf.items[1].composite


def test_retry_failing_again_stays_failed():
    uploads = _uploads(2)
    remover = _FakeRemover(bad={uploads[0].data})

    async def _drive():
        wf = Workflow(remover)
        await wf.start(uploads)
        wf.confirm_preview()
        await wf.remove_backgrounds()
        return await wf.retry_item(0)

    result = asyncio.run(_drive())
    assert result.status == "failed"
    assert result.failed_stage == "RemovingBackground"


def test_cancellation_stops_new_groups():
    token = CancelToken()

    class _CancellingRemover(_FakeRemover):
        def remove(self, image: bytes) -> bytes:
            token.cancel()
            return super().remove(image)

    remover = _CancellingRemover()

    async def _drive():
        wf = Workflow(remover, group_size=2, cancel_token=token)
        await wf.start(_uploads(5))
        wf.confirm_preview()
        return wf, await wf.remove_backgrounds()

    wf, report = asyncio.run(_drive())
    assert remover.calls == 2  # the in-flight group settles
    assert report.summary == "2 of 5 images succeeded"
    assert [r.error for r in wf.results()[2:]] == ["cancelled"] * 3


def test_precut_uploads_skip_removal_service():
    remover = _FakeRemover()
    uploads = [Upload(name="cut", data=_photo(1, alpha=True)), Upload(name="raw", data=_photo(2))]

    async def _drive():
        wf = Workflow(remover)
        await wf.start(uploads)
        wf.confirm_preview()
        await wf.remove_backgrounds()
        return wf

    wf = asyncio.run(_drive())
    assert remover.calls == 1
    cut, raw = wf.items
    assert cut.precut and not raw.precut
    assert cut.cutout == cut.source


def test_undecodable_upload_fails_at_analyzing():
    async def _drive():
        wf = Workflow(_FakeRemover())
        report = await wf.start([Upload(name="bad", data=b"nope"), Upload(name="ok", data=_photo(0))])
        return wf, report

    wf, report = asyncio.run(_drive())
    assert report.summary == "1 of 2 images succeeded"
    assert wf.results()[0].failed_stage == "Analyzing"


def test_oversized_uploads_go_through_compressing():
    wide = Upload(name="wide", data=_photo(1, w=2100, h=10))

    async def _drive():
        wf = Workflow(_FakeRemover())
        await wf.start([wide, Upload(name="small", data=_photo(2))])
        assert wf.stage == Stage.COMPRESSING
        report = await wf.compress()
        return wf, report

    wf, report = asyncio.run(_drive())
    assert wf.stage == Stage.PREVIEWING
    assert report.total == 1
    assert wf.items[0].source.width == 2048
    assert wf.items[1].output(Stage.COMPRESSING) is None


def test_library_store_writes_batch(tmp_path: Path):
    async def _drive():
        return await run_batch(_uploads(2), _backdrop(), Placement(), _FakeRemover())

    wf, _ = asyncio.run(_drive())
    transparent, final, enhanced = collect_outputs(wf.items)
    assert len(transparent) == 2 and len(final) == 2 and not enhanced

    batch = LocalLibraryStore(str(tmp_path)).save_batch("spring", transparent, final, enhanced)
    assert batch.name == "spring"
    assert len(batch.images) == 4
    assert (tmp_path / batch.batch_id / "batch.json").exists()
    for record in batch.images:
        png = tmp_path / record.path
        assert png.exists()
        assert png.with_suffix(".json").exists()
        assert record.size_bytes == png.stat().st_size
    assert batch.thumbnail_path.startswith(f"{batch.batch_id}/final/")
