"""Unit tests for the single-slot render queue."""

import asyncio

import pytest
from PIL import Image

from annotation_store.services.render_queue import RenderQueue
from tests.conftest import FakeViewer, make_annotation


def _queue(viewer: FakeViewer, annotations: dict) -> RenderQueue:
    return RenderQueue(annotations.get, viewer.render_area_image)


class TestRenderQueue:
    @pytest.mark.asyncio
    async def test_renders_resolved_annotation(self, viewer: FakeViewer) -> None:
        queue = _queue(viewer, {"A": make_annotation("A", "image", page_index=4)})
        assert await queue.request_image("A") == "data:image/png;base64,page4"
        await queue.close()

    @pytest.mark.asyncio
    async def test_concurrent_requests_never_overlap(self, viewer: FakeViewer) -> None:
        viewer.render_delay = 0.01
        annotations = {str(i): make_annotation(str(i), "image", page_index=i) for i in range(5)}
        queue = _queue(viewer, annotations)

        results = await asyncio.gather(*(queue.request_image(str(i)) for i in range(5)))

        assert len(viewer.render_calls) == 5
        assert viewer.max_active_renders == 1
        assert [p.page_index for p in viewer.render_calls] == [0, 1, 2, 3, 4]
        assert results == [f"data:image/png;base64,page{i}" for i in range(5)]
        await queue.close()

    @pytest.mark.asyncio
    async def test_missing_annotation_yields_empty(self, viewer: FakeViewer) -> None:
        queue = _queue(viewer, {})
        assert await queue.request_image("gone") == ""
        assert viewer.render_calls == []
        await queue.close()

    @pytest.mark.asyncio
    async def test_resolves_at_execution_time(self, viewer: FakeViewer) -> None:
        viewer.render_delay = 0.02
        annotations = {
            "A": make_annotation("A", "image"),
            "B": make_annotation("B", "image"),
        }
        queue = _queue(viewer, annotations)

        first = queue.submit("A")
        second = queue.submit("B")
        del annotations["B"]

        assert await first != ""
        assert await second == ""
        assert len(viewer.render_calls) == 1
        await queue.close()

    @pytest.mark.asyncio
    async def test_renderer_failure_yields_empty(self, viewer: FakeViewer) -> None:
        viewer.render_error = RuntimeError("canvas lost")
        queue = _queue(viewer, {"A": make_annotation("A", "image")})
        assert await queue.request_image("A") == ""

        # The worker survives the failure
        viewer.render_error = None
        assert await queue.request_image("A") != ""
        await queue.close()

    @pytest.mark.asyncio
    async def test_close_resolves_queued_requests(self, viewer: FakeViewer) -> None:
        viewer.render_delay = 0.5
        annotations = {str(i): make_annotation(str(i), "image") for i in range(3)}
        queue = _queue(viewer, annotations)

        futures = [queue.submit(str(i)) for i in range(3)]
        await asyncio.sleep(0.01)
        await queue.close()

        assert [f.result() for f in futures] == ["", "", ""]
        assert queue.pending == 0

    @pytest.mark.asyncio
    async def test_pil_result_encoded_with_queue_format(self, viewer: FakeViewer) -> None:
        viewer.render_result = Image.new("RGB", (4, 4))
        queue = RenderQueue(
            {"A": make_annotation("A", "image")}.get,
            viewer.render_area_image,
            image_format="PNG",
        )
        assert (await queue.request_image("A")).startswith("data:image/png;base64,")
        await queue.close()

    def test_idle_queue_has_nothing_pending(self, viewer: FakeViewer) -> None:
        assert _queue(viewer, {}).pending == 0
