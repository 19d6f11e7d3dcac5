"""Single-slot image rendering queue.

The area renderer is not reentrant, so every capture request goes through one
FIFO queue drained by a single worker task. Each task carries only the
annotation id; the annotation is looked up when the task actually runs, which
tolerates edits and deletes that happen while it waits.

Public interface:
  - RenderQueue(resolve, renderer)
  - submit(annotation_id) -> asyncio.Future[str]
  - async request_image(annotation_id) -> str
  - async close()
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from annotation_store.schemas.annotation import Annotation, Position
from annotation_store.services.imaging import ImagePayload, to_data_url

logger = logging.getLogger("annotation_store.render")


class RenderQueue:
    """FIFO queue with concurrency 1 over the external area renderer."""

    def __init__(
        self,
        resolve: Callable[[str], Annotation | None],
        renderer: Callable[[Position], Awaitable[ImagePayload]],
        image_format: str | None = None,
        image_quality: int | None = None,
    ) -> None:
        self._resolve = resolve
        self._renderer = renderer
        self._image_format = image_format
        self._image_quality = image_quality
        self._queue: asyncio.Queue[tuple[str, asyncio.Future[str]]] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    @property
    def pending(self) -> int:
        """Number of requests waiting for the worker."""
        return self._queue.qsize()

    def submit(self, annotation_id: str) -> "asyncio.Future[str]":
        """Enqueue a capture for ``annotation_id`` and return its future.

        The future resolves to the image payload, or ``""`` when the
        annotation is gone or rendering fails. It never raises.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()
        self._queue.put_nowait((annotation_id, future))
        self._ensure_worker()
        return future

    async def request_image(self, annotation_id: str) -> str:
        return await self.submit(annotation_id)

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            annotation_id, future = await self._queue.get()
            try:
                image = await self._render(annotation_id)
            except asyncio.CancelledError:
                if not future.done():
                    future.set_result("")
                raise
            else:
                if not future.done():
                    future.set_result(image)
            finally:
                self._queue.task_done()

    async def _render(self, annotation_id: str) -> str:
        annotation = self._resolve(annotation_id)
        if annotation is None:
            logger.debug("Annotation %s gone before rendering", annotation_id)
            return ""
        try:
            payload = await self._renderer(annotation.position)
            return to_data_url(payload, self._image_format, self._image_quality)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Rendering image for %s failed: %s", annotation_id, e)
            return ""

    async def close(self) -> None:
        """Stop the worker; requests still queued resolve to ``""``."""
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if not future.done():
                future.set_result("")
            self._queue.task_done()
