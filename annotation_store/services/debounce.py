"""Per-annotation debounced persistence.

Each annotation id gets its own channel on the first save request. Further
requests replace the pending snapshot and push the timer back by ``delay``,
but never beyond ``first request + max_wait``. When the timer fires the
channel is removed and the callback runs once with the latest snapshot.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from annotation_store.config import get_settings
from annotation_store.schemas.annotation import Annotation

logger = logging.getLogger("annotation_store.debounce")


def require_running_loop() -> asyncio.AbstractEventLoop:
    """Return the running loop; debounce timers cannot be armed without one."""
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        raise RuntimeError(
            "Debounced saves must be requested from a running event loop"
        ) from None


@dataclass
class DebounceChannel:
    """Pending save state for one annotation id."""
    annotation_id: str
    payload: Annotation
    deadline: float  # loop time after which the save is forced
    handle: asyncio.TimerHandle | None = None


class DebounceRegistry:
    """Independent trailing-edge debounce channels keyed by annotation id."""

    def __init__(
        self,
        callback: Callable[[Annotation], Any],
        delay: float | None = None,
        max_wait: float | None = None,
    ) -> None:
        if delay is None or max_wait is None:
            settings = get_settings()
            delay = settings.debounce_delay if delay is None else delay
            max_wait = settings.debounce_max_wait if max_wait is None else max_wait
        self._callback = callback
        self.delay = delay
        self.max_wait = max_wait
        self._channels: dict[str, DebounceChannel] = {}
        self._background: set[asyncio.Task[Any]] = set()

    def __contains__(self, annotation_id: object) -> bool:
        return annotation_id in self._channels

    @property
    def pending_ids(self) -> list[str]:
        return list(self._channels)

    def save(self, annotation: Annotation) -> None:
        """Schedule ``annotation`` for persistence, collapsing bursts per id.

        Must run on the event loop that owns the timers; ``cancel`` and
        ``flush`` have no such requirement.

        Raises:
            RuntimeError: if no event loop is running.
        """
        loop = require_running_loop()
        now = loop.time()
        channel = self._channels.get(annotation.id)
        if channel is None:
            channel = DebounceChannel(
                annotation_id=annotation.id,
                payload=annotation,
                deadline=now + self.max_wait,
            )
            self._channels[annotation.id] = channel
        else:
            channel.payload = annotation
            if channel.handle is not None:
                channel.handle.cancel()

        fire_at = min(now + self.delay, channel.deadline)
        channel.handle = loop.call_at(fire_at, self._fire, channel)

    def cancel(self, annotation_id: str) -> bool:
        """Drop the pending save for ``annotation_id``; True if one existed."""
        channel = self._channels.pop(annotation_id, None)
        if channel is None:
            return False
        if channel.handle is not None:
            channel.handle.cancel()
        logger.debug("Cancelled pending save for %s", annotation_id)
        return True

    def flush(self, annotation_id: str | None = None) -> None:
        """Fire pending channels now: one id, or all of them."""
        ids = [annotation_id] if annotation_id is not None else list(self._channels)
        for key in ids:
            channel = self._channels.get(key)
            if channel is None:
                continue
            if channel.handle is not None:
                channel.handle.cancel()
            self._fire(channel)

    async def wait_idle(self) -> None:
        """Await callbacks that returned awaitables."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _fire(self, channel: DebounceChannel) -> None:
        # A newer channel may have replaced this one after a cancel + save
        if self._channels.get(channel.annotation_id) is not channel:
            return
        del self._channels[channel.annotation_id]

        try:
            result = self._callback(channel.payload)
        except Exception:
            logger.exception("Saving annotation %s failed", channel.annotation_id)
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._background.add(task)
            task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: "asyncio.Task[Any]") -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Saving annotation failed: %s", exc, exc_info=exc)
