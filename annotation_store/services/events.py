"""Viewer lifecycle signals.

The store does not own the viewer; it subscribes to a narrow event interface
injected at construction time.
"""

import enum
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger("annotation_store.events")

Handler = Callable[[Any], None]


class ViewerEvent(str, enum.Enum):
    PAGES_INIT = "pagesinit"
    PAGE_RENDERED = "pagerendered"


class EventBus:
    """Minimal observer registry keyed by event name."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``event`` and return an unsubscribe function."""
        key = _event_key(event)
        self._handlers[key].append(handler)
        return lambda: self.off(key, handler)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(_event_key(event))
        if handlers and handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, payload: Any = None) -> None:
        for handler in list(self._handlers.get(_event_key(event), ())):
            try:
                handler(payload)
            except Exception:
                logger.exception("Handler for %s failed", _event_key(event))

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(_event_key(event), ()))


def _event_key(event: str) -> str:
    return event.value if isinstance(event, ViewerEvent) else event


@dataclass
class ViewerHost:
    """What the store may see of the host viewer."""
    events: EventBus = field(default_factory=EventBus)
    # Live page-label table indexed by page index; read opportunistically
    page_labels: list[str] | None = None

    def page_label(self, page_index: int) -> str | None:
        if not self.page_labels or not 0 <= page_index < len(self.page_labels):
            return None
        return self.page_labels[page_index] or None
