"""Viewer-side collaborators consumed by the store.

Public interface:
  - ViewerBackend(extract_page_label_points, extract_page_label,
                  get_sort_index, render_area_image, equal_positions)
  - equal_positions(a, b) -> bool
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from annotation_store.schemas.annotation import Position
from annotation_store.services.imaging import ImagePayload


def equal_positions(a: Position, b: Position) -> bool:
    """Deep equality over page index and rectangles."""
    return a.page_index == b.page_index and a.rects == b.rects


@dataclass(frozen=True)
class ViewerBackend:
    """Async extraction and rendering functions provided by the document viewer."""
    # () -> reference points mapping page index to label; falsy when unavailable
    extract_page_label_points: Callable[[], Awaitable[Any]]
    # (page_index, points) -> label, or a falsy value when unresolved
    extract_page_label: Callable[[int, Any], Awaitable[str | None]]
    # (position) -> comparable sort key
    get_sort_index: Callable[[Position], Awaitable[str]]
    # (position) -> bitmap of the covered area; may raise
    render_area_image: Callable[[Position], Awaitable[ImagePayload]]
    equal_positions: Callable[[Position, Position], bool] = equal_positions
