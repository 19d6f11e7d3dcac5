"""Shared fixtures: a scripted viewer backend and recording hooks."""

import asyncio

import pytest

from annotation_store.config import Settings
from annotation_store.schemas.annotation import Annotation, Position
from annotation_store.services.backend import ViewerBackend
from annotation_store.services.store import AnnotationStore


class FakeViewer:
    """Viewer collaborators with call recording and overlap detection."""

    def __init__(self) -> None:
        self.points: object = {"0": "i"}
        self.labels: dict[int, str] = {}
        self.render_calls: list[Position] = []
        self.render_delay = 0.0
        self.render_error: Exception | None = None
        self.render_result: object = None
        self.point_calls = 0
        self.active_renders = 0
        self.max_active_renders = 0

    async def extract_page_label_points(self) -> object:
        self.point_calls += 1
        await asyncio.sleep(0)
        return self.points

    async def extract_page_label(self, page_index: int, points: object) -> str | None:
        return self.labels.get(page_index)

    async def get_sort_index(self, position: Position) -> str:
        top = int(position.rects[0][1]) if position.rects else 0
        return f"{position.page_index:05d}|{top:06d}"

    async def render_area_image(self, position: Position) -> object:
        self.active_renders += 1
        self.max_active_renders = max(self.max_active_renders, self.active_renders)
        try:
            self.render_calls.append(position)
            await asyncio.sleep(self.render_delay)
            if self.render_error is not None:
                raise self.render_error
            if self.render_result is not None:
                return self.render_result
            return f"data:image/png;base64,page{position.page_index}"
        finally:
            self.active_renders -= 1

    def backend(self) -> ViewerBackend:
        return ViewerBackend(
            extract_page_label_points=self.extract_page_label_points,
            extract_page_label=self.extract_page_label,
            get_sort_index=self.get_sort_index,
            render_area_image=self.render_area_image,
        )


class Hooks:
    """Records every call the store makes to its hooks."""

    def __init__(self) -> None:
        self.saved: list[Annotation] = []
        self.deleted: list[list[str]] = []
        self.updates: list[list[Annotation]] = []

    def on_set_annotation(self, annotation: Annotation) -> None:
        self.saved.append(annotation)

    def on_delete_annotations(self, ids: list[str]) -> None:
        self.deleted.append(ids)

    def on_update_annotations(self, annotations: list[Annotation]) -> None:
        self.updates.append(annotations)


def make_annotation(
    annotation_id: str,
    type_: str = "highlight",
    page_index: int = 0,
    sort_index: str | None = None,
    **extra: object,
) -> Annotation:
    return Annotation.model_validate({
        "id": annotation_id,
        "type": type_,
        "position": {"pageIndex": page_index, "rects": [[10.0, 20.0, 30.0, 40.0]]},
        "sortIndex": sort_index,
        "dateCreated": "2024-01-01T00:00:00.000Z",
        "dateModified": "2024-01-01T00:00:00.000Z",
        **extra,
    })


@pytest.fixture
def settings() -> Settings:
    return Settings(
        debounce_delay=0.05,
        debounce_max_wait=0.3,
        render_grace_period=0.05,
    )


@pytest.fixture
def viewer() -> FakeViewer:
    return FakeViewer()


@pytest.fixture
def hooks() -> Hooks:
    return Hooks()


@pytest.fixture
def make_store(viewer: FakeViewer, hooks: Hooks, settings: Settings):
    def _make(**kwargs: object) -> AnnotationStore:
        return AnnotationStore(
            backend=viewer.backend(),
            on_set_annotation=hooks.on_set_annotation,
            on_delete_annotations=hooks.on_delete_annotations,
            on_update_annotations=hooks.on_update_annotations,
            settings=settings,
            **kwargs,
        )
    return _make
