"""Annotation lifecycle manager.

Owns the live, ordered annotation collection and mediates every mutation.
Edits are applied in two phases: an optimistic upsert so the viewer reflects
the change at once, then an enriched upsert once the page label, sort index
and image have been derived. The final state goes to the persistence hook
through a per-annotation debounce channel.

Public interface:
  - AnnotationStore(backend=..., on_set_annotation=..., ...)
  - async add_annotation / set_annotation / update_annotation
  - upsert, remove_local, delete_annotations, reset_page_labels
  - async get_annotation_image, render_missing_images
  - attach_viewer(viewer), async aclose()
"""

import asyncio
import inspect
import logging
import secrets
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from annotation_store.config import Settings, get_settings
from annotation_store.schemas.annotation import (
    Annotation,
    AnnotationCreate,
    AnnotationType,
    Position,
    normalize_keys,
    round_rects,
    utc_timestamp,
)
from annotation_store.services.backend import ViewerBackend
from annotation_store.services.debounce import DebounceRegistry, require_running_loop
from annotation_store.services.events import ViewerEvent, ViewerHost
from annotation_store.services.ordering import sort_annotations
from annotation_store.services.render_queue import RenderQueue

logger = logging.getLogger("annotation_store.store")


class AnnotationNotFoundError(LookupError):
    """Raised when an update names an id that is not in the collection."""


def _coerce(annotation: Annotation | Mapping[str, Any]) -> Annotation:
    if isinstance(annotation, Annotation):
        return annotation
    return Annotation.model_validate(dict(annotation))


class AnnotationStore:
    """In-memory record keeper for the annotations overlaid on a document."""

    def __init__(
        self,
        *,
        backend: ViewerBackend,
        on_set_annotation: Callable[[Annotation], Any],
        on_delete_annotations: Callable[[list[str]], Any],
        on_update_annotations: Callable[[list[Annotation]], Any],
        annotations: Iterable[Annotation | Mapping[str, Any]] = (),
        read_only: bool | None = None,
        viewer: ViewerHost | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.read_only = self._settings.read_only if read_only is None else read_only
        self._backend = backend
        self.on_set_annotation = on_set_annotation
        self.on_delete_annotations = on_delete_annotations
        self.on_update_annotations = on_update_annotations

        self._annotations: list[Annotation] = [_coerce(a) for a in annotations]
        sort_annotations(self._annotations)

        self._render_queue = RenderQueue(
            self.get_annotation_by_id,
            backend.render_area_image,
            image_format=self._settings.image_format,
            image_quality=self._settings.image_quality,
        )
        self._debounces = DebounceRegistry(
            self._persist,
            delay=self._settings.debounce_delay,
            max_wait=self._settings.debounce_max_wait,
        )

        self._page_label_points: Any = None
        self._points_lock = asyncio.Lock()

        self._viewer: ViewerHost | None = None
        self._unsubscribers: list[Callable[[], None]] = []
        self._scan_handle: asyncio.TimerHandle | None = None
        self._background: set[asyncio.Task[Any]] = set()

        if viewer is not None:
            self.attach_viewer(viewer)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_annotations(self) -> list[Annotation]:
        return list(self._annotations)

    def get_annotation_by_id(self, annotation_id: str) -> Annotation | None:
        for annotation in self._annotations:
            if annotation.id == annotation_id:
                return annotation
        return None

    def generate_object_key(self) -> str:
        """Random key over an alphabet without look-alike characters.

        Not checked against the live set; the key space (33^8) makes
        collisions negligible for one document's annotations.
        """
        alphabet = self._settings.object_key_alphabet
        return "".join(
            secrets.choice(alphabet) for _ in range(self._settings.object_key_length)
        )

    # ------------------------------------------------------------------
    # Collection primitives
    # ------------------------------------------------------------------

    def upsert(self, annotation: Annotation) -> Annotation:
        """Replace the annotation with the same id, or append it; then re-sort.

        A fresh copy is stored so callers never share a reference with the
        collection.
        """
        stored = annotation.model_copy(deep=True)
        for index, existing in enumerate(self._annotations):
            if existing.id == stored.id:
                self._annotations[index] = stored
                break
        else:
            self._annotations.append(stored)
        sort_annotations(self._annotations)
        self._notify_update()
        return stored

    def remove_local(self, ids: Iterable[str]) -> None:
        """Drop annotations removed on the other side; nothing is persisted.

        Safe to call outside the event loop as long as the update hook is
        synchronous.
        """
        id_set = set(ids)
        self._annotations = [a for a in self._annotations if a.id not in id_set]
        for annotation_id in id_set:
            self._debounces.cancel(annotation_id)
        self._notify_update()

    def delete_annotations(self, ids: Iterable[str]) -> None:
        if self.read_only:
            logger.debug("Ignoring delete in read-only mode")
            return

        ids = list(ids)
        id_set = set(ids)
        self._annotations = [a for a in self._annotations if a.id not in id_set]
        for annotation_id in ids:
            self._debounces.cancel(annotation_id)

        self._call_hook(self.on_delete_annotations, ids)
        self._notify_update()

    def save(self, annotation: Annotation) -> None:
        """Queue ``annotation`` for debounced persistence.

        Raises:
            RuntimeError: if called outside a running event loop.
        """
        self._debounces.save(annotation)

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def add_annotation(
        self,
        data: AnnotationCreate | Mapping[str, Any],
    ) -> Annotation | None:
        """Create an annotation, show it at once, then enrich and persist it.

        Returns the enriched annotation, or None in read-only mode.
        """
        if self.read_only:
            logger.debug("Ignoring add in read-only mode")
            return None

        if not isinstance(data, AnnotationCreate):
            data = AnnotationCreate.model_validate(dict(data))

        now = utc_timestamp()
        fields = normalize_keys(data.model_dump(exclude_none=True), Annotation)
        fields.update(
            id=self.generate_object_key(),
            color=data.color or self._settings.default_color,
            text=data.text or "",
            comment=data.comment or "",
            tags=data.tags or [],
            author_name="",
            page_label="-",
            date_created=now,
            date_modified=now,
            position={
                **data.position.model_dump(),
                "rects": round_rects(data.position.rects),
            },
        )
        annotation = Annotation.model_validate(fields)

        self.upsert(annotation)

        page_label = await self._resolve_page_label(annotation.position.page_index)
        annotation = annotation.model_copy(update={"page_label": page_label})

        if annotation.is_positional:
            annotation = annotation.model_copy(
                update={"sort_index": await self._sort_index_for(annotation)}
            )

        if annotation.type is AnnotationType.IMAGE:
            annotation = annotation.model_copy(
                update={"image": await self.get_annotation_image(annotation.id)}
            )

        self._commit(annotation)
        return annotation

    async def set_annotation(self, annotation: Annotation | Mapping[str, Any]) -> None:
        """Apply an annotation received from the other side of the viewer."""
        annotation = _coerce(annotation).model_copy(update={"read_only": self.read_only})
        self.upsert(annotation)

        if annotation.type is AnnotationType.IMAGE and not annotation.image:
            image = await self.get_annotation_image(annotation.id)
            self._apply_image(annotation.id, image)

    async def update_annotation(
        self,
        partial: Mapping[str, Any],
    ) -> Annotation | None:
        """Merge ``partial`` onto the stored annotation with the same id.

        Top-level fields are merged shallowly; ``position`` is merged as its
        own shallow dict so unspecified position fields survive. Sort index
        and image are re-derived only when the position actually changed.

        Raises:
            AnnotationNotFoundError: if ``partial["id"]`` is not in the store.
        """
        if self.read_only:
            logger.debug("Ignoring update in read-only mode")
            return None

        changes = normalize_keys(dict(partial), Annotation)
        existing = self.get_annotation_by_id(changes.get("id"))
        if existing is None:
            raise AnnotationNotFoundError(f"Annotation {changes.get('id')!r} not found")

        position = existing.position.model_dump()
        new_position = changes.pop("position", None)
        if isinstance(new_position, Position):
            position.update(new_position.model_dump())
        elif new_position:
            position.update(normalize_keys(dict(new_position), Position))
        position["rects"] = round_rects(position["rects"])

        annotation = Annotation.model_validate({
            **existing.model_dump(),
            **changes,
            "position": position,
            "date_modified": utc_timestamp(),
        })

        self.upsert(annotation)

        moved = not self._backend.equal_positions(existing.position, annotation.position)
        if moved and annotation.is_positional:
            annotation = annotation.model_copy(
                update={"sort_index": await self._sort_index_for(annotation)}
            )
        if moved and annotation.type is AnnotationType.IMAGE:
            annotation = annotation.model_copy(
                update={"image": await self.get_annotation_image(annotation.id)}
            )

        self._commit(annotation)
        return annotation

    def reset_page_labels(self, page_index: int, page_label: str) -> None:
        """Relabel every annotation so ``page_index`` carries ``page_label``.

        Only canonical integer labels are accepted ("10", not "010" or "3a");
        anything else leaves the collection untouched. Each relabelled
        annotation is saved, so this must run on the event loop.

        Raises:
            RuntimeError: if called outside a running event loop; the
                collection is left untouched in that case.
        """
        try:
            number = int(page_label)
        except (TypeError, ValueError):
            logger.debug("Ignoring non-numeric page label %r", page_label)
            return
        if str(number) != page_label:
            logger.debug("Ignoring non-canonical page label %r", page_label)
            return
        require_running_loop()

        start_page_number = number - page_index
        for annotation in list(self._annotations):
            label = str(start_page_number + annotation.position.page_index)
            updated = self.upsert(annotation.model_copy(update={"page_label": label}))
            self.save(updated)

    async def get_annotation_image(self, annotation_id: str) -> str:
        """Render the area under ``annotation_id``; "" when gone or on failure."""
        return await self._render_queue.request_image(annotation_id)

    async def render_missing_images(self) -> None:
        """Render and persist every image annotation that has no image yet.

        Runs one annotation at a time; the render queue bounds concurrency
        anyway.
        """
        for annotation in list(self._annotations):
            if annotation.type is not AnnotationType.IMAGE or annotation.image:
                continue
            image = await self.get_annotation_image(annotation.id)
            self._apply_image(annotation.id, image)

    # ------------------------------------------------------------------
    # Page labels
    # ------------------------------------------------------------------

    async def get_page_label_points(self) -> Any:
        """Page-label reference points, extracted once and cached."""
        if self._page_label_points:
            return self._page_label_points
        async with self._points_lock:
            if not self._page_label_points:
                try:
                    self._page_label_points = await self._backend.extract_page_label_points()
                except Exception as e:
                    logger.warning("Extracting page label points failed: %s", e)
                    return None
        return self._page_label_points

    async def _resolve_page_label(self, page_index: int) -> str:
        points = await self.get_page_label_points()
        if points:
            try:
                label = await self._backend.extract_page_label(page_index, points)
            except Exception as e:
                logger.warning("Extracting page label for page %d failed: %s", page_index, e)
                label = None
            if label:
                return str(label)

        if self._viewer is not None:
            label = self._viewer.page_label(page_index)
            if label:
                return label

        return str(page_index + 1)

    async def _sort_index_for(self, annotation: Annotation) -> str | None:
        try:
            return await self._backend.get_sort_index(annotation.position)
        except Exception as e:
            logger.warning("Computing sort index for %s failed: %s", annotation.id, e)
            return annotation.sort_index

    # ------------------------------------------------------------------
    # Viewer wiring
    # ------------------------------------------------------------------

    def attach_viewer(self, viewer: ViewerHost) -> None:
        """Subscribe to the viewer's lifecycle signals."""
        self.detach_viewer()
        self._viewer = viewer
        self._unsubscribers = [
            viewer.events.on(ViewerEvent.PAGES_INIT, self._on_pages_init),
            viewer.events.on(ViewerEvent.PAGE_RENDERED, self._on_page_rendered),
        ]

    def detach_viewer(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self._viewer = None
        if self._scan_handle is not None:
            self._scan_handle.cancel()
            self._scan_handle = None

    def _on_pages_init(self, payload: Any) -> None:
        logger.debug("Viewer pages initialized")

    def _on_page_rendered(self, payload: Any) -> None:
        # Signals arriving during the grace period share one scan
        if self._scan_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._scan_handle = loop.call_later(
            self._settings.render_grace_period, self._start_missing_image_scan
        )

    def _start_missing_image_scan(self) -> None:
        self._scan_handle = None
        self._spawn(self.render_missing_images())

    async def aclose(self) -> None:
        """Detach from the viewer, flush pending saves and stop rendering."""
        self.detach_viewer()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._debounces.flush()
        await self._debounces.wait_idle()
        await self._render_queue.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _commit(self, annotation: Annotation) -> bool:
        """Store and persist the enriched state unless the id was deleted meanwhile."""
        if self.get_annotation_by_id(annotation.id) is None:
            logger.debug("Discarding enrichment for deleted annotation %s", annotation.id)
            return False
        self.save(self.upsert(annotation))
        return True

    def _apply_image(self, annotation_id: str, image: str) -> None:
        current = self.get_annotation_by_id(annotation_id)
        if current is None:
            logger.debug("Discarding image for deleted annotation %s", annotation_id)
            return
        self.save(self.upsert(current.model_copy(update={"image": image})))

    def _persist(self, annotation: Annotation) -> Any:
        return self.on_set_annotation(annotation)

    def _notify_update(self) -> None:
        self._call_hook(self.on_update_annotations, list(self._annotations))

    def _call_hook(self, hook: Callable[..., Any], *args: Any) -> None:
        result = hook(*args)
        if inspect.isawaitable(result):
            self._spawn(result)

    def _spawn(self, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: "asyncio.Task[Any]") -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed: %s", exc, exc_info=exc)
