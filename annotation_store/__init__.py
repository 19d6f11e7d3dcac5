"""In-memory annotation store for a document viewer."""

from annotation_store.config import Settings, get_settings
from annotation_store.schemas.annotation import (
    Annotation,
    AnnotationCreate,
    AnnotationType,
    Position,
)
from annotation_store.services.backend import ViewerBackend, equal_positions
from annotation_store.services.events import EventBus, ViewerEvent, ViewerHost
from annotation_store.services.store import AnnotationNotFoundError, AnnotationStore

__all__ = [
    "Annotation",
    "AnnotationCreate",
    "AnnotationNotFoundError",
    "AnnotationStore",
    "AnnotationType",
    "EventBus",
    "Position",
    "Settings",
    "ViewerBackend",
    "ViewerEvent",
    "ViewerHost",
    "equal_positions",
    "get_settings",
]
