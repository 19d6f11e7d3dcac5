"""Pydantic schemas for annotations.

Snapshots are frozen: every mutation produces a new ``Annotation`` through
``model_copy`` so a reader holding an older snapshot never sees it change.
Field names are snake_case; the camelCase names used by the viewer are
accepted and emitted through aliases.
"""

import enum
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class AnnotationType(str, enum.Enum):
    HIGHLIGHT = "highlight"
    NOTE = "note"
    IMAGE = "image"
    INK = "ink"
    TEXT = "text"


# Kinds anchored to an area of the page: they get a sort index on creation
POSITIONAL_TYPES: frozenset[AnnotationType] = frozenset({
    AnnotationType.NOTE,
    AnnotationType.IMAGE,
})


class Position(BaseModel):
    page_index: int = Field(..., ge=0)
    rects: list[list[float]] = Field(default_factory=list)

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class Annotation(BaseModel):
    id: str
    type: AnnotationType
    position: Position
    sort_index: str | None = None
    page_label: str = "-"
    image: str | None = None
    color: str = ""
    text: str = ""
    comment: str = ""
    tags: list[Any] = Field(default_factory=list)
    author_name: str = ""
    date_created: str = ""
    date_modified: str = ""
    read_only: bool = False

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    @property
    def is_positional(self) -> bool:
        return self.type in POSITIONAL_TYPES


class AnnotationCreate(BaseModel):
    """Payload of an add request; identity and timestamps are assigned by the store."""
    type: AnnotationType
    position: Position
    sort_index: str | None = None
    color: str | None = None
    text: str | None = None
    comment: str | None = None
    tags: list[Any] | None = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


def round_rects(rects: list[list[float]], ndigits: int = 3) -> list[list[float]]:
    """Round every rectangle coordinate to ``ndigits`` decimal places.

    Exact ties round away from zero (0.0625 -> 0.063), as the viewer does.
    """
    step = Decimal(1).scaleb(-ndigits)
    return [
        [float(Decimal(float(value)).quantize(step, rounding=ROUND_HALF_UP)) for value in rect]
        for rect in rects
    ]


def utc_timestamp() -> str:
    """Current UTC time as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _alias_map(model: type[BaseModel]) -> dict[str, str]:
    return {
        (info.alias or name): name
        for name, info in model.model_fields.items()
    }


def normalize_keys(data: dict[str, Any], model: type[BaseModel]) -> dict[str, Any]:
    """Map camelCase aliases in ``data`` onto the model's field names.

    Keys that match neither a field nor an alias are kept as-is so extra
    annotation properties survive a merge.
    """
    aliases = _alias_map(model)
    return {aliases.get(key, key): value for key, value in data.items()}
