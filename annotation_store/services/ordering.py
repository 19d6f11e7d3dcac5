"""Display ordering of annotations.

Annotations are ordered by their ``sort_index`` under plain string
comparison. A missing key compares equal to anything, so the stable sort
leaves such annotations where they were.
"""

from functools import cmp_to_key

from annotation_store.schemas.annotation import Annotation


def compare_annotations(a: Annotation, b: Annotation) -> int:
    """Return -1, 0 or 1 comparing the sort keys of ``a`` and ``b``."""
    left, right = a.sort_index, b.sort_index
    if left is None or right is None:
        return 0
    return (left > right) - (left < right)


def sort_annotations(annotations: list[Annotation]) -> list[Annotation]:
    """Sort ``annotations`` in place (stable) and return the same list."""
    annotations.sort(key=cmp_to_key(compare_annotations))
    return annotations
