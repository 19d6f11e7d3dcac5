"""Bitmap payload encoding.

The viewer stores an annotation image as a data URL string. Renderers may
hand back a ready data URL, raw encoded bytes or a PIL image; everything is
normalised to the string form here.
"""

import base64
import io
import logging

from PIL import Image

from annotation_store.config import get_settings

logger = logging.getLogger("annotation_store.imaging")

_MIME_MAP = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "BMP": "image/bmp",
}

ImagePayload = str | bytes | Image.Image | None


def _bytes_to_data_url(data: bytes, image_format: str | None) -> str:
    mime_type = _MIME_MAP.get((image_format or "").upper(), "image/jpeg")
    b64 = base64.b64encode(data).decode()
    return f"data:{mime_type};base64,{b64}"


def encode_image(
    image: Image.Image,
    image_format: str | None = None,
    quality: int | None = None,
) -> str:
    """Encode a PIL image as a data URL.

    JPEG cannot carry an alpha channel, so RGBA/P images are flattened to RGB
    before saving in that format.
    """
    if image_format is None or quality is None:
        settings = get_settings()
        image_format = image_format or settings.image_format
        quality = settings.image_quality if quality is None else quality
    fmt = image_format.upper()
    buf = io.BytesIO()
    if fmt == "JPEG":
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        image.save(buf, format=fmt, quality=quality)
    else:
        image.save(buf, format=fmt)
    return _bytes_to_data_url(buf.getvalue(), fmt)


def to_data_url(
    payload: ImagePayload,
    image_format: str | None = None,
    quality: int | None = None,
) -> str:
    """Normalise a renderer result into a data URL string ("" for nothing).

    ``image_format`` and ``quality`` apply only when a PIL image has to be
    encoded; ready-made strings and encoded bytes keep their own format.
    """
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, Image.Image):
        return encode_image(payload, image_format, quality)
    if isinstance(payload, (bytes, bytearray)):
        if not payload:
            return ""
        with Image.open(io.BytesIO(payload)) as img:
            image_format = img.format
        return _bytes_to_data_url(bytes(payload), image_format)
    raise TypeError(f"Unsupported image payload: {type(payload).__name__}")
