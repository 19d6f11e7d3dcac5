"""Unit tests for bitmap payload encoding."""

import base64
import io

import pytest
from PIL import Image

from annotation_store.services.imaging import encode_image, to_data_url


def _png_bytes() -> bytes:
    img = Image.new("RGB", (20, 10), color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class TestToDataUrl:
    def test_none_is_empty(self) -> None:
        assert to_data_url(None) == ""

    def test_string_passthrough(self) -> None:
        assert to_data_url("data:image/png;base64,AAAA") == "data:image/png;base64,AAAA"

    def test_empty_bytes(self) -> None:
        assert to_data_url(b"") == ""

    def test_png_bytes_sniffed(self) -> None:
        data = _png_bytes()
        url = to_data_url(data)
        assert url.startswith("data:image/png;base64,")
        assert base64.b64decode(url.split(",", 1)[1]) == data

    def test_pil_image_encoded(self) -> None:
        url = to_data_url(Image.new("RGBA", (8, 8), color=(255, 0, 0, 128)))
        assert url.startswith("data:image/jpeg;base64,")
        decoded = base64.b64decode(url.split(",", 1)[1])
        with Image.open(io.BytesIO(decoded)) as img:
            assert img.size == (8, 8)

    def test_unsupported_type(self) -> None:
        with pytest.raises(TypeError):
            to_data_url(42)  # type: ignore[arg-type]


class TestEncodeImage:
    def test_png_format(self) -> None:
        url = encode_image(Image.new("RGB", (4, 4)), image_format="png")
        assert url.startswith("data:image/png;base64,")
