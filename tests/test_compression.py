from __future__ import annotations

import io
import os

from PIL import Image

from redink_api.app.compression import compress_image


def _noisy_png(size: tuple[int, int]) -> bytes:
    image = Image.frombytes("RGB", size, os.urandom(size[0] * size[1] * 3))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def test_small_input_is_returned_untouched(png_bytes: bytes) -> None:
    assert compress_image(png_bytes, 200) is png_bytes


def test_large_input_is_reencoded_as_smaller_jpeg() -> None:
    original = _noisy_png((1200, 1600))
    assert len(original) > 200 * 1024

    compressed = compress_image(original, 200)

    assert len(compressed) < len(original)
    with Image.open(io.BytesIO(compressed)) as image:
        assert image.format == "JPEG"
        assert max(image.size) <= 1600


def test_oversized_dimensions_are_capped() -> None:
    original = _noisy_png((2600, 300))

    compressed = compress_image(original, 50, max_dimension=1000)

    with Image.open(io.BytesIO(compressed)) as image:
        assert max(image.size) <= 1000


def test_undecodable_input_is_returned_as_is() -> None:
    garbage = b"not an image" * 30_000

    assert compress_image(garbage, 1) == garbage
