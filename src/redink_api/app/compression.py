"""Image compression helpers built on Pillow."""

from __future__ import annotations

import io
import logging

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

REFERENCE_BUDGET_KB = 200
THUMBNAIL_BUDGET_KB = 50


def compress_image(
    data: bytes,
    max_size_kb: int = REFERENCE_BUDGET_KB,
    *,
    quality_start: int = 85,
    quality_min: int = 20,
    max_dimension: int = 2048,
) -> bytes:
    """Re-encode `data` as JPEG until it fits `max_size_kb`.

    Steps: cap the longest side at `max_dimension`, lower JPEG quality in
    steps of 5, then shrink dimensions by 10% while the longest side stays
    above 512px. Input that already fits is returned untouched; undecodable
    input is returned as-is.
    """
    budget = max_size_kb * 1024
    if len(data) <= budget:
        return data

    try:
        with Image.open(io.BytesIO(data)) as opened:
            image = opened.convert("RGB")
    except (UnidentifiedImageError, OSError) as exc:
        logger.warning("compress_image event=decode_failed size=%d reason=%s", len(data), exc)
        return data

    if max(image.size) > max_dimension:
        image.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

    quality = quality_start
    encoded = _encode_jpeg(image, quality)
    while len(encoded) > budget and quality > quality_min:
        quality = max(quality_min, quality - 5)
        encoded = _encode_jpeg(image, quality)

    while len(encoded) > budget and max(image.size) > 512:
        width, height = image.size
        image = image.resize(
            (max(1, int(width * 0.9)), max(1, int(height * 0.9))),
            Image.Resampling.LANCZOS,
        )
        encoded = _encode_jpeg(image, quality)

    logger.debug(
        "compress_image event=done original=%d compressed=%d quality=%d size=%s",
        len(data),
        len(encoded),
        quality,
        image.size,
    )
    return encoded


def _encode_jpeg(image: Image.Image, quality: int) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=quality, optimize=True)
    return buffer.getvalue()
