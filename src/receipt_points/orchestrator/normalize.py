"""Re-encode submitted images as JPEG under the upload size budget."""

from __future__ import annotations

import io
from typing import Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from ..domain.errors import ImageRejected
from ..logging import get_logger

LOG = get_logger("normalize")

TARGET_SIZE = 6 * 1024 * 1024
MAX_DIMENSION = 2048
MAX_ATTEMPTS = 8
OUTPUT_MIME = "image/jpeg"


def calculate_dimensions(width: int, height: int, max_dimension: int = MAX_DIMENSION) -> Tuple[int, int]:
    """Scale (width, height) down to fit max_dimension, keeping aspect ratio."""
    if width <= max_dimension and height <= max_dimension:
        return width, height
    scale = min(max_dimension / width, max_dimension / height)
    return max(int(width * scale), 1), max(int(height * scale), 1)


def _encode(img: Image.Image, size: Tuple[int, int], quality: float) -> bytes:
    frame = img if img.size == size else img.resize(size, Image.Resampling.LANCZOS)
    buf = io.BytesIO()
    frame.save(buf, format="JPEG", quality=int(round(quality * 100)), optimize=True)
    return buf.getvalue()


def normalize_image(
    raw: bytes,
    *,
    target_size: int = TARGET_SIZE,
    max_dimension: int = MAX_DIMENSION,
    max_attempts: int = MAX_ATTEMPTS,
) -> bytes:
    """Return JPEG bytes no larger than ``target_size``.

    Quality drops from 0.9 by 0.15 while above 0.8 (floor 0.5); after that the image
    shrinks by 0.8 per attempt while quality recovers by 0.1 (cap 0.8).
    """
    try:
        with Image.open(io.BytesIO(raw)) as opened:
            opened.load()
            img = ImageOps.exif_transpose(opened).convert("RGB")
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageRejected("Selecione um arquivo de imagem.") from exc

    width, height = calculate_dimensions(img.width, img.height, max_dimension)
    quality = 0.9
    attempts = 0
    while True:
        attempts += 1
        blob = _encode(img, (width, height), quality)
        if len(blob) <= target_size or attempts >= max_attempts:
            break
        if quality > 0.8:
            quality = max(0.5, quality - 0.15)
        else:
            width, height = max(int(width * 0.8), 1), max(int(height * 0.8), 1)
            quality = min(0.8, quality + 0.1)

    LOG.info(
        f"Image converted: {len(blob) / 1024 / 1024:.2f}MB, {width}x{height}, quality: {quality:.2f}"
    )
    if len(blob) > target_size:
        raise ImageRejected(
            f"Imagem convertida excede {target_size / (1024 * 1024):.0f} MB ({len(blob) / (1024 * 1024):.2f} MB)."
        )
    return blob
