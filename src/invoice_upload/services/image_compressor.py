"""
Image compressor.

Shrinks an image to a byte budget with Pillow: dimensions are fitted first
(pre-shrunk further for small budgets), then quality is lowered step by step
until the encoded size fits or the attempt limit is reached.
"""

from __future__ import annotations

import asyncio
import io
import logging
import math

from PIL import ExifTags, Image, ImageOps, UnidentifiedImageError

from .. import config
from ..errors import CompressionFailed, ImageLoadFailed
from ..models import CompressionResult, RenderedImage, UploadFile
from .imaging import IMAGE_FORMATS, encode_image, extension_for, fit_dimensions

logger = logging.getLogger(__name__)


def target_dimensions(
    width: int,
    height: int,
    max_width: int,
    max_height: int,
    target_bytes: int | None = None,
    reference_bytes: int = config.TARGET_COMPRESSED_FILE_SIZE_BYTES,
) -> tuple[int, int]:
    """Fit into the bounds, then pre-shrink by sqrt(target/reference) for small targets."""

    fitted_width, fitted_height = fit_dimensions(width, height, max_width, max_height)
    if target_bytes and target_bytes < reference_bytes * 0.5:
        factor = math.sqrt(target_bytes / reference_bytes)
        fitted_width = max(1, round(fitted_width * factor))
        fitted_height = max(1, round(fitted_height * factor))
    return fitted_width, fitted_height


def compression_budget(strategy: str | None, processed_pages: int | None) -> tuple[int, int]:
    """
    Byte budget and max height for the image a PDF strategy produced.

    A long-image composite of N pages gets N times the single-image budget
    and N times the height limit.
    """

    pages = processed_pages or 1
    if strategy and strategy.startswith("long-image"):
        return (
            config.TARGET_COMPRESSED_FILE_SIZE_BYTES * pages,
            config.COMPRESSION_DEFAULT_MAX_HEIGHT * pages,
        )
    return config.TARGET_COMPRESSED_FILE_SIZE_BYTES, config.COMPRESSION_DEFAULT_MAX_HEIGHT


def _load_image(file: UploadFile) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(file.data))
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        logger.error(f"[COMPRESS] Failed to load image {file.filename}: {exc}")
        raise ImageLoadFailed(filename=file.filename) from exc
    return image


def _compress_sync(
    file: UploadFile,
    target_bytes: int | None,
    max_width: int,
    max_height: int,
    start_quality: float,
    output_format: str,
    max_attempts: int,
) -> CompressionResult:
    image = _load_image(file)
    original_size = len(file.data)
    source_format = image.format

    # Camera photos store pixels sideways plus an orientation tag.
    upright = image.getexif().get(ExifTags.Base.Orientation, 1) == 1
    if not upright:
        image = ImageOps.exif_transpose(image)
        logger.debug(f"[COMPRESS] Applied EXIF orientation to {file.filename}")

    output_name = f"{file.stem}{extension_for(output_format)}"
    pil_format = IMAGE_FORMATS.get(output_format, IMAGE_FORMATS["image/jpeg"])[0]
    same_format = source_format == pil_format
    within_bounds = image.width <= max_width and image.height <= max_height
    if target_bytes and upright and same_format and within_bounds and original_size <= target_bytes:
        logger.info(
            f"[COMPRESS] {file.filename} already within budget "
            f"({original_size} <= {target_bytes} bytes); leaving unchanged"
        )
        return CompressionResult(
            image=RenderedImage(
                filename=output_name,
                content_type=output_format,
                data=file.data,
                width=image.width,
                height=image.height,
            ),
            original_size=original_size,
            compressed_size=original_size,
            compression_ratio=0.0,
            attempts=1,
            final_quality=start_quality,
        )

    width, height = target_dimensions(
        image.width, image.height, max_width, max_height, target_bytes
    )
    if (width, height) != image.size:
        image = image.resize((width, height), Image.LANCZOS)

    quality = start_quality
    attempts = 0
    while True:
        try:
            data = encode_image(image, output_format, quality)
        except (OSError, ValueError) as exc:
            logger.error(f"[COMPRESS] Encoding {file.filename} failed: {exc}")
            raise CompressionFailed(filename=file.filename) from exc
        if not data:
            logger.error(f"[COMPRESS] Encoder produced no output for {file.filename}")
            raise CompressionFailed(filename=file.filename)

        attempts += 1
        logger.debug(
            f"[COMPRESS] Attempt {attempts}: quality={quality:.2f}, {len(data)} bytes"
        )
        if not target_bytes or len(data) <= target_bytes or attempts >= max_attempts:
            break
        quality = max(config.MIN_QUALITY, quality * config.QUALITY_REDUCTION_FACTOR)

    ratio = (original_size - len(data)) / original_size * 100 if original_size else 0.0
    logger.info(
        f"[COMPRESS] {file.filename}: {original_size} -> {len(data)} bytes "
        f"({ratio:.1f}%), {width}x{height}px, {attempts} attempt(s), quality={quality:.2f}"
    )
    if target_bytes and len(data) > target_bytes:
        logger.warning(
            f"[COMPRESS] Target of {target_bytes} bytes not reached for {file.filename}"
        )

    return CompressionResult(
        image=RenderedImage(
            filename=output_name,
            content_type=output_format,
            data=data,
            width=width,
            height=height,
        ),
        original_size=original_size,
        compressed_size=len(data),
        compression_ratio=ratio,
        attempts=attempts,
        final_quality=quality,
    )


async def compress(
    file: UploadFile,
    target_bytes: int | None = None,
    max_width: int = config.COMPRESSION_DEFAULT_MAX_WIDTH,
    max_height: int = config.COMPRESSION_DEFAULT_MAX_HEIGHT,
    start_quality: float = config.COMPRESSION_DEFAULT_QUALITY,
    output_format: str = config.COMPRESSION_DEFAULT_OUTPUT_FORMAT,
    max_attempts: int = config.COMPRESSION_MAX_ATTEMPTS,
) -> CompressionResult:
    """Compress ``file`` towards ``target_bytes``; stops after ``max_attempts`` encodes."""

    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    return await asyncio.to_thread(
        _compress_sync,
        file,
        target_bytes,
        max_width,
        max_height,
        start_quality,
        output_format,
        max_attempts,
    )
