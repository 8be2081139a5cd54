"""Raster helpers shared by the PDF rasterizer and the image compressor."""

from __future__ import annotations

import io

from PIL import Image

IMAGE_FORMATS = {
    "image/jpeg": ("JPEG", ".jpg"),
    "image/jpg": ("JPEG", ".jpg"),
    "image/png": ("PNG", ".png"),
    "image/webp": ("WEBP", ".webp"),
}


def fit_dimensions(width: int, height: int, max_width: int, max_height: int) -> tuple[int, int]:
    """Scale (width, height) into the bounds, preserving aspect ratio. Never enlarges."""

    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image dimensions: {width}x{height}")
    scale = min(1.0, max_width / width, max_height / height)
    if scale >= 1.0:
        return width, height
    return max(1, round(width * scale)), max(1, round(height * scale))


def extension_for(output_format: str) -> str:
    return IMAGE_FORMATS.get(output_format, IMAGE_FORMATS["image/jpeg"])[1]


def encode_image(image: Image.Image, output_format: str, quality: float) -> bytes:
    """Encode ``image`` at ``quality`` (0-1). Lossless formats ignore quality."""

    pil_format = IMAGE_FORMATS.get(output_format, IMAGE_FORMATS["image/jpeg"])[0]
    if pil_format == "JPEG" and image.mode != "RGB":
        image = flatten(image)

    buffer = io.BytesIO()
    if pil_format == "PNG":
        image.save(buffer, format=pil_format, optimize=True)
    else:
        pil_quality = max(1, min(95, round(quality * 100)))
        image.save(buffer, format=pil_format, quality=pil_quality)
    return buffer.getvalue()


def flatten(image: Image.Image) -> Image.Image:
    """Composite transparent images onto white and return an RGB image."""

    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, "#ffffff")
        background.paste(rgba, mask=rgba.split()[-1])
        return background
    return image.convert("RGB")
