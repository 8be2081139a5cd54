"""
PDF rasterizer.

Renders PDF pages to raster images with PyMuPDF (fitz) and picks a
page-count-driven strategy so that every PDF ends up as one image for the
AI extraction step:

- 1 page: render that page ("single-page")
- 2..max_pages pages: stack the pages into one tall image ("long-image-N-pages")
- more than max_pages pages: render page 1 only ("first-page")

Rendering is CPU bound, so every public operation runs the work in a thread.
"""

from __future__ import annotations

import asyncio
import logging

import fitz  # PyMuPDF
from PIL import Image, ImageDraw

from .. import config
from ..errors import PageOutOfRange, PdfLoadFailed, RenderFailed
from ..models import (
    LongImageResult,
    PageOutcome,
    RenderedImage,
    StrategyResult,
    UploadFile,
)
from .imaging import encode_image, extension_for, fit_dimensions

logger = logging.getLogger(__name__)

__all__ = [
    "fit_dimensions",
    "page_count",
    "render_long_image",
    "render_many_pages",
    "render_page",
    "select_strategy",
]


def _open_document(file: UploadFile) -> fitz.Document:
    try:
        document = fitz.open(stream=file.data, filetype="pdf")
    except Exception as exc:
        logger.error(f"[PDF] Failed to open {file.filename}: {exc}")
        raise PdfLoadFailed(filename=file.filename) from exc

    if document.needs_pass:
        document.close()
        logger.error(f"[PDF] {file.filename} is password protected")
        raise PdfLoadFailed(filename=file.filename)
    if document.page_count == 0:
        document.close()
        logger.error(f"[PDF] {file.filename} has no pages")
        raise PdfLoadFailed(filename=file.filename)
    return document


def _rasterize(
    page: fitz.Page,
    scale: float,
    max_width: int,
    max_height: int | None,
) -> Image.Image:
    """Render ``page`` at ``scale``, shrunk (never enlarged) to fit the bounds."""

    width = max(1, round(page.rect.width * scale))
    height = max(1, round(page.rect.height * scale))
    fitted_width, _ = fit_dimensions(width, height, max_width, max_height or height)
    zoom = scale * (fitted_width / width)

    pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
    return Image.frombytes("RGB", (pix.width, pix.height), pix.samples)


def _page_count_sync(file: UploadFile) -> int:
    document = _open_document(file)
    try:
        return document.page_count
    finally:
        document.close()


def _render_page_sync(
    file: UploadFile,
    page_number: int,
    scale: float,
    max_width: int,
    max_height: int,
    output_format: str,
    quality: float,
) -> RenderedImage:
    document = _open_document(file)
    try:
        total = document.page_count
        if page_number < 1 or page_number > total:
            logger.error(
                f"[PDF] Page {page_number} out of range for {file.filename} ({total} pages)"
            )
            raise PageOutOfRange(
                f"Invalid page number {page_number}. PDF has {total} pages",
                page_number=page_number,
                page_count=total,
            )

        try:
            image = _rasterize(document[page_number - 1], scale, max_width, max_height)
            data = encode_image(image, output_format, quality)
        except Exception as exc:
            logger.error(f"[PDF] Rendering page {page_number} of {file.filename} failed: {exc}")
            raise RenderFailed(page_number=page_number) from exc
    finally:
        document.close()

    if not data:
        raise RenderFailed(page_number=page_number)

    logger.info(
        f"[PDF] Rendered page {page_number}/{total} of {file.filename}: "
        f"{image.width}x{image.height}px, {len(data)} bytes"
    )
    return RenderedImage(
        filename=f"{file.stem}_page{page_number}{extension_for(output_format)}",
        content_type=output_format,
        data=data,
        width=image.width,
        height=image.height,
        page_number=page_number,
    )


def _render_long_image_sync(
    file: UploadFile,
    max_pages: int,
    scale: float,
    max_width: int,
    page_spacing: int,
    add_page_separator: bool,
    separator_color: str,
    separator_thickness: int,
    output_format: str,
    quality: float,
) -> LongImageResult:
    document = _open_document(file)
    try:
        total = document.page_count
        pages_to_process = min(total, max_pages)
        if pages_to_process < 1:
            logger.error(f"[PDF] No pages of {file.filename} fit within max_pages={max_pages}")
            raise RenderFailed("No pages available to build a long image")

        logger.info(f"[PDF] Building long image from {pages_to_process}/{total} pages of {file.filename}")
        rendered: list[Image.Image] = []
        for index in range(pages_to_process):
            try:
                rendered.append(_rasterize(document[index], scale, max_width, None))
            except Exception as exc:
                logger.error(f"[PDF] Rendering page {index + 1} of {file.filename} failed: {exc}")
                raise RenderFailed(page_number=index + 1) from exc
    finally:
        document.close()

    separator_height = separator_thickness if add_page_separator else 0
    canvas_width = max(page.width for page in rendered)
    gap = page_spacing + separator_height
    canvas_height = sum(page.height for page in rendered) + (len(rendered) - 1) * gap

    canvas = Image.new("RGB", (canvas_width, canvas_height), "#ffffff")
    draw = ImageDraw.Draw(canvas)
    current_y = 0.0
    for index, page in enumerate(rendered):
        x = (canvas_width - page.width) // 2
        canvas.paste(page, (x, round(current_y)))
        current_y += page.height

        if index < len(rendered) - 1:
            current_y += page_spacing / 2
            if add_page_separator:
                top = round(current_y)
                draw.rectangle(
                    (0, top, canvas_width - 1, top + separator_thickness - 1),
                    fill=separator_color,
                )
                current_y += separator_thickness
            current_y += page_spacing / 2

    try:
        data = encode_image(canvas, output_format, quality)
    except Exception as exc:
        logger.error(f"[PDF] Encoding long image for {file.filename} failed: {exc}")
        raise RenderFailed() from exc

    logger.info(
        f"[PDF] Long image for {file.filename}: {canvas_width}x{canvas_height}px, "
        f"{len(rendered)} pages, {len(data)} bytes"
    )
    image = RenderedImage(
        filename=f"{file.stem}_long_{len(rendered)}pages{extension_for(output_format)}",
        content_type=output_format,
        data=data,
        width=canvas_width,
        height=canvas_height,
    )
    return LongImageResult(
        image=image,
        page_count=total,
        processed_pages=len(rendered),
        total_height=canvas_height,
    )


async def page_count(file: UploadFile) -> int:
    """Number of pages in the PDF. Raises PdfLoadFailed if it cannot be parsed."""

    return await asyncio.to_thread(_page_count_sync, file)


async def render_page(
    file: UploadFile,
    page_number: int = 1,
    scale: float = config.PDF_DEFAULT_SCALE,
    max_width: int = config.PDF_DEFAULT_MAX_WIDTH,
    max_height: int = config.PDF_DEFAULT_MAX_HEIGHT,
    output_format: str = config.PDF_DEFAULT_OUTPUT_FORMAT,
    quality: float = config.PDF_DEFAULT_QUALITY,
) -> RenderedImage:
    """Render exactly one page (1-based) to an encoded image."""

    return await asyncio.to_thread(
        _render_page_sync,
        file,
        page_number,
        scale,
        max_width,
        max_height,
        output_format,
        quality,
    )


async def render_many_pages(
    file: UploadFile,
    max_pages: int = config.PDF_MAX_BATCH_PAGES,
    scale: float = config.PDF_DEFAULT_SCALE,
    max_width: int = config.PDF_DEFAULT_MAX_WIDTH,
    max_height: int = config.PDF_DEFAULT_MAX_HEIGHT,
    output_format: str = config.PDF_DEFAULT_OUTPUT_FORMAT,
    quality: float = config.PDF_DEFAULT_QUALITY,
) -> list[PageOutcome]:
    """
    Render up to ``max_pages`` pages independently.

    A failing page is logged and recorded as an unsuccessful outcome; the
    batch only fails when no page renders.
    """

    total = await page_count(file)
    pages_to_render = min(total, max_pages)
    outcomes: list[PageOutcome] = []

    for page_number in range(1, pages_to_render + 1):
        try:
            image = await render_page(
                file,
                page_number=page_number,
                scale=scale,
                max_width=max_width,
                max_height=max_height,
                output_format=output_format,
                quality=quality,
            )
        except (PageOutOfRange, RenderFailed) as exc:
            logger.warning(f"[PDF] Skipping page {page_number} of {file.filename}: {exc.message}")
            outcomes.append(PageOutcome(page_number=page_number, success=False, error=exc.message))
            continue
        outcomes.append(PageOutcome(page_number=page_number, success=True, image=image))

    succeeded = sum(1 for outcome in outcomes if outcome.success)
    if succeeded == 0:
        logger.error(f"[PDF] No pages of {file.filename} could be rendered")
        raise RenderFailed("Failed to render any page of the PDF")

    logger.info(f"[PDF] Rendered {succeeded}/{pages_to_render} pages of {file.filename}")
    return outcomes


async def render_long_image(
    file: UploadFile,
    max_pages: int = config.PDF_MAX_READ_PAGES,
    scale: float = config.PDF_DEFAULT_SCALE,
    max_width: int = config.PDF_DEFAULT_MAX_WIDTH,
    page_spacing: int = config.PDF_DEFAULT_PAGE_SPACING,
    add_page_separator: bool = config.PDF_DEFAULT_ADD_PAGE_SEPARATOR,
    separator_color: str = config.PDF_DEFAULT_SEPARATOR_COLOR,
    separator_thickness: int = config.PDF_DEFAULT_SEPARATOR_THICKNESS,
    output_format: str = config.PDF_DEFAULT_OUTPUT_FORMAT,
    quality: float = config.PDF_DEFAULT_QUALITY,
) -> LongImageResult:
    """Stack up to ``max_pages`` pages vertically, centred, into one tall image."""

    return await asyncio.to_thread(
        _render_long_image_sync,
        file,
        max_pages,
        scale,
        max_width,
        page_spacing,
        add_page_separator,
        separator_color,
        separator_thickness,
        output_format,
        quality,
    )


async def select_strategy(
    file: UploadFile,
    max_pages: int = config.PDF_MAX_READ_PAGES,
    scale: float = config.PDF_DEFAULT_SCALE,
    max_width: int = config.PDF_DEFAULT_MAX_WIDTH,
    max_height: int = config.PDF_DEFAULT_MAX_HEIGHT,
    output_format: str = config.PDF_DEFAULT_OUTPUT_FORMAT,
    quality: float = config.PDF_DEFAULT_QUALITY,
    page_spacing: int = config.PDF_DEFAULT_PAGE_SPACING,
    add_page_separator: bool = config.PDF_DEFAULT_ADD_PAGE_SEPARATOR,
    separator_color: str = config.PDF_DEFAULT_SEPARATOR_COLOR,
    separator_thickness: int = config.PDF_DEFAULT_SEPARATOR_THICKNESS,
) -> StrategyResult:
    """Turn a PDF into exactly one image, choosing the strategy from its page count."""

    total = await page_count(file)
    logger.info(f"[PDF] {file.filename} has {total} pages (max_pages={max_pages})")

    if 1 < total <= max_pages:
        long_image = await render_long_image(
            file,
            max_pages=max_pages,
            scale=scale,
            max_width=max_width,
            page_spacing=page_spacing,
            add_page_separator=add_page_separator,
            separator_color=separator_color,
            separator_thickness=separator_thickness,
            output_format=output_format,
            quality=quality,
        )
        strategy = f"long-image-{long_image.processed_pages}-pages"
        logger.info(f"[PDF] Strategy for {file.filename}: {strategy}")
        return StrategyResult(
            image=long_image.image,
            strategy=strategy,
            page_count=total,
            processed_pages=long_image.processed_pages,
            total_height=long_image.total_height,
        )

    # One page, or too many pages: only page 1 is rendered
    strategy = "single-page" if total == 1 else "first-page"
    image = await render_page(
        file,
        page_number=1,
        scale=scale,
        max_width=max_width,
        max_height=max_height,
        output_format=output_format,
        quality=quality,
    )
    if strategy == "first-page":
        logger.info(
            f"[PDF] {file.filename} exceeds {max_pages} pages; using page 1 of {total} only"
        )
    logger.info(f"[PDF] Strategy for {file.filename}: {strategy}")
    return StrategyResult(
        image=image,
        strategy=strategy,
        page_count=total,
        processed_pages=1,
        selected_page=1,
    )
