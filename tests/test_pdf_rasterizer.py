import io

import fitz
import pytest
from PIL import Image

from conftest import make_pdf, pdf_file
from invoice_upload.errors import PageOutOfRange, PdfLoadFailed, RenderFailed
from invoice_upload.models import UploadFile
from invoice_upload.services import pdf_rasterizer


def _open(data: bytes) -> Image.Image:
    return Image.open(io.BytesIO(data))


async def test_page_count():
    assert await pdf_rasterizer.page_count(pdf_file(pages=4)) == 4


async def test_corrupt_pdf_raises_load_failed():
    broken = UploadFile(filename="broken.pdf", content_type="application/pdf", data=b"not a pdf")
    with pytest.raises(PdfLoadFailed):
        await pdf_rasterizer.page_count(broken)


async def test_encrypted_pdf_raises_load_failed():
    document = fitz.open()
    document.new_page()
    data = document.tobytes(
        encryption=fitz.PDF_ENCRYPT_AES_256, owner_pw="owner", user_pw="secret"
    )
    document.close()
    locked = UploadFile(filename="locked.pdf", content_type="application/pdf", data=data)
    with pytest.raises(PdfLoadFailed):
        await pdf_rasterizer.render_page(locked)


async def test_render_page_fits_bounds_and_names_output():
    image = await pdf_rasterizer.render_page(pdf_file(pages=2), page_number=2)

    assert image.filename == "invoice_page2.jpg"
    assert image.content_type == "image/jpeg"
    assert image.page_number == 2
    assert image.width <= 1920 and image.height <= 1080
    decoded = _open(image.data)
    assert decoded.format == "JPEG"
    assert decoded.size == (image.width, image.height)


async def test_render_page_never_enlarges():
    small = UploadFile(
        filename="tiny.pdf", content_type="application/pdf", data=make_pdf(width=100, height=50)
    )
    image = await pdf_rasterizer.render_page(small, scale=1.0)
    assert (image.width, image.height) == (100, 50)


@pytest.mark.parametrize("page_number", [0, 3])
async def test_render_page_out_of_range(page_number):
    with pytest.raises(PageOutOfRange):
        await pdf_rasterizer.render_page(pdf_file(pages=2), page_number=page_number)


async def test_render_many_pages_caps_at_max_pages():
    outcomes = await pdf_rasterizer.render_many_pages(pdf_file(pages=5), max_pages=3)
    assert [outcome.page_number for outcome in outcomes] == [1, 2, 3]
    assert all(outcome.success and outcome.image for outcome in outcomes)


def _fail_on_pages(monkeypatch, failing: set[int]) -> None:
    real_render_page = pdf_rasterizer.render_page

    async def render_page(file, page_number=1, **kwargs):
        if page_number in failing:
            raise RenderFailed(f"page {page_number} is broken")
        return await real_render_page(file, page_number=page_number, **kwargs)

    monkeypatch.setattr(pdf_rasterizer, "render_page", render_page)


async def test_render_many_pages_tolerates_failing_pages(monkeypatch):
    _fail_on_pages(monkeypatch, {2})

    outcomes = await pdf_rasterizer.render_many_pages(pdf_file(pages=3), max_pages=3)

    assert [outcome.success for outcome in outcomes] == [True, False, True]
    assert outcomes[1].image is None
    assert outcomes[1].error == "page 2 is broken"
    assert outcomes[0].image and outcomes[2].image


async def test_render_many_pages_fails_when_every_page_fails(monkeypatch):
    _fail_on_pages(monkeypatch, {1, 2})

    with pytest.raises(RenderFailed):
        await pdf_rasterizer.render_many_pages(pdf_file(pages=2))


async def test_long_image_stacks_pages_with_gaps():
    result = await pdf_rasterizer.render_long_image(
        pdf_file(pages=3), max_pages=3, scale=1.0, page_spacing=20, separator_thickness=2
    )
    page_height = 842
    assert result.page_count == 3
    assert result.processed_pages == 3
    assert result.total_height == 3 * page_height + 2 * (20 + 2)
    assert result.image.filename == "invoice_long_3pages.jpg"
    assert _open(result.image.data).size == (595, result.total_height)


async def test_long_image_without_separator():
    result = await pdf_rasterizer.render_long_image(
        pdf_file(pages=2), scale=1.0, page_spacing=10, add_page_separator=False
    )
    assert result.total_height == 2 * 842 + 10


async def test_strategy_single_page():
    result = await pdf_rasterizer.select_strategy(pdf_file(pages=1))
    assert result.strategy == "single-page"
    assert result.processed_pages == 1
    assert result.selected_page == 1
    assert not result.is_long_image


async def test_strategy_long_image_within_limit():
    result = await pdf_rasterizer.select_strategy(pdf_file(pages=3), max_pages=3)
    assert result.strategy == "long-image-3-pages"
    assert result.page_count == 3
    assert result.processed_pages == 3
    assert result.is_long_image
    assert result.total_height > result.image.width


async def test_strategy_first_page_when_too_many_pages():
    result = await pdf_rasterizer.select_strategy(pdf_file(pages=5), max_pages=3)
    assert result.strategy == "first-page"
    assert result.page_count == 5
    assert result.processed_pages == 1
    assert result.selected_page == 1
    assert result.image.filename == "invoice_page1.jpg"
