"""
AI extraction: OpenAI vision provider plus response normalization.

The provider reads the invoice image either from a pre-signed archival URL
or from a transient file uploaded to OpenAI, and returns the raw JSON payload.
``normalize_extraction`` turns that payload into ``ExtractedInvoiceData``;
``validate_extraction`` reports missing or inconsistent totals.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date, datetime
from typing import Any, Protocol

import dateparser
from openai import AsyncOpenAI, OpenAIError

from .. import config
from ..errors import ExtractionFailed, InvalidExtractionFormat
from ..models import (
    ExtractedInvoiceData,
    ExtractionIssue,
    ExtractionValidation,
    LineItem,
    UploadFile,
)
from .http import redact_url

logger = logging.getLogger(__name__)

CALCULATION_TOLERANCE = 0.01

SYSTEM_PROMPT = """You are an expert invoice data extraction engine. Extract structured data from the invoice image.

Return STRICT JSON only with this exact schema:
{
  "invoice_number": string | null,
  "supplier_name": string | null,
  "supplier_address": string | null,
  "supplier_tax_id": string | null,
  "subtotal": number | null,
  "tax_amount": number | null,
  "tax_rate": number | null,
  "total_amount": number | null,
  "currency": string | null,
  "invoice_date": string | null,
  "due_date": string | null,
  "line_items": [
    {"description": string, "quantity": number | null, "unit_price": number | null, "total_price": number | null}
  ]
}

Field rules:
- Do not invent values. Use null when a value is not visible.
- Monetary values are plain numbers without currency symbols.
- Dates use YYYY-MM-DD.
- Currency is an ISO 4217 code.
- Return raw JSON only. No markdown, no comments, no extra keys.
"""

USER_PROMPT = (
    "Extract all relevant data from this invoice image. Pay special attention to: "
    "invoice number and date, supplier name, address and tax ID, tax calculations and "
    "total amounts, and the payment due date."
)

# Accept the camelCase keys older prompts produced as well
_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "invoice_number": ("invoice_number", "invoiceNumber"),
    "supplier_name": ("supplier_name", "supplierName", "vendor_name"),
    "supplier_address": ("supplier_address", "supplierAddress"),
    "supplier_tax_id": ("supplier_tax_id", "supplierTaxId"),
    "subtotal": ("subtotal",),
    "tax_amount": ("tax_amount", "taxAmount"),
    "tax_rate": ("tax_rate", "taxRate"),
    "total_amount": ("total_amount", "totalAmount"),
    "currency": ("currency",),
    "invoice_date": ("invoice_date", "invoiceDate"),
    "due_date": ("due_date", "dueDate"),
    "line_items": ("line_items", "lineItems"),
}

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_NON_NUMERIC = re.compile(r"[^0-9.\-]")


class ExtractionProvider(Protocol):
    async def upload_transient(self, file: UploadFile) -> str: ...

    async def extract(self, image_url: str | None = None, file_id: str | None = None) -> dict[str, Any]: ...

    async def delete_transient(self, file_id: str) -> None: ...


class OpenAIExtractionProvider:
    """Vision extraction through the OpenAI Responses API."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str = config.OPENAI_VISION_MODEL,
        max_tokens: int = config.OPENAI_MAX_TOKENS,
        temperature: float = config.OPENAI_TEMPERATURE,
    ) -> None:
        self._client = client
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def upload_transient(self, file: UploadFile) -> str:
        try:
            uploaded = await self._client.files.create(
                file=(file.filename, file.data, file.content_type),
                purpose="vision",
            )
        except OpenAIError as exc:
            logger.error(f"[AI] Failed to upload {file.filename} to OpenAI: {exc}")
            raise ExtractionFailed(filename=file.filename) from exc

        logger.info(f"[AI] Uploaded {file.filename} as transient file {uploaded.id}")
        return uploaded.id

    async def delete_transient(self, file_id: str) -> None:
        try:
            await self._client.files.delete(file_id)
        except OpenAIError as exc:
            logger.error(f"[AI] Failed to delete transient file {file_id}: {exc}")
            raise ExtractionFailed("Failed to clean up temporary AI file", file_id=file_id) from exc
        logger.info(f"[AI] Deleted transient file {file_id}")

    async def extract(self, image_url: str | None = None, file_id: str | None = None) -> dict[str, Any]:
        """Run the vision model on one image and return the parsed JSON payload."""

        if bool(image_url) == bool(file_id):
            raise ValueError("Provide exactly one of image_url or file_id")

        image: dict[str, Any] = {"type": "input_image", "detail": "high"}
        if image_url:
            image["image_url"] = image_url
            source = redact_url(image_url)
        else:
            image["file_id"] = file_id
            source = f"file {file_id}"

        logger.info(f"[AI] Extracting invoice data from {source} with {self.model}")
        try:
            response = await self._client.responses.create(
                model=self.model,
                instructions=SYSTEM_PROMPT,
                input=[
                    {
                        "role": "user",
                        "content": [{"type": "input_text", "text": USER_PROMPT}, image],
                    }
                ],
                max_output_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except OpenAIError as exc:
            logger.error(f"[AI] Extraction request for {source} failed: {exc}")
            raise ExtractionFailed(source=source) from exc

        payload = parse_extraction_payload(response.output_text or "")
        logger.info(
            f"[AI] Extraction from {source} completed: "
            f"invoice_number={payload.get('invoice_number')!r}, total={payload.get('total_amount')!r}"
        )
        return payload


def _strip_markdown_fences(text: str) -> str:
    if not text.startswith("```"):
        return text
    lines = text.splitlines()
    if lines and lines[0].startswith("```"):
        lines = lines[1:]
    if lines and lines[-1].strip().startswith("```"):
        lines = lines[:-1]
    return "\n".join(lines).strip()


def _preview(text: str, limit: int = 300) -> str:
    compact = text.replace("\r", "\\r").replace("\n", "\\n").strip()
    return compact if len(compact) <= limit else compact[:limit] + "...(truncated)"


def parse_extraction_payload(raw_output: str) -> dict[str, Any]:
    """Parse model output into a dict, tolerating code fences and surrounding prose."""

    if not raw_output.strip():
        logger.error("[AI] Model returned an empty response")
        raise InvalidExtractionFormat()

    cleaned = _strip_markdown_fences(raw_output.strip())
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end < start:
            logger.error(f"[AI] No JSON object in model output: '{_preview(raw_output)}'")
            raise InvalidExtractionFormat() from None
        try:
            parsed = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError as exc:
            logger.error(f"[AI] Invalid JSON in model output: '{_preview(raw_output)}'")
            raise InvalidExtractionFormat() from exc

    if not isinstance(parsed, dict):
        logger.error(f"[AI] Top-level JSON is not an object: '{_preview(raw_output)}'")
        raise InvalidExtractionFormat()
    return parsed


def normalize_string(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def normalize_number(value: Any) -> float | None:
    """Non-negative number rounded to 2dp, or None."""

    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(_NON_NUMERIC.sub("", value))
        except ValueError:
            return None
    else:
        return None
    if number != number or number < 0:  # NaN or negative
        return None
    return round(number, 2)


def parse_date(value: Any) -> date | None:
    """ISO dates directly, anything else through dateparser (day-first)."""

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = normalize_string(value)
    if text is None:
        return None
    if _ISO_DATE.match(text):
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            return None
    parsed = dateparser.parse(text, settings={"DATE_ORDER": "DMY", "PREFER_DAY_OF_MONTH": "first"})
    return parsed.date() if parsed else None


def _field(payload: dict[str, Any], name: str) -> Any:
    for key in _FIELD_ALIASES[name]:
        if payload.get(key) is not None:
            return payload[key]
    return None


def _normalize_line_items(value: Any) -> list[LineItem]:
    if not isinstance(value, list):
        return []
    items = []
    for raw in value:
        if not isinstance(raw, dict):
            continue
        description = normalize_string(raw.get("description"))
        if description is None:
            continue
        items.append(
            LineItem(
                description=description,
                quantity=normalize_number(raw.get("quantity")),
                unit_price=normalize_number(raw.get("unit_price", raw.get("unitPrice"))),
                total_price=normalize_number(
                    raw.get("total_price", raw.get("totalPrice", raw.get("amount")))
                ),
                tax_rate=normalize_number(raw.get("tax_rate", raw.get("taxRate"))),
            )
        )
    return items


def normalize_extraction(
    payload: dict[str, Any], default_currency: str = config.DEFAULT_CURRENCY
) -> ExtractedInvoiceData:
    """
    Build ``ExtractedInvoiceData`` from a raw payload.

    Values that cannot be read (negative or non-numeric amounts, unparseable
    dates, blank strings) are dropped rather than rejected.
    """

    if not isinstance(payload, dict):
        raise InvalidExtractionFormat()

    currency = normalize_string(_field(payload, "currency"))
    return ExtractedInvoiceData(
        invoice_number=normalize_string(_field(payload, "invoice_number")),
        supplier_name=normalize_string(_field(payload, "supplier_name")),
        supplier_address=normalize_string(_field(payload, "supplier_address")),
        supplier_tax_id=normalize_string(_field(payload, "supplier_tax_id")),
        subtotal=normalize_number(_field(payload, "subtotal")),
        tax_amount=normalize_number(_field(payload, "tax_amount")),
        tax_rate=normalize_number(_field(payload, "tax_rate")),
        total_amount=normalize_number(_field(payload, "total_amount")),
        currency=currency.upper() if currency else default_currency,
        invoice_date=parse_date(_field(payload, "invoice_date")),
        due_date=parse_date(_field(payload, "due_date")),
        line_items=_normalize_line_items(_field(payload, "line_items")),
        raw_extraction=payload,
    )


def validate_extraction(data: ExtractedInvoiceData) -> ExtractionValidation:
    errors: list[ExtractionIssue] = []
    warnings: list[ExtractionIssue] = []

    if not data.total_amount:
        errors.append(
            ExtractionIssue(field="total_amount", code="MISSING_TOTAL", message="Total amount is required")
        )

    if not data.supplier_name:
        warnings.append(
            ExtractionIssue(field="supplier_name", code="MISSING_SUPPLIER", message="Supplier name is missing")
        )

    if data.subtotal and data.tax_amount and data.total_amount:
        difference = abs(data.subtotal + data.tax_amount - data.total_amount)
        if difference > CALCULATION_TOLERANCE:
            errors.append(
                ExtractionIssue(
                    field="total_amount",
                    code="CALCULATION_ERROR",
                    message="Total amount doesn't match subtotal + tax",
                )
            )

    return ExtractionValidation(is_valid=not errors, errors=errors, warnings=warnings)
