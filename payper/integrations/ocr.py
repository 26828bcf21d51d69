"""
Receipt OCR client.

Sends a receipt image to OCR.space and turns the recognised text into form
pre-fill values. The result is only a suggestion for the receipt form; it never
affects a transaction.
"""
import re
from decimal import Decimal, InvalidOperation
from typing import List, Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from payper.config import get_settings
from payper.core.exceptions import OcrError

logger = structlog.get_logger(__name__)

TOTAL_PATTERN = re.compile(r"(?:total|amount|sum)[:\s]*(?:R|ZAR)?\s*(\d+[.,]\d{2})", re.IGNORECASE)
DATE_PATTERN = re.compile(r"\d{1,2}[-/.]\d{1,2}[-/.]\d{2,4}")
ITEM_PATTERN = re.compile(r"(.+?)\s+(?:R|ZAR)?\s*(\d+[.,]\d{2})", re.IGNORECASE)


class LineItem(BaseModel):
    description: str
    amount: Decimal


class ReceiptScan(BaseModel):
    """Values recognised on a receipt."""

    merchant_name: Optional[str] = None
    amount: Optional[Decimal] = None
    date: Optional[str] = None
    line_items: List[LineItem] = Field(default_factory=list)
    raw_text: str = ""


def _parse_decimal(value: str) -> Optional[Decimal]:
    try:
        return Decimal(value.replace(",", "."))
    except InvalidOperation:
        return None


def extract_merchant_name(text: str) -> Optional[str]:
    """The merchant is usually printed on the first non-empty line."""
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return None


def extract_amount(text: str) -> Optional[Decimal]:
    match = TOTAL_PATTERN.search(text)
    return _parse_decimal(match.group(1)) if match else None


def extract_date(text: str) -> Optional[str]:
    match = DATE_PATTERN.search(text)
    return match.group(0) if match else None


def extract_line_items(text: str) -> List[LineItem]:
    """Lines that end in a price become line items."""
    items = []
    for line in text.splitlines():
        match = ITEM_PATTERN.search(line)
        if not match:
            continue
        amount = _parse_decimal(match.group(2))
        if amount is not None:
            items.append(LineItem(description=match.group(1).strip(), amount=amount))
    return items


def parse_receipt_text(text: str) -> ReceiptScan:
    """Build a ReceiptScan from raw OCR text."""
    return ReceiptScan(
        merchant_name=extract_merchant_name(text),
        amount=extract_amount(text),
        date=extract_date(text),
        line_items=extract_line_items(text),
        raw_text=text,
    )


class OcrClient:
    """OCR.space client for receipt images."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        settings = get_settings()
        self.api_url = api_url or settings.ocr_api_url
        self.api_key = api_key if api_key is not None else settings.ocr_api_key
        self.http_client = http_client
        self.timeout = timeout

    async def _post(self, files: dict, data: dict) -> httpx.Response:
        if self.http_client is not None:
            return await self.http_client.post(
                self.api_url, files=files, data=data, timeout=self.timeout
            )
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.api_url, files=files, data=data)

    async def scan(
        self, image: bytes, filename: str = "receipt.jpg", content_type: str = "image/jpeg"
    ) -> ReceiptScan:
        """
        Recognise a receipt image.

        Args:
            image: Image bytes
            filename: Original file name
            content_type: Image MIME type

        Returns:
            ReceiptScan: Pre-fill values and the raw text

        Raises:
            OcrError: If the service is unreachable or cannot read the image
        """
        if not image:
            raise OcrError("Receipt image is empty")

        data = {
            "apikey": self.api_key,
            "language": "eng",
            "isOverlayRequired": "false",
            "detectOrientation": "true",
            "scale": "true",
            "OCREngine": "2",
        }
        files = {"file": (filename, image, content_type)}

        logger.info("ocr_scan_started", filename=filename, size_bytes=len(image))

        try:
            response = await self._post(files, data)
        except httpx.TransportError as e:
            logger.error("ocr_transport_error", error=str(e))
            raise OcrError(f"OCR service unreachable: {e}") from e

        if response.status_code != 200:
            raise OcrError(f"OCR API error: {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            raise OcrError("OCR response is not JSON") from None

        if payload.get("OCRExitCode") != 1:
            message = payload.get("ErrorMessage") or "OCR processing failed"
            if isinstance(message, list):
                message = "; ".join(str(m) for m in message)
            raise OcrError(str(message))

        results = payload.get("ParsedResults") or []
        if not results:
            raise OcrError("OCR returned no results")

        scan = parse_receipt_text(results[0].get("ParsedText") or "")
        logger.info(
            "ocr_scan_completed",
            merchant_name=scan.merchant_name,
            amount=str(scan.amount) if scan.amount is not None else None,
            line_items=len(scan.line_items),
        )
        return scan
