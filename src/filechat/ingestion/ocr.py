"""Tesseract OCR wrapper used for scanned PDF pages."""

from __future__ import annotations

import io
import logging
from typing import Protocol

import pytesseract
from PIL import Image

from filechat.errors import OcrFailed

LOGGER = logging.getLogger(__name__)


class OcrEngine(Protocol):
    def ocr(self, image_bytes: bytes, lang: str, dpi: int) -> str: ...


class TesseractOcr:
    """Run Tesseract on rendered page images through pytesseract."""

    def __init__(self, tesseract_cmd: str | None = None) -> None:
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    @property
    def available(self) -> bool:
        try:
            pytesseract.get_tesseract_version()
        except (pytesseract.TesseractNotFoundError, OSError):
            return False
        return True

    def ocr(self, image_bytes: bytes, lang: str = "eng", dpi: int = 300) -> str:
        try:
            with Image.open(io.BytesIO(image_bytes)) as image:
                return pytesseract.image_to_string(image, lang=lang, config=f"--dpi {dpi}")
        except pytesseract.TesseractNotFoundError as exc:
            raise OcrFailed("tesseract binary not found") from exc
        except (pytesseract.TesseractError, OSError) as exc:
            raise OcrFailed(f"tesseract failed: {exc}") from exc
