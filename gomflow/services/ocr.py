"""Tesseract OCR pass over payment screenshots (pytesseract)."""
from __future__ import annotations

import io
import logging
from typing import Callable, Optional

import pytesseract
from PIL import Image, ImageEnhance

from gomflow.core.config import ExtractionSettings
from gomflow.services.errors import ExtractionError

logger = logging.getLogger(__name__)

# Block-of-text layout suits app receipts: one column, mixed sizes.
OCR_CONFIG = r"--oem 3 --psm 6"


def prepare_for_ocr(image: Image.Image) -> Image.Image:
    """Flatten transparency onto white, then grayscale with extra contrast."""
    if image.mode in ("RGBA", "LA", "P"):
        if image.mode == "P":
            image = image.convert("RGBA")
        background = Image.new("RGB", image.size, (255, 255, 255))
        background.paste(image, mask=image.split()[-1])
        image = background
    gray = image.convert("L") if image.mode != "L" else image
    return ImageEnhance.Contrast(gray).enhance(1.5)


class OcrReader:
    def __init__(
        self,
        settings: ExtractionSettings,
        image_to_string: Optional[Callable[..., str]] = None,
    ) -> None:
        self.settings = settings
        if settings.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = settings.tesseract_cmd
        self.image_to_string = image_to_string or pytesseract.image_to_string
        self._binary_missing = False

    @property
    def is_available(self) -> bool:
        return self.settings.ocr_enabled and not self._binary_missing

    def read_text(self, image_bytes: bytes) -> str:
        """
        Transcribe a validated screenshot.

        Raises ``ExtractionError`` when Tesseract is missing, fails or times
        out. A missing binary also marks the reader unavailable so later
        screenshots skip it.
        """
        with Image.open(io.BytesIO(image_bytes)) as image:
            image.load()
            prepared = prepare_for_ocr(image)
        try:
            text = self.image_to_string(
                prepared,
                lang=self.settings.ocr_languages,
                config=OCR_CONFIG,
                timeout=self.settings.ocr_timeout_seconds,
            )
        except pytesseract.TesseractNotFoundError as exc:
            self._binary_missing = True
            logger.warning("Tesseract binary not found; OCR disabled until restart")
            raise ExtractionError("tesseract is not installed or not on PATH") from exc
        except RuntimeError as exc:
            # TesseractError and the process timeout are both RuntimeErrors.
            raise ExtractionError(f"tesseract failed: {exc}") from exc
        text = (text or "").strip()
        logger.info("OCR read %d characters", len(text))
        return text
