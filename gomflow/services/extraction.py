"""
Extraction Engine: payment screenshot -> confidence-scored payment readings.

Two readers look at each screenshot: a Tesseract OCR pass whose text goes
through the payment-app patterns, and the vision model. Their readings are
merged and deduplicated by (amount, currency).

Input validation happens before any provider call and is never retried.
Provider calls are retried with exponential backoff only for transient
failures; when the budget runs out the transient error propagates so the
reconciliation queue can schedule its own retry.
"""
from __future__ import annotations

import base64
import io
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from PIL import Image, UnidentifiedImageError
from pydantic import ValidationError

from gomflow.core.config import ExtractionSettings
from gomflow.models.payments import ExtractedPayment, ExtractionResult
from gomflow.services.errors import ExtractionError, InvalidInputError, TransientExternalError
from gomflow.services.ocr import OcrReader
from gomflow.services.payment_patterns import normalize_method, read_payments_from_text
from gomflow.services.retry import call_with_backoff

logger = logging.getLogger(__name__)


FORMAT_CONTENT_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
}


def validate_image(image_bytes: bytes, settings: ExtractionSettings) -> str:
    """Return the image's content type or raise ``InvalidInputError``."""
    if not image_bytes:
        raise InvalidInputError("empty image", field="file")
    if len(image_bytes) > settings.max_image_bytes:
        raise InvalidInputError(
            f"image is larger than the {settings.max_image_bytes}-byte limit",
            field="file",
        )
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            image.verify()
            image_format = (image.format or "").upper()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise InvalidInputError(f"not a readable image: {exc}", field="file") from exc
    if image_format not in settings.allowed_formats:
        raise InvalidInputError(
            f"unsupported image format {image_format or 'unknown'}; "
            f"allowed: {', '.join(settings.allowed_formats)}",
            field="file",
        )
    return FORMAT_CONTENT_TYPES.get(image_format, f"image/{image_format.lower()}")


class ExtractionEngine:
    def __init__(
        self,
        settings: ExtractionSettings,
        vision_client,
        ocr_reader: Optional[OcrReader] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.settings = settings
        self.vision = vision_client
        self.ocr = ocr_reader
        self.sleep = sleep or time.sleep

    def extract(self, image_bytes: bytes, context_hint: Optional[Dict[str, Any]] = None) -> ExtractionResult:
        """
        Run the OCR pass and the vision model, then merge their readings.

        Either source alone is enough. ``ExtractionError`` is raised only when
        neither could look at the image.
        """
        started = time.monotonic()
        content_type = validate_image(image_bytes, self.settings)
        hint = context_hint or {}
        errors: List[str] = []

        ocr_text: Optional[str] = None
        if self.ocr is not None and self.ocr.is_available:
            try:
                ocr_text = self.ocr.read_text(image_bytes)
            except ExtractionError as exc:
                logger.warning("OCR pass skipped: %s", exc.detail)
                errors.append(f"ocr: {exc.detail}")

        raw: Dict[str, Any] = {}
        if self.vision.is_available:
            raw = call_with_backoff(
                self.vision.read_payment_screenshot,
                base64.b64encode(image_bytes).decode("ascii"),
                content_type,
                hint,
                max_attempts=self.settings.max_attempts,
                base_delay=self.settings.backoff_base_seconds,
                max_delay=self.settings.backoff_max_seconds,
                exceptions=(TransientExternalError,),
                sleep=self.sleep,
            )
        elif ocr_text is None:
            raise ExtractionError("no extraction provider available: vision is not configured and OCR did not run")

        candidates = self._parse_vision_payments(raw, hint, errors)
        candidates.extend(read_payments_from_text(raw.get("raw_text") or "", hint.get("currency")))
        candidates.extend(
            reading.model_copy(update={"source": "ocr"})
            for reading in read_payments_from_text(ocr_text or "", hint.get("currency"))
        )
        candidates = _dedupe(candidates)
        candidates.sort(key=lambda c: c.overall_confidence, reverse=True)

        latency_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Extracted %d payment candidate(s) in %dms (%d parse errors)",
            len(candidates),
            latency_ms,
            len(errors),
        )
        return ExtractionResult(
            candidates=candidates,
            engine_latency_ms=latency_ms,
            errors=errors,
            raw={
                "provider": raw.get("provider"),
                "model": raw.get("model"),
                "notes": raw.get("notes"),
                "raw_text": raw.get("raw_text"),
                "ocr_text": ocr_text,
            },
        )

    def _parse_vision_payments(
        self, raw: Dict[str, Any], hint: Dict[str, Any], errors: List[str]
    ) -> List[ExtractedPayment]:
        candidates: List[ExtractedPayment] = []
        for index, item in enumerate(raw.get("payments") or []):
            if not isinstance(item, dict):
                errors.append(f"payments[{index}]: not an object")
                continue
            confidences = item.get("confidence") or {}
            if not isinstance(confidences, dict):
                confidences = {}
            amount = _to_decimal(item.get("amount"))
            currency = item.get("currency") or hint.get("currency")
            field_confidences = {
                name: float(confidences.get(name) or 0.0)
                for name in ("amount", "currency", "reference", "method", "timestamp")
            }
            if amount is None:
                field_confidences["amount"] = 0.0
            if not item.get("currency"):
                # Currency came from the hint, not the screenshot.
                field_confidences["currency"] = min(field_confidences["currency"], 0.5) if currency else 0.0
            try:
                candidates.append(
                    ExtractedPayment(
                        amount=amount,
                        currency=currency,
                        reference_text=item.get("reference") or None,
                        timestamp_guess=item.get("timestamp") or None,
                        method_guess=normalize_method(item.get("method")),
                        sender_name=item.get("sender_name") or None,
                        field_confidences=field_confidences,
                        source="vision",
                    )
                )
            except (ValidationError, TypeError, ValueError) as exc:
                errors.append(f"payments[{index}]: {exc}")
        return candidates


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value).replace(",", "").strip())
    except InvalidOperation:
        return None
    return amount if amount > 0 else None


def _dedupe(candidates: List[ExtractedPayment]) -> List[ExtractedPayment]:
    """Keep the most confident reading per (amount, currency)."""
    best: Dict[tuple, ExtractedPayment] = {}
    unkeyed: List[ExtractedPayment] = []
    for candidate in candidates:
        if candidate.amount is None:
            unkeyed.append(candidate)
            continue
        key = (candidate.amount, candidate.currency)
        current = best.get(key)
        if current is None or candidate.overall_confidence > current.overall_confidence:
            if current is not None and not candidate.reference_text and current.reference_text:
                candidate = candidate.model_copy(update={"reference_text": current.reference_text})
            best[key] = candidate
    return list(best.values()) + unkeyed
