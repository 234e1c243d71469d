import io
from decimal import Decimal

import pytest
import pytesseract
from PIL import Image

from gomflow.core.config import ExtractionSettings
from gomflow.services.errors import ExtractionError, InvalidInputError, TransientExternalError
from gomflow.services.extraction import ExtractionEngine, validate_image
from gomflow.services.llm_vision import VisionClient
from gomflow.services.ocr import OCR_CONFIG, OcrReader
from gomflow.services.payment_patterns import detect_method, read_payments_from_text

from conftest import FakeOcr, FakeVision, png_bytes, vision_payment

SETTINGS = ExtractionSettings(max_attempts=3, backoff_base_seconds=0, backoff_max_seconds=0)


def _engine(vision, ocr=None):
    return ExtractionEngine(SETTINGS, vision, ocr_reader=ocr, sleep=lambda _: None)


def test_rejects_bytes_that_are_not_an_image():
    with pytest.raises(InvalidInputError):
        validate_image(b"definitely not a png", SETTINGS)


def test_rejects_unsupported_format():
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8)).save(buffer, format="GIF")

    with pytest.raises(InvalidInputError) as exc:
        validate_image(buffer.getvalue(), SETTINGS)
    assert "GIF" in exc.value.detail


def test_rejects_oversized_image():
    settings = ExtractionSettings(max_image_bytes=10)

    with pytest.raises(InvalidInputError):
        validate_image(png_bytes(), settings)


def test_invalid_image_never_reaches_the_provider():
    vision = FakeVision()

    with pytest.raises(InvalidInputError):
        _engine(vision).extract(b"")
    assert vision.calls == []


def test_reads_payment_with_field_confidences():
    vision = FakeVision()
    vision.payments = [vision_payment()]

    result = _engine(vision).extract(png_bytes(), {"currency": "PHP"})

    best = result.best
    assert best.amount == Decimal("1000.00")
    assert best.currency == "PHP"
    assert best.reference_text == "GOMF789123"
    assert best.method_guess == "gcash"
    assert best.overall_confidence == pytest.approx(0.97)
    assert vision.calls[0]["content_type"] == "image/png"


def test_transient_provider_failures_are_retried():
    vision = FakeVision()
    vision.failures = 2
    vision.payments = [vision_payment()]

    result = _engine(vision).extract(png_bytes())

    assert len(vision.calls) == 3
    assert len(result.candidates) == 1


def test_transient_failures_past_budget_propagate():
    vision = FakeVision()
    vision.failures = 5

    with pytest.raises(TransientExternalError):
        _engine(vision).extract(png_bytes())
    assert len(vision.calls) == SETTINGS.max_attempts


def test_permanent_provider_rejection_is_not_retried():
    class Rejecting(FakeVision):
        def read_payment_screenshot(self, image_base64, content_type, context_hint=None):
            self.calls.append(content_type)
            raise ExtractionError("HTTP 400 from provider")

    vision = Rejecting()
    with pytest.raises(ExtractionError):
        _engine(vision).extract(png_bytes())
    assert len(vision.calls) == 1


def test_missing_currency_falls_back_to_hint_with_low_confidence():
    vision = FakeVision()
    payment = vision_payment()
    payment["currency"] = None
    vision.payments = [payment]

    best = _engine(vision).extract(png_bytes(), {"currency": "MYR"}).best

    assert best.currency == "MYR"
    assert best.field_confidences["currency"] <= 0.5


def test_raw_text_adds_pattern_readings():
    vision = FakeVision()
    vision.raw_text = "GCash\nSent ₱1,250.00\nRef No. 0123456789012"

    result = _engine(vision).extract(png_bytes())

    amounts = {c.amount for c in result.candidates}
    assert Decimal("1250.00") in amounts


def test_text_reader_handles_ringgit_and_thousands():
    readings = list(read_payments_from_text("Maybank2u transfer RM 1,000.00 successful", "MYR"))

    assert readings[0].amount == Decimal("1000.00")
    assert readings[0].currency == "MYR"
    assert detect_method("Maybank2u transfer") == "maybank2u"


RECEIPT_TEXT = "GCash\nSent via GCash\nAmount ₱1,000.00\nRef No. GOMF789123"


def test_ocr_alone_is_enough_without_vision():
    unconfigured = VisionClient(ExtractionSettings())
    ocr = FakeOcr(RECEIPT_TEXT)

    result = _engine(unconfigured, ocr).extract(png_bytes(), {"currency": "PHP"})

    best = result.best
    assert best.source == "ocr"
    assert best.amount == Decimal("1000.00")
    assert best.currency == "PHP"
    assert best.reference_text == "GOMF789123"
    assert best.method_guess == "gcash"
    assert result.raw["ocr_text"] == RECEIPT_TEXT


def test_ocr_and_vision_readings_are_merged():
    vision = FakeVision()
    vision.payments = [vision_payment()]
    ocr = FakeOcr(RECEIPT_TEXT)

    result = _engine(vision, ocr).extract(png_bytes())

    assert len(result.candidates) == 1
    assert result.best.source == "vision"
    assert ocr.calls == 1


def test_no_reader_available_is_an_extraction_error():
    with pytest.raises(ExtractionError):
        _engine(VisionClient(ExtractionSettings())).extract(png_bytes())


def test_ocr_reader_prepares_grayscale_image():
    seen = {}

    def image_to_string(image, **kwargs):
        seen["mode"] = image.mode
        seen.update(kwargs)
        return "  RM 85.50 Maybank2u  \n"

    buffer = io.BytesIO()
    Image.new("RGBA", (16, 16), (10, 20, 30, 128)).save(buffer, format="PNG")
    reader = OcrReader(SETTINGS, image_to_string=image_to_string)

    assert reader.read_text(buffer.getvalue()) == "RM 85.50 Maybank2u"
    assert seen["mode"] == "L"
    assert seen["lang"] == "eng"
    assert seen["config"] == OCR_CONFIG


def test_missing_tesseract_falls_back_to_vision():
    def image_to_string(image, **kwargs):
        raise pytesseract.TesseractNotFoundError()

    vision = FakeVision()
    vision.payments = [vision_payment()]
    reader = OcrReader(SETTINGS, image_to_string=image_to_string)
    engine = _engine(vision, reader)

    result = engine.extract(png_bytes())

    assert result.best.amount == Decimal("1000.00")
    assert result.errors and result.errors[0].startswith("ocr:")
    assert not reader.is_available
    assert engine.extract(png_bytes()).errors == []


def test_tesseract_failure_is_an_extraction_error():
    def image_to_string(image, **kwargs):
        raise RuntimeError("Tesseract process timeout")

    with pytest.raises(ExtractionError):
        OcrReader(SETTINGS, image_to_string=image_to_string).read_text(png_bytes())
