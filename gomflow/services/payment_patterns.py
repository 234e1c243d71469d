"""
Payment app patterns for the Philippines and Malaysia.

Reads free text transcribed from a screenshot (the Tesseract OCR pass or the
vision provider's transcript) and pulls out currency-tagged amounts,
reference numbers and the payment app.
"""
from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

from gomflow.models.payments import ExtractedPayment


PAYMENT_PATTERNS: Dict[str, Dict[str, Dict[str, List[str]]]] = {
    "PH": {
        "gcash": {"keywords": ["gcash", "g-cash", "globe cash"]},
        "maya": {"keywords": ["paymaya", "pay maya", "maya"]},
        "bpi": {"keywords": ["bpi", "bank of the philippine islands"]},
        "bdo": {"keywords": ["bdo", "banco de oro"]},
        "unionbank": {"keywords": ["unionbank", "union bank"]},
    },
    "MY": {
        "maybank2u": {"keywords": ["maybank2u", "maybank"]},
        "cimb": {"keywords": ["cimb clicks", "cimb"]},
        "tng": {"keywords": ["touch n go", "touch 'n go", "touchngo", "tng"]},
        "boost": {"keywords": ["boost"]},
        "grabpay": {"keywords": ["grabpay", "grab pay"]},
    },
}

COUNTRY_CURRENCY = {"PH": "PHP", "MY": "MYR"}

# Gateway-hosted checkouts normalize into the same families as manual apps.
METHOD_ALIASES = {
    "paymaya": "maya",
    "maybank": "maybank2u",
    "touchngo": "tng",
    "touch n go": "tng",
    "touch 'n go": "tng",
    "gcash": "gcash",
}

_AMOUNT_RE = re.compile(
    r"(?P<symbol>₱|PHP|Php|RM|MYR)\s?(?P<amount>\d{1,3}(?:,\d{3})+(?:\.\d{2})?|\d+(?:\.\d{2})?)"
)
_REFERENCE_RE = re.compile(
    r"(?:ref(?:erence)?|transaction|txn)\s*(?:no\.?|number|id|#)?\s*[:#]?\s*(?P<ref>[A-Z0-9][A-Z0-9-]{5,})",
    re.IGNORECASE,
)
_SYMBOL_CURRENCY = {"₱": "PHP", "PHP": "PHP", "Php": "PHP", "RM": "MYR", "MYR": "MYR"}


def normalize_method(value: Optional[str]) -> Optional[str]:
    """Map a free-form payment app name onto a known method family."""
    if not value:
        return None
    text = value.strip().lower()
    if text in METHOD_ALIASES:
        return METHOD_ALIASES[text]
    for methods in PAYMENT_PATTERNS.values():
        for method, family in methods.items():
            if text == method or any(keyword in text for keyword in family["keywords"]):
                return method
    return text


def detect_method(text: str) -> Optional[str]:
    lowered = text.lower()
    for methods in PAYMENT_PATTERNS.values():
        for method, family in methods.items():
            for keyword in family["keywords"]:
                if re.search(rf"(?<![a-z]){re.escape(keyword)}(?![a-z])", lowered):
                    return method
    return None


def find_references(text: str) -> List[str]:
    return [match.group("ref").upper() for match in _REFERENCE_RE.finditer(text or "")]


def read_payments_from_text(text: str, expected_currency: Optional[str] = None) -> List[ExtractedPayment]:
    """Candidates from currency-tagged amounts in transcribed screenshot text."""
    if not text:
        return []
    method = detect_method(text)
    references = find_references(text)
    candidates: List[ExtractedPayment] = []
    seen = set()
    for match in _AMOUNT_RE.finditer(text):
        try:
            amount = Decimal(match.group("amount").replace(",", ""))
        except InvalidOperation:
            continue
        if amount <= 0:
            continue
        currency = _SYMBOL_CURRENCY.get(match.group("symbol"), expected_currency)
        key = (amount, currency)
        if key in seen:
            continue
        seen.add(key)
        confidences = {"amount": 0.7, "currency": 0.9 if currency else 0.0}
        if references:
            confidences["reference"] = 0.6
        if method:
            confidences["method"] = 0.8
        candidates.append(
            ExtractedPayment(
                amount=amount,
                currency=currency,
                reference_text=references[0] if references else None,
                method_guess=method,
                field_confidences=confidences,
                source="text_pattern",
            )
        )
    return candidates
