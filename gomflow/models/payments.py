"""Extraction output models."""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import Field, computed_field, field_validator

from gomflow.models.base import GomflowModel


# Weights for folding per-field confidences into one overall figure.
# Amount and reference carry the match; method and timestamp only corroborate.
FIELD_WEIGHTS: Dict[str, float] = {
    "amount": 0.45,
    "currency": 0.15,
    "reference": 0.25,
    "method": 0.10,
    "timestamp": 0.05,
}


def overall_confidence(field_confidences: Dict[str, float]) -> float:
    """
    Weighted sum of clamped field confidences, rounded to 4 places.

    Missing fields contribute zero, so raising any single field's confidence
    never lowers the result.
    """
    total = 0.0
    for name, weight in FIELD_WEIGHTS.items():
        value = field_confidences.get(name)
        if value is None:
            continue
        total += weight * min(max(float(value), 0.0), 1.0)
    return round(total, 4)


class ExtractedPayment(GomflowModel):
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    reference_text: Optional[str] = None
    timestamp_guess: Optional[str] = None
    method_guess: Optional[str] = None
    sender_name: Optional[str] = None
    field_confidences: Dict[str, float] = Field(default_factory=dict)
    source: str = "vision"

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value

    @field_validator("amount")
    @classmethod
    def _quantize_amount(cls, value: Optional[Decimal]) -> Optional[Decimal]:
        if value is None:
            return None
        if value <= 0:
            raise ValueError("amount must be positive")
        return value.quantize(Decimal("0.01"))

    @computed_field  # type: ignore[misc]
    @property
    def overall_confidence(self) -> float:
        return overall_confidence(self.field_confidences)


class ExtractionResult(GomflowModel):
    candidates: List[ExtractedPayment] = Field(default_factory=list)
    engine_latency_ms: int = 0
    errors: List[str] = Field(default_factory=list)
    raw: Dict[str, Any] = Field(default_factory=dict)

    @property
    def best(self) -> Optional[ExtractedPayment]:
        if not self.candidates:
            return None
        return max(self.candidates, key=lambda c: c.overall_confidence)
