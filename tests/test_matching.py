from datetime import datetime, timezone
from decimal import Decimal

import pytest

from gomflow.core.config import VerificationPolicy
from gomflow.models.payments import ExtractedPayment
from gomflow.services.matching import (
    AUTO_APPROVE,
    NEEDS_REVIEW,
    NO_MATCH,
    Matcher,
    reference_similarity,
)

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def _submission(sid, total="1000.00", reference="GOMF789123", status="pending_payment", **extra):
    return {
        "id": sid,
        "gom_id": "gom_1",
        "status": status,
        "currency": "PHP",
        "total_amount": total,
        "payment_reference": reference,
        "payment_method": "gcash",
        "created_at": "2025-01-15T08:00:00+00:00",
        **extra,
    }


def _reading(amount="1000.00", reference="GOMF789123", confidence=0.97, currency="PHP", method="gcash"):
    return ExtractedPayment(
        amount=Decimal(amount),
        currency=currency,
        reference_text=reference,
        method_guess=method,
        field_confidences={k: confidence for k in ("amount", "currency", "reference", "method", "timestamp")},
    )


@pytest.fixture()
def matcher():
    return Matcher(VerificationPolicy())


def test_exact_amount_and_reference_auto_approves(matcher):
    decision = matcher.decide([_reading()], [_submission("S1")], now=NOW)

    assert decision.outcome == AUTO_APPROVE
    assert decision.chosen.submission_id == "S1"
    assert decision.chosen.score >= 0.95
    assert decision.chosen.breakdown.amount_exact


def test_low_extraction_confidence_needs_review(matcher):
    decision = matcher.decide([_reading(confidence=0.80)], [_submission("S1")], now=NOW)

    assert decision.outcome == NEEDS_REVIEW
    assert decision.submission_ids == ["S1"]
    assert "low_extraction_confidence" in decision.reasons


def test_wrong_amount_never_auto_approves(matcher):
    decision = matcher.decide([_reading(amount="999.00")], [_submission("S1")], now=NOW)

    assert decision.outcome == NEEDS_REVIEW
    assert "amount_mismatch" in decision.reasons


def test_currency_mismatch_is_not_an_amount_match(matcher):
    reading = _reading(currency="MYR")

    assert not matcher.amount_matches(reading, _submission("S1"))


def test_equal_scores_route_both_to_review(matcher):
    pool = [
        _submission("S1", total="500.00", reference="PH-AAAA1111"),
        _submission("S2", total="500.00", reference="PH-BBBB2222"),
    ]
    reading = _reading(amount="500.00", reference=None)

    decision = matcher.decide([reading], pool, now=NOW)

    assert decision.outcome == NEEDS_REVIEW
    assert decision.ambiguous
    assert sorted(decision.submission_ids) == ["S1", "S2"]
    assert decision.error["error"] == "AMBIGUOUS_MATCH"


def test_nothing_above_minimum_is_no_match(matcher):
    reading = _reading(amount="42.00", reference="UNRELATED", method="maya")

    decision = matcher.decide([reading], [_submission("S1")], now=NOW)

    assert decision.outcome == NO_MATCH
    assert decision.submission_ids == []


def test_terminal_and_foreign_submissions_are_not_candidates(matcher):
    pool = [
        _submission("S1", status="confirmed"),
        _submission("S2", gom_id="gom_2"),
    ]

    assert matcher.match([_reading()], pool, gom_id="gom_1", now=NOW) == []


def test_reference_similarity_handles_ocr_noise():
    assert reference_similarity("GOMF789123", "gomf-789123") == 1.0
    assert reference_similarity("Ref No. GOMF789123", "GOMF789123") == 1.0
    assert reference_similarity("GOMF789128", "GOMF789123") > 0.8
    assert reference_similarity(None, "GOMF789123") == 0.0


def test_best_reading_per_submission_wins(matcher):
    weak = _reading(reference=None, confidence=0.6)
    strong = _reading()

    ranked = matcher.match([weak, strong], [_submission("S1")], now=NOW)

    assert len(ranked) == 1
    assert ranked[0].extracted.reference_text == "GOMF789123"
