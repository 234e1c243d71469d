"""
Matcher: extracted payment readings -> ranked candidate submissions.

Score components (weights from ``VerificationPolicy.weights``):
- Amount: full weight only for same currency and |diff| <= tolerance
- Reference: similarity of the read reference to the submission's
  payment_reference, counted only above the similarity threshold
- Method: payment app family matches the submission's method
- Recency: linear decay across the lookback window

The pool is always scoped to one GOM; cross-GOM submissions are dropped
before scoring.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from difflib import SequenceMatcher
from typing import Any, Dict, List, Optional, Sequence

from gomflow.core.config import VerificationPolicy
from gomflow.models.payments import ExtractedPayment
from gomflow.services.errors import AmbiguousMatchError
from gomflow.services.payment_patterns import normalize_method


MATCHABLE_STATES = {"pending_payment", "under_review"}

AUTO_APPROVE = "auto_approve"
NEEDS_REVIEW = "needs_review"
NO_MATCH = "no_match"


def normalize_reference(value: Optional[str]) -> str:
    return re.sub(r"[^A-Za-z0-9]", "", (value or "").upper())


def reference_similarity(read: Optional[str], expected: Optional[str]) -> float:
    """
    Similarity between a reference read off a screenshot and the submission's
    payment reference.

    Examples:
        "gomf-789123" vs "GOMF789123" -> 1.0
        "Ref GOMF789123 paid" vs "GOMF789123" -> 1.0
        "GOMF789124" vs "GOMF789123" -> 0.9
    """
    clean_read = normalize_reference(read)
    clean_expected = normalize_reference(expected)
    if not clean_read or not clean_expected:
        return 0.0
    if clean_read == clean_expected:
        return 1.0
    # System references are unique, so finding one whole inside the text is decisive.
    if len(clean_expected) >= 6 and clean_expected in clean_read:
        return 1.0
    if clean_read in clean_expected:
        return len(clean_read) / len(clean_expected) * 0.9
    return round(SequenceMatcher(None, clean_read, clean_expected).ratio(), 4)


@dataclass
class ScoreBreakdown:
    """Detailed breakdown of match score components."""
    amount_score: float = 0.0
    reference_score: float = 0.0
    method_score: float = 0.0
    recency_score: float = 0.0

    amount_detail: str = ""
    reference_detail: str = ""
    method_detail: str = ""
    recency_detail: str = ""

    amount_exact: bool = False
    currency_match: bool = False

    @property
    def total_score(self) -> float:
        return round(
            min(1.0, self.amount_score + self.reference_score + self.method_score + self.recency_score),
            4,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_score": self.total_score,
            "amount": {"score": round(self.amount_score, 4), "detail": self.amount_detail},
            "reference": {"score": round(self.reference_score, 4), "detail": self.reference_detail},
            "method": {"score": round(self.method_score, 4), "detail": self.method_detail},
            "recency": {"score": round(self.recency_score, 4), "detail": self.recency_detail},
            "amount_exact": self.amount_exact,
            "currency_match": self.currency_match,
        }


@dataclass
class MatchCandidate:
    extracted: ExtractedPayment
    submission: Dict[str, Any]
    breakdown: ScoreBreakdown

    @property
    def score(self) -> float:
        return self.breakdown.total_score

    @property
    def submission_id(self) -> str:
        return str(self.submission["id"])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "payment_reference": self.submission.get("payment_reference"),
            "score": self.score,
            "breakdown": self.breakdown.to_dict(),
            "extracted": self.extracted.model_dump(mode="json"),
        }


@dataclass
class MatchDecision:
    outcome: str
    ranked: List[MatchCandidate] = field(default_factory=list)
    chosen: Optional[MatchCandidate] = None
    review: List[MatchCandidate] = field(default_factory=list)
    ambiguous: bool = False
    reasons: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    @property
    def submission_ids(self) -> List[str]:
        if self.chosen:
            return [self.chosen.submission_id]
        return [c.submission_id for c in self.review]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "ambiguous": self.ambiguous,
            "reasons": list(self.reasons),
            "submission_ids": self.submission_ids,
            "chosen": self.chosen.to_dict() if self.chosen else None,
            "candidates": [c.to_dict() for c in self.ranked[:5]],
            "error": self.error,
        }


def _parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Matcher:
    def __init__(self, policy: VerificationPolicy) -> None:
        self.policy = policy

    def amount_matches(self, extracted: ExtractedPayment, submission: Dict[str, Any]) -> bool:
        """Same currency and within tolerance. Shared with the gateway guard."""
        if extracted.amount is None or not extracted.currency:
            return False
        if extracted.currency != str(submission.get("currency") or "").upper():
            return False
        expected = Decimal(str(submission["total_amount"]))
        return abs(extracted.amount - expected) <= self.policy.amount_tolerance

    def score(
        self,
        extracted: ExtractedPayment,
        submission: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> MatchCandidate:
        weights = self.policy.weights
        now = now or datetime.now(timezone.utc)
        breakdown = ScoreBreakdown()

        expected_currency = str(submission.get("currency") or "").upper()
        breakdown.currency_match = bool(extracted.currency) and extracted.currency == expected_currency
        if self.amount_matches(extracted, submission):
            breakdown.amount_exact = True
            breakdown.amount_score = weights.amount
            breakdown.amount_detail = f"{extracted.amount} {extracted.currency} matches total"
        elif extracted.amount is None:
            breakdown.amount_detail = "no amount read"
        else:
            breakdown.amount_detail = (
                f"read {extracted.amount} {extracted.currency or '?'}, "
                f"expected {submission.get('total_amount')} {expected_currency}"
            )

        similarity = reference_similarity(extracted.reference_text, submission.get("payment_reference"))
        if similarity >= self.policy.reference_similarity_threshold:
            breakdown.reference_score = weights.reference * similarity
            breakdown.reference_detail = f"similarity {similarity:.2f}"
        else:
            breakdown.reference_detail = f"similarity {similarity:.2f} below threshold"

        read_method = normalize_method(extracted.method_guess)
        expected_method = normalize_method(submission.get("payment_method"))
        if read_method and expected_method and read_method == expected_method:
            breakdown.method_score = weights.method
            breakdown.method_detail = read_method

        created = _parse_ts(submission.get("created_at"))
        if created:
            age_days = max(0.0, (now - created).total_seconds() / 86400)
            decay = max(0.0, 1 - age_days / self.policy.lookback_days)
            breakdown.recency_score = weights.recency * decay
            breakdown.recency_detail = f"{age_days:.1f} days old"

        return MatchCandidate(extracted=extracted, submission=submission, breakdown=breakdown)

    def match(
        self,
        candidates: Sequence[ExtractedPayment],
        pool: Sequence[Dict[str, Any]],
        gom_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[MatchCandidate]:
        """Best-scoring reading per eligible submission, highest score first."""
        now = now or datetime.now(timezone.utc)
        best: Dict[str, MatchCandidate] = {}
        for submission in pool:
            if submission.get("status") not in MATCHABLE_STATES:
                continue
            if gom_id is not None and submission.get("gom_id") != gom_id:
                continue
            for extracted in candidates:
                scored = self.score(extracted, submission, now=now)
                current = best.get(scored.submission_id)
                if current is None or (scored.score, scored.extracted.overall_confidence) > (
                    current.score,
                    current.extracted.overall_confidence,
                ):
                    best[scored.submission_id] = scored
        return sorted(
            best.values(),
            key=lambda c: (-c.score, str(c.submission.get("created_at") or ""), c.submission_id),
        )

    def decide(
        self,
        candidates: Sequence[ExtractedPayment],
        pool: Sequence[Dict[str, Any]],
        gom_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MatchDecision:
        ranked = self.match(candidates, pool, gom_id=gom_id, now=now)
        eligible = [c for c in ranked if c.score >= self.policy.min_match_score]
        if not eligible:
            return MatchDecision(outcome=NO_MATCH, ranked=ranked, reasons=["no_candidate_above_min_score"])

        top = eligible[0]
        tied = [c for c in eligible[1:] if top.score - c.score <= self.policy.tie_epsilon]
        if tied:
            group = [top, *tied]
            error = AmbiguousMatchError(
                [c.submission_id for c in group],
                [c.score for c in group],
            )
            return MatchDecision(
                outcome=NEEDS_REVIEW,
                ranked=ranked,
                review=group,
                ambiguous=True,
                reasons=["ambiguous_match"],
                error=error.to_dict(),
            )

        reasons = []
        threshold = self.policy.min_confidence_auto_match
        if top.score < threshold:
            reasons.append("score_below_auto_threshold")
        if top.extracted.overall_confidence < threshold:
            reasons.append("low_extraction_confidence")
        if not top.breakdown.amount_exact:
            reasons.append("amount_mismatch")
        if not top.breakdown.currency_match:
            reasons.append("currency_mismatch")
        if top.submission.get("status") != "pending_payment":
            reasons.append("already_under_review")

        if reasons:
            return MatchDecision(outcome=NEEDS_REVIEW, ranked=ranked, review=[top], reasons=reasons)
        return MatchDecision(outcome=AUTO_APPROVE, ranked=ranked, chosen=top, reasons=["auto_approved"])
