from gomflow.models.base import GomflowModel
from gomflow.models.payments import ExtractedPayment, ExtractionResult, overall_confidence
from gomflow.models.requests import (
    BulkDecisionRequest,
    CancelRequest,
    CreateSubmissionRequest,
    DecisionRequest,
)

__all__ = [
    "BulkDecisionRequest",
    "CancelRequest",
    "CreateSubmissionRequest",
    "DecisionRequest",
    "ExtractedPayment",
    "ExtractionResult",
    "GomflowModel",
    "overall_confidence",
]
