"""API request models."""
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from gomflow.models.base import GomflowModel


class CreateSubmissionRequest(GomflowModel):
    order_id: str
    gom_id: str
    buyer_identity: str = Field(description="<platform>:<id>, e.g. telegram:123456")
    buyer_name: Optional[str] = None
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(gt=0)
    currency: Literal["PHP", "MYR"]
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DecisionRequest(GomflowModel):
    decision: Literal["confirmed", "rejected"]
    notes: Optional[str] = None


class BulkDecisionRequest(GomflowModel):
    submission_ids: List[str] = Field(min_length=1, max_length=100)
    decision: Literal["confirmed", "rejected"]
    notes: Optional[str] = None


class CancelRequest(GomflowModel):
    reason: Optional[str] = None
