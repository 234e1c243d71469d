"""GOM dashboard endpoints: review queue and bulk decisions."""
from fastapi import APIRouter, Depends, Query

from gomflow.api.deps import get_processor, get_submission_service
from gomflow.core.auth import TokenData, require_gom
from gomflow.models.requests import BulkDecisionRequest

router = APIRouter(prefix="/api/gom", tags=["GOM"])


@router.get("/review-queue")
def review_queue(
    limit: int = Query(100, ge=1, le=500),
    user: TokenData = Depends(require_gom),
    submissions=Depends(get_submission_service),
):
    """Submissions waiting on the GOM, with the evidence the matcher saw."""
    return submissions.review_queue(user.user_id, limit=limit)


@router.post("/bulk-decision")
def bulk_decision(
    request: BulkDecisionRequest,
    user: TokenData = Depends(require_gom),
    processor=Depends(get_processor),
):
    results = processor.submit_bulk_decision(
        request.submission_ids,
        request.decision,
        gom_id=user.user_id,
        notes=request.notes,
    )
    applied = sum(1 for r in results if r.get("outcome") in ("applied", "duplicate"))
    return {
        "decision": request.decision,
        "requested": len(request.submission_ids),
        "applied": applied,
        "results": [{k: v for k, v in r.items() if k != "submission"} for r in results],
    }
