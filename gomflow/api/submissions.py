"""Submission reads and human actions (GOM decisions, cancellations)."""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from gomflow.api.deps import get_processor, get_submission_service
from gomflow.core.auth import TokenData, get_current_user, require_gom
from gomflow.models.requests import CancelRequest, DecisionRequest
from gomflow.services.errors import ErrorCode, ForbiddenError

router = APIRouter(prefix="/api/submissions", tags=["Submissions"])


def transition_response(result: Dict[str, Any], requested_state: str):
    """
    200 when the submission ends up in the requested state (applied now or
    earlier), 409 when it is somewhere the request cannot take it.
    """
    outcome = result.get("outcome")
    if outcome == "processing":
        return JSONResponse(status_code=202, content=jsonable_encoder(result))
    if outcome == "failed":
        return JSONResponse(status_code=503, content=jsonable_encoder(result))
    if outcome in ("invalid_transition", "lost_race") and result.get("current_state") != requested_state:
        error = result.get("error") or {}
        return JSONResponse(
            status_code=409,
            content={
                "error": ErrorCode.INVALID_TRANSITION.value,
                "message": error.get("message") or "Transition not allowed",
                "detail": error.get("detail"),
                "submission_id": result.get("submission_id"),
                "current_state": result.get("current_state"),
                "requested_state": requested_state,
            },
        )
    return jsonable_encoder(result)


@router.get("/{submission_id}")
def get_submission(
    submission_id: str,
    user: TokenData = Depends(get_current_user),
    submissions=Depends(get_submission_service),
):
    return submissions.get_for_viewer(submission_id, user.role, user.user_id)


@router.post("/{submission_id}/decision")
def decide(
    submission_id: str,
    request: DecisionRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    user: TokenData = Depends(require_gom),
    processor=Depends(get_processor),
):
    """GOM confirms or rejects a submission under review."""
    result = processor.submit_decision(
        submission_id,
        request.decision,
        gom_id=user.user_id,
        notes=request.notes,
        idempotency_key=idempotency_key,
    )
    return transition_response(result, request.decision)


@router.post("/{submission_id}/cancel")
def cancel(
    submission_id: str,
    request: CancelRequest,
    user: TokenData = Depends(get_current_user),
    processor=Depends(get_processor),
):
    if user.role not in ("gom", "buyer"):
        raise ForbiddenError(f"role {user.role} cannot cancel submissions")
    result = processor.submit_cancellation(submission_id, user.role, user.user_id, reason=request.reason)
    return transition_response(result, "cancelled")
