"""Service-to-service endpoints (order service hand-off, checkout creation)."""
from fastapi import APIRouter, Depends

from gomflow.api.deps import get_billplz_client, get_paymongo_client, get_submission_service
from gomflow.core.auth import require_service_secret
from gomflow.models.requests import CreateSubmissionRequest
from gomflow.services.gateway_clients import create_checkout

router = APIRouter(
    prefix="/api/internal",
    tags=["internal"],
    dependencies=[Depends(require_service_secret)],
)


@router.post("/submissions", status_code=201)
def create_submission(request: CreateSubmissionRequest, submissions=Depends(get_submission_service)):
    return submissions.create_submission(**request.model_dump())


@router.post("/submissions/{submission_id}/checkout")
def create_submission_checkout(
    submission_id: str,
    submissions=Depends(get_submission_service),
    paymongo=Depends(get_paymongo_client),
    billplz=Depends(get_billplz_client),
):
    """Open a PayMongo payment intent (PHP) or a Billplz bill (MYR) tagged with the submission id."""
    submission = submissions.get(submission_id)
    return {"submission_id": submission_id, **create_checkout(submission, paymongo, billplz)}
