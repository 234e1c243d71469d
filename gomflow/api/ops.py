"""Operator endpoints for the reconciliation queue."""
from fastapi import APIRouter, Depends, Query

from gomflow.api.deps import get_notifier, get_queue
from gomflow.core.auth import require_service_secret

router = APIRouter(
    prefix="/api/ops",
    tags=["ops"],
    dependencies=[Depends(require_service_secret)],
)


@router.get("/dead-letters")
def list_dead_letters(limit: int = Query(100, ge=1, le=1000), queue=Depends(get_queue)):
    events = queue.list_dead_letters(limit=limit)
    return {"count": len(events), "events": events}


@router.post("/dead-letters/{event_id}/requeue")
def requeue_dead_letter(event_id: str, queue=Depends(get_queue)):
    return queue.requeue(event_id)


@router.get("/queue-stats")
def queue_stats(queue=Depends(get_queue)):
    return queue.stats()


@router.post("/notifications/{submission_id}/flush")
def flush_notifications(submission_id: str, notifier=Depends(get_notifier)):
    """Re-send pending buyer notifications for one submission."""
    return {"submission_id": submission_id, "results": notifier.flush(submission_id)}
