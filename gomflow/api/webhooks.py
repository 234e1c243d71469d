"""
Payment gateway webhooks.

- PayMongo (PH): payment.paid / payment.failed
- Billplz (MY): bill paid / not paid callbacks (JSON or form body)

Signatures are checked over the raw body before anything else. Verified
events are enqueued and acknowledged; the reconciliation queue applies them.
"""
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request

from gomflow.api.deps import get_processor, get_queue, workers_running
from gomflow.services.errors import SignatureError
from gomflow.services.logging import log_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


async def _receive(provider: str, request: Request, signature: Optional[str], background_tasks: BackgroundTasks,
                   processor, queue):
    body = await request.body()
    try:
        result = processor.receive_webhook(provider, body, signature)
    except SignatureError as exc:
        log_error(exc.code.value, f"{provider} webhook rejected", {"provider": provider, "reason": exc.detail})
        raise

    logger.info("%s webhook: %s", provider, result["status"])
    if result["status"] == "queued" and not workers_running():
        background_tasks.add_task(queue.drain, queue.lane_for(result["submission_id"]))
    return result


@router.post("/paymongo")
async def paymongo_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    paymongo_signature: Optional[str] = Header(None, alias="Paymongo-Signature"),
    processor=Depends(get_processor),
    queue=Depends(get_queue),
):
    """Receive PayMongo webhooks."""
    return await _receive("paymongo", request, paymongo_signature, background_tasks, processor, queue)


@router.post("/billplz")
async def billplz_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_signature: Optional[str] = Header(None, alias="X-Signature"),
    processor=Depends(get_processor),
    queue=Depends(get_queue),
):
    """Receive Billplz callbacks. The signature may come as a header or as the x_signature field."""
    return await _receive("billplz", request, x_signature, background_tasks, processor, queue)
