"""Payment screenshot intake for the bot services and the web app."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from gomflow.api.deps import get_extraction_settings, get_processor
from gomflow.core.auth import require_service_secret

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/payments",
    tags=["Payments"],
    dependencies=[Depends(require_service_secret)],
)


@router.post("/screenshots")
def upload_screenshot(
    file: UploadFile = File(...),
    gom_id: str = Form(...),
    order_id: Optional[str] = Form(None),
    submission_id: Optional[str] = Form(None),
    channel: str = Form("web"),
    wait: bool = Query(True, description="Wait for extraction and matching before responding"),
    processor=Depends(get_processor),
    settings=Depends(get_extraction_settings),
):
    """
    Submit a payment screenshot.

    The proof is stored and queued; by default the request waits for the
    match so the bot can answer the buyer in one round trip. ``processing``
    means the result is not in yet; poll ``GET /api/payments/screenshots/{event_id}``.
    """
    # One byte past the limit is enough for validate_image to refuse it.
    image_bytes = file.file.read(settings.max_image_bytes + 1)
    enqueued = processor.submit_screenshot(
        image_bytes,
        gom_id=gom_id,
        order_id=order_id,
        submission_id=submission_id,
        channel=channel,
    )
    logger.info("Screenshot from %s queued as %s (duplicate=%s)", channel, enqueued.event_id, enqueued.duplicate)
    return processor.screenshot_outcome(enqueued.event_id, wait=wait)


@router.get("/screenshots/{event_id}")
def screenshot_status(event_id: str, processor=Depends(get_processor)):
    return processor.screenshot_outcome(event_id, wait=False)
