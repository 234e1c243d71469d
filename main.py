"""
GOMFLOW Core - FastAPI Backend

Payment verification and reconciliation for group order managers (GOMs).

Run Instructions:
-----------------
1. Install:
   pip install -e .

2. Run the app locally with uvicorn:
   uvicorn main:app --host 0.0.0.0 --port 8000 --reload

3. Test /health endpoint:
   curl http://localhost:8000/health
"""
import time

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from gomflow.api import (
    gom_router,
    internal_router,
    ops_router,
    payments_router,
    submissions_router,
    webhooks_router,
)
from gomflow.di.container import container
from gomflow.services.errors import GomflowError, status_for
from gomflow.services.logging import log_error, log_request, logger
from gomflow.services.metrics import get_metrics, record_error, record_request

app = FastAPI(
    title="GOMFLOW Core API",
    description="""
    GOMFLOW Core - Payment Verification & Reconciliation

    ## Payment screenshots
    - Buyers send a screenshot through a bot or the web app
    - Amount, currency, reference and method are read from the image
    - High-confidence exact matches confirm automatically; everything else goes to the GOM

    ## Payment gateways
    - PayMongo (PH) and Billplz (MY) webhooks, signature-verified
    - Exact-amount payments confirm the submission

    ## Review
    - GOMs confirm or reject submissions under review
    - Every state change is audited and notifies the buyer once

    ## Authentication
    GOM and buyer endpoints take a Bearer JWT. Bot and order services use
    the `X-Service-Secret` header.
    """,
    version="1.0.0",
)

app.include_router(webhooks_router)
app.include_router(payments_router)
app.include_router(submissions_router)
app.include_router(gom_router)
app.include_router(internal_router)
app.include_router(ops_router)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests and record metrics."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_id = request.client.host if request.client else "unknown"

        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000
            log_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=duration_ms,
                client_id=client_id,
            )
            record_request(request.method, request.url.path, response.status_code, duration_ms)
            if response.status_code >= 400:
                record_error(f"http_{response.status_code}", request.url.path)
            return response
        except Exception as e:
            record_error("exception", request.url.path)
            log_error("request_exception", str(e), {"path": request.url.path, "method": request.method})
            raise


app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GomflowError)
async def gomflow_exception_handler(request: Request, exc: GomflowError):
    """Handle all GomflowErrors with structured responses."""
    status_code = status_for(exc)
    if status_code >= 500 or exc.code.value == "INVALID_SIGNATURE":
        log_error(exc.code.value, exc.message, {"path": request.url.path, "detail": exc.detail, **exc.context})
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_error(
        "unhandled_exception",
        str(exc),
        {"path": request.url.path, "method": request.method},
        exception=exc,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again or contact support.",
        },
    )


@app.on_event("startup")
async def startup_event():
    """Initialize database and start the queue workers."""
    container.db().initialize()
    if container.settings().queue.workers_enabled:
        await container.workers().start()
    else:
        logger.info("Queue workers disabled; events are processed by request handlers only")


@app.on_event("shutdown")
async def shutdown_event():
    await container.workers().stop()


@app.get("/health")
def health():
    stats = container.queue().stats()
    return {
        "status": "healthy",
        "workers_running": container.workers().running,
        "vision_configured": container.vision().is_available,
        "ocr_available": bool(container.ocr() and container.ocr().is_available),
        "queue": {"unfinished": stats["unfinished"], "dead_letter": stats["dead_letter"]},
    }


@app.get("/metrics")
def metrics():
    return get_metrics()
