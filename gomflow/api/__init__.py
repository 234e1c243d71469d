from gomflow.api.gom import router as gom_router
from gomflow.api.internal import router as internal_router
from gomflow.api.ops import router as ops_router
from gomflow.api.payments import router as payments_router
from gomflow.api.submissions import router as submissions_router
from gomflow.api.webhooks import router as webhooks_router

__all__ = [
    "gom_router",
    "internal_router",
    "ops_router",
    "payments_router",
    "submissions_router",
    "webhooks_router",
]
