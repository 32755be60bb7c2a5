"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin_dunning import router as admin_dunning_router
from app.api.routes.admin_webhooks import router as admin_webhooks_router
from app.api.webhooks.stripe import router as stripe_router

router = APIRouter()

router.include_router(stripe_router, prefix="/webhooks", tags=["Webhooks"])
router.include_router(admin_webhooks_router, prefix="/admin", tags=["Admin Webhooks"])
router.include_router(admin_dunning_router, prefix="/admin", tags=["Admin Dunning"])
