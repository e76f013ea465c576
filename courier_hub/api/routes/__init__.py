"""
API Routes
"""
from fastapi import APIRouter

from courier_hub.api.routes.dispatch import router as dispatch_router
from courier_hub.api.routes.courier import router as courier_router
from courier_hub.api.routes.finance import router as finance_router
from courier_hub.api.routes.management import router as management_router
from courier_hub.api.webhooks.intake import router as intake_router

router = APIRouter()

router.include_router(dispatch_router, prefix="/dispatch", tags=["Dispatch"])
router.include_router(courier_router, prefix="/courier", tags=["Courier"])
router.include_router(finance_router, prefix="/finance", tags=["Finance"])
router.include_router(management_router, prefix="/management", tags=["Management"])
router.include_router(intake_router, prefix="/webhooks/intake", tags=["Webhooks"])
