from fastapi import APIRouter

from app.api.routes.health import router as health_router
from app.api.routes.referrals import router as referrals_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(referrals_router, prefix="/referrals", tags=["referrals"])
