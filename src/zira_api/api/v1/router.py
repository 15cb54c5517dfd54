from fastapi import APIRouter

from ...modules.health.router import router as health_router
from ...modules.mpesa.router import router as mpesa_router


router = APIRouter()

# Public/basic endpoints
router.include_router(health_router, tags=["health"])  # /health

# Account-scoped payment endpoints
router.include_router(mpesa_router)
