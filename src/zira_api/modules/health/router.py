from fastapi import APIRouter, Depends

from ...api.deps import get_settings_dep
from ...core.config import Settings

router = APIRouter()


@router.get("/health")
async def health(settings: Settings = Depends(get_settings_dep)) -> dict:
    return {
        "status": "ok",
        "service": settings.PROJECT_NAME,
        "env": settings.ENV,
        "platform_default_configured": settings.platform_credentials_configured,
    }
