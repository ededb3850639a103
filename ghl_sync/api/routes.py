from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from ghl_sync.billing.api import router as tenants_router
from ghl_sync.core.auth import AuthUser, get_current_user
from ghl_sync.core.config import get_settings
from ghl_sync.integrations.api import admin_router as ghl_admin_router
from ghl_sync.integrations.api import router as ghl_router
from ghl_sync.metrics import generate_metrics_payload, metrics_content_type
from ghl_sync.webhooks.api import router as webhooks_router

METRICS_PERMISSION = "system.metrics.read"

router = APIRouter()
for child in (webhooks_router, ghl_router, ghl_admin_router, tenants_router):
    router.include_router(child)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {"status": "ok", "service": settings.app_name, "environment": settings.app_env}


def _metrics_reader(user: AuthUser = Depends(get_current_user)) -> AuthUser:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if METRICS_PERMISSION not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {METRICS_PERMISSION}")
    return user


@router.get("/metrics", tags=["system"], dependencies=[Depends(_metrics_reader)])
def metrics() -> Response:
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
