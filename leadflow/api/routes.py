from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from leadflow.core.auth import get_current_principal
from leadflow.core.config import get_settings
from leadflow.crm.api import (
    audit_router,
    leads_router,
    notifications_router,
    settings_router,
    users_router,
)
from leadflow.metrics import render_metrics
from leadflow.platform.security import BuiltinRole, Principal

router = APIRouter()
for crm_router in (leads_router, notifications_router, audit_router, settings_router, users_router):
    router.include_router(crm_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(principal: Principal | None = Depends(get_current_principal)) -> dict[str, str]:
    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return {"user_id": str(principal.user_id), "name": principal.display_name, "role": principal.role_name}


@router.get("/metrics", tags=["system"], include_in_schema=False)
def metrics(principal: Principal | None = Depends(get_current_principal)) -> Response:
    # hidden entirely unless enabled, then ADMIN only
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    if principal is None or principal.role_name != BuiltinRole.ADMIN.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")
    payload, content_type = render_metrics()
    return Response(content=payload, media_type=content_type)
