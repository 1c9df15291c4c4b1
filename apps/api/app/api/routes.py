from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.automation.api import router as automation_router
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.crm.api import contacts_router, deals_router, funnels_router
from app.flows.api import router as flows_router
from app.inbox.api import router as inbox_router
from app.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(funnels_router)
router.include_router(contacts_router)
router.include_router(deals_router)
router.include_router(automation_router)
router.include_router(flows_router)
router.include_router(inbox_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str | bool]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "automation_enabled": settings.automation_enabled,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
        "organization_ids": user.organization_ids,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
