from fastapi import APIRouter, HTTPException, status
from fastapi.responses import Response

from oppflow.core.config import get_settings
from oppflow.crm.api import opportunities_router
from oppflow.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(opportunities_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
