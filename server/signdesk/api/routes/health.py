from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from signdesk.api.dependencies.database import get_db
from signdesk.api.dependencies.services import get_signature_service
from signdesk.core.logging import get_logger
from signdesk.services.signature_service import SignatureService

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(
    session: AsyncSession = Depends(get_db),
    service: SignatureService = Depends(get_signature_service),
) -> Dict[str, Any]:
    """Database reachability plus the active e-signature provider."""
    health_status: Dict[str, Any] = {
        "status": "healthy",
        "provider": service.provider.provider_id,
        "provider_type": service.provider.provider_type.value,
        "checks": {},
    }
    try:
        await session.execute(text("SELECT 1"))
        health_status["checks"]["database"] = "healthy"
    except Exception as exc:
        logger.error("health.database_failed", error=str(exc))
        health_status["checks"]["database"] = "unhealthy"
        health_status["status"] = "unhealthy"
    return health_status
