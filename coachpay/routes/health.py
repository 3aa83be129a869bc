from fastapi import APIRouter

from coachpay.config import Config
from coachpay.services.maintenance_scheduler import get_scheduler_status

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health():
    is_valid, missing = Config.validate_critical_env_vars()
    return {
        "status": "healthy" if is_valid else "degraded",
        "environment": Config.APP_ENV,
        "missing_config": missing,
        "scheduler": get_scheduler_status(),
    }
