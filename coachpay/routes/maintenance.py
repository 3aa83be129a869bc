import logging

from fastapi import APIRouter, Body, Depends

from coachpay.schemas.payments import MaintenanceRequest
from coachpay.security.deps import require_maintenance_key
from coachpay.services.credit_maintenance import run_credit_maintenance
from coachpay.services.expiry_notifications import send_expiry_notifications

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/maintenance",
    tags=["Maintenance"],
    dependencies=[Depends(require_maintenance_key)],
)


@router.post("/credits")
def credit_maintenance(body: MaintenanceRequest | None = Body(None)):
    """Run a credit maintenance action (all, expire, rollover, cleanup, stats)."""
    request = body or MaintenanceRequest()
    summary = run_credit_maintenance(request.action)
    return {"success": summary.success, **summary.model_dump(mode="json", exclude_none=True)}


@router.post("/expiry-notifications")
def expiry_notifications():
    summary = send_expiry_notifications()
    return {"success": not summary.errors, **summary.model_dump(mode="json")}
