"""
Suppression endpoints: bounce webhook and manual removal
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...core.logging_config import get_logger
from ...core.permissions import Capability
from ...database import get_db
from ...schemas import BounceCreate, BounceResponse, SuppressionStatusResponse
from ...services.suppression_service import SuppressionService, normalize_email
from ..deps import Principal, require

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/suppression", tags=["suppression"])


@router.post("/bounces", response_model=BounceResponse)
async def record_bounce(
    bounce: BounceCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require(Capability.MANAGE_SUPPRESSION))
):
    """
    Record a bounce reported by the mail provider

    Hard bounces suppress the address at once; soft bounces after repeated
    attempts.
    """
    service = SuppressionService(db)
    return service.record_bounce(bounce.email, bounce.bounce_type.value, bounce.reason or "")


@router.delete("/bounces/{email}")
async def clear_bounce(
    email: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require(Capability.MANAGE_SUPPRESSION))
):
    SuppressionService(db).clear_bounce(email)
    logger.info(f"Bounce for {email} cleared by {principal.subject}")
    return {"ok": True, "message": "Bounce record removed"}


@router.delete("/unsubscribes/{email}")
async def clear_unsubscribe(
    email: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require(Capability.MANAGE_SUPPRESSION))
):
    SuppressionService(db).clear_unsubscribe(email)
    logger.info(f"Unsubscribe for {email} cleared by {principal.subject}")
    return {"ok": True, "message": "Unsubscribe removed"}


@router.get("/{email}", response_model=SuppressionStatusResponse)
async def get_suppression_status(
    email: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require(Capability.MANAGE_SUPPRESSION))
):
    reason = SuppressionService(db).suppression_reason(email)
    return {"email": normalize_email(email), "suppressed": reason is not None, "reason": reason}
