"""
One-click unsubscribe by token
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ...core.errors import NotFoundError
from ...core.logging_config import get_logger
from ...database import get_db
from ...services.recipient_tracker import RecipientTracker
from ...services.suppression_service import SuppressionService

logger = get_logger(__name__)

router = APIRouter(tags=["unsubscribe"])


@router.get("/unsubscribe")
async def unsubscribe(
    token: Optional[str] = Query(None),
    db: Session = Depends(get_db)
):
    """
    Add the token's recipient to the unsubscribe list

    Unlike the tracking endpoints, failures are reported to the caller.
    """
    if not token:
        return JSONResponse(status_code=400, content={"ok": False, "message": "Ungültiger Abmelde-Token"})

    try:
        recipient = RecipientTracker(db).resolve_by_unsubscribe_token(token)
    except NotFoundError:
        return JSONResponse(
            status_code=404,
            content={"ok": False, "message": "Ungültiger oder abgelaufener Abmelde-Link"}
        )

    email = recipient.email
    SuppressionService(db).unsubscribe(email, user_id=recipient.user_id, campaign_id=recipient.campaign_id)
    return {
        "ok": True,
        "message": "Sie wurden erfolgreich von unserem Newsletter abgemeldet",
        "email": email,
    }
