"""
Public tracking endpoints for email opens and link clicks

These are hit by mail clients and recipients, so they never surface
internal errors: the pixel is always served and clicks always redirect
when there is somewhere safe to go.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from sqlalchemy.orm import Session

from ...core.cache import TTLCache
from ...core.logging_config import get_logger
from ...database import get_db
from ...services.recipient_tracker import ClickEvent, RecipientTracker
from ...services.tracking_codec import TRACKING_PIXEL_GIF, TrackingCodec, is_http_url
from ..deps import get_stats_cache, invalidate_campaign_stats

logger = get_logger(__name__)

router = APIRouter(prefix="/tracking", tags=["tracking"])

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


@router.get("/open")
async def track_open(
    request: Request,
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_stats_cache)
):
    """Serve the 1x1 pixel and count the open"""
    try:
        callback = TrackingCodec.decode_open_callback(request.query_params)
        RecipientTracker(db).record_open(callback.recipient_id)
        invalidate_campaign_stats(cache, db, callback.campaign_id)
    except Exception:
        db.rollback()
        logger.error(f"Failed to record open for {request.url.query}", exc_info=True)

    return Response(content=TRACKING_PIXEL_GIF, media_type="image/gif", headers=NO_CACHE_HEADERS)


@router.get("/link")
async def track_link(
    request: Request,
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_stats_cache)
):
    """Record the click and redirect to the original URL"""
    try:
        callback = TrackingCodec.decode_click_callback(request.query_params)
        RecipientTracker(db).record_click(ClickEvent(
            campaign_id=callback.campaign_id,
            link_id=callback.link_id,
            url=callback.url,
            recipient_id=callback.recipient_id,
            user_agent=request.headers.get("user-agent"),
            ip_address=_client_ip(request),
        ))
        invalidate_campaign_stats(cache, db, callback.campaign_id)
        return RedirectResponse(callback.url, status_code=302)
    except Exception:
        db.rollback()
        logger.error(f"Failed to record click for {request.url.query}", exc_info=True)

    fallback = request.query_params.get("url")
    if fallback and is_http_url(fallback):
        return RedirectResponse(fallback, status_code=302)
    return JSONResponse(status_code=400, content={"ok": False, "message": "Invalid tracking link"})
