"""
Batch processing triggers: the cron tick and manual processing of one batch
"""
from dataclasses import asdict

from fastapi import APIRouter, Depends

from ...core.cache import TTLCache
from ...core.logging_config import get_logger
from ...core.permissions import Capability
from ...services.campaign_engine import CampaignEngine
from ...schemas import BatchResultResponse, TickResponse
from ..deps import Principal, get_engine, get_stats_cache, invalidate_campaign_stats, require, verify_cron

logger = get_logger(__name__)

router = APIRouter(tags=["batches"])


@router.post("/api/cron/process-email-batches", response_model=TickResponse)
async def process_email_batches(
    engine: CampaignEngine = Depends(get_engine),
    cache: TTLCache = Depends(get_stats_cache),
    _: None = Depends(verify_cron)
):
    """
    Dispatch due batches

    Called by an external cron with ``Authorization: Bearer <CRON_SECRET>``.
    """
    result = await engine.scheduler.tick()
    for batch_result in result.results:
        invalidate_campaign_stats(cache, engine.db, batch_result.campaign_id)
    return {
        "ok": True,
        "started_at": result.started_at,
        "processed": result.processed,
        "results": [asdict(r) for r in result.results],
        "held_back": result.held_back,
        "conflicts": result.conflicts,
        "reconciled": result.reconciled,
    }


@router.post("/api/v1/batches/{batch_id}/process", response_model=BatchResultResponse)
async def process_batch(
    batch_id: str,
    engine: CampaignEngine = Depends(get_engine),
    cache: TTLCache = Depends(get_stats_cache),
    principal: Principal = Depends(require(Capability.SEND_CAMPAIGNS))
):
    """Process one due batch without waiting for the next tick"""
    result = await engine.scheduler.process_batch(batch_id)
    invalidate_campaign_stats(cache, engine.db, result.campaign_id)
    logger.info(f"Batch {batch_id} processed manually by {principal.subject}: {result.status}")
    return asdict(result)
