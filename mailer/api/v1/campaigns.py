"""
Campaign Management API Endpoints
Handles campaign CRUD, the lifecycle transitions and statistics
"""
from fastapi import APIRouter, Depends, Query
from typing import List, Optional

from ...core.cache import TTLCache
from ...core.logging_config import get_logger
from ...core.permissions import Capability
from ...models import Campaign
from ...schemas import (
    BatchResponse,
    CampaignCreate,
    CampaignResponse,
    CampaignStatsResponse,
    RecipientResponse
)
from ...services.campaign_engine import CampaignEngine
from ..deps import Principal, get_engine, get_stats_cache, require

logger = get_logger(__name__)

# Initialize router
router = APIRouter(prefix="/api/v1/campaigns", tags=["campaigns"])


def invalidate_stats(cache: TTLCache, campaign: Campaign) -> None:
    """Drop cached stats for a campaign and the A/B test it belongs to"""
    cache.invalidate(campaign.id)
    if campaign.parent_campaign_id:
        cache.invalidate(campaign.parent_campaign_id)


@router.post("/", response_model=CampaignResponse, status_code=201)
async def create_campaign(
    draft: CampaignCreate,
    engine: CampaignEngine = Depends(get_engine),
    principal: Principal = Depends(require(Capability.MANAGE_CAMPAIGNS))
):
    """Create a campaign draft"""
    return engine.create(draft, created_by=principal.subject)


@router.get("/", response_model=List[CampaignResponse])
async def list_campaigns(
    status: Optional[str] = Query(None, description="Filter by status (draft, active, completed, cancelled)"),
    skip: int = Query(0, ge=0, description="Number of records to skip"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of records to return"),
    engine: CampaignEngine = Depends(get_engine),
    principal: Principal = Depends(require(Capability.MANAGE_CAMPAIGNS))
):
    return engine.list_campaigns(status=status, skip=skip, limit=limit)


@router.get("/{campaign_id}", response_model=CampaignResponse)
async def get_campaign(
    campaign_id: str,
    engine: CampaignEngine = Depends(get_engine),
    principal: Principal = Depends(require(Capability.MANAGE_CAMPAIGNS))
):
    return engine.get(campaign_id)


@router.post("/{campaign_id}/activate", response_model=CampaignResponse)
async def activate_campaign(
    campaign_id: str,
    engine: CampaignEngine = Depends(get_engine),
    cache: TTLCache = Depends(get_stats_cache),
    principal: Principal = Depends(require(Capability.SEND_CAMPAIGNS))
):
    """
    Activate a draft campaign

    Resolves the audience and queues recipients in time-sliced batches. The
    batches are sent by the cron tick, not by this call.
    """
    campaign = engine.activate(campaign_id)
    invalidate_stats(cache, campaign)
    logger.info(f"Campaign {campaign_id} activated by {principal.subject}")
    return campaign


@router.post("/{campaign_id}/cancel", response_model=CampaignResponse)
async def cancel_campaign(
    campaign_id: str,
    engine: CampaignEngine = Depends(get_engine),
    cache: TTLCache = Depends(get_stats_cache),
    principal: Principal = Depends(require(Capability.MANAGE_CAMPAIGNS))
):
    campaign = engine.cancel(campaign_id)
    invalidate_stats(cache, campaign)
    return campaign


@router.post("/{campaign_id}/complete", response_model=CampaignResponse)
async def complete_campaign(
    campaign_id: str,
    engine: CampaignEngine = Depends(get_engine),
    cache: TTLCache = Depends(get_stats_cache),
    principal: Principal = Depends(require(Capability.SEND_CAMPAIGNS))
):
    """Complete an active campaign whose batches have all finished"""
    campaign = engine.complete(campaign_id)
    invalidate_stats(cache, campaign)
    return campaign


@router.delete("/{campaign_id}")
async def delete_campaign(
    campaign_id: str,
    engine: CampaignEngine = Depends(get_engine),
    cache: TTLCache = Depends(get_stats_cache),
    principal: Principal = Depends(require(Capability.MANAGE_CAMPAIGNS))
):
    engine.delete(campaign_id)
    cache.invalidate(campaign_id)
    return {"ok": True, "message": "Campaign deleted"}


@router.get("/{campaign_id}/stats", response_model=CampaignStatsResponse)
async def get_campaign_stats(
    campaign_id: str,
    engine: CampaignEngine = Depends(get_engine),
    cache: TTLCache = Depends(get_stats_cache),
    principal: Principal = Depends(require(Capability.VIEW_STATISTICS))
):
    """
    Delivery and engagement statistics

    Served from a short-lived cache; lifecycle operations and batch runs
    invalidate the entry.
    """
    cached = cache.get(campaign_id)
    if cached is not None:
        return cached
    stats = engine.update_stats(campaign_id).to_dict()
    cache.set(campaign_id, stats)
    return stats


@router.get("/{campaign_id}/batches", response_model=List[BatchResponse])
async def list_campaign_batches(
    campaign_id: str,
    engine: CampaignEngine = Depends(get_engine),
    principal: Principal = Depends(require(Capability.VIEW_STATISTICS))
):
    return engine.list_batches(campaign_id)


@router.get("/{campaign_id}/recipients", response_model=List[RecipientResponse])
async def list_campaign_recipients(
    campaign_id: str,
    status: Optional[str] = Query(None, description="Filter by status (pending, sent, failed, bounced)"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    engine: CampaignEngine = Depends(get_engine),
    principal: Principal = Depends(require(Capability.VIEW_STATISTICS))
):
    return engine.list_recipients(campaign_id, status=status, skip=skip, limit=limit)
