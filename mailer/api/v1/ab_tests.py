"""
A/B test endpoints
"""
from dataclasses import asdict

from fastapi import APIRouter, Depends

from ...core.cache import TTLCache
from ...core.permissions import Capability
from ...schemas import ABTestCreate, ABTestResponse, CampaignResponse, WinnerCommit
from ...services.ab_test_evaluator import ABTestEvaluator
from ...services.campaign_engine import CampaignEngine
from ..deps import Principal, get_engine, get_stats_cache, require

router = APIRouter(prefix="/api/v1/ab-tests", tags=["ab-tests"])


def get_evaluator(engine: CampaignEngine = Depends(get_engine)) -> ABTestEvaluator:
    return ABTestEvaluator(engine.db, engine=engine)


def _test_response(evaluator: ABTestEvaluator, test_id: str) -> dict:
    test, metrics = evaluator.get_test(test_id)
    return {
        "test": CampaignResponse.model_validate(test),
        "variants": [asdict(m) for m in metrics],
        "winner_id": test.winner_id,
    }


@router.post("/", response_model=ABTestResponse, status_code=201)
async def create_ab_test(
    test: ABTestCreate,
    evaluator: ABTestEvaluator = Depends(get_evaluator),
    principal: Principal = Depends(require(Capability.MANAGE_CAMPAIGNS))
):
    """Create a draft A/B test; activate it through the campaign endpoint"""
    parent = evaluator.create_test(test, created_by=principal.subject)
    return _test_response(evaluator, parent.id)


@router.get("/{test_id}", response_model=ABTestResponse)
async def get_ab_test(
    test_id: str,
    evaluator: ABTestEvaluator = Depends(get_evaluator),
    principal: Principal = Depends(require(Capability.VIEW_STATISTICS))
):
    """Per-variant delivery and engagement metrics"""
    return _test_response(evaluator, test_id)


@router.post("/{test_id}/winner", response_model=ABTestResponse)
async def commit_ab_test_winner(
    test_id: str,
    payload: WinnerCommit,
    evaluator: ABTestEvaluator = Depends(get_evaluator),
    cache: TTLCache = Depends(get_stats_cache),
    principal: Principal = Depends(require(Capability.MANAGE_CAMPAIGNS))
):
    evaluator.commit_winner(test_id, payload.winner_variant_id)
    cache.invalidate(test_id)
    return _test_response(evaluator, test_id)
