"""
A/B Test Evaluator - test campaigns with content variants and winner selection
"""
import string
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.errors import InvalidStateError, NotFoundError, ValidationError
from ..core.logging_config import get_logger
from ..models import ABTestResult, Campaign, CampaignStatus, ScheduleType
from ..schemas import ABTestCreate, CampaignCreate
from .campaign_engine import CampaignEngine

logger = get_logger(__name__)

WINNER_METRICS = ("open_rate", "click_rate")


@dataclass
class VariantMetrics:
    variant_id: str
    variant_name: Optional[str]
    status: str
    sent: int = 0
    opened: int = 0
    clicks: int = 0
    open_rate: float = 0.0
    click_rate: float = 0.0


class ABTestEvaluator:
    def __init__(self, db_session: Session, engine: Optional[CampaignEngine] = None):
        self.db = db_session
        self.engine = engine or CampaignEngine(db_session)

    def create_test(self, test: ABTestCreate, created_by: Optional[str] = None) -> Campaign:
        """
        Create a draft test campaign with one draft child per variant

        Variants share the parent's audience and schedule and carry their
        own subject and content. Activating the parent splits the audience
        across them.
        """
        if len(test.variants) < 2:
            raise ValidationError("An A/B test needs at least two variants")
        if len(test.variants) > len(string.ascii_uppercase):
            raise ValidationError("Too many variants")

        schedule_type = test.schedule_type
        scheduled_time = test.scheduled_time
        audience = test.audience
        template_id = None
        if test.base_campaign_id:
            base = self.engine.get(test.base_campaign_id)
            schedule_type = base.schedule_type
            scheduled_time = base.scheduled_time
            audience = base.audience
            template_id = base.template_id

        if ScheduleType(schedule_type) == ScheduleType.RECURRING:
            raise ValidationError("A/B tests cannot be recurring")

        names = [v.name or string.ascii_uppercase[i] for i, v in enumerate(test.variants)]
        if len(set(names)) != len(names):
            raise ValidationError(f"Variant names must be unique: {names}")

        first = test.variants[0]
        parent = self.engine.build_campaign(
            CampaignCreate(
                name=test.name,
                subject=first.subject,
                html_content=first.html_content,
                schedule_type=schedule_type,
                scheduled_time=scheduled_time,
                audience=audience,
                template_id=template_id,
            ),
            created_by=created_by,
            is_ab_test=True,
        )
        self.db.add(parent)

        for name, variant in zip(names, test.variants):
            child = self.engine.build_campaign(
                CampaignCreate(
                    name=f"{test.name} - {name}",
                    subject=variant.subject,
                    html_content=variant.html_content,
                    schedule_type=schedule_type,
                    scheduled_time=scheduled_time,
                    audience=audience,
                    template_id=template_id,
                ),
                created_by=created_by,
                parent_campaign_id=parent.id,
                variant_name=name,
            )
            self.db.add(child)

        self.db.commit()
        self.db.refresh(parent)
        logger.info(f"Created A/B test {parent.id} with variants {', '.join(names)}")
        return parent

    def _get_test(self, test_id: str) -> Campaign:
        parent = self.db.get(Campaign, test_id)
        if parent is None or not parent.is_ab_test:
            raise NotFoundError(f"A/B test {test_id} not found")
        return parent

    def variant_metrics(self, test_id: str) -> List[VariantMetrics]:
        self._get_test(test_id)
        metrics = []
        for variant in self.engine.variants(test_id):
            stats = self.engine.stats_for(variant.id, [variant.id])
            metrics.append(VariantMetrics(
                variant_id=variant.id,
                variant_name=variant.variant_name,
                status=variant.status,
                sent=stats.sent,
                opened=stats.opened,
                clicks=stats.clicks,
                open_rate=stats.open_rate,
                click_rate=stats.click_rate,
            ))
        return metrics

    def get_test(self, test_id: str) -> Tuple[Campaign, List[VariantMetrics]]:
        return self._get_test(test_id), self.variant_metrics(test_id)

    def commit_winner(self, test_id: str, winner_variant_id: str) -> Campaign:
        """
        Record the winning variant's rates and mark it on the test

        The test must be completed. Committing again overwrites the stored
        rates and the winner.
        """
        parent = self._get_test(test_id)
        if parent.status != CampaignStatus.COMPLETED.value:
            raise InvalidStateError(f"A/B test {test_id} is {parent.status}, not completed")

        winner = self.db.get(Campaign, winner_variant_id)
        if winner is None or winner.parent_campaign_id != test_id:
            raise NotFoundError(f"Variant {winner_variant_id} does not belong to A/B test {test_id}")

        stats = self.engine.stats_for(winner.id, [winner.id])
        now = datetime.utcnow()
        for metric in WINNER_METRICS:
            value = getattr(stats, metric)
            row = self.db.query(ABTestResult).filter(
                ABTestResult.test_id == test_id,
                ABTestResult.variant_id == winner.id,
                ABTestResult.metric == metric
            ).first()
            if row is None:
                row = ABTestResult(test_id=test_id, variant_id=winner.id, metric=metric)
                self.db.add(row)
            row.value = value
            row.recorded_at = now

        parent.winner_id = winner.id
        self.db.commit()
        self.db.refresh(parent)
        logger.info(
            f"Committed variant {winner.variant_name} ({winner.id}) as winner of A/B test {test_id}: "
            f"open_rate={stats.open_rate}, click_rate={stats.click_rate}"
        )
        return parent
