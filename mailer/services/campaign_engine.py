"""
Campaign Engine - draft, activation, completion and statistics for campaigns
Regular, scheduled, recurring and A/B campaigns share one lifecycle:
draft -> active -> completed, with draft -> cancelled as the only other exit
"""
import hashlib
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..core.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from ..core.logging_config import get_logger
from ..core.permissions import Role
from ..core.security import generate_unsubscribe_token
from ..models import (
    ABTestResult, Batch, BatchStatus, Campaign, CampaignStatus, LinkClick, Profile,
    ProfileTag, Recipient, RecipientStatus, ScheduleType, new_id
)
from ..schemas import CampaignCreate
from .batch_scheduler import BatchScheduler
from .mail_transport import MailTransport, build_transport
from .recurrence import next_occurrence, validate_rule
from .suppression_service import normalize_email
from .tracking_codec import TrackingCodec

logger = get_logger(__name__)

AUDIENCE_KINDS = ("all", "tag", "role", "emails")


@dataclass(frozen=True)
class AudienceMember:
    email: str
    name: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class CampaignStats:
    campaign_id: str
    total: int = 0
    pending: int = 0
    sent: int = 0
    failed: int = 0
    bounced: int = 0
    opened: int = 0
    clicks: int = 0
    unique_clickers: int = 0
    open_rate: float = 0.0
    click_rate: float = 0.0
    delivery_rate: float = 0.0

    def to_dict(self) -> Dict:
        return asdict(self)


def percentage(numerator: int, denominator: int) -> float:
    """Percentage rounded to 2 places; 0 when the denominator is 0"""
    if not denominator:
        return 0.0
    return round(numerator / denominator * 100, 2)


def parse_audience(descriptor: Optional[str]) -> Tuple[str, str]:
    """
    Split an audience descriptor into (kind, value)

    ``all``, ``tag:<name>``, ``role:<name>`` or ``emails:<a>,<b>``
    """
    text = (descriptor or "all").strip()
    if text.lower() == "all":
        return "all", ""
    kind, sep, value = text.partition(":")
    kind = kind.strip().lower()
    value = value.strip()
    if not sep or kind not in AUDIENCE_KINDS or not value:
        raise ValidationError(f"Invalid audience descriptor: {descriptor!r}")
    if kind == "role":
        try:
            value = Role(value.lower()).value
        except ValueError:
            raise ValidationError(f"Unknown audience role: {value!r}")
    elif kind == "emails":
        emails = [normalize_email(e) for e in value.split(",") if e.strip()]
        if not emails:
            raise ValidationError("Email audience needs at least one address")
        value = ",".join(emails)
    return kind, value


def split_for_variants(members: Sequence[AudienceMember], count: int) -> List[List[AudienceMember]]:
    """Deterministically deal an audience across ``count`` variants"""
    ordered = sorted(members, key=lambda m: hashlib.sha256(m.email.encode("utf-8")).hexdigest())
    buckets: List[List[AudienceMember]] = [[] for _ in range(count)]
    for index, member in enumerate(ordered):
        buckets[index % count].append(member)
    return buckets


class CampaignEngine:
    """
    Service for the campaign lifecycle

    All state changes are compare-and-swap updates on ``status`` so two
    callers racing on the same campaign can't both win.
    """

    def __init__(
        self,
        db_session: Session,
        settings: Optional[Settings] = None,
        transport: Optional[MailTransport] = None,
        codec: Optional[TrackingCodec] = None
    ):
        self.db = db_session
        self.settings = settings or get_settings()
        self.transport = transport or build_transport(self.settings)
        self.codec = codec or TrackingCodec(self.settings.base_url)

    @property
    def scheduler(self) -> BatchScheduler:
        return BatchScheduler(
            self.db,
            self.transport,
            codec=self.codec,
            settings=self.settings,
            on_batch_finished=self.try_complete,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, campaign_id: str) -> Campaign:
        campaign = self.db.get(Campaign, campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    def variants(self, campaign_id: str) -> List[Campaign]:
        return self.db.query(Campaign).filter(
            Campaign.parent_campaign_id == campaign_id
        ).order_by(Campaign.variant_name.asc(), Campaign.created_at.asc()).all()

    def list_campaigns(self, status: Optional[str] = None, skip: int = 0, limit: int = 100) -> List[Campaign]:
        query = self.db.query(Campaign)
        if status:
            query = query.filter(Campaign.status == status)
        return query.order_by(Campaign.created_at.desc()).offset(skip).limit(limit).all()

    def list_batches(self, campaign_id: str) -> List[Batch]:
        self.get(campaign_id)
        return self.db.query(Batch).filter(
            Batch.campaign_id == campaign_id
        ).order_by(Batch.batch_number.asc()).all()

    def list_recipients(
        self,
        campaign_id: str,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[Recipient]:
        self.get(campaign_id)
        query = self.db.query(Recipient).filter(Recipient.campaign_id == campaign_id)
        if status:
            query = query.filter(Recipient.status == status)
        return query.order_by(Recipient.email.asc()).offset(skip).limit(limit).all()

    def _owned_ids(self, campaign: Campaign) -> List[str]:
        """The campaign plus, for an A/B parent, all of its variants"""
        ids = [campaign.id]
        if campaign.is_ab_test:
            ids.extend(v.id for v in self.variants(campaign.id))
        return ids

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    def validate_draft(self, draft: CampaignCreate) -> None:
        if not (draft.name or "").strip():
            raise ValidationError("Campaign name is required")
        if not (draft.subject or "").strip():
            raise ValidationError("Campaign subject is required")
        if not (draft.html_content or "").strip():
            raise ValidationError("Campaign content is required")

        try:
            schedule_type = ScheduleType(draft.schedule_type)
        except ValueError:
            raise ValidationError(f"Unknown schedule type: {draft.schedule_type!r}")

        if schedule_type == ScheduleType.SCHEDULED and draft.scheduled_time is None:
            raise ValidationError("Scheduled campaigns require scheduled_time")
        if schedule_type == ScheduleType.RECURRING:
            validate_rule(draft.recurrence_rule, dtstart=draft.scheduled_time)

        parse_audience(draft.audience)

    def build_campaign(self, draft: CampaignCreate, created_by: Optional[str] = None, **extra) -> Campaign:
        """Validated, unsaved draft row"""
        self.validate_draft(draft)
        schedule_type = ScheduleType(draft.schedule_type)
        return Campaign(
            id=new_id(),
            name=draft.name.strip(),
            subject=draft.subject.strip(),
            html_content=draft.html_content,
            schedule_type=schedule_type.value,
            scheduled_time=draft.scheduled_time if schedule_type != ScheduleType.IMMEDIATE else None,
            recurrence_rule=draft.recurrence_rule if schedule_type == ScheduleType.RECURRING else None,
            audience=draft.audience or "all",
            template_id=draft.template_id,
            status=CampaignStatus.DRAFT.value,
            created_by=created_by,
            **extra
        )

    def create(self, draft: CampaignCreate, created_by: Optional[str] = None) -> Campaign:
        campaign = self.build_campaign(draft, created_by=created_by)
        self.db.add(campaign)
        self.db.commit()
        self.db.refresh(campaign)
        logger.info(f"Created {campaign.schedule_type} campaign {campaign.id} ({campaign.name})")
        return campaign

    # ------------------------------------------------------------------
    # Audience
    # ------------------------------------------------------------------

    def resolve_audience(self, descriptor: Optional[str]) -> List[AudienceMember]:
        """Current members of an audience, deduplicated by email"""
        kind, value = parse_audience(descriptor)

        if kind == "emails":
            members = [AudienceMember(email=email) for email in value.split(",")]
        else:
            query = self.db.query(Profile).filter(Profile.email_active == True)  # noqa: E712
            if kind == "all":
                query = query.filter(Profile.newsletter_opt_in == True)  # noqa: E712
            elif kind == "tag":
                query = query.join(ProfileTag, ProfileTag.profile_id == Profile.id).filter(ProfileTag.tag == value)
            elif kind == "role":
                query = query.filter(func.lower(Profile.role) == value)
            members = [
                AudienceMember(email=p.email.strip().lower(), name=p.name, user_id=p.id)
                for p in query.order_by(Profile.email.asc()).all()
            ]

        seen = set()
        unique = []
        for member in members:
            if member.email in seen:
                continue
            seen.add(member.email)
            unique.append(member)
        return unique

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def _run_start(self, campaign_id: str) -> Optional[datetime]:
        return self.db.query(func.min(Batch.scheduled_time)).filter(
            Batch.campaign_id == campaign_id
        ).scalar()

    def _start_time(self, campaign: Campaign, now: datetime) -> datetime:
        schedule_type = ScheduleType(campaign.schedule_type)
        if schedule_type == ScheduleType.IMMEDIATE:
            return now
        if schedule_type == ScheduleType.SCHEDULED:
            return campaign.scheduled_time or now

        if campaign.scheduled_time is None:
            # No anchor: first run goes out now and anchors the series
            campaign.scheduled_time = now
            return now

        start = None
        if campaign.previous_run_id:
            previous_start = self._run_start(campaign.previous_run_id)
            if previous_start is not None:
                start = next_occurrence(
                    campaign.recurrence_rule, previous_start,
                    dtstart=campaign.scheduled_time, inclusive=False
                )
        if start is None or start < now:
            start = next_occurrence(campaign.recurrence_rule, now, dtstart=campaign.scheduled_time)
        if start is None:
            raise InvalidStateError(f"Recurrence rule of campaign {campaign.id} has no remaining occurrences")
        return start

    def _enqueue(self, campaign: Campaign, members: Sequence[AudienceMember], start: datetime) -> List[Batch]:
        recipients = []
        for member in members:
            recipient = Recipient(
                id=new_id(),
                campaign_id=campaign.id,
                user_id=member.user_id,
                email=member.email,
                name=member.name,
                status=RecipientStatus.PENDING.value,
                unsubscribe_token=generate_unsubscribe_token(),
            )
            self.db.add(recipient)
            recipients.append(recipient)
        self.db.flush()
        return self.scheduler.partition(campaign, recipients, start_time=start)

    def activate(self, campaign_id: str, now: Optional[datetime] = None) -> Campaign:
        """
        Move a draft to active and queue its recipients in batches

        Recipient and batch creation happen in the same transaction as the
        status change; any failure leaves the campaign a draft.
        """
        now = now or datetime.utcnow()
        campaign = self.get(campaign_id)
        if campaign.is_variant:
            raise InvalidStateError("A/B variants are activated through their test campaign")

        claimed = self.db.query(Campaign).filter(
            Campaign.id == campaign_id,
            Campaign.status == CampaignStatus.DRAFT.value
        ).update({
            Campaign.status: CampaignStatus.ACTIVE.value,
            Campaign.activated_at: now,
        }, synchronize_session=False)
        if claimed != 1:
            self.db.rollback()
            raise InvalidStateError(f"Campaign {campaign_id} is not a draft")
        self.db.expire(campaign)

        try:
            start = self._start_time(campaign, now)
            members = self.resolve_audience(campaign.audience)

            if campaign.is_ab_test:
                variants = self.variants(campaign.id)
                if len(variants) < 2:
                    raise InvalidStateError(f"A/B test {campaign.id} needs at least two variants")
                for variant, bucket in zip(variants, split_for_variants(members, len(variants))):
                    if variant.status != CampaignStatus.DRAFT.value:
                        raise InvalidStateError(f"Variant {variant.id} is {variant.status}, not draft")
                    variant.status = CampaignStatus.ACTIVE.value
                    variant.activated_at = now
                    self._enqueue(variant, bucket, start)
            else:
                self._enqueue(campaign, members, start)

            if not members:
                for owned_id in self._owned_ids(campaign):
                    self.db.query(Campaign).filter(Campaign.id == owned_id).update({
                        Campaign.status: CampaignStatus.COMPLETED.value,
                        Campaign.completed_at: now,
                    }, synchronize_session=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(campaign)
        if members:
            logger.info(
                f"Activated campaign {campaign.id} with {len(members)} recipients, "
                f"first batch at {start.isoformat()}"
            )
        else:
            logger.info(f"Activated campaign {campaign.id} with an empty audience, completed immediately")
        return campaign

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def complete(self, campaign_id: str, now: Optional[datetime] = None) -> Campaign:
        """active -> completed once every owned batch is terminal"""
        now = now or datetime.utcnow()
        campaign = self.get(campaign_id)
        if campaign.status != CampaignStatus.ACTIVE.value:
            raise InvalidStateError(f"Campaign {campaign_id} is {campaign.status}, not active")

        owned = self._owned_ids(campaign)
        open_batches = self.db.query(func.count(Batch.id)).filter(
            Batch.campaign_id.in_(owned),
            Batch.status.notin_(BatchStatus.terminal())
        ).scalar() or 0
        if open_batches:
            raise InvalidStateError(f"Campaign {campaign_id} still has {open_batches} open batches")

        completed = self.db.query(Campaign).filter(
            Campaign.id.in_(owned),
            Campaign.status == CampaignStatus.ACTIVE.value
        ).update({
            Campaign.status: CampaignStatus.COMPLETED.value,
            Campaign.completed_at: now,
        }, synchronize_session=False)
        self.db.commit()
        if completed == 0:
            raise InvalidStateError(f"Campaign {campaign_id} was completed concurrently")

        self.db.refresh(campaign)
        logger.info(f"Completed campaign {campaign.id}: {campaign.sent_count} sent, {campaign.failed_count} failed")

        if campaign.is_variant:
            self.try_complete(campaign.parent_campaign_id)
        elif campaign.schedule_type == ScheduleType.RECURRING.value and not campaign.is_ab_test:
            self.spawn_next_run(campaign, now=now)
        return campaign

    def try_complete(self, campaign_id: str) -> bool:
        """Complete the campaign if it is active and drained; never raises on state"""
        campaign = self.db.get(Campaign, campaign_id)
        if campaign is None or campaign.status != CampaignStatus.ACTIVE.value:
            return False
        try:
            self.complete(campaign_id)
        except InvalidStateError:
            return False
        return True

    def spawn_next_run(self, campaign: Campaign, now: Optional[datetime] = None) -> Optional[Campaign]:
        """Create and activate the successor of a finished recurring run"""
        now = now or datetime.utcnow()
        previous_start = self._run_start(campaign.id) or campaign.activated_at or now
        upcoming = next_occurrence(
            campaign.recurrence_rule, previous_start,
            dtstart=campaign.scheduled_time, inclusive=False
        )
        if upcoming is None:
            logger.info(f"Recurring campaign {campaign.id} has no further occurrences")
            return None

        successor = Campaign(
            id=new_id(),
            name=campaign.name,
            subject=campaign.subject,
            html_content=campaign.html_content,
            schedule_type=campaign.schedule_type,
            scheduled_time=campaign.scheduled_time,
            recurrence_rule=campaign.recurrence_rule,
            audience=campaign.audience,
            template_id=campaign.template_id,
            previous_run_id=campaign.id,
            status=CampaignStatus.DRAFT.value,
            created_by=campaign.created_by,
        )
        self.db.add(successor)
        self.db.commit()
        logger.info(f"Created run {successor.id} following recurring campaign {campaign.id}")

        try:
            return self.activate(successor.id, now=now)
        except InvalidStateError as e:
            logger.warning(f"Could not activate run {successor.id}: {e.message}")
            return successor

    # ------------------------------------------------------------------
    # Cancellation and deletion
    # ------------------------------------------------------------------

    def cancel(self, campaign_id: str) -> Campaign:
        """draft -> cancelled; an A/B test takes its draft variants with it"""
        campaign = self.get(campaign_id)
        cancelled = self.db.query(Campaign).filter(
            Campaign.id == campaign_id,
            Campaign.status == CampaignStatus.DRAFT.value
        ).update({Campaign.status: CampaignStatus.CANCELLED.value}, synchronize_session=False)
        if cancelled != 1:
            self.db.rollback()
            raise InvalidStateError(f"Only draft campaigns can be cancelled; {campaign_id} is {campaign.status}")
        if campaign.is_ab_test:
            self.db.query(Campaign).filter(
                Campaign.parent_campaign_id == campaign_id,
                Campaign.status == CampaignStatus.DRAFT.value
            ).update({Campaign.status: CampaignStatus.CANCELLED.value}, synchronize_session=False)
        self.db.commit()
        self.db.refresh(campaign)
        logger.info(f"Cancelled campaign {campaign_id}")
        return campaign

    def delete(self, campaign_id: str) -> None:
        campaign = self.get(campaign_id)
        locked = (CampaignStatus.ACTIVE.value, CampaignStatus.COMPLETED.value)
        owned = [campaign] + (self.variants(campaign.id) if campaign.is_ab_test else [])
        for row in owned:
            if row.status in locked:
                raise ConflictError(f"Campaign {row.id} is {row.status} and cannot be deleted")

        owned_ids = [row.id for row in owned]
        self.db.query(LinkClick).filter(LinkClick.campaign_id.in_(owned_ids)).delete(synchronize_session=False)
        self.db.query(ABTestResult).filter(
            or_(ABTestResult.test_id.in_(owned_ids), ABTestResult.variant_id.in_(owned_ids))
        ).delete(synchronize_session=False)
        # Variants first; they reference the parent
        for row in reversed(owned):
            self.db.delete(row)
            self.db.flush()
        self.db.commit()
        logger.info(f"Deleted campaign {campaign_id} ({len(owned) - 1} variants)")

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def update_stats(self, campaign_id: str) -> CampaignStats:
        """Read-only aggregation over recipients and click events"""
        campaign = self.get(campaign_id)
        return self.stats_for(campaign_id, self._owned_ids(campaign))

    def stats_for(self, campaign_id: str, campaign_ids: Sequence[str]) -> CampaignStats:
        by_status = dict(
            self.db.query(Recipient.status, func.count(Recipient.id)).filter(
                Recipient.campaign_id.in_(campaign_ids)
            ).group_by(Recipient.status).all()
        )
        opened = self.db.query(func.count(Recipient.id)).filter(
            Recipient.campaign_id.in_(campaign_ids),
            Recipient.opened == True  # noqa: E712
        ).scalar() or 0
        clicks = self.db.query(func.count(LinkClick.id)).filter(
            LinkClick.campaign_id.in_(campaign_ids)
        ).scalar() or 0
        unique_clickers = self.db.query(func.count(func.distinct(LinkClick.recipient_id))).filter(
            LinkClick.campaign_id.in_(campaign_ids),
            LinkClick.recipient_id.isnot(None)
        ).scalar() or 0

        total = sum(by_status.values())
        sent = by_status.get(RecipientStatus.SENT.value, 0)
        return CampaignStats(
            campaign_id=campaign_id,
            total=total,
            pending=by_status.get(RecipientStatus.PENDING.value, 0),
            sent=sent,
            failed=by_status.get(RecipientStatus.FAILED.value, 0),
            bounced=by_status.get(RecipientStatus.BOUNCED.value, 0),
            opened=opened,
            clicks=clicks,
            unique_clickers=unique_clickers,
            open_rate=percentage(opened, sent),
            click_rate=percentage(clicks, opened),
            delivery_rate=percentage(sent, total),
        )
