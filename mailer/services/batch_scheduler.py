"""
Batch Scheduler - splits campaigns into time-sliced batches and dispatches
due batches on every external tick
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Set

from sqlalchemy import func, or_, and_
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..core.errors import (
    ConflictError, InvalidStateError, NotFoundError, SuppressionError, TransportError,
    TransportUnavailableError
)
from ..core.logging_config import get_logger
from ..models import Batch, BatchStatus, Campaign, Recipient, RecipientStatus, new_id
from .mail_transport import MailTransport, OutboundMessage
from .recipient_tracker import RecipientTracker
from .suppression_service import REASON_BOUNCED, SuppressionService
from .tracking_codec import TrackingCodec, personalize

logger = get_logger(__name__)

STALE_REASON = "stale: processing timed out"


@dataclass(frozen=True)
class PartitionStrategy:
    """N recipients per batch, batches spaced ``interval`` apart"""
    batch_size: int
    interval: timedelta

    @classmethod
    def from_settings(cls, settings: Settings) -> "PartitionStrategy":
        return cls(
            batch_size=max(1, settings.batch_size),
            interval=timedelta(minutes=settings.batch_interval_minutes),
        )


@dataclass
class BatchResult:
    batch_id: str
    campaign_id: str
    status: str  # completed | failed | deferred
    sent: int = 0
    failed: int = 0
    suppressed: int = 0
    remaining: int = 0
    error: Optional[str] = None


@dataclass
class TickResult:
    started_at: datetime
    results: List[BatchResult] = field(default_factory=list)
    held_back: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    reconciled: List[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.results)


@dataclass(frozen=True)
class _Content:
    campaign_id: str
    subject: str
    html: str


@dataclass(frozen=True)
class _Target:
    recipient_id: str
    email: str
    name: Optional[str]
    unsubscribe_token: str


class BatchScheduler:
    def __init__(
        self,
        db_session: Session,
        transport: MailTransport,
        codec: Optional[TrackingCodec] = None,
        settings: Optional[Settings] = None,
        suppression: Optional[SuppressionService] = None,
        tracker: Optional[RecipientTracker] = None,
        on_batch_finished: Optional[Callable[[str], object]] = None
    ):
        self.db = db_session
        self.settings = settings or get_settings()
        self.transport = transport
        self.codec = codec or TrackingCodec(self.settings.base_url)
        self.suppression = suppression or SuppressionService(db_session)
        self.tracker = tracker or RecipientTracker(db_session)
        self.on_batch_finished = on_batch_finished

    # ------------------------------------------------------------------
    # Partitioning
    # ------------------------------------------------------------------

    def partition(
        self,
        campaign: Campaign,
        recipients: Sequence[Recipient],
        start_time: Optional[datetime] = None,
        strategy: Optional[PartitionStrategy] = None
    ) -> List[Batch]:
        """
        Create pending batches for ``recipients`` and assign each recipient
        to exactly one of them. Does not commit; the caller owns the
        transaction.
        """
        strategy = strategy or PartitionStrategy.from_settings(self.settings)
        start = start_time or datetime.utcnow()
        last_number = self.db.query(func.max(Batch.batch_number)).filter(
            Batch.campaign_id == campaign.id
        ).scalar() or 0

        batches = []
        for index, offset in enumerate(range(0, len(recipients), strategy.batch_size)):
            chunk = recipients[offset:offset + strategy.batch_size]
            batch = Batch(
                id=new_id(),
                campaign_id=campaign.id,
                batch_number=last_number + index + 1,
                scheduled_time=start + index * strategy.interval,
                status=BatchStatus.PENDING.value,
                recipient_count=len(chunk),
            )
            self.db.add(batch)
            for recipient in chunk:
                recipient.batch_id = batch.id
            batches.append(batch)

        campaign.total_batches = last_number + len(batches)
        self.db.flush()

        if batches:
            logger.info(
                f"Partitioned {len(recipients)} recipients of campaign {campaign.id} into "
                f"{len(batches)} batches starting {start.isoformat()}"
            )
        return batches

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def _blocked_by_earlier_batch(self, batch: Batch, selected: Set[str]) -> bool:
        """True when an earlier batch of the same campaign is unfinished and not queued ahead of it"""
        earlier = self.db.query(Batch.id).filter(
            Batch.campaign_id == batch.campaign_id,
            Batch.id != batch.id,
            Batch.status.in_([BatchStatus.PENDING.value, BatchStatus.PROCESSING.value]),
            or_(
                Batch.scheduled_time < batch.scheduled_time,
                and_(
                    Batch.scheduled_time == batch.scheduled_time,
                    Batch.batch_number < batch.batch_number
                )
            )
        ).all()
        return any(batch_id not in selected for (batch_id,) in earlier)

    def due_batches(self, now: datetime, limit: Optional[int] = None) -> List[Batch]:
        """Pending batches with scheduled_time <= now, oldest first"""
        query = self.db.query(Batch).filter(
            Batch.status == BatchStatus.PENDING.value,
            Batch.scheduled_time <= now
        ).order_by(Batch.scheduled_time.asc(), Batch.batch_number.asc())
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    async def tick(self, now: Optional[datetime] = None) -> TickResult:
        """Entry point for the external time trigger"""
        now = now or datetime.utcnow()
        limit = max(1, self.settings.max_batches_per_tick)
        result = TickResult(started_at=now)

        result.reconciled = self.reconcile_stale_batches(now)

        # Over-fetch so batches held back for ordering don't starve the tick
        candidates = self.due_batches(now, limit=limit * 4)
        selected = []
        selected_ids: Set[str] = set()
        for batch in candidates:
            if len(selected) >= limit:
                break
            if self._blocked_by_earlier_batch(batch, selected_ids):
                result.held_back.append(batch.id)
                continue
            selected.append((batch.id, batch.campaign_id))
            selected_ids.add(batch.id)

        if not selected:
            logger.info("No due batches found")
            return result

        halted_campaigns = set()
        for batch_id, campaign_id in selected:
            if campaign_id in halted_campaigns:
                result.held_back.append(batch_id)
                continue
            try:
                batch_result = await self.process_batch(batch_id, now=now)
            except ConflictError:
                logger.info(f"Batch {batch_id} was claimed by another worker")
                result.conflicts.append(batch_id)
                halted_campaigns.add(campaign_id)
                continue
            result.results.append(batch_result)
            if batch_result.status != BatchStatus.COMPLETED.value:
                halted_campaigns.add(campaign_id)

        logger.info(
            f"Tick finished: {result.processed} processed, {len(result.held_back)} held back, "
            f"{len(result.conflicts)} conflicts, {len(result.reconciled)} reconciled"
        )
        return result

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    def _claim(self, batch_id: str, now: datetime) -> None:
        """Compare-and-swap pending -> processing for a due batch"""
        claimed = self.db.query(Batch).filter(
            Batch.id == batch_id,
            Batch.status == BatchStatus.PENDING.value,
            Batch.scheduled_time <= now
        ).update({
            Batch.status: BatchStatus.PROCESSING.value,
            Batch.started_at: now,
            Batch.error_message: None,
        }, synchronize_session=False)
        self.db.commit()
        if claimed == 1:
            return
        batch = self.db.get(Batch, batch_id)
        if batch is not None and batch.status == BatchStatus.PENDING.value:
            raise InvalidStateError(f"Batch {batch_id} is not due until {batch.scheduled_time.isoformat()}")
        raise ConflictError(f"Batch {batch_id} is not pending")

    def _finish(self, batch_id: str, status: BatchStatus, counts: Dict[str, int], error: Optional[str] = None) -> None:
        values = {
            Batch.status: status.value,
            Batch.sent_count: Batch.sent_count + counts.get("sent", 0),
            Batch.failed_count: Batch.failed_count + counts.get("failed", 0) + counts.get("suppressed", 0),
            Batch.error_message: error,
        }
        if status == BatchStatus.PENDING:
            values[Batch.started_at] = None
        else:
            values[Batch.completed_at] = datetime.utcnow()
        self.db.query(Batch).filter(
            Batch.id == batch_id,
            Batch.status == BatchStatus.PROCESSING.value
        ).update(values, synchronize_session=False)
        self.db.commit()

    def remaining_hourly_quota(self, now: datetime) -> Optional[int]:
        """Sends left in the rolling hour, or None when the quota is disabled"""
        quota = self.settings.hourly_quota
        if not quota or quota <= 0:
            return None
        sent_in_window = self.db.query(func.count(Recipient.id)).filter(
            Recipient.sent_at >= now - timedelta(hours=1)
        ).scalar() or 0
        return max(0, quota - sent_in_window)

    def _count_campaign(self, campaign_id: str, outcome: str) -> None:
        column = Campaign.sent_count if outcome == "sent" else Campaign.failed_count
        self.db.query(Campaign).filter(Campaign.id == campaign_id).update(
            {column: column + 1}, synchronize_session=False
        )
        self.db.commit()

    async def _deliver_one(self, content: _Content, target: _Target) -> str:
        try:
            self.suppression.ensure_sendable(target.email)
        except SuppressionError as e:
            status = RecipientStatus.BOUNCED if e.reason.startswith(REASON_BOUNCED) else RecipientStatus.FAILED
            self.tracker.mark_failed(target.recipient_id, f"suppressed: {e.reason}", status)
            self._count_campaign(content.campaign_id, "failed")
            logger.info(f"Skipping {e.message}")
            return "suppressed"

        html = personalize(content.html, target.name)
        html = self.codec.wrap_for_tracking(html, target.recipient_id, content.campaign_id, target.unsubscribe_token)
        unsubscribe_url = self.codec.unsubscribe_url(target.unsubscribe_token)
        message = OutboundMessage(
            to=target.email,
            from_address=self.settings.mail_from,
            from_name=self.settings.mail_from_name,
            subject=content.subject,
            html=html,
            headers={
                "List-Unsubscribe": f"<{unsubscribe_url}>",
                "List-Unsubscribe-Post": "List-Unsubscribe=One-Click",
            },
        )

        try:
            await self.transport.send(message)
        except TransportUnavailableError:
            raise
        except TransportError as e:
            self.tracker.mark_failed(target.recipient_id, e.message)
            self._count_campaign(content.campaign_id, "failed")
            logger.warning(f"Failed to send to {target.email}: {e.message}")
            return "failed"

        self.tracker.mark_sent(target.recipient_id)
        self._count_campaign(content.campaign_id, "sent")
        return "sent"

    async def _deliver_all(self, content: _Content, targets: List[_Target], counts: Dict[str, int]) -> None:
        """Send with a small fixed worker pool; the first unexpected error stops new sends"""
        pending = iter(targets)
        abort: List[BaseException] = []

        async def worker():
            for target in pending:
                if abort:
                    return
                try:
                    outcome = await self._deliver_one(content, target)
                except Exception as e:
                    abort.append(e)
                    return
                counts[outcome] += 1

        width = max(1, min(self.settings.send_concurrency, len(targets)))
        await asyncio.gather(*(worker() for _ in range(width)))
        if abort:
            raise abort[0]

    async def process_batch(self, batch_id: str, now: Optional[datetime] = None) -> BatchResult:
        """
        Send every pending recipient of one batch

        Only one caller can claim a batch; a concurrent call gets
        ConflictError. Per-recipient failures are recorded and processing
        continues. An unexpected error marks the batch failed and leaves
        already-sent recipients as they are.
        """
        now = now or datetime.utcnow()
        batch = self.db.get(Batch, batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")
        campaign_id = batch.campaign_id

        self._claim(batch_id, now)
        logger.info(f"Processing batch {batch_id} of campaign {campaign_id}")

        counts = {"sent": 0, "failed": 0, "suppressed": 0}
        try:
            campaign = self.db.get(Campaign, campaign_id)
            content = _Content(campaign_id=campaign.id, subject=campaign.subject, html=campaign.html_content)

            pending = self.db.query(Recipient).filter(
                Recipient.batch_id == batch_id,
                Recipient.status == RecipientStatus.PENDING.value
            ).order_by(Recipient.email.asc()).all()
            targets = [
                _Target(recipient_id=r.id, email=r.email, name=r.name, unsubscribe_token=r.unsubscribe_token)
                for r in pending
            ]

            quota = self.remaining_hourly_quota(now)
            if quota is not None and quota < len(targets):
                targets = targets[:quota]

            if pending and not targets:
                self._finish(batch_id, BatchStatus.PENDING, counts)
                logger.info(f"Hourly quota exhausted, batch {batch_id} deferred to the next run")
                return BatchResult(batch_id, campaign_id, "deferred", remaining=len(pending))

            await self._deliver_all(content, targets, counts)
        except Exception as e:
            self.db.rollback()
            error = str(e) or e.__class__.__name__
            self._finish(batch_id, BatchStatus.FAILED, counts, error=error)
            logger.error(f"Batch {batch_id} failed: {error}", exc_info=True)
            self._notify_finished(campaign_id)
            return BatchResult(batch_id, campaign_id, BatchStatus.FAILED.value, error=error, **counts)

        remaining = len(pending) - len(targets)
        if remaining > 0:
            self._finish(batch_id, BatchStatus.PENDING, counts)
            logger.info(f"Batch {batch_id} partially sent, {remaining} recipients wait for quota")
            return BatchResult(batch_id, campaign_id, "deferred", remaining=remaining, **counts)

        self._finish(batch_id, BatchStatus.COMPLETED, counts)
        logger.info(
            f"Batch {batch_id} completed: {counts['sent']} sent, {counts['failed']} failed, "
            f"{counts['suppressed']} suppressed"
        )
        self._notify_finished(campaign_id)
        return BatchResult(batch_id, campaign_id, BatchStatus.COMPLETED.value, **counts)

    def _notify_finished(self, campaign_id: str) -> None:
        if self.on_batch_finished is None:
            return
        try:
            self.on_batch_finished(campaign_id)
        except Exception:
            self.db.rollback()
            logger.exception(f"Completion check failed for campaign {campaign_id}")

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile_stale_batches(self, now: Optional[datetime] = None) -> List[str]:
        """
        Fail batches stuck in processing beyond the staleness window

        The window is STALE_BATCH_MINUTES plus one second per recipient.
        Recipients still pending stay pending.
        """
        now = now or datetime.utcnow()
        base = timedelta(minutes=self.settings.stale_batch_minutes)
        processing = self.db.query(Batch).filter(
            Batch.status == BatchStatus.PROCESSING.value
        ).all()

        reconciled = []
        for batch in processing:
            started = batch.started_at or batch.created_at
            deadline = started + base + timedelta(seconds=batch.recipient_count or 0)
            if deadline > now:
                continue
            batch_id, campaign_id = batch.id, batch.campaign_id
            updated = self.db.query(Batch).filter(
                Batch.id == batch_id,
                Batch.status == BatchStatus.PROCESSING.value
            ).update({
                Batch.status: BatchStatus.FAILED.value,
                Batch.error_message: STALE_REASON,
                Batch.completed_at: now,
            }, synchronize_session=False)
            self.db.commit()
            if updated == 1:
                logger.warning(f"Batch {batch_id} stuck in processing since {started.isoformat()}, marked failed")
                reconciled.append(batch_id)
                self._notify_finished(campaign_id)
        return reconciled
