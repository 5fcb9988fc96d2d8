"""
Recipient lifecycle: delivery status from batch processing, engagement from
tracking callbacks
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..core.device_detection import detect_device_type
from ..core.errors import NotFoundError
from ..core.logging_config import get_logger
from ..models import LinkClick, Recipient, RecipientStatus

logger = get_logger(__name__)


@dataclass
class ClickEvent:
    campaign_id: str
    link_id: str
    url: str
    recipient_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


class RecipientTracker:
    def __init__(self, db_session: Session):
        self.db = db_session

    def _transition_from_pending(self, recipient_id: str, values: dict) -> bool:
        updated = self.db.query(Recipient).filter(
            Recipient.id == recipient_id,
            Recipient.status == RecipientStatus.PENDING.value
        ).update(values, synchronize_session=False)
        self.db.commit()
        return updated == 1

    def mark_sent(self, recipient_id: str, sent_at: Optional[datetime] = None) -> bool:
        """Pending -> sent. Returns False when the recipient already left pending."""
        return self._transition_from_pending(recipient_id, {
            Recipient.status: RecipientStatus.SENT.value,
            Recipient.sent_at: sent_at or datetime.utcnow(),
            Recipient.error_message: None,
        })

    def mark_failed(
        self,
        recipient_id: str,
        reason: str,
        status: RecipientStatus = RecipientStatus.FAILED
    ) -> bool:
        """Pending -> failed/bounced with the captured reason"""
        return self._transition_from_pending(recipient_id, {
            Recipient.status: RecipientStatus(status).value,
            Recipient.error_message: reason,
        })

    def record_open(self, recipient_id: str, opened_at: Optional[datetime] = None) -> None:
        """
        Count a pixel fetch

        ``opened_at`` is only set by the first open; later opens just bump
        the counter. Done as one UPDATE so concurrent pixel fetches don't
        lose increments.
        """
        now = opened_at or datetime.utcnow()
        updated = self.db.query(Recipient).filter(
            Recipient.id == recipient_id
        ).update({
            Recipient.open_count: Recipient.open_count + 1,
            Recipient.opened: True,
            Recipient.opened_at: func.coalesce(Recipient.opened_at, now),
        }, synchronize_session=False)
        if updated == 0:
            self.db.rollback()
            raise NotFoundError(f"Recipient {recipient_id} not found")
        self.db.commit()

    def record_click(self, click: ClickEvent) -> LinkClick:
        """Append a click row; clicks are never deduplicated"""
        recipient_email = "unknown"
        if click.recipient_id:
            recipient = self.db.get(Recipient, click.recipient_id)
            if recipient is not None:
                recipient_email = recipient.email

        row = LinkClick(
            campaign_id=click.campaign_id,
            recipient_id=click.recipient_id,
            recipient_email=recipient_email,
            link_url=click.url,
            link_id=click.link_id,
            user_agent=click.user_agent or "",
            device_type=detect_device_type(click.user_agent or ""),
            ip_address=click.ip_address,
            clicked_at=datetime.utcnow(),
        )
        self.db.add(row)
        self.db.commit()
        return row

    def resolve_by_unsubscribe_token(self, token: str) -> Recipient:
        if not token:
            raise NotFoundError("Invalid or expired unsubscribe link")
        recipient = self.db.query(Recipient).filter(
            Recipient.unsubscribe_token == token
        ).first()
        if recipient is None:
            raise NotFoundError("Invalid or expired unsubscribe link")
        return recipient
