"""
Suppression store: unsubscribes and bounce history gate every outbound send
"""
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..core.errors import NotFoundError, SuppressionError, ValidationError
from ..core.logging_config import get_logger
from ..models import BounceRecord, BounceType, Profile, UnsubscribedEmail

logger = get_logger(__name__)

# Soft bounces at or above this many attempts suppress the address
SOFT_BOUNCE_THRESHOLD = 5

REASON_UNSUBSCRIBED = "unsubscribed"
REASON_BOUNCED = "bounced"


def normalize_email(email: str) -> str:
    if not email or "@" not in email:
        raise ValidationError(f"Invalid email address: {email!r}")
    return email.strip().lower()


class AccountStore:
    """Account/profile store whose email-active flag suppression flips"""

    def set_email_active(self, email: str, active: bool) -> int:
        raise NotImplementedError


class ProfileAccountStore(AccountStore):
    def __init__(self, db_session: Session):
        self.db = db_session

    def set_email_active(self, email: str, active: bool) -> int:
        updated = self.db.query(Profile).filter(
            Profile.email == email
        ).update({Profile.email_active: active}, synchronize_session=False)
        logger.info(f"Set email_active={active} for {email} ({updated} profile(s))")
        return updated


class SuppressionService:
    def __init__(self, db_session: Session, account_store: Optional[AccountStore] = None):
        self.db = db_session
        self.accounts = account_store or ProfileAccountStore(db_session)

    def suppression_reason(self, email: str) -> Optional[str]:
        """Return why ``email`` must not be mailed, or None"""
        email = normalize_email(email)
        if self.db.get(UnsubscribedEmail, email) is not None:
            return REASON_UNSUBSCRIBED
        bounce = self.db.get(BounceRecord, email)
        if bounce is not None and bounce.suppressed_at is not None:
            return f"{REASON_BOUNCED} ({bounce.bounce_type})"
        return None

    def is_suppressed(self, email: str) -> bool:
        return self.suppression_reason(email) is not None

    def ensure_sendable(self, email: str) -> None:
        """Raise SuppressionError when ``email`` must not be mailed"""
        reason = self.suppression_reason(email)
        if reason is not None:
            raise SuppressionError(normalize_email(email), reason)

    def record_bounce(self, email: str, bounce_type: str, reason: str = "") -> BounceRecord:
        """
        Upsert a bounce and apply the suppression trigger

        A hard bounce, or a soft bounce once the attempt counter reaches the
        threshold, suppresses the address and deactivates the account email.
        The suppression stays until ``clear_bounce`` is called.
        """
        email = normalize_email(email)
        try:
            kind = BounceType(str(bounce_type).lower())
        except ValueError:
            kind = BounceType.UNKNOWN

        now = datetime.utcnow()
        record = self.db.get(BounceRecord, email)
        if record is None:
            record = BounceRecord(
                email=email,
                bounce_type=kind.value,
                reason=reason,
                last_seen_at=now,
                attempts=1,
            )
            self.db.add(record)
        else:
            record.bounce_type = kind.value
            record.reason = reason
            record.last_seen_at = now
            record.attempts = (record.attempts or 0) + 1

        triggers = kind == BounceType.HARD or (
            kind == BounceType.SOFT and record.attempts >= SOFT_BOUNCE_THRESHOLD
        )
        if triggers and record.suppressed_at is None:
            record.suppressed_at = now
            self.accounts.set_email_active(email, False)
            logger.info(f"Suppressed {email} after {kind.value} bounce (attempts={record.attempts})")

        self.db.commit()
        self.db.refresh(record)
        return record

    def clear_bounce(self, email: str) -> None:
        """Manually remove a bounce record and re-activate the account email"""
        email = normalize_email(email)
        record = self.db.get(BounceRecord, email)
        if record is None:
            raise NotFoundError(f"No bounce record for {email}")
        self.db.delete(record)
        self.accounts.set_email_active(email, True)
        self.db.commit()
        logger.info(f"Cleared bounce record for {email}")

    def unsubscribe(
        self,
        email: str,
        user_id: Optional[str] = None,
        campaign_id: Optional[str] = None
    ) -> UnsubscribedEmail:
        email = normalize_email(email)
        entry = self.db.get(UnsubscribedEmail, email)
        if entry is None:
            entry = UnsubscribedEmail(email=email)
            self.db.add(entry)
        entry.user_id = user_id or entry.user_id
        entry.campaign_id = campaign_id or entry.campaign_id
        entry.unsubscribed_at = datetime.utcnow()
        self.db.commit()
        logger.info(f"Unsubscribed {email}")
        return entry

    def clear_unsubscribe(self, email: str) -> None:
        email = normalize_email(email)
        entry = self.db.get(UnsubscribedEmail, email)
        if entry is None:
            raise NotFoundError(f"{email} is not unsubscribed")
        self.db.delete(entry)
        self.db.commit()
        logger.info(f"Cleared unsubscribe for {email}")
