from sqlalchemy import (
    Column, String, DateTime, Integer, Text, Boolean, Float, ForeignKey,
    UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime
from enum import Enum
import uuid

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


class ScheduleType(str, Enum):
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"
    RECURRING = "recurring"


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def terminal(cls):
        return (cls.COMPLETED.value, cls.FAILED.value)


class RecipientStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    BOUNCED = "bounced"


class BounceType(str, Enum):
    HARD = "hard"        # permanent failure (invalid address)
    SOFT = "soft"        # temporary failure (mailbox full)
    COMPLAINT = "complaint"
    UNKNOWN = "unknown"


class Campaign(Base):
    __tablename__ = "email_campaigns"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    subject = Column(String, nullable=False)
    html_content = Column(Text, nullable=False)

    # Scheduling
    schedule_type = Column(String(20), nullable=False, default=ScheduleType.IMMEDIATE.value)
    scheduled_time = Column(DateTime, nullable=True)
    recurrence_rule = Column(Text, nullable=True)  # RFC 5545 RRULE

    # Targeting
    audience = Column(String, nullable=False, default="all")
    template_id = Column(String, nullable=True)

    # A/B testing: variants point at their parent test campaign
    parent_campaign_id = Column(String, ForeignKey("email_campaigns.id"), nullable=True, index=True)
    variant_name = Column(String(10), nullable=True)
    is_ab_test = Column(Boolean, default=False, nullable=False)
    winner_id = Column(String, nullable=True)

    # Recurring runs chain back to the run that spawned them
    previous_run_id = Column(String, nullable=True)

    status = Column(String(20), nullable=False, default=CampaignStatus.DRAFT.value, index=True)
    created_by = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    activated_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Running counters maintained by batch processing
    sent_count = Column(Integer, default=0, nullable=False)
    failed_count = Column(Integer, default=0, nullable=False)
    total_batches = Column(Integer, default=0, nullable=False)

    batches = relationship("Batch", back_populates="campaign", cascade="all, delete-orphan")
    recipients = relationship("Recipient", back_populates="campaign", cascade="all, delete-orphan")

    @property
    def is_variant(self) -> bool:
        return self.parent_campaign_id is not None


class Batch(Base):
    __tablename__ = "email_batches"

    id = Column(String, primary_key=True, default=new_id)
    campaign_id = Column(String, ForeignKey("email_campaigns.id"), nullable=False, index=True)
    batch_number = Column(Integer, nullable=False, default=1)
    scheduled_time = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default=BatchStatus.PENDING.value)
    recipient_count = Column(Integer, default=0, nullable=False)
    sent_count = Column(Integer, default=0, nullable=False)
    failed_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    campaign = relationship("Campaign", back_populates="batches")
    recipients = relationship("Recipient", back_populates="batch")

    __table_args__ = (
        Index("idx_batch_due", "status", "scheduled_time"),
    )


class Recipient(Base):
    __tablename__ = "email_recipients"

    id = Column(String, primary_key=True, default=new_id)
    campaign_id = Column(String, ForeignKey("email_campaigns.id"), nullable=False, index=True)
    batch_id = Column(String, ForeignKey("email_batches.id"), nullable=True, index=True)
    user_id = Column(String, nullable=True)
    email = Column(String, nullable=False)
    name = Column(String, nullable=True)

    status = Column(String(20), nullable=False, default=RecipientStatus.PENDING.value)
    sent_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    # Engagement, written only by tracking callbacks
    opened = Column(Boolean, default=False, nullable=False)
    opened_at = Column(DateTime, nullable=True)
    open_count = Column(Integer, default=0, nullable=False)

    unsubscribe_token = Column(String, nullable=False, unique=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    campaign = relationship("Campaign", back_populates="recipients")
    batch = relationship("Batch", back_populates="recipients")

    __table_args__ = (
        UniqueConstraint("campaign_id", "email", name="uq_recipient_campaign_email"),
    )


class LinkClick(Base):
    """Append-only click event; repeat clicks are all recorded"""
    __tablename__ = "email_link_clicks"

    id = Column(String, primary_key=True, default=new_id)
    campaign_id = Column(String, nullable=False, index=True)
    recipient_id = Column(String, nullable=True, index=True)
    recipient_email = Column(String, nullable=False, default="unknown")
    link_url = Column(Text, nullable=False)
    link_id = Column(String, nullable=False)
    user_agent = Column(Text, nullable=True)
    device_type = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    clicked_at = Column(DateTime, default=datetime.utcnow)


class BounceRecord(Base):
    __tablename__ = "email_bounces"

    email = Column(String, primary_key=True)
    bounce_type = Column(String(20), nullable=False, default=BounceType.UNKNOWN.value)
    reason = Column(Text, nullable=True)
    last_seen_at = Column(DateTime, default=datetime.utcnow)
    attempts = Column(Integer, default=1, nullable=False)
    # Set once the hard/soft threshold fires; only a manual clear removes it
    suppressed_at = Column(DateTime, nullable=True)


class UnsubscribedEmail(Base):
    __tablename__ = "unsubscribed_emails"

    email = Column(String, primary_key=True)
    user_id = Column(String, nullable=True)
    campaign_id = Column(String, nullable=True)
    unsubscribed_at = Column(DateTime, default=datetime.utcnow)


class ABTestResult(Base):
    __tablename__ = "ab_test_results"

    id = Column(String, primary_key=True, default=new_id)
    test_id = Column(String, ForeignKey("email_campaigns.id"), nullable=False, index=True)
    variant_id = Column(String, ForeignKey("email_campaigns.id"), nullable=False)
    metric = Column(String, nullable=False)
    value = Column(Float, nullable=False)
    recorded_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("test_id", "variant_id", "metric", name="uq_ab_result_metric"),
    )


class Profile(Base):
    """Account store row; the suppression store flips ``email_active``"""
    __tablename__ = "profiles"

    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    role = Column(String(20), nullable=False, default="customer")
    email_active = Column(Boolean, default=True, nullable=False)
    newsletter_opt_in = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    tags = relationship("ProfileTag", back_populates="profile", cascade="all, delete-orphan")


class ProfileTag(Base):
    __tablename__ = "profile_tags"

    profile_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), primary_key=True)
    tag = Column(String, primary_key=True)

    profile = relationship("Profile", back_populates="tags")
