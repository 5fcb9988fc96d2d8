"""
Pydantic schemas for the admin API
"""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime, timezone

from .models import ScheduleType, BounceType


class CampaignCreate(BaseModel):
    """Schema for creating a campaign draft"""
    name: str = Field(..., min_length=1, max_length=255)
    subject: str = Field(..., min_length=1, max_length=255)
    html_content: str = Field(..., min_length=1)
    schedule_type: ScheduleType = ScheduleType.IMMEDIATE
    scheduled_time: Optional[datetime] = None
    recurrence_rule: Optional[str] = None
    audience: str = "all"
    template_id: Optional[str] = None

    @field_validator('scheduled_time')
    @classmethod
    def strip_timezone(cls, v):
        """Store naive UTC like the rest of the tables"""
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    @field_validator('audience')
    @classmethod
    def normalize_audience(cls, v):
        return (v or "all").strip()


class CampaignResponse(BaseModel):
    id: str
    name: str
    subject: str
    schedule_type: str
    scheduled_time: Optional[datetime] = None
    recurrence_rule: Optional[str] = None
    audience: str
    template_id: Optional[str] = None
    parent_campaign_id: Optional[str] = None
    variant_name: Optional[str] = None
    is_ab_test: bool
    winner_id: Optional[str] = None
    previous_run_id: Optional[str] = None
    status: str
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    sent_count: int
    failed_count: int
    total_batches: int

    class Config:
        from_attributes = True


class BatchResponse(BaseModel):
    id: str
    campaign_id: str
    batch_number: int
    scheduled_time: datetime
    status: str
    recipient_count: int
    sent_count: int
    failed_count: int
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RecipientResponse(BaseModel):
    id: str
    campaign_id: str
    batch_id: Optional[str] = None
    email: str
    name: Optional[str] = None
    status: str
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    opened: bool
    opened_at: Optional[datetime] = None
    open_count: int

    class Config:
        from_attributes = True


class CampaignStatsResponse(BaseModel):
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

    class Config:
        from_attributes = True


# ---------------------------------------------------------------------------
# A/B tests
# ---------------------------------------------------------------------------

class ABVariantCreate(BaseModel):
    subject: str = Field(..., min_length=1, max_length=255)
    html_content: str = Field(..., min_length=1)
    name: Optional[str] = Field(None, max_length=10)


class ABTestCreate(BaseModel):
    """A parent test campaign plus two or more content variants"""
    name: str = Field(..., min_length=1, max_length=255)
    base_campaign_id: Optional[str] = None
    schedule_type: ScheduleType = ScheduleType.IMMEDIATE
    scheduled_time: Optional[datetime] = None
    recurrence_rule: Optional[str] = None
    audience: str = "all"
    variants: List[ABVariantCreate] = Field(..., min_length=2)


class VariantMetricsResponse(BaseModel):
    variant_id: str
    variant_name: Optional[str] = None
    status: str
    sent: int = 0
    opened: int = 0
    clicks: int = 0
    open_rate: float = 0.0
    click_rate: float = 0.0

    class Config:
        from_attributes = True


class ABTestResponse(BaseModel):
    test: CampaignResponse
    variants: List[VariantMetricsResponse]
    winner_id: Optional[str] = None


class WinnerCommit(BaseModel):
    winner_variant_id: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Suppression
# ---------------------------------------------------------------------------

class BounceCreate(BaseModel):
    """Bounce webhook payload"""
    email: str = Field(..., min_length=3)
    bounce_type: BounceType = BounceType.UNKNOWN
    reason: Optional[str] = ""

    @field_validator('bounce_type', mode='before')
    @classmethod
    def coerce_bounce_type(cls, v):
        # Providers send types we don't model; keep them as unknown
        values = {t.value for t in BounceType}
        if isinstance(v, str) and v.lower() in values:
            return v.lower()
        if isinstance(v, BounceType):
            return v
        return BounceType.UNKNOWN.value


class BounceResponse(BaseModel):
    email: str
    bounce_type: str
    reason: Optional[str] = None
    attempts: int
    last_seen_at: Optional[datetime] = None
    suppressed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SuppressionStatusResponse(BaseModel):
    email: str
    suppressed: bool
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Batch processing
# ---------------------------------------------------------------------------

class BatchResultResponse(BaseModel):
    batch_id: str
    campaign_id: str
    status: str
    sent: int = 0
    failed: int = 0
    suppressed: int = 0
    remaining: int = 0
    error: Optional[str] = None

    class Config:
        from_attributes = True


class TickResponse(BaseModel):
    ok: bool = True
    started_at: datetime
    processed: int
    results: List[BatchResultResponse]
    held_back: List[str]
    conflicts: List[str]
    reconciled: List[str]
