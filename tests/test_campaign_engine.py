"""
Tests for the campaign lifecycle, audience resolution and statistics
"""
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from mailer.core.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from mailer.models import Batch, Campaign, CampaignStatus, Recipient, RecipientStatus
from mailer.schemas import CampaignCreate
from mailer.services.campaign_engine import (
    AudienceMember,
    CampaignEngine,
    parse_audience,
    percentage,
    split_for_variants,
)
from mailer.services.recipient_tracker import ClickEvent, RecipientTracker

T0 = datetime(2024, 6, 3, 8, 0, 0)


def draft(**fields):
    values = {
        "name": "Weekly specials",
        "subject": "Specials",
        "html_content": "<html><body><p>Hi</p></body></html>",
    }
    values.update(fields)
    return CampaignCreate(**values)


class TestDrafts:
    @pytest.mark.parametrize("fields", [
        {"name": "   "},
        {"subject": " "},
        {"schedule_type": "scheduled"},
        {"schedule_type": "recurring"},
        {"schedule_type": "recurring", "recurrence_rule": "FREQ=SOMETIMES"},
        {"audience": "segment:regulars"},
        {"audience": "role:wizard"},
        {"audience": "emails:not-an-address"},
    ])
    def test_invalid_draft_is_not_saved(self, engine, db, fields):
        with pytest.raises(ValidationError):
            engine.create(draft(**fields), created_by="admin-1")

        assert db.query(Campaign).count() == 0

    def test_create_stores_draft(self, engine):
        campaign = engine.create(draft(audience="tag:vegan"), created_by="admin-1")

        assert campaign.status == CampaignStatus.DRAFT.value
        assert campaign.audience == "tag:vegan"
        assert campaign.created_by == "admin-1"
        assert campaign.sent_count == 0

    def test_timezone_aware_schedule_is_stored_as_utc(self, engine):
        berlin_summer = timezone(timedelta(hours=2))

        campaign = engine.create(draft(
            schedule_type="scheduled",
            scheduled_time=datetime(2024, 6, 3, 10, 0, tzinfo=berlin_summer),
        ))

        assert campaign.scheduled_time == datetime(2024, 6, 3, 8, 0)

    def test_get_unknown_campaign(self, engine):
        with pytest.raises(NotFoundError):
            engine.get("missing")


class TestAudience:
    def test_parse_descriptors(self):
        assert parse_audience(None) == ("all", "")
        assert parse_audience(" ALL ") == ("all", "")
        assert parse_audience("tag:vegan") == ("tag", "vegan")
        assert parse_audience("role:Restaurant") == ("role", "restaurant")
        assert parse_audience("emails: A@Example.com ,b@example.com") == (
            "emails", "a@example.com,b@example.com"
        )

    def test_all_requires_active_and_opted_in(self, engine, add_profile):
        add_profile("amy@example.com", name="Amy")
        add_profile("bob@example.com", email_active=False)
        add_profile("cat@example.com", newsletter_opt_in=False)

        members = engine.resolve_audience("all")

        assert [m.email for m in members] == ["amy@example.com"]
        assert members[0].name == "Amy"
        assert members[0].user_id is not None

    def test_tag_audience(self, engine, add_profile):
        add_profile("amy@example.com", tags=["vegan", "berlin"])
        add_profile("bob@example.com", tags=["berlin"])
        add_profile("cat@example.com", tags=["vegan"], newsletter_opt_in=False)

        members = engine.resolve_audience("tag:vegan")

        assert [m.email for m in members] == ["amy@example.com", "cat@example.com"]

    def test_role_audience(self, engine, add_profile):
        add_profile("owner@example.com", role="restaurant")
        add_profile("guest@example.com", role="customer")

        members = engine.resolve_audience("role:restaurant")

        assert [m.email for m in members] == ["owner@example.com"]

    def test_email_audience_is_deduplicated(self, engine):
        members = engine.resolve_audience("emails:a@example.com,A@example.com ,b@example.com")

        assert [m.email for m in members] == ["a@example.com", "b@example.com"]
        assert all(m.user_id is None for m in members)


class TestActivate:
    def test_immediate_campaign_is_queued(self, db, settings, transport, add_profile):
        engine = CampaignEngine(db, settings=replace(settings, batch_size=200), transport=transport)
        for address in ("amy@example.com", "bob@example.com", "cat@example.com"):
            add_profile(address)
        campaign = engine.create(draft())

        campaign = engine.activate(campaign.id, now=T0)

        assert campaign.status == CampaignStatus.ACTIVE.value
        assert campaign.activated_at == T0
        batches = db.query(Batch).filter_by(campaign_id=campaign.id).all()
        assert len(batches) == 1
        assert batches[0].scheduled_time <= T0
        recipients = db.query(Recipient).filter_by(campaign_id=campaign.id).all()
        assert len(recipients) == 3
        assert all(r.status == RecipientStatus.PENDING.value for r in recipients)
        assert len({r.unsubscribe_token for r in recipients}) == 3

    def test_second_activation_is_rejected(self, db, engine, make_draft):
        campaign = make_draft(audience="emails:a@example.com,b@example.com,c@example.com")
        engine.activate(campaign.id, now=T0)

        with pytest.raises(InvalidStateError):
            engine.activate(campaign.id, now=T0 + timedelta(minutes=1))

        assert db.query(Recipient).filter_by(campaign_id=campaign.id).count() == 3
        assert db.query(Batch).filter_by(campaign_id=campaign.id).count() == 2

    def test_scheduled_campaign_starts_at_its_time(self, db, engine, make_draft):
        start = T0 + timedelta(hours=2)
        campaign = make_draft(
            audience="emails:a@example.com",
            schedule_type="scheduled",
            scheduled_time=start,
        )

        engine.activate(campaign.id, now=T0)

        batch = db.query(Batch).filter_by(campaign_id=campaign.id).one()
        assert batch.scheduled_time == start

    def test_empty_audience_completes_immediately(self, db, engine, make_draft):
        campaign = make_draft(audience="tag:nobody")

        campaign = engine.activate(campaign.id, now=T0)

        assert campaign.status == CampaignStatus.COMPLETED.value
        assert campaign.completed_at == T0
        assert db.query(Batch).filter_by(campaign_id=campaign.id).count() == 0

    def test_failure_leaves_draft_untouched(self, db, engine, make_draft):
        campaign = make_draft(
            audience="emails:a@example.com",
            schedule_type="recurring",
            scheduled_time=T0 - timedelta(days=7),
            recurrence_rule="FREQ=DAILY;COUNT=1",
        )

        with pytest.raises(InvalidStateError):
            engine.activate(campaign.id, now=T0)

        db.expire_all()
        assert engine.get(campaign.id).status == CampaignStatus.DRAFT.value
        assert db.query(Recipient).filter_by(campaign_id=campaign.id).count() == 0
        assert db.query(Batch).filter_by(campaign_id=campaign.id).count() == 0


class TestCompleteCancelDelete:
    def test_complete_requires_drained_batches(self, engine, make_draft):
        campaign = make_draft(audience="emails:a@example.com")
        engine.activate(campaign.id, now=T0)

        with pytest.raises(InvalidStateError):
            engine.complete(campaign.id)

    def test_complete_requires_active(self, engine, make_draft):
        campaign = make_draft()

        with pytest.raises(InvalidStateError):
            engine.complete(campaign.id)
        assert engine.try_complete(campaign.id) is False

    @pytest.mark.asyncio
    async def test_complete_after_last_batch(self, engine, make_draft):
        campaign = make_draft(audience="emails:a@example.com")
        engine.activate(campaign.id, now=T0)

        await engine.scheduler.tick(now=T0)

        engine.db.expire_all()
        campaign = engine.get(campaign.id)
        assert campaign.status == CampaignStatus.COMPLETED.value
        assert campaign.sent_count == 1
        with pytest.raises(InvalidStateError):
            engine.complete(campaign.id)

    def test_cancel_draft(self, engine, make_draft):
        campaign = make_draft()

        assert engine.cancel(campaign.id).status == CampaignStatus.CANCELLED.value
        with pytest.raises(InvalidStateError):
            engine.activate(campaign.id, now=T0)

    def test_cancel_active_is_rejected(self, engine, make_draft):
        campaign = make_draft(audience="emails:a@example.com")
        engine.activate(campaign.id, now=T0)

        with pytest.raises(InvalidStateError):
            engine.cancel(campaign.id)

    def test_delete_draft(self, db, engine, make_draft):
        campaign = make_draft()

        engine.delete(campaign.id)

        assert db.get(Campaign, campaign.id) is None

    def test_delete_active_conflicts(self, db, engine, make_draft):
        campaign = make_draft(audience="emails:a@example.com")
        engine.activate(campaign.id, now=T0)

        with pytest.raises(ConflictError):
            engine.delete(campaign.id)
        assert db.get(Campaign, campaign.id) is not None


class TestStats:
    def test_percentage(self):
        assert percentage(450, 900) == 50.0
        assert percentage(225, 450) == 50.0
        assert percentage(1, 3) == 33.33
        assert percentage(5, 0) == 0.0

    @pytest.mark.asyncio
    async def test_rates_follow_recipients_and_clicks(self, db, engine, make_draft, transport):
        addresses = ["a@example.com", "b@example.com", "c@example.com", "d@example.com"]
        transport.refused.add("d@example.com")
        campaign = make_draft(audience="emails:" + ",".join(addresses))
        engine.activate(campaign.id, now=T0)
        await engine.scheduler.tick(now=T0 + timedelta(minutes=61))

        tracker = RecipientTracker(db)
        recipients = {r.email: r for r in engine.list_recipients(campaign.id)}
        tracker.record_open(recipients["a@example.com"].id)
        tracker.record_open(recipients["a@example.com"].id)
        tracker.record_open(recipients["b@example.com"].id)
        for _ in range(2):
            tracker.record_click(ClickEvent(
                campaign_id=campaign.id,
                link_id="l1",
                url="https://example.com/menu",
                recipient_id=recipients["a@example.com"].id,
            ))

        stats = engine.update_stats(campaign.id)

        assert (stats.total, stats.sent, stats.failed, stats.pending) == (4, 3, 1, 0)
        assert stats.opened == 2
        assert stats.clicks == 2
        assert stats.unique_clickers == 1
        assert stats.open_rate == 66.67
        assert stats.click_rate == 100.0
        assert stats.delivery_rate == 75.0

    def test_stats_of_draft_are_zero(self, engine, make_draft):
        stats = engine.update_stats(make_draft().id)

        assert stats.total == 0
        assert stats.open_rate == 0.0


class TestRecurring:
    @pytest.mark.asyncio
    async def test_finished_run_spawns_successor(self, db, engine, make_draft):
        anchor = (datetime.utcnow() + timedelta(days=1)).replace(microsecond=0)
        campaign = make_draft(
            audience="emails:a@example.com",
            schedule_type="recurring",
            scheduled_time=anchor,
            recurrence_rule="FREQ=DAILY",
        )
        engine.activate(campaign.id)
        first_batch = db.query(Batch).filter_by(campaign_id=campaign.id).one()
        assert first_batch.scheduled_time == anchor

        await engine.scheduler.tick(now=anchor + timedelta(minutes=5))

        db.expire_all()
        assert engine.get(campaign.id).status == CampaignStatus.COMPLETED.value
        successor = db.query(Campaign).filter_by(previous_run_id=campaign.id).one()
        assert successor.status == CampaignStatus.ACTIVE.value
        assert successor.recurrence_rule == "FREQ=DAILY"
        batch = db.query(Batch).filter_by(campaign_id=successor.id).one()
        assert batch.scheduled_time == anchor + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_last_occurrence_has_no_successor(self, db, engine, make_draft):
        anchor = (datetime.utcnow() + timedelta(days=1)).replace(microsecond=0)
        campaign = make_draft(
            audience="emails:a@example.com",
            schedule_type="recurring",
            scheduled_time=anchor,
            recurrence_rule="FREQ=DAILY;COUNT=1",
        )
        engine.activate(campaign.id)

        await engine.scheduler.tick(now=anchor + timedelta(minutes=5))

        db.expire_all()
        assert engine.get(campaign.id).status == CampaignStatus.COMPLETED.value
        assert db.query(Campaign).filter_by(previous_run_id=campaign.id).count() == 0


def test_variant_split_is_disjoint_and_complete():
    members = [AudienceMember(email=f"guest{i}@example.com") for i in range(11)]

    buckets = split_for_variants(members, 3)

    assert sorted(len(b) for b in buckets) == [3, 4, 4]
    emails = [m.email for bucket in buckets for m in bucket]
    assert sorted(emails) == sorted(m.email for m in members)
    assert split_for_variants(list(reversed(members)), 3) == buckets
