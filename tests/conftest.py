import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mailer.config import Settings, get_settings
from mailer.core.errors import TransportError, TransportUnavailableError
from mailer.core.security import create_access_token
from mailer.database import get_db
from mailer.main import create_app
from mailer.models import Base, Profile, ProfileTag
from mailer.schemas import CampaignCreate
from mailer.services.campaign_engine import CampaignEngine
from mailer.services.mail_transport import MailTransport

TEST_BASE_URL = "https://mail.example.test"
CRON_SECRET = "cron-secret-for-tests"
JWT_SECRET = "jwt-secret-for-tests"


class FakeTransport(MailTransport):
    """Records messages; can refuse addresses or simulate an outage"""

    def __init__(self):
        self.sent = []
        self.refused = set()
        self.outage_after = None

    async def send(self, message):
        if self.outage_after is not None and len(self.sent) >= self.outage_after:
            raise TransportUnavailableError("SMTP server unreachable")
        if message.to in self.refused:
            raise TransportError(f"550 mailbox unavailable: {message.to}")
        self.sent.append(message)

    @property
    def recipients(self):
        return [m.to for m in self.sent]


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        base_url=TEST_BASE_URL,
        mail_from="news@example.test",
        mail_from_name="Example News",
        cron_secret=CRON_SECRET,
        jwt_secret_key=JWT_SECRET,
        batch_size=2,
        batch_interval_minutes=60,
        max_batches_per_tick=5,
        send_concurrency=1,
        hourly_quota=0,
        stale_batch_minutes=30,
        stats_cache_ttl_seconds=30,
    )


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def engine(db, settings, transport):
    return CampaignEngine(db, settings=settings, transport=transport)


@pytest.fixture
def add_profile(db):
    """Insert a profile; returns the row"""
    def _add(email, name=None, role="customer", tags=(), email_active=True, newsletter_opt_in=True):
        profile = Profile(
            email=email,
            name=name,
            role=role,
            email_active=email_active,
            newsletter_opt_in=newsletter_opt_in,
        )
        profile.tags = [ProfileTag(tag=tag) for tag in tags]
        db.add(profile)
        db.commit()
        return profile
    return _add


@pytest.fixture
def make_draft(engine):
    """Create a campaign draft through the engine"""
    def _make(audience="all", **fields):
        values = {
            "name": "Monthly newsletter",
            "subject": "News for {name}",
            "html_content": '<html><body><p>Hallo {name}</p><a href="https://example.com/menu">Menu</a></body></html>',
            "audience": audience,
        }
        values.update(fields)
        return engine.create(CampaignCreate(**values), created_by="admin-1")
    return _make


@pytest.fixture
def client(session_factory, settings, transport):
    app = create_app(settings=settings, transport=transport, create_tables=False)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings

    with TestClient(app) as test_client:
        yield test_client


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers():
    token = create_access_token({"sub": "admin-1", "role": "admin"}, JWT_SECRET)
    return bearer(token)


@pytest.fixture
def customer_headers():
    token = create_access_token({"sub": "user-7", "role": "customer"}, JWT_SECRET)
    return bearer(token)


@pytest.fixture
def cron_headers():
    return bearer(CRON_SECRET)
