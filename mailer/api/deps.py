"""
Shared FastAPI dependencies: database session, settings, auth and services
"""
from dataclasses import dataclass
from typing import Iterable, Optional

from fastapi import Depends, Header, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..core.cache import TTLCache
from ..core.errors import AuthenticationError
from ..core.permissions import Capability, Role, parse_role, require_capabilities
from ..core.security import decode_token, verify_cron_secret
from ..database import get_db
from ..models import Campaign
from ..services.campaign_engine import CampaignEngine
from ..services.mail_transport import MailTransport, build_transport

# Security scheme; missing credentials are reported through our own error payload
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    subject: str
    role: Role


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    settings: Settings = Depends(get_settings)
) -> Principal:
    """
    Resolve the caller from a bearer JWT

    Raises:
        AuthenticationError: If the token is missing, invalid or expired
    """
    if credentials is None:
        raise AuthenticationError("Missing bearer token")

    payload = decode_token(credentials.credentials, settings.jwt_secret_key, settings.jwt_algorithm)
    if payload is None:
        raise AuthenticationError("Invalid or expired token")

    subject = payload.get("sub")
    if subject is None:
        raise AuthenticationError("Invalid token payload")

    return Principal(subject=str(subject), role=parse_role(payload.get("role")))


def require(*capabilities: Capability):
    """Dependency factory: the caller's role must grant every capability"""
    required: Iterable[Capability] = frozenset(capabilities)

    async def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        require_capabilities(principal.role, required)
        return principal

    return dependency


async def verify_cron(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings)
) -> None:
    verify_cron_secret(authorization, settings.cron_secret)


def get_transport(request: Request, settings: Settings = Depends(get_settings)) -> MailTransport:
    transport = getattr(request.app.state, "transport", None)
    if transport is None:
        transport = build_transport(settings)
        request.app.state.transport = transport
    return transport


def get_stats_cache(request: Request, settings: Settings = Depends(get_settings)) -> TTLCache:
    cache = getattr(request.app.state, "stats_cache", None)
    if cache is None:
        cache = TTLCache(ttl_seconds=settings.stats_cache_ttl_seconds)
        request.app.state.stats_cache = cache
    return cache


def get_engine(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    transport: MailTransport = Depends(get_transport)
) -> CampaignEngine:
    return CampaignEngine(db, settings=settings, transport=transport)


def invalidate_campaign_stats(cache: TTLCache, db: Session, campaign_id: str) -> None:
    """Drop cached stats for a campaign and, for a variant, its A/B test"""
    cache.invalidate(campaign_id)
    campaign = db.get(Campaign, campaign_id)
    if campaign is not None and campaign.parent_campaign_id:
        cache.invalidate(campaign.parent_campaign_id)
