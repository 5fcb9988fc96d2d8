"""
Security utilities for admin JWTs, the cron secret and unsubscribe tokens
"""
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
import hmac
import secrets
import uuid

import jwt

from .errors import AuthenticationError

ACCESS_TOKEN_EXPIRE_MINUTES = 30


def create_access_token(
    data: Dict[str, Any],
    secret_key: str,
    algorithm: str = "HS256",
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create JWT access token

    Args:
        data: Dictionary containing claims to encode (``sub``, ``role``)
        secret_key: Signing key
        algorithm: JWT algorithm
        expires_delta: Optional expiration time delta

    Returns:
        Encoded JWT token
    """
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({
        "exp": expire,
        "iat": datetime.utcnow(),
        "jti": str(uuid.uuid4()),
        "type": "access"
    })
    return jwt.encode(to_encode, secret_key, algorithm=algorithm)


def decode_token(token: str, secret_key: str, algorithm: str = "HS256") -> Optional[Dict[str, Any]]:
    """
    Decode and verify JWT token

    Returns:
        Decoded token payload or None if invalid
    """
    try:
        return jwt.decode(token, secret_key, algorithms=[algorithm])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def verify_cron_secret(authorization: Optional[str], expected: Optional[str]) -> None:
    """Check an ``Authorization: Bearer <secret>`` header against the cron secret"""
    if not expected:
        raise AuthenticationError("Cron secret is not configured")
    provided = (authorization or "").strip()
    if provided.lower().startswith("bearer "):
        provided = provided[len("bearer "):].strip()
    if not provided or not hmac.compare_digest(provided, expected):
        raise AuthenticationError("Invalid cron secret")


def generate_unsubscribe_token() -> str:
    """Opaque, unique token used in unsubscribe links"""
    return secrets.token_hex(32)
