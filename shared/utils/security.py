"""
shared/utils/security.py
JWT creation/verification and webhook signature helpers.
"""

import hashlib
import hmac
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from jose import JWTError, jwt

from config.settings import settings


# ── JWT ───────────────────────────────────────────────────────

def create_access_token(
    user_id: str,
    roles: Iterable[str],
    email: str,
    extra: Optional[dict] = None,
) -> tuple[str, str]:
    """
    Create a signed JWT access token.
    Returns (token, jti).
    """
    jti = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)

    payload = {
        "sub": str(user_id),
        "roles": [str(getattr(r, "value", r)) for r in roles],
        "email": email,
        "jti": jti,
        "iat": now,
        "exp": expire,
        "type": "access",
        **(extra or {}),
    }

    token = jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    return token, jti


def verify_access_token(token: str) -> dict:
    """
    Decode and verify a JWT access token.
    Raises JWTError on invalid/expired token.
    """
    payload = jwt.decode(
        token,
        settings.JWT_SECRET_KEY,
        algorithms=[settings.JWT_ALGORITHM],
    )
    if payload.get("type") != "access":
        raise JWTError("Invalid token type")
    return payload


# ── Webhook Signatures ────────────────────────────────────────

def sign_webhook_payload(payload_body: bytes, secret: Optional[str] = None) -> str:
    """HMAC-SHA256 hex digest of a webhook body."""
    key = (secret if secret is not None else settings.PAYMENT_GATEWAY_WEBHOOK_SECRET).encode()
    return hmac.new(key, payload_body, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    payload_body: bytes, signature: str, secret: Optional[str] = None
) -> bool:
    """Constant-time comparison against the expected webhook signature."""
    expected = sign_webhook_payload(payload_body, secret)
    return hmac.compare_digest(expected, signature or "")
