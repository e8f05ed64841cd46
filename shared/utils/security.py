"""
shared/utils/security.py
Credentials for the tutoring API.

Access tokens are short-lived JWTs carrying the account id, role and email plus a
`jti` that logout writes to the Redis deny-list. Refresh tokens are opaque random
strings; only their SHA-256 digest is persisted. Wallet top-ups are confirmed by
checking Razorpay's checkout signature.
"""

import hashlib
import hmac
import secrets
import uuid
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from passlib.context import CryptContext

from config.settings import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ACCESS_TOKEN_TYPE = "access"


# ── Access Tokens ─────────────────────────────────────────────

def create_access_token(user_id: str, role: str, email: str) -> tuple[str, str]:
    """Sign an access token for an account. Returns (token, jti)."""
    issued_at = datetime.now(timezone.utc)
    jti = uuid.uuid4().hex
    claims = {
        "sub": str(user_id),
        "role": role,
        "email": email,
        "type": ACCESS_TOKEN_TYPE,
        "jti": jti,
        "iat": issued_at,
        "exp": issued_at + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
    }
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM), jti


def verify_access_token(token: str) -> dict:
    """Decode an access token. Raises JWTError when expired, tampered or of another type."""
    claims = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    if claims.get("type") != ACCESS_TOKEN_TYPE:
        raise JWTError("Not an access token")
    return claims


def get_token_remaining_ttl(claims: dict) -> int:
    """Seconds left before the token expires; the deny-list entry lives this long."""
    seconds_left = claims.get("exp", 0) - datetime.now(timezone.utc).timestamp()
    return max(0, int(seconds_left))


# ── Refresh Tokens ────────────────────────────────────────────

def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def create_refresh_token() -> tuple[str, str]:
    """Returns (raw, digest). The raw value goes to the client, the digest to the database."""
    raw = secrets.token_urlsafe(64)
    return raw, hash_token(raw)


# ── Passwords ─────────────────────────────────────────────────

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


# ── Razorpay ──────────────────────────────────────────────────

def verify_razorpay_signature(order_id: str, payment_id: str, signature: str) -> bool:
    """Check the HMAC-SHA256 of `order_id|payment_id` returned by Razorpay checkout."""
    expected = hmac.new(
        settings.RAZORPAY_KEY_SECRET.encode(),
        f"{order_id}|{payment_id}".encode(),
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected, signature)
