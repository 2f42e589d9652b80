import hashlib
from datetime import datetime, timedelta, timezone
from typing import Optional

from config import settings


def hash_password(pw: str) -> str:
    return hashlib.sha256((pw + settings.secret_key).encode()).hexdigest()


def verify_password(pw: str, hashed: str) -> bool:
    return hash_password(pw) == hashed


def _sign(payload: str) -> str:
    return hashlib.sha256((payload + settings.secret_key).encode()).hexdigest()


def make_token(user_id: str, now: Optional[datetime] = None) -> str:
    # user_id|expiry|signature
    now = now or datetime.now(timezone.utc)
    expiry = int((now + timedelta(hours=settings.token_expiration_hours)).timestamp())
    payload = f"{user_id}|{expiry}"
    return f"{payload}|{_sign(payload)}"


def parse_token(token: str) -> Optional[str]:
    """Return the user id a token was issued for, or None if it is forged or expired."""
    parts = token.split("|")
    if len(parts) != 3:
        return None
    user_id, expiry, signature = parts
    if _sign(f"{user_id}|{expiry}") != signature:
        return None
    try:
        expires_at = int(expiry)
    except ValueError:
        return None
    if expires_at < int(datetime.now(timezone.utc).timestamp()):
        return None
    return user_id
