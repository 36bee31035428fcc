"""
Password hashing, session tokens and admin key verification.
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from passlib.context import CryptContext

from bridge.core.config import settings

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.BCRYPT_ROUNDS,
)


def get_password_hash(password: str) -> str:
    """Hash a plaintext password for the legacy store."""
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """
    Verify a plaintext password against a stored hash.

    Unknown or malformed hashes never verify.
    """
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        return False


def create_access_token(
    claims: Dict[str, Any], expires_delta: Optional[timedelta] = None
) -> str:
    """
    Issue a signed session token.

    Args:
        claims: Payload claims (user id, email, username, migration flag)
        expires_delta: Token lifetime, defaults to JWT_EXPIRE_DAYS

    Returns:
        Encoded JWT
    """
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(days=settings.JWT_EXPIRE_DAYS))
    payload = {**claims, "iat": now, "exp": expire}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode a session token, returning None when invalid or expired."""
    try:
        return jwt.decode(
            token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM]
        )
    except jwt.PyJWTError:
        return None


def verify_admin_api_key(provided: Optional[str]) -> bool:
    """Constant-time comparison of an admin API key against configuration."""
    expected = settings.ADMIN_API_KEY
    if not expected or not provided:
        return False
    return secrets.compare_digest(provided.encode(), expected.encode())


def verify_webhook_secret(provided: Optional[str]) -> bool:
    """Check the shared secret sent by Entra custom authentication extensions."""
    expected = settings.WEBHOOK_SHARED_SECRET
    if not expected:
        return True
    if not provided:
        return False
    return secrets.compare_digest(provided.encode(), expected.encode())
