"""Security utilities: adaptive hashing, JWT, token hashing."""

import asyncio
import base64
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from twofa.core.config import settings
from twofa.core.logging import get_logger

logger = get_logger(__name__)

# Adaptive hasher for OTPs and backup codes
_secret_hasher = PasswordHasher(
    time_cost=settings.HASH_TIME_COST,
    memory_cost=settings.HASH_MEMORY_COST,
    parallelism=settings.HASH_PARALLELISM,
)


def hash_secret(plain: str) -> str:
    """Hash a short-lived credential (OTP, backup code) using Argon2."""
    return _secret_hasher.hash(plain)


def verify_secret(plain: str, secret_hash: str) -> bool:
    """Verify a credential against its Argon2 hash.

    Argon2 compares digests in constant time.
    """
    try:
        return _secret_hasher.verify(secret_hash, plain)
    except VerifyMismatchError:
        return False
    except (VerificationError, InvalidHashError) as e:
        logger.warning(f"Credential verification error: {type(e).__name__}")
        return False


async def hash_secret_async(plain: str) -> str:
    """Hash off the event loop; Argon2 burns CPU on purpose."""
    return await asyncio.to_thread(hash_secret, plain)


async def verify_secret_async(plain: str, secret_hash: str) -> bool:
    return await asyncio.to_thread(verify_secret, plain, secret_hash)


def create_access_token(
    user_id: str,
    role: str,
    phone_number: str | None = None,
    email: str | None = None,
) -> str:
    """Create a JWT access token."""
    if not settings.JWT_SECRET:
        raise ValueError("JWT_SECRET must be set")

    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    payload: dict[str, Any] = {
        "sub": str(user_id),
        "role": role,
        "iat": now,
        "exp": expire,
        "jti": str(uuid4()),
        "type": "access",
    }
    if phone_number:
        payload["phone_number"] = phone_number
    if email:
        payload["email"] = email

    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def verify_access_token(token: str) -> dict[str, Any]:
    """Verify and decode a JWT access token."""
    if not settings.JWT_SECRET:
        raise ValueError("JWT_SECRET must be set")

    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
        if payload.get("type") != "access":
            raise jwt.InvalidTokenError("Token is not an access token")
        return payload
    except jwt.ExpiredSignatureError:
        raise jwt.InvalidTokenError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise jwt.InvalidTokenError(f"Invalid token: {e}")


def generate_secure_token(num_bytes: int | None = None) -> str:
    """Generate an opaque bearer token (base32, no padding)."""
    raw = secrets.token_bytes(num_bytes or settings.TRUSTED_DEVICE_TOKEN_BYTES)
    return base64.b32encode(raw).decode("ascii").rstrip("=")


def hash_token(token: str) -> str:
    """Hash a token using SHA256 with pepper."""
    if not settings.TOKEN_PEPPER:
        raise ValueError("TOKEN_PEPPER must be set")

    combined = f"{settings.TOKEN_PEPPER}:{token}"
    return hashlib.sha256(combined.encode()).hexdigest()
