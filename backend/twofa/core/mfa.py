"""MFA primitives: OTP codes, TOTP secrets and backup codes."""

import base64
import secrets
import string
from datetime import datetime
from urllib.parse import quote, urlencode

import pyotp
from cryptography.fernet import Fernet, InvalidToken

from twofa.core.config import settings
from twofa.core.logging import get_logger

logger = get_logger(__name__)

# Look-alike characters (0/O, 1/I) are left out
BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

# Fernet cipher for encrypting TOTP secrets
_fernet: Fernet | None = None


def get_fernet() -> Fernet:
    """Get Fernet cipher instance."""
    global _fernet
    if _fernet is None:
        if not settings.MFA_ENCRYPTION_KEY:
            raise ValueError("MFA_ENCRYPTION_KEY must be set")
        _fernet = Fernet(settings.MFA_ENCRYPTION_KEY.encode())
    return _fernet


def encrypt_totp_secret(secret: str) -> str:
    """Encrypt TOTP secret."""
    return get_fernet().encrypt(secret.encode()).decode()


def decrypt_totp_secret(encrypted_secret: str) -> str | None:
    """Decrypt TOTP secret. None if the ciphertext does not verify under the current key."""
    try:
        return get_fernet().decrypt(encrypted_secret.encode()).decode()
    except InvalidToken:
        logger.error("TOTP secret could not be decrypted")
        return None


def generate_otp_code(length: int | None = None) -> str:
    """Numeric code drawn uniformly from {0..9}^length."""
    length = length or settings.OTP_LENGTH
    return "".join(secrets.choice(string.digits) for _ in range(length))


def generate_totp_secret(size: int | None = None) -> str:
    """Generate a new TOTP secret as unpadded base32."""
    raw = secrets.token_bytes(size or settings.TOTP_SECRET_SIZE)
    return base64.b32encode(raw).decode("ascii").rstrip("=")


def generate_totp_provisioning_uri(secret: str, account: str) -> str:
    """Generate the otpauth:// URI an authenticator app scans from a QR code."""
    issuer = settings.TOTP_ISSUER
    label = quote(f"{issuer}:{account}", safe=":@")
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": settings.TOTP_DIGITS,
            "period": settings.TOTP_PERIOD,
        },
        quote_via=quote,
    )
    return f"otpauth://totp/{label}?{params}"


def verify_totp_code(secret: str, code: str, for_time: datetime | None = None) -> bool:
    """Verify TOTP code with clock drift tolerance (±TOTP_VALID_WINDOW steps)."""
    code = code.strip()
    if len(code) != settings.TOTP_DIGITS or not code.isdigit():
        return False
    totp = pyotp.TOTP(secret, digits=settings.TOTP_DIGITS, interval=settings.TOTP_PERIOD)
    try:
        return totp.verify(code, for_time=for_time, valid_window=settings.TOTP_VALID_WINDOW)
    except (ValueError, TypeError) as e:
        # Malformed base32 secret
        logger.warning(f"TOTP verification error: {type(e).__name__}")
        return False


def format_backup_code(raw: str) -> str:
    """Render as two groups joined by a hyphen (XXXX-XXXX)."""
    half = len(raw) // 2
    return f"{raw[:half]}-{raw[half:]}"


def normalize_backup_code(code: str) -> str:
    """Strip hyphens and whitespace, uppercase. This is the form that gets hashed."""
    return "".join(ch for ch in code if ch != "-" and not ch.isspace()).upper()


def generate_backup_codes(count: int | None = None, length: int | None = None) -> list[str]:
    """Generate formatted backup codes."""
    count = count or settings.BACKUP_CODES_COUNT
    length = length or settings.BACKUP_CODE_LENGTH
    return [
        format_backup_code("".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(length)))
        for _ in range(count)
    ]
