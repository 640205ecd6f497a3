"""TOTP secrets and backup codes."""

import asyncio
from dataclasses import dataclass
from uuid import UUID

from twofa.core.clock import Clock
from twofa.core.logging import get_logger
from twofa.core.mfa import (
    decrypt_totp_secret,
    encrypt_totp_secret,
    generate_backup_codes,
    generate_totp_provisioning_uri,
    generate_totp_secret,
    normalize_backup_code,
    verify_totp_code,
)
from twofa.core.security import hash_secret_async, verify_secret_async
from twofa.services.credential_store import CredentialStore, RecordGoneError

logger = get_logger(__name__)


@dataclass
class TOTPEnrollment:
    """Fresh TOTP material. `secret` is shown to the user once."""

    secret: str
    secret_encrypted: str
    provisioning_uri: str


class CodeManager:
    """Creates and checks TOTP secrets and single-use backup codes."""

    def __init__(self, store: CredentialStore, clock: Clock | None = None):
        self.store = store
        self.clock = clock or store.clock

    def new_totp(self, account: str) -> TOTPEnrollment:
        secret = generate_totp_secret()
        return TOTPEnrollment(
            secret=secret,
            secret_encrypted=encrypt_totp_secret(secret),
            provisioning_uri=generate_totp_provisioning_uri(secret, account),
        )

    async def verify_totp(self, user_id: UUID, code: str) -> bool:
        """False when the user has no TOTP secret or the code is outside the drift window."""
        encrypted = await self.store.get_totp_secret(user_id)
        if not encrypted:
            return False
        secret = decrypt_totp_secret(encrypted)
        if secret is None:
            return False
        return verify_totp_code(secret, code, for_time=self.clock())

    async def issue_backup_codes(self, user_id: UUID) -> list[str]:
        """Replace the user's unused codes and return the new plaintexts (shown once)."""
        codes = generate_backup_codes()
        hashes = await asyncio.gather(
            *(hash_secret_async(normalize_backup_code(code)) for code in codes)
        )
        await self.store.create_backup_codes(user_id, list(hashes))
        return codes

    async def consume_backup_code(self, user_id: UUID, code: str) -> UUID | None:
        """
        Mark the matching unused code as used.

        Returns the consumed code id, or None when nothing matched or a
        concurrent caller consumed the same code first.
        """
        normalized = normalize_backup_code(code)
        if not normalized:
            return None

        for backup_code in await self.store.get_unused_backup_codes(user_id):
            if await verify_secret_async(normalized, backup_code.code_hash):
                try:
                    await self.store.use_backup_code(backup_code.id)
                except RecordGoneError:
                    logger.info("Backup code consumed concurrently", extra={"user_id": str(user_id)})
                    return None
                return backup_code.id
        return None
