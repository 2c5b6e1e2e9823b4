from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from storefront_auth.logging import get_logger
from storefront_auth.service.capabilities import Clock, now_ms
from storefront_auth.service.events import TOKENS_CLEARED_CHANNEL
from storefront_auth.storage.errors import IntegrityError
from storefront_auth.storage.models import IdentityRecord, TokenRecord

logger = get_logger(__name__)

TOKENS_KEY = "auth:tokens"
IDENTITY_KEY = "auth:identity"

DEFAULT_EXPIRING_SOON_MS = 5 * 60 * 1000
DEFAULT_REFRESH_TOKEN_MAX_AGE_MS = 24 * 60 * 60 * 1000


class SecureTokenStore:
    """Encrypted persistence for the token pair and the cached identity.

    The access/refresh pair is written as a single Fernet-encrypted record
    under one key, so a concurrent reader sees either the old pair or the new
    one. A decrypted copy is cached in memory for the synchronous accessors;
    ``reload()`` re-reads the shared record after another instance changed it.
    """

    def __init__(
        self,
        kv: Any,
        *,
        encryption_key: str,
        clock: Clock,
        fingerprinter: Any = None,
        event_bus: Any = None,
        origin: str | None = None,
        expiring_soon_ms: int = DEFAULT_EXPIRING_SOON_MS,
        refresh_token_max_age_ms: int = DEFAULT_REFRESH_TOKEN_MAX_AGE_MS,
        fingerprint_validation: bool = True,
    ) -> None:
        if not encryption_key:
            raise ValueError("encryption_key is required")
        self.kv = kv
        self.clock = clock
        self.fingerprinter = fingerprinter
        self.event_bus = event_bus
        self.origin = origin
        self.expiring_soon_ms = expiring_soon_ms
        self.refresh_token_max_age_ms = refresh_token_max_age_ms
        self.fingerprint_validation = fingerprint_validation
        self._cipher = Fernet(self._derive_cipher_key(encryption_key))
        self._record: Optional[TokenRecord] = None
        self._identity: Optional[IdentityRecord] = None
        self.logger = logger

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _encrypt(self, payload: dict) -> str:
        return self._cipher.encrypt(json.dumps(payload).encode()).decode()

    def _decrypt(self, token: str, *, key: str) -> dict:
        try:
            raw = self._cipher.decrypt(token.encode())
        except InvalidToken as exc:
            raise IntegrityError("stored record failed integrity check", {"key": key}) from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise IntegrityError("stored record is not valid JSON", {"key": key}) from exc
        if not isinstance(data, dict):
            raise IntegrityError("stored record has unexpected shape", {"key": key})
        return data

    async def reload(self) -> None:
        """Replace the cached pair and identity with what is persisted now."""
        try:
            raw_tokens = await self.kv.get(TOKENS_KEY)
            raw_identity = await self.kv.get(IDENTITY_KEY)
            record = None
            identity = None
            if raw_tokens:
                record = TokenRecord.from_dict(self._decrypt(raw_tokens, key=TOKENS_KEY))
            if raw_identity:
                identity = IdentityRecord.from_dict(self._decrypt(raw_identity, key=IDENTITY_KEY))
        except (IntegrityError, KeyError, TypeError, ValueError) as exc:
            self.logger.warning("token_store_corrupt_record", error=str(exc))
            await self._wipe()
            return
        self._record = record
        self._identity = identity

    async def store_tokens(
        self, record: TokenRecord, identity: Optional[IdentityRecord] = None
    ) -> None:
        """Persist a new pair. ``identity=None`` leaves the cached identity unchanged."""
        if record.issued_at is None:
            record.issued_at = now_ms(self.clock)
        if record.device_fingerprint is None and self.fingerprinter is not None:
            result = await self.fingerprinter.generate_fingerprint()
            record.device_fingerprint = result.fingerprint
        values = {TOKENS_KEY: self._encrypt(record.to_dict())}
        if identity is not None:
            values[IDENTITY_KEY] = self._encrypt(identity.to_dict())
        await self.kv.set_many(values)
        self._record = record
        if identity is not None:
            self._identity = identity
        self.logger.debug("tokens_stored", expires_at=record.expires_at)

    async def update_access_token(
        self, access_token: str, expires_at: int, refresh_token: Optional[str] = None
    ) -> None:
        """Swap the access token in place, keeping (or rotating) the refresh token."""
        if self._record is None:
            await self.reload()
        current = self._record
        if current is None and refresh_token is None:
            self.logger.warning("access_token_update_without_pair")
            return
        record = TokenRecord(
            access_token=access_token,
            refresh_token=refresh_token or current.refresh_token,
            expires_at=expires_at,
            token_type=current.token_type if current else "Bearer",
            device_fingerprint=current.device_fingerprint if current else None,
        )
        await self.store_tokens(record)

    async def update_customer_data(self, identity: IdentityRecord) -> None:
        await self.kv.set(IDENTITY_KEY, self._encrypt(identity.to_dict()))
        self._identity = identity

    def get_token_record(self) -> Optional[TokenRecord]:
        return self._record

    def peek_access_token(self) -> Optional[str]:
        """Stored access token regardless of expiry."""
        return self._record.access_token if self._record else None

    def get_access_token(self) -> Optional[str]:
        if self._record is None or self.is_token_expired():
            return None
        return self._record.access_token

    def get_token_expiration(self) -> Optional[int]:
        return self._record.expires_at if self._record else None

    def get_customer_data(self) -> Optional[IdentityRecord]:
        return self._identity

    def has_refresh_token(self) -> bool:
        return bool(self._record and self._record.refresh_token)

    def is_token_expired(self) -> bool:
        if self._record is None:
            return True
        return now_ms(self.clock) >= self._record.expires_at

    def is_token_expiring_soon(self) -> bool:
        if self._record is None:
            return True
        return self._record.expires_at - now_ms(self.clock) < self.expiring_soon_ms

    def is_authenticated(self) -> bool:
        return self.get_access_token() is not None

    async def get_refresh_token(self) -> Optional[str]:
        """Stored refresh token, or None if it is too old or bound to another device.

        Either rejection wipes the stored tokens.
        """
        await self.reload()
        record = self._record
        if record is None or not record.refresh_token:
            return None

        if record.issued_at is not None:
            age = now_ms(self.clock) - record.issued_at
            if age > self.refresh_token_max_age_ms:
                self.logger.info("refresh_token_aged_out", age_ms=age)
                await self.clear_tokens()
                return None

        if (
            self.fingerprint_validation
            and self.fingerprinter is not None
            and record.device_fingerprint
        ):
            current = await self.fingerprinter.generate_fingerprint()
            validation = self.fingerprinter.validate_fingerprint(
                current.fingerprint, record.device_fingerprint
            )
            if not validation.is_valid:
                self.logger.warning(
                    "refresh_token_device_mismatch", similarity=round(validation.similarity, 3)
                )
                await self.clear_tokens()
                return None

        return record.refresh_token

    async def _wipe(self) -> None:
        await self.kv.delete(TOKENS_KEY, IDENTITY_KEY)
        self._record = None
        self._identity = None

    async def clear_tokens(self, *, broadcast: bool = True) -> None:
        await self._wipe()
        if broadcast and self.event_bus is not None:
            await self.event_bus.publish(
                TOKENS_CLEARED_CHANNEL,
                {"origin": self.origin, "timestamp": now_ms(self.clock)},
            )
