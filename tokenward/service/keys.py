"""Signing key management.

Keys are append-only per purpose: the newest active row is current, older
rows stay resolvable by id until the retention sweep removes them, so
tokens signed before a rotation keep verifying until they expire.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol

from tokenward.logging import get_logger
from tokenward.service.crypto import MasterKeyCipher, generate_rsa_key_pair
from tokenward.storage.models import DecryptedKey, KeyPurpose, SigningKey

logger = get_logger(__name__)


class KeyStore(Protocol):
    def create_signing_key(
        self,
        purpose: KeyPurpose,
        encrypted_private_key: bytes,
        public_key: str,
    ) -> SigningKey: ...

    def get_signing_key(self, key_id: str) -> Optional[SigningKey]: ...

    def get_latest_active_key(self, purpose: KeyPurpose) -> Optional[SigningKey]: ...

    def list_signing_keys(
        self, purpose: Optional[KeyPurpose] = None
    ) -> List[SigningKey]: ...

    def delete_signing_keys_before(
        self, purpose: KeyPurpose, cutoff: datetime
    ) -> int: ...


class KeyService:
    """Creates, resolves, and retires RSA signing keys."""

    def __init__(self, store: KeyStore, cipher: MasterKeyCipher) -> None:
        self.store = store
        self.cipher = cipher
        # Single-flight guard for key creation. Process-local only: separate
        # processes can still both create a key, which leaves one extra row.
        self._create_locks: Dict[KeyPurpose, asyncio.Lock] = {
            purpose: asyncio.Lock() for purpose in KeyPurpose
        }

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _decrypt(self, key: SigningKey) -> DecryptedKey:
        return DecryptedKey(
            id=key.id,
            purpose=key.purpose,
            public_key=key.public_key,
            private_key=self.cipher.decrypt(key.encrypted_private_key, key_id=key.id),
            created_at=key.created_at,
        )

    async def get_current_key(self, purpose: KeyPurpose) -> DecryptedKey:
        """Return the active key for ``purpose``, creating one on first use.

        Private material is decrypted per call and never cached.
        """
        purpose = KeyPurpose(purpose)
        key = self.store.get_latest_active_key(purpose)
        if key is None:
            async with self._create_locks[purpose]:
                # Another caller may have finished creating while we waited
                key = self.store.get_latest_active_key(purpose)
                if key is None:
                    logger.info("signing_key_bootstrap", purpose=purpose.value)
                    key = await self._create_key_pair(purpose)
        return self._decrypt(key)

    def get_key_by_id(self, key_id: str) -> Optional[SigningKey]:
        """Resolve a key for verification regardless of its active flag."""
        if not key_id:
            return None
        return self.store.get_signing_key(key_id)

    def get_public_key(self, key_id: str) -> Optional[str]:
        key = self.get_key_by_id(key_id)
        return key.public_key if key else None

    async def add_key_pair(self, purpose: KeyPurpose) -> SigningKey:
        """Mint and persist a new active key; the previous key stays valid."""
        purpose = KeyPurpose(purpose)
        async with self._create_locks[purpose]:
            return await self._create_key_pair(purpose)

    async def _create_key_pair(self, purpose: KeyPurpose) -> SigningKey:
        private_pem, public_pem = await asyncio.to_thread(generate_rsa_key_pair)
        key = self.store.create_signing_key(
            purpose, self.cipher.encrypt(private_pem), public_pem
        )
        logger.info("signing_key_added", purpose=purpose.value, key_id=key.id)
        return key

    def remove_old_keys(self, purpose: KeyPurpose, retention_days: int) -> int:
        """Hard-delete keys of ``purpose`` created before the retention cutoff.

        ``retention_days`` must exceed the lifetime of every token the
        purpose signs, otherwise live tokens lose their verification key.
        """
        purpose = KeyPurpose(purpose)
        cutoff = self._now() - timedelta(days=retention_days)
        removed = self.store.delete_signing_keys_before(purpose, cutoff)
        logger.info(
            "signing_keys_pruned",
            purpose=purpose.value,
            cutoff=cutoff.isoformat(),
            removed=removed,
        )
        return removed
