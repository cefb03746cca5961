from __future__ import annotations

import base64
import hashlib
from typing import Tuple

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from tokenward.logging import get_logger
from tokenward.service.errors import KeyMaterialError

logger = get_logger(__name__)

RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537


class MasterKeyCipher:
    """Encrypts signing-key private halves at rest with the master secret."""

    def __init__(self, master_key: str | None) -> None:
        if not master_key:
            raise KeyMaterialError("master key is not configured")
        self._fernet = Fernet(self._derive_cipher_key(master_key))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, private_pem: str) -> bytes:
        return self._fernet.encrypt(private_pem.encode())

    def decrypt(self, ciphertext: bytes, *, key_id: str | None = None) -> str:
        try:
            return self._fernet.decrypt(bytes(ciphertext)).decode()
        except InvalidToken as exc:
            logger.error("signing_key_decrypt_failed", key_id=key_id)
            raise KeyMaterialError(
                "signing key cannot be decrypted with the configured master key",
                detail={"key_id": key_id} if key_id else None,
            ) from exc


def generate_rsa_key_pair() -> Tuple[str, str]:
    """Return a fresh (private_pem, public_pem) RSA pair.

    CPU bound; callers on the event loop run it in a worker thread.
    """
    private_key = rsa.generate_private_key(
        public_exponent=RSA_PUBLIC_EXPONENT, key_size=RSA_KEY_SIZE
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem
