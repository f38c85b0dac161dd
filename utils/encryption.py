"""
utils/encryption.py
Server-side custody of per-resource encryption keys

Each message or document is sealed under its own random key. That key is
never stored in the clear: it is wrapped with the master key
(MASTER_ENCRYPTION_KEY) using AES-256-GCM, with the resource id bound as
associated data so a wrapped key cannot be moved onto another resource.
"""

import base64
import binascii
import secrets
from typing import Optional
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
import logging

from utils.errors import CryptoError, CryptoErrorKind

logger = logging.getLogger(__name__)

MASTER_KEY_SIZE = 32
WRAP_NONCE_SIZE = 12


def load_master_key(master_key_b64: Optional[str]) -> bytes:
    """
    Decode the master encryption key

    Args:
        master_key_b64: URL-safe base64 encoded 32-byte key

    Returns:
        32-byte master key

    Raises:
        ValueError: If the key is missing or invalid
    """
    if not master_key_b64:
        raise ValueError(
            "MASTER_ENCRYPTION_KEY not set in environment. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
        )

    try:
        master_key = base64.urlsafe_b64decode(master_key_b64 + "=" * (-len(master_key_b64) % 4))
    except (binascii.Error, ValueError):
        raise ValueError("Invalid MASTER_ENCRYPTION_KEY: not base64")

    if len(master_key) != MASTER_KEY_SIZE:
        raise ValueError(f"Invalid MASTER_ENCRYPTION_KEY: must decode to {MASTER_KEY_SIZE} bytes")
    return master_key


def generate_master_key() -> str:
    """Generate a new URL-safe base64 master key"""
    return base64.urlsafe_b64encode(secrets.token_bytes(MASTER_KEY_SIZE)).decode('utf-8')


class KeyCustodian:
    """
    Wraps and unwraps resource keys with the master key

    Format of a wrapped key: base64(nonce[12] + ciphertext[32] + tag[16])
    """

    def __init__(self, master_key: bytes):
        if len(master_key) != MASTER_KEY_SIZE:
            raise ValueError(f"Master key must be {MASTER_KEY_SIZE} bytes")
        self._aesgcm = AESGCM(master_key)

    def wrap_key(self, resource_key: bytes, resource_id: str) -> str:
        """
        Encrypt a resource key with the master key

        Args:
            resource_key: 32-byte resource key
            resource_id: Id of the resource the key belongs to

        Returns:
            Base64-encoded wrapped key
        """
        nonce = secrets.token_bytes(WRAP_NONCE_SIZE)
        wrapped = self._aesgcm.encrypt(nonce, resource_key, resource_id.encode('utf-8'))
        return base64.urlsafe_b64encode(nonce + wrapped).decode('utf-8')

    def unwrap_key(self, wrapped_key: str, resource_id: str) -> bytes:
        """
        Decrypt a resource key using the master key

        Raises:
            CryptoError: DECRYPTION_FAILED if the wrapped key is corrupted,
                belongs to another resource or was wrapped by another master key
        """
        try:
            raw = base64.urlsafe_b64decode(wrapped_key)
            nonce, sealed = raw[:WRAP_NONCE_SIZE], raw[WRAP_NONCE_SIZE:]
            resource_key = self._aesgcm.decrypt(nonce, sealed, resource_id.encode('utf-8'))
        except (InvalidTag, binascii.Error, ValueError) as e:
            logger.error(f"Failed to unwrap resource key: {type(e).__name__}")
            raise CryptoError(
                CryptoErrorKind.DECRYPTION_FAILED,
                "Failed to decrypt resource encryption key",
                details={"reason": "key_unwrap_failed"},
            )

        return resource_key
