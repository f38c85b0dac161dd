"""
utils/crypto_aes.py
AES-256-GCM encryption utilities for crew messages, documents and backups

Every ciphertext is bound to a purpose ("message", "document", "backup")
through the GCM associated data, so a payload sealed for one context
never opens in another even when the same key is reused.
"""

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Tuple, Optional, Union
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.backends import default_backend
import logging

from utils.errors import CryptoError, CryptoErrorKind

logger = logging.getLogger(__name__)

# AES-256-GCM constants
AES_KEY_SIZE = 32    # 256 bits
AES_NONCE_SIZE = 16  # 128 bits
AES_TAG_SIZE = 16    # 128 bits

KDF_SALT_SIZE = 32
DEFAULT_KDF_ITERATIONS = 100000


class Purpose(str, Enum):
    """Context a ciphertext is sealed for"""
    MESSAGE = "message"
    DOCUMENT = "document"
    BACKUP = "backup"


PURPOSE_AAD = {
    Purpose.MESSAGE: b"aviation-message",
    Purpose.DOCUMENT: b"aviation-document",
    Purpose.BACKUP: b"aviation-backup",
}


@dataclass(frozen=True)
class EncryptedPayload:
    """Ciphertext, nonce and tag of one AES-GCM seal, tagged with its purpose"""
    ciphertext: bytes
    nonce: bytes
    tag: bytes
    purpose: Purpose

    def to_dict(self) -> dict:
        return {
            "ciphertext": base64.b64encode(self.ciphertext).decode('utf-8'),
            "nonce": base64.b64encode(self.nonce).decode('utf-8'),
            "tag": base64.b64encode(self.tag).decode('utf-8'),
            "purpose": self.purpose.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedPayload":
        return cls(
            ciphertext=base64.b64decode(data["ciphertext"]),
            nonce=base64.b64decode(data["nonce"]),
            tag=base64.b64decode(data["tag"]),
            purpose=Purpose(data["purpose"]),
        )


@dataclass(frozen=True)
class DerivedKey:
    """Result of a password-based key derivation"""
    key: bytes
    salt: bytes
    iterations: int


def _decryption_failed(reason: str) -> CryptoError:
    return CryptoError(
        CryptoErrorKind.DECRYPTION_FAILED,
        "Decryption or authentication failed",
        details={"reason": reason},
    )


def generate_encryption_key() -> bytes:
    """
    Generate a cryptographically secure 256-bit encryption key

    Returns:
        32-byte random key
    """
    return secrets.token_bytes(AES_KEY_SIZE)


def generate_nonce() -> bytes:
    """
    Generate a random nonce for AES-GCM

    Returns:
        16-byte random nonce
    """
    return secrets.token_bytes(AES_NONCE_SIZE)


def _to_purpose(purpose: Union[Purpose, str]) -> Purpose:
    try:
        return Purpose(purpose)
    except ValueError:
        raise ValueError(f"Unknown encryption purpose: {purpose}")


def encrypt(plaintext: bytes, purpose: Union[Purpose, str],
            key: Optional[bytes] = None) -> Tuple[EncryptedPayload, bytes]:
    """
    Encrypt data using AES-256-GCM bound to a purpose

    A fresh nonce is drawn for every call. When no key is supplied a fresh
    one is generated and returned alongside the payload.

    Args:
        plaintext: Data to encrypt
        purpose: Context the payload is sealed for
        key: Optional 32-byte AES-256 key

    Returns:
        Tuple of (payload, key)

    Raises:
        CryptoError: If the key is malformed or encryption fails
    """
    purpose = _to_purpose(purpose)
    if key is None:
        key = generate_encryption_key()

    if len(key) != AES_KEY_SIZE:
        raise CryptoError(
            CryptoErrorKind.ENCRYPTION_FAILED,
            f"Key must be {AES_KEY_SIZE} bytes, got {len(key)}"
        )

    nonce = generate_nonce()
    try:
        sealed = AESGCM(key).encrypt(nonce, plaintext, PURPOSE_AAD[purpose])
    except (TypeError, ValueError, OverflowError) as e:
        logger.error(f"Encryption failed: {type(e).__name__}")
        raise CryptoError(CryptoErrorKind.ENCRYPTION_FAILED, "Encryption failed")

    payload = EncryptedPayload(
        ciphertext=sealed[:-AES_TAG_SIZE],
        nonce=nonce,
        tag=sealed[-AES_TAG_SIZE:],
        purpose=purpose,
    )
    return payload, key


def decrypt(ciphertext: bytes, nonce: bytes, tag: bytes, key: bytes,
            purpose: Union[Purpose, str]) -> bytes:
    """
    Decrypt data using AES-256-GCM

    Verifies the authentication tag (which covers the purpose) before
    releasing any plaintext. Fails closed on tampering, wrong key, wrong
    nonce or wrong purpose.

    Args:
        ciphertext: Encrypted data
        nonce: 16-byte nonce
        tag: 16-byte authentication tag
        key: 32-byte AES-256 key
        purpose: Context the caller expects

    Returns:
        Decrypted plaintext

    Raises:
        CryptoError: DECRYPTION_FAILED if decryption or authentication fails
    """
    purpose = _to_purpose(purpose)

    if len(key) != AES_KEY_SIZE:
        raise _decryption_failed("invalid_key_length")
    if len(nonce) != AES_NONCE_SIZE:
        raise _decryption_failed("invalid_nonce_length")
    if len(tag) != AES_TAG_SIZE:
        raise _decryption_failed("invalid_tag_length")

    try:
        return AESGCM(key).decrypt(nonce, ciphertext + tag, PURPOSE_AAD[purpose])
    except InvalidTag:
        logger.warning(f"Authentication tag mismatch on {purpose.value} payload")
        raise _decryption_failed("authentication_failed")


def decrypt_payload(payload: EncryptedPayload, key: bytes, purpose: Union[Purpose, str]) -> bytes:
    """Decrypt an EncryptedPayload, rejecting a declared purpose mismatch up front"""
    purpose = _to_purpose(purpose)
    if payload.purpose != purpose:
        logger.warning(
            f"Purpose mismatch: payload sealed for {payload.purpose.value}, opened as {purpose.value}"
        )
        raise _decryption_failed("purpose_mismatch")
    return decrypt(payload.ciphertext, payload.nonce, payload.tag, key, purpose)


def encrypt_for_storage(data: bytes, purpose: Union[Purpose, str]) -> Tuple[EncryptedPayload, bytes]:
    """
    Seal data for storage under a fresh resource key

    Returns:
        Tuple of (payload, resource key)
    """
    return encrypt(data, purpose)


def decrypt_from_storage(payload: EncryptedPayload, key: bytes, purpose: Union[Purpose, str]) -> bytes:
    """Open a stored payload; raises CryptoError DECRYPTION_FAILED on any mismatch"""
    return decrypt_payload(payload, key, purpose)


def encrypt_text(plaintext: str, purpose: Union[Purpose, str],
                 key: Optional[bytes] = None) -> Tuple[EncryptedPayload, bytes]:
    """Encrypt a UTF-8 string"""
    return encrypt(plaintext.encode('utf-8'), purpose, key)


def decrypt_text(payload: EncryptedPayload, key: bytes, purpose: Union[Purpose, str]) -> str:
    """Decrypt a payload produced by encrypt_text"""
    plaintext = decrypt_payload(payload, key, purpose)
    try:
        return plaintext.decode('utf-8')
    except UnicodeDecodeError:
        raise _decryption_failed("invalid_encoding")


def derive_key_from_password(password: str, salt: Optional[bytes] = None,
                             iterations: int = DEFAULT_KDF_ITERATIONS) -> DerivedKey:
    """
    Derive AES-256 key from password using PBKDF2-HMAC-SHA256

    Args:
        password: Password to derive from
        salt: Cryptographic salt (a fresh 32-byte salt is generated if omitted)
        iterations: Number of PBKDF2 iterations

    Returns:
        DerivedKey with the key, the salt actually used and the iteration count

    Raises:
        CryptoError: KEY_DERIVATION_FAILED on invalid input
    """
    if not password:
        raise CryptoError(CryptoErrorKind.KEY_DERIVATION_FAILED, "Password is required for key derivation")
    if not isinstance(iterations, int) or iterations < 1:
        raise CryptoError(CryptoErrorKind.KEY_DERIVATION_FAILED, "Iterations must be a positive integer")

    if salt is None:
        salt = secrets.token_bytes(KDF_SALT_SIZE)

    try:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=AES_KEY_SIZE,
            salt=salt,
            iterations=iterations,
            backend=default_backend()
        )
        key = kdf.derive(password.encode('utf-8'))
    except (TypeError, ValueError) as e:
        logger.error(f"Key derivation failed: {type(e).__name__}")
        raise CryptoError(CryptoErrorKind.KEY_DERIVATION_FAILED, "Key derivation failed")

    return DerivedKey(key=key, salt=salt, iterations=iterations)


def _as_bytes(data: Union[bytes, str]) -> bytes:
    return data.encode('utf-8') if isinstance(data, str) else data


def hash_data(data: Union[bytes, str], algorithm: str = "sha256") -> str:
    """
    Hash data with a hashlib algorithm

    Returns:
        Hex digest

    Raises:
        ValueError: If the algorithm is not supported
    """
    return hashlib.new(algorithm, _as_bytes(data)).hexdigest()


def hmac_sign(data: Union[bytes, str], secret: Union[bytes, str], algorithm: str = "sha256") -> str:
    """
    Compute an HMAC over data

    Returns:
        Hex digest
    """
    return hmac.new(_as_bytes(secret), _as_bytes(data), algorithm).hexdigest()


def verify_hmac(data: Union[bytes, str], signature: str, secret: Union[bytes, str],
                algorithm: str = "sha256") -> bool:
    """
    Verify an HMAC signature using constant-time comparison

    Returns:
        True if the signature matches, False otherwise
    """
    expected = hmac_sign(data, secret, algorithm)
    return hmac.compare_digest(expected.encode('utf-8'), signature.encode('utf-8'))


def key_to_base64(key: bytes) -> str:
    """Convert binary key to base64 string for transport"""
    return base64.b64encode(key).decode('utf-8')


def key_from_base64(key_b64: str) -> bytes:
    """Convert base64 string back to binary key"""
    return base64.b64decode(key_b64)
