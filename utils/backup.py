"""
utils/backup.py
Password-protected encrypted backups

A backup bundle is a JSON document carrying everything needed to reverse
it except the password: the PBKDF2 salt and iteration count plus the
AES-GCM payload (sealed with the "backup" purpose) of the gzip-compressed
JSON data.
"""

import json
import gzip
import zlib
import base64
import binascii
import logging
from typing import Any, Dict, Optional, Union
from datetime import datetime, timezone

from utils.crypto_aes import (
    Purpose, EncryptedPayload, encrypt, decrypt_payload,
    derive_key_from_password, DEFAULT_KDF_ITERATIONS
)
from utils.errors import CrewAPIError, CryptoError, CryptoErrorKind

logger = logging.getLogger(__name__)

BACKUP_VERSION = "1.0"
KDF_NAME = "pbkdf2-sha256"


def compress_data(data: bytes) -> bytes:
    """
    Compress data using gzip

    Args:
        data: Raw data to compress

    Returns:
        Compressed data
    """
    compressed = gzip.compress(data, compresslevel=9)
    logger.debug(f"Compressed {len(data)} bytes to {len(compressed)} bytes")
    return compressed


def decompress_data(compressed_data: bytes) -> bytes:
    """
    Decompress gzip data

    Args:
        compressed_data: Compressed data

    Returns:
        Decompressed data
    """
    return gzip.decompress(compressed_data)


def encrypt_backup(data: Any, password: str, iterations: Optional[int] = None) -> str:
    """
    Serialize, compress and encrypt data under a password-derived key

    Args:
        data: JSON-serializable data
        password: Backup password
        iterations: PBKDF2 iterations (defaults to DEFAULT_KDF_ITERATIONS)

    Returns:
        JSON bundle string

    Raises:
        CryptoError: KEY_DERIVATION_FAILED or ENCRYPTION_FAILED
        TypeError: If data is not JSON-serializable
    """
    derived = derive_key_from_password(password, iterations=iterations or DEFAULT_KDF_ITERATIONS)

    envelope = {
        "backup_version": BACKUP_VERSION,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }
    compressed = compress_data(json.dumps(envelope).encode('utf-8'))
    payload, _ = encrypt(compressed, Purpose.BACKUP, derived.key)

    bundle = {
        "version": BACKUP_VERSION,
        "kdf": KDF_NAME,
        "iterations": derived.iterations,
        "salt": base64.b64encode(derived.salt).decode('utf-8'),
        "payload": payload.to_dict(),
    }

    logger.info(f"Created encrypted backup ({len(compressed)} compressed bytes)")
    return json.dumps(bundle)


def restore_backup(bundle: Union[str, bytes, Dict], password: str) -> Any:
    """
    Reverse encrypt_backup

    Every step failure (wrong password, corrupted bundle, tampered
    ciphertext, bad compression) is reported the same way.

    Args:
        bundle: JSON bundle string or already-parsed dict
        password: Backup password

    Returns:
        The original data

    Raises:
        CryptoError: BACKUP_RESTORE_FAILED
    """
    try:
        if isinstance(bundle, (str, bytes)):
            bundle = json.loads(bundle)

        if bundle.get("kdf") != KDF_NAME:
            raise ValueError("Unsupported key derivation scheme")

        salt = base64.b64decode(bundle["salt"], validate=True)
        derived = derive_key_from_password(password, salt=salt, iterations=int(bundle["iterations"]))

        payload = EncryptedPayload.from_dict(bundle["payload"])
        compressed = decrypt_payload(payload, derived.key, Purpose.BACKUP)
        envelope = json.loads(decompress_data(compressed).decode('utf-8'))

        return envelope["data"]

    except (CrewAPIError, ValueError, KeyError, TypeError, AttributeError,
            OSError, EOFError, zlib.error, binascii.Error) as e:
        logger.error(f"Backup restore failed: {type(e).__name__}")
        raise CryptoError(
            CryptoErrorKind.BACKUP_RESTORE_FAILED,
            "Failed to restore backup"
        )
