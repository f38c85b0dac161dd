"""
utils/security.py
Credential hashing and password policy
"""

import re
from typing import Optional
from argon2 import PasswordHasher
from argon2.exceptions import VerifyMismatchError, InvalidHash, VerificationError, HashingError
import logging

logger = logging.getLogger(__name__)

# Initialize Argon2 password hasher with secure parameters
ph = PasswordHasher(
    time_cost=3,        # Number of iterations
    memory_cost=65536,  # Memory usage in KiB (64 MB)
    parallelism=4,      # Number of parallel threads
    hash_len=32,        # Length of the hash in bytes
    salt_len=16         # Length of random salt in bytes
)

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
PASSWORD_SPECIAL_CHARS = "@$!%*?&"
PASSWORD_PATTERN = re.compile(r'^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])')


def hash_password(password: str, hasher: Optional[PasswordHasher] = None) -> str:
    """
    Hash password using Argon2id algorithm

    Args:
        password: Plain text password
        hasher: Hasher to use (module default when omitted)

    Returns:
        Hashed password string

    Raises:
        ValueError: If hashing fails
    """
    hasher = hasher or ph
    try:
        return hasher.hash(password)
    except HashingError as e:
        logger.error(f"Password hashing failed: {type(e).__name__}")
        raise ValueError("Password hashing failed")


def verify_password(password: str, password_hash: str, hasher: Optional[PasswordHasher] = None) -> bool:
    """
    Verify password against Argon2id hash

    Argon2's verify compares digests in constant time, so a mismatch
    takes as long as a match.

    Args:
        password: Plain text password to verify
        password_hash: Stored hash to verify against
        hasher: Hasher to use (module default when omitted)

    Returns:
        True if password matches, False otherwise
    """
    hasher = hasher or ph
    try:
        hasher.verify(password_hash, password)

        if hasher.check_needs_rehash(password_hash):
            logger.info("Password hash needs rehashing with new parameters")

        return True
    except (VerifyMismatchError, InvalidHash, VerificationError):
        return False


def needs_rehash(password_hash: str, hasher: Optional[PasswordHasher] = None) -> bool:
    """Check whether a stored hash was produced with outdated parameters"""
    hasher = hasher or ph
    try:
        return hasher.check_needs_rehash(password_hash)
    except InvalidHash:
        return True


def password_policy_violation(password: str) -> Optional[str]:
    """
    Describe the first password policy rule a password breaks

    Returns:
        Human-readable message, or None if the password is acceptable
    """
    if len(password) < PASSWORD_MIN_LENGTH:
        return f"Password must be at least {PASSWORD_MIN_LENGTH} characters long"
    if len(password) > PASSWORD_MAX_LENGTH:
        return f"Password must not exceed {PASSWORD_MAX_LENGTH} characters"
    if not PASSWORD_PATTERN.match(password):
        return (
            "Password must contain at least one lowercase letter, one uppercase letter, "
            f"one number, and one special character ({PASSWORD_SPECIAL_CHARS})"
        )
    return None
