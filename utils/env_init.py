"""
utils/env_init.py
Environment configuration for the crew API
Generates in-memory keys in development if dev placeholders are detected
"""

import os
import secrets
import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import List, Optional

from utils.encryption import generate_master_key, load_master_key

logger = logging.getLogger(__name__)

# Dev placeholder patterns to detect
DEV_PLACEHOLDERS = [
    "dev_secret_key",
    "dev_jwt_secret",
    "change_in_production",
    "your_secret_key_here",
    "your_jwt_secret_key_here",
    "your_master_key_here",
]

MIN_JWT_SECRET_LENGTH = 32


def generate_secure_key(length: int = 32) -> str:
    """
    Generate a cryptographically secure random key

    Args:
        length: Length of key in bytes (default 32 = 256 bits)

    Returns:
        URL-safe base64 encoded key
    """
    return secrets.token_urlsafe(length)


def is_dev_placeholder(value: Optional[str]) -> bool:
    """
    Check if an environment variable contains a dev placeholder

    Args:
        value: Environment variable value

    Returns:
        True if it's a placeholder (or empty), False otherwise
    """
    if not value:
        return True

    value_lower = value.lower()
    return any(placeholder in value_lower for placeholder in DEV_PLACEHOLDERS)


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer")


@dataclass(frozen=True)
class Settings:
    """Process configuration; build with Settings.from_env()"""
    env: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    log_file: Optional[str] = "app_security.log"

    jwt_secret_key: str = ""
    jwt_refresh_secret_key: Optional[str] = None
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "aviation-crew-api"
    jwt_audience: str = "aviation-crew"
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7

    master_encryption_key: str = ""
    kdf_iterations: int = 100000

    max_failed_login_attempts: int = 5
    account_lockout_minutes: int = 30
    message_delete_window_minutes: int = 5
    audit_max_records: int = 10000
    maintenance_interval_minutes: int = 10

    return_resource_keys: bool = False
    max_upload_size_mb: int = 10
    max_upload_files: int = 5

    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])
    rate_limit_enabled: bool = True
    rate_limit_storage: str = "memory://"
    seed_demo_data: bool = False

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.access_token_expire_minutes)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(days=self.refresh_token_expire_days)

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(minutes=self.account_lockout_minutes)

    @property
    def message_delete_window(self) -> timedelta:
        return timedelta(minutes=self.message_delete_window_minutes)

    @property
    def max_upload_size(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Read settings from the process environment

        Call load_dotenv() first if a .env file should be honoured.
        Secrets are resolved by initialize_env_secrets().
        """
        settings = cls(
            env=os.getenv("ENV", "development"),
            debug=_env_bool("DEBUG", False),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("LOG_FILE", "app_security.log") or None,
            jwt_secret_key=os.getenv("JWT_SECRET_KEY", ""),
            jwt_refresh_secret_key=os.getenv("JWT_REFRESH_SECRET_KEY") or None,
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            jwt_issuer=os.getenv("JWT_ISSUER", "aviation-crew-api"),
            jwt_audience=os.getenv("JWT_AUDIENCE", "aviation-crew"),
            access_token_expire_minutes=_env_int("ACCESS_TOKEN_EXPIRE_MINUTES", 15),
            refresh_token_expire_days=_env_int("REFRESH_TOKEN_EXPIRE_DAYS", 7),
            master_encryption_key=os.getenv("MASTER_ENCRYPTION_KEY", ""),
            kdf_iterations=_env_int("KDF_ITERATIONS", 100000),
            max_failed_login_attempts=_env_int("MAX_FAILED_LOGIN_ATTEMPTS", 5),
            account_lockout_minutes=_env_int("ACCOUNT_LOCKOUT_MINUTES", 30),
            message_delete_window_minutes=_env_int("MESSAGE_DELETE_WINDOW_MINUTES", 5),
            audit_max_records=_env_int("AUDIT_MAX_RECORDS", 10000),
            maintenance_interval_minutes=_env_int("MAINTENANCE_INTERVAL_MINUTES", 10),
            return_resource_keys=_env_bool("RETURN_RESOURCE_KEYS", False),
            max_upload_size_mb=_env_int("MAX_UPLOAD_SIZE_MB", 10),
            max_upload_files=_env_int("MAX_UPLOAD_FILES", 5),
            cors_origins=[
                o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()
            ],
            rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", True),
            rate_limit_storage=os.getenv("RATE_LIMIT_STORAGE", "memory://"),
            seed_demo_data=_env_bool("SEED_DEMO_DATA", False),
        )
        return initialize_env_secrets(settings)


def initialize_env_secrets(settings: Settings) -> Settings:
    """
    Resolve dev placeholder secrets

    In development, placeholder or missing secrets are replaced with
    generated keys held in memory only (tokens and stored resources do
    not survive a restart). In production they are fatal.

    Returns:
        Settings with usable secrets

    Raises:
        RuntimeError: placeholder secrets in production
    """
    logger.info("Checking environment variables for dev placeholders...")

    updates = {}
    if is_dev_placeholder(settings.jwt_secret_key):
        updates["jwt_secret_key"] = generate_secure_key(48)
    if settings.jwt_refresh_secret_key and is_dev_placeholder(settings.jwt_refresh_secret_key):
        updates["jwt_refresh_secret_key"] = generate_secure_key(48)
    if is_dev_placeholder(settings.master_encryption_key):
        updates["master_encryption_key"] = generate_master_key()

    if not updates:
        logger.info("✅ All secret keys are properly configured")
        return settings

    names = ", ".join(sorted(k.upper() for k in updates))
    if settings.is_production:
        logger.error(f"❌ Dev placeholders or missing secrets in production: {names}")
        raise RuntimeError("Secrets are not configured for production - check logs")

    logger.warning("=" * 60)
    logger.warning(f"🔑 Dev placeholders detected for {names}")
    logger.warning("   Generated secure keys in memory only")
    logger.warning("   Tokens and encrypted resources will not survive a restart")
    logger.warning("=" * 60)
    return replace(settings, **updates)


def validate_required_env_vars(settings: Settings) -> bool:
    """
    Validate that all required settings are present and usable

    Returns:
        True if all required settings are set, False otherwise
    """
    problems = []

    if not settings.jwt_secret_key:
        problems.append("JWT_SECRET_KEY is not set")
    elif len(settings.jwt_secret_key) < MIN_JWT_SECRET_LENGTH:
        problems.append(f"JWT_SECRET_KEY must be at least {MIN_JWT_SECRET_LENGTH} characters")

    if settings.jwt_refresh_secret_key and len(settings.jwt_refresh_secret_key) < MIN_JWT_SECRET_LENGTH:
        problems.append(f"JWT_REFRESH_SECRET_KEY must be at least {MIN_JWT_SECRET_LENGTH} characters")

    for name, value in (
        ("ACCESS_TOKEN_EXPIRE_MINUTES", settings.access_token_expire_minutes),
        ("REFRESH_TOKEN_EXPIRE_DAYS", settings.refresh_token_expire_days),
        ("MAX_FAILED_LOGIN_ATTEMPTS", settings.max_failed_login_attempts),
        ("ACCOUNT_LOCKOUT_MINUTES", settings.account_lockout_minutes),
        ("MAX_UPLOAD_SIZE_MB", settings.max_upload_size_mb),
        ("MAX_UPLOAD_FILES", settings.max_upload_files),
        ("KDF_ITERATIONS", settings.kdf_iterations),
        ("AUDIT_MAX_RECORDS", settings.audit_max_records),
        ("MAINTENANCE_INTERVAL_MINUTES", settings.maintenance_interval_minutes),
    ):
        if value <= 0:
            problems.append(f"{name} must be positive")

    if problems:
        logger.error("❌ Invalid environment configuration:")
        for problem in problems:
            logger.error(f"   - {problem}")
        return False

    logger.info("✅ All required environment variables are set")
    return True


def check_master_encryption_key(settings: Settings) -> bool:
    """
    Check if MASTER_ENCRYPTION_KEY decodes to a 256-bit key

    Returns:
        True if key is valid, False otherwise
    """
    key = settings.master_encryption_key

    if is_dev_placeholder(key):
        logger.error("❌ MASTER_ENCRYPTION_KEY is not set or contains a dev placeholder!")
        logger.error("   This key wraps every message and document key")
        logger.error("   Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(32))\"")
        return False

    try:
        load_master_key(key)
    except ValueError:
        logger.error("❌ MASTER_ENCRYPTION_KEY must be a base64 encoded 32-byte key")
        return False

    logger.info("✅ MASTER_ENCRYPTION_KEY is properly configured")
    return True


def display_security_checklist(settings: Settings):
    """
    Display security checklist on startup
    """
    if not settings.is_production:
        return

    logger.info("")
    logger.info("=" * 60)
    logger.info("🔒 PRODUCTION MODE SECURITY CHECKLIST")
    logger.info("=" * 60)

    checks = {
        "DEBUG=False": not settings.debug,
        "ENV=production": settings.is_production,
        "JWT_REFRESH_SECRET_KEY separate": (
            bool(settings.jwt_refresh_secret_key)
            and settings.jwt_refresh_secret_key != settings.jwt_secret_key
        ),
        "RETURN_RESOURCE_KEYS=False": not settings.return_resource_keys,
        "CORS_ORIGINS configured": all(not o.startswith("http://localhost") for o in settings.cors_origins),
        "RATE_LIMIT_ENABLED": settings.rate_limit_enabled,
        "RATE_LIMIT_STORAGE shared": settings.rate_limit_storage != "memory://",
        "SEED_DEMO_DATA=False": not settings.seed_demo_data,
    }

    all_passed = True

    for check, passed in checks.items():
        status = "✅" if passed else "❌"
        logger.info(f"{status} {check}")
        if not passed:
            all_passed = False

    if all_passed:
        logger.info("")
        logger.info("✅ All production security checks passed!")
    else:
        logger.warning("")
        logger.warning("⚠️  Some production security checks failed!")
        logger.warning("   Review your .env configuration")

    logger.info("=" * 60)
    logger.info("")
