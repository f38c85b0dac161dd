"""
utils/tokens.py
JWT access/refresh token issuance, verification and revocation

Architecture:
- Access tokens: short-lived, carry identity + authorization claims
- Refresh tokens: long-lived, carry only the employee id and a unique
  token id, signed with a separate secret
- TokenBlacklist: process-lifetime revocation list owned by the service
  registry (cleared on restart), consulted before every verification

Expiry is checked against the injected clock, not the wall clock, so
the service behaves deterministically under test.
"""

import re
import base64
import binascii
import hashlib
import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, Callable

import jwt
from pydantic import BaseModel

from database.models import Identity, utc_now
from utils.errors import TokenError, TokenErrorKind
from utils.rbac import CrewRole, Department

logger = logging.getLogger(__name__)

DEFAULT_ISSUER = "aviation-crew-api"
DEFAULT_AUDIENCE = "aviation-crew"
ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
BLACKLIST_FALLBACK_TTL = timedelta(hours=24)

_SEGMENT_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')


class CrewClaims(BaseModel):
    """Verified identity and authorization claims of an access token"""
    employee_id: str
    name: str
    role: CrewRole
    department: Department
    clearance_level: int
    airline: str
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_identity(cls, identity: Identity, **extra) -> "CrewClaims":
        return cls(
            employee_id=identity.employee_id,
            name=identity.name,
            role=identity.role,
            department=identity.department,
            clearance_level=identity.clearance_level,
            airline=identity.airline,
            **extra
        )


class TokenPair(BaseModel):
    """Access + refresh token pair returned on login, registration and refresh"""
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_expires_in: int


def is_valid_token_format(token: Any) -> bool:
    """
    Cheap structural pre-check of a JWT

    Only verifies three dot-separated, base64url-decodable segments; says
    nothing about the signature.
    """
    if not token or not isinstance(token, str):
        return False

    parts = token.split('.')
    if len(parts) != 3:
        return False

    for part in parts:
        if not _SEGMENT_PATTERN.match(part):
            return False
        try:
            base64.urlsafe_b64decode(part + '=' * (-len(part) % 4))
        except (binascii.Error, ValueError):
            return False

    return True


def token_fingerprint(token: str) -> str:
    """SHA-256 of a raw token; the blacklist stores this instead of the token"""
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def read_unverified_claims(token: str) -> Optional[Dict[str, Any]]:
    """Decode claims without verifying the signature (for bookkeeping only)"""
    try:
        return jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return None


class TokenBlacklist:
    """
    Revocation list of token fingerprints with their expiry

    Expired entries are pruned lazily on every insert and lookup.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._entries: Dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _prune_locked(self, now: datetime) -> int:
        expired = [fp for fp, expiry in self._entries.items() if expiry <= now]
        for fp in expired:
            del self._entries[fp]
        return len(expired)

    def add(self, token: str, expires_at: datetime):
        """Revoke a token until expires_at"""
        with self._lock:
            now = self._clock()
            self._prune_locked(now)
            self._entries[token_fingerprint(token)] = expires_at

    def contains(self, token: str) -> bool:
        """True if the token is revoked and the revocation has not expired"""
        with self._lock:
            now = self._clock()
            self._prune_locked(now)
            return token_fingerprint(token) in self._entries

    def cleanup(self) -> int:
        """Prune expired entries now; returns the number removed"""
        with self._lock:
            removed = self._prune_locked(self._clock())
        if removed:
            logger.info(f"Pruned {removed} expired blacklist entries")
        return removed

    def __len__(self):
        with self._lock:
            return len(self._entries)


class TokenService:
    """
    Issues and verifies HS256 JWTs

    Args:
        access_secret: Signing secret for access tokens
        refresh_secret: Signing secret for refresh tokens; when missing or
            equal to access_secret the service runs in a weaker mode where
            one leaked secret forges both token types
        blacklist: Revocation list
        clock: Time source
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: Optional[str] = None,
        blacklist: Optional[TokenBlacklist] = None,
        clock: Callable[[], datetime] = utc_now,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        issuer: str = DEFAULT_ISSUER,
        audience: str = DEFAULT_AUDIENCE,
        algorithm: str = "HS256"
    ):
        if not access_secret:
            raise ValueError("JWT access secret is required")

        self.access_secret = access_secret
        self.weak_refresh_mode = not refresh_secret or refresh_secret == access_secret
        self.refresh_secret = access_secret if self.weak_refresh_mode else refresh_secret
        self.blacklist = blacklist or TokenBlacklist(clock)
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.issuer = issuer
        self.audience = audience
        self.algorithm = algorithm
        self._clock = clock

        if self.weak_refresh_mode:
            logger.warning(
                "JWT_REFRESH_SECRET_KEY is not set or equals JWT_SECRET_KEY - "
                "refresh tokens share the access token secret (weaker mode)"
            )

    def issue_token_pair(self, identity: Identity) -> TokenPair:
        """
        Issue an access + refresh token pair for an identity

        Returns:
            TokenPair
        """
        now = self._clock()
        iat = int(now.timestamp())

        access_claims = {
            "employeeId": identity.employee_id,
            "name": identity.name,
            "role": identity.role.value,
            "department": identity.department.value,
            "clearanceLevel": identity.clearance_level,
            "airline": identity.airline,
            "type": ACCESS_TOKEN_TYPE,
            "iat": iat,
            "exp": int((now + self.access_ttl).timestamp()),
            "iss": self.issuer,
            "aud": self.audience,
        }
        refresh_claims = {
            "employeeId": identity.employee_id,
            "type": REFRESH_TOKEN_TYPE,
            "tokenId": str(uuid.uuid4()),
            "iat": iat,
            "exp": int((now + self.refresh_ttl).timestamp()),
            "iss": self.issuer,
            "aud": self.audience,
        }

        return TokenPair(
            access_token=jwt.encode(access_claims, self.access_secret, algorithm=self.algorithm),
            refresh_token=jwt.encode(refresh_claims, self.refresh_secret, algorithm=self.algorithm),
            expires_in=int(self.access_ttl.total_seconds()),
            refresh_expires_in=int(self.refresh_ttl.total_seconds()),
        )

    def _verify(self, token: str, secret: str, expected_type: str) -> Dict[str, Any]:
        if not is_valid_token_format(token):
            raise TokenError(TokenErrorKind.MALFORMED_FORMAT, "Invalid token format")

        if self.blacklist.contains(token):
            raise TokenError(TokenErrorKind.REVOKED, "Token has been revoked")

        try:
            claims = jwt.decode(
                token,
                secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": ["exp", "iat", "iss", "aud", "type", "employeeId"],
                },
            )
        except jwt.InvalidTokenError as e:
            logger.warning(f"Token verification failed: {type(e).__name__}")
            raise TokenError(TokenErrorKind.INVALID, "Invalid token")

        exp = claims["exp"]
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise TokenError(TokenErrorKind.INVALID, "Invalid token")

        if self._clock().timestamp() >= exp:
            raise TokenError(TokenErrorKind.EXPIRED, "Token has expired")

        if claims["type"] != expected_type:
            raise TokenError(
                TokenErrorKind.WRONG_TYPE,
                "Invalid token type",
                details={"expected": expected_type},
            )

        return claims

    def verify_access_token(self, token: str) -> CrewClaims:
        """
        Verify an access token

        Raises:
            TokenError: MALFORMED_FORMAT, REVOKED, INVALID, EXPIRED or WRONG_TYPE
        """
        claims = self._verify(token, self.access_secret, ACCESS_TOKEN_TYPE)
        try:
            return CrewClaims(
                employee_id=claims["employeeId"],
                name=claims["name"],
                role=claims["role"],
                department=claims["department"],
                clearance_level=claims["clearanceLevel"],
                airline=claims["airline"],
                issued_at=datetime.fromtimestamp(claims["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            )
        except (KeyError, ValueError) as e:
            logger.warning(f"Access token claims rejected: {type(e).__name__}")
            raise TokenError(TokenErrorKind.INVALID, "Invalid token")

    def verify_refresh_token(self, token: str) -> Dict[str, Any]:
        """
        Verify a refresh token

        Returns:
            Decoded claims (employeeId, type, tokenId, iat, exp, iss, aud)

        Raises:
            TokenError: MALFORMED_FORMAT, REVOKED, INVALID, EXPIRED or WRONG_TYPE
        """
        return self._verify(token, self.refresh_secret, REFRESH_TOKEN_TYPE)

    def blacklist_token(self, token: str, expires_at: Optional[datetime] = None):
        """
        Revoke a token until its natural expiry (or the supplied override)

        Falls back to 24 hours when the expiry cannot be read.
        """
        if expires_at is None:
            claims = read_unverified_claims(token) or {}
            exp = claims.get("exp")
            if isinstance(exp, (int, float)) and not isinstance(exp, bool):
                expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
            else:
                expires_at = self._clock() + BLACKLIST_FALLBACK_TTL

        self.blacklist.add(token, expires_at)
        logger.info("Token blacklisted")

    def get_token_time_remaining(self, token: str) -> int:
        """Seconds until the token's exp (0 if past, -1 if unreadable)"""
        claims = read_unverified_claims(token)
        if not claims or not isinstance(claims.get("exp"), (int, float)):
            return -1
        return max(0, int(claims["exp"] - self._clock().timestamp()))
