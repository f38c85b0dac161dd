"""
utils/authenticator.py
Credential verification, account lockout and token lifecycle

Lockout state machine per identity:
    Unlocked --(MAX_FAILED_ATTEMPTS consecutive failures)--> Locked(until)
    Locked --(until has passed, observed on next login)--> Unlocked

Failed-attempt counting runs inside IdentityRepository.update(), so two
concurrent failures for the same employee id are both counted.
"""

import logging
from datetime import datetime, timedelta
from math import ceil
from typing import Optional, Callable

from argon2 import PasswordHasher
from pydantic import BaseModel, validator

from database.models import Identity, utc_now
from database.repositories import IdentityRepository, DuplicateRecordError
from utils.audit import AuditLogStore, AuditAction, log_audit_event
from utils.errors import AuthError, AuthErrorKind, TokenError, TokenErrorKind
from utils.input_sanitizer import validate_employee_id, validate_person_name, validate_airline
from utils.rbac import CrewRole, Department, validate_clearance_level
from utils.security import hash_password, verify_password, needs_rehash, password_policy_violation
from utils.security_monitor import SecurityMonitor
from utils.tokens import TokenService, TokenPair, CrewClaims, read_unverified_claims

logger = logging.getLogger(__name__)

MAX_FAILED_ATTEMPTS = 5
LOCKOUT_DURATION = timedelta(minutes=30)

INVALID_CREDENTIALS_MESSAGE = "Invalid employee ID or password"


class CrewRegistration(BaseModel):
    """Identity attributes supplied at registration"""
    employee_id: str
    name: str
    role: CrewRole
    department: Department
    clearance_level: int
    airline: str

    @validator('employee_id')
    def check_employee_id(cls, v):
        return validate_employee_id(v)

    @validator('name')
    def check_name(cls, v):
        return validate_person_name(v)

    @validator('airline')
    def check_airline(cls, v):
        return validate_airline(v)

    @validator('clearance_level')
    def check_clearance(cls, v):
        return validate_clearance_level(v)


class Authenticator:
    """
    Login, registration, password change, refresh and logout

    Args:
        identities: Credential store
        tokens: Token issuer/verifier
        audit_store: Audit trail
        monitor: Security event monitor
        clock: Time source
        hasher: Argon2 hasher (module default when omitted)
        max_failed_attempts: Consecutive failures that lock an account
        lockout_duration: How long a lock lasts
    """

    def __init__(
        self,
        identities: IdentityRepository,
        tokens: TokenService,
        audit_store: AuditLogStore,
        monitor: SecurityMonitor,
        clock: Callable[[], datetime] = utc_now,
        hasher: Optional[PasswordHasher] = None,
        max_failed_attempts: int = MAX_FAILED_ATTEMPTS,
        lockout_duration: timedelta = LOCKOUT_DURATION
    ):
        self.identities = identities
        self.tokens = tokens
        self.audit_store = audit_store
        self.monitor = monitor
        self.hasher = hasher
        self.max_failed_attempts = max_failed_attempts
        self.lockout_duration = lockout_duration
        self._clock = clock
        # Verified against when the employee id is unknown so both paths cost the same
        self._dummy_hash = hash_password("Dummy-Timing-Equalizer-1!", hasher)

    # ------------------------------------------------------------------
    # Lockout helpers
    # ------------------------------------------------------------------

    def _minutes_remaining(self, locked_until: datetime, now: datetime) -> int:
        return max(1, ceil((locked_until - now).total_seconds() / 60))

    def _clear_expired_lock(self, employee_id: str) -> Identity:
        now = self._clock()

        def reset(identity: Identity):
            if identity.locked_until and identity.locked_until <= now:
                identity.failed_attempts = 0
                identity.locked_until = None
                identity.updated_at = now
                logger.info(f"Lock expired for {employee_id}, counters reset")

        return self.identities.update(employee_id, reset)

    def _record_failed_attempt(self, employee_id: str, ip_address: Optional[str]) -> Identity:
        now = self._clock()

        def increment(identity: Identity):
            identity.failed_attempts += 1
            already_locked = identity.locked_until is not None and identity.locked_until > now
            if identity.failed_attempts >= self.max_failed_attempts and not already_locked:
                identity.locked_until = now + self.lockout_duration
            identity.updated_at = now

        updated = self.identities.update(employee_id, increment)

        log_audit_event(
            self.audit_store, employee_id, AuditAction.LOGIN_FAILED, 'failed', ip_address,
            {"reason": "invalid_password", "failed_attempts": updated.failed_attempts}
        )

        if updated.locked_until and updated.locked_until > now and updated.failed_attempts == self.max_failed_attempts:
            logger.warning(f"Account locked after {updated.failed_attempts} failed attempts: {employee_id}")
            self.monitor.track_account_lockout(employee_id, updated.locked_until, ip_address)

        return updated

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def login(self, employee_id: str, password: str, ip_address: Optional[str] = None) -> TokenPair:
        """
        Authenticate with employee id and password

        Args:
            employee_id: Employee id
            password: Presented password
            ip_address: Client IP address (for audit)

        Returns:
            TokenPair

        Raises:
            AuthError: INVALID_CREDENTIALS (unknown id or wrong password),
                ACCOUNT_LOCKED or ACCOUNT_DEACTIVATED
        """
        identity = self.identities.get(employee_id)

        if identity is None:
            verify_password(password, self._dummy_hash, self.hasher)
            log_audit_event(
                self.audit_store, None, AuditAction.LOGIN_FAILED, 'failed', ip_address,
                {"reason": "unknown_employee_id"}
            )
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE)

        now = self._clock()
        if identity.locked_until is not None:
            if identity.locked_until > now:
                minutes = self._minutes_remaining(identity.locked_until, now)
                log_audit_event(
                    self.audit_store, employee_id, AuditAction.LOGIN_FAILED, 'failed', ip_address,
                    {"reason": "account_locked"}
                )
                raise AuthError(
                    AuthErrorKind.ACCOUNT_LOCKED,
                    f"Account is temporarily locked. Try again in {minutes} minutes.",
                    details={
                        "locked_until": identity.locked_until.isoformat(),
                        "minutes_remaining": minutes,
                    },
                )
            identity = self._clear_expired_lock(employee_id)

        if not identity.is_active:
            log_audit_event(
                self.audit_store, employee_id, AuditAction.LOGIN_FAILED, 'failed', ip_address,
                {"reason": "account_deactivated"}
            )
            raise AuthError(AuthErrorKind.ACCOUNT_DEACTIVATED, "Account has been deactivated")

        if not verify_password(password, identity.credential_hash, self.hasher):
            self._record_failed_attempt(employee_id, ip_address)
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE)

        rehashed = None
        if needs_rehash(identity.credential_hash, self.hasher):
            rehashed = hash_password(password, self.hasher)

        def mark_success(record: Identity):
            record.failed_attempts = 0
            record.locked_until = None
            record.last_login_at = now
            record.updated_at = now
            if rehashed:
                record.credential_hash = rehashed

        identity = self.identities.update(employee_id, mark_success)

        log_audit_event(self.audit_store, employee_id, AuditAction.LOGIN_SUCCESS, 'success', ip_address)
        logger.info(f"Successful login: {employee_id}")

        return self.tokens.issue_token_pair(identity)

    # Contract name used by callers outside the HTTP layer
    authenticate = login

    def register(self, registration: CrewRegistration, password: str,
                 ip_address: Optional[str] = None) -> TokenPair:
        """
        Create a crew identity and issue its first token pair

        Raises:
            AuthError: ALREADY_EXISTS or WEAK_PASSWORD
        """
        violation = password_policy_violation(password)
        if violation:
            raise AuthError(AuthErrorKind.WEAK_PASSWORD, violation)

        if self.identities.exists(registration.employee_id):
            raise AuthError(AuthErrorKind.ALREADY_EXISTS, "Employee ID already registered")

        now = self._clock()
        identity = Identity(
            employee_id=registration.employee_id,
            name=registration.name,
            role=registration.role,
            department=registration.department,
            clearance_level=registration.clearance_level,
            airline=registration.airline,
            credential_hash=hash_password(password, self.hasher),
            is_active=True,
            failed_attempts=0,
            created_at=now,
            updated_at=now,
        )

        try:
            identity = self.identities.add(identity)
        except DuplicateRecordError:
            raise AuthError(AuthErrorKind.ALREADY_EXISTS, "Employee ID already registered")

        log_audit_event(
            self.audit_store, identity.employee_id, AuditAction.USER_REGISTERED, 'success', ip_address,
            {"role": identity.role.value, "clearance_level": identity.clearance_level}
        )
        logger.info(f"New crew member registered: {identity.employee_id}")

        return self.tokens.issue_token_pair(identity)

    def change_password(self, employee_id: str, current_password: str, new_password: str,
                        ip_address: Optional[str] = None):
        """
        Replace a crew member's password

        Raises:
            AuthError: NOT_FOUND, INVALID_CURRENT_SECRET or WEAK_PASSWORD
        """
        identity = self.get_identity(employee_id)

        if not verify_password(current_password, identity.credential_hash, self.hasher):
            log_audit_event(
                self.audit_store, employee_id, AuditAction.PASSWORD_CHANGED, 'failed', ip_address,
                {"reason": "invalid_current_password"}
            )
            raise AuthError(AuthErrorKind.INVALID_CURRENT_SECRET, "Current password is incorrect")

        violation = password_policy_violation(new_password)
        if violation:
            raise AuthError(AuthErrorKind.WEAK_PASSWORD, violation)
        if new_password == current_password:
            raise AuthError(AuthErrorKind.WEAK_PASSWORD, "New password must be different from current password")

        new_hash = hash_password(new_password, self.hasher)
        now = self._clock()

        def replace(record: Identity):
            record.credential_hash = new_hash
            record.failed_attempts = 0
            record.locked_until = None
            record.password_changed_at = now
            record.updated_at = now

        self.identities.update(employee_id, replace)

        log_audit_event(self.audit_store, employee_id, AuditAction.PASSWORD_CHANGED, 'success', ip_address)
        logger.info(f"Password changed for {employee_id}")

    def refresh(self, refresh_token: str, ip_address: Optional[str] = None) -> TokenPair:
        """
        Exchange a refresh token for a rotated token pair

        The presented refresh token stays usable until it expires or is
        blacklisted.

        Raises:
            TokenError: with code INVALID_REFRESH_TOKEN
        """
        try:
            claims = self.tokens.verify_refresh_token(refresh_token)
        except TokenError as e:
            log_audit_event(
                self.audit_store, None, AuditAction.INVALID_TOKEN, 'failed', ip_address,
                {"token_type": "refresh", "reason": e.kind.value}
            )
            raise TokenError(e.kind, "Invalid refresh token", code="INVALID_REFRESH_TOKEN")

        employee_id = claims["employeeId"]
        identity = self.identities.get(employee_id)
        if identity is None or not identity.is_active:
            log_audit_event(
                self.audit_store, employee_id, AuditAction.INVALID_TOKEN, 'failed', ip_address,
                {"token_type": "refresh", "reason": "identity_unavailable"}
            )
            raise TokenError(TokenErrorKind.INVALID, "Invalid refresh token", code="INVALID_REFRESH_TOKEN")

        log_audit_event(self.audit_store, employee_id, AuditAction.TOKEN_REFRESHED, 'success', ip_address)
        return self.tokens.issue_token_pair(identity)

    def logout(self, access_token: str, refresh_token: Optional[str] = None,
               ip_address: Optional[str] = None):
        """
        Revoke the presented access token and, if it belongs to the same
        crew member, the presented refresh token
        """
        claims = read_unverified_claims(access_token) or {}
        employee_id = claims.get("employeeId")

        self.tokens.blacklist_token(access_token)

        if refresh_token:
            try:
                refresh_claims = self.tokens.verify_refresh_token(refresh_token)
            except TokenError as e:
                logger.info(f"Refresh token not revoked on logout: {e.kind.value}")
            else:
                if refresh_claims["employeeId"] == employee_id:
                    self.tokens.blacklist_token(refresh_token)

        log_audit_event(self.audit_store, employee_id, AuditAction.LOGOUT, 'success', ip_address)

    def authenticate_token(self, token: str, ip_address: Optional[str] = None) -> CrewClaims:
        """
        Verify an access token and resolve the current identity claims

        Claims are rebuilt from the stored identity so role and clearance
        changes apply without waiting for token expiry.

        Raises:
            TokenError: from verification, or INVALID if the identity is gone
            AuthError: ACCOUNT_DEACTIVATED
        """
        try:
            verified = self.tokens.verify_access_token(token)
        except TokenError as e:
            if e.kind is TokenErrorKind.REVOKED:
                unverified = read_unverified_claims(token) or {}
                self.monitor.track_revoked_token(unverified.get("employeeId"), ip_address)
            raise

        identity = self.identities.get(verified.employee_id)
        if identity is None:
            raise TokenError(TokenErrorKind.INVALID, "User not found", code="USER_NOT_FOUND")
        if not identity.is_active:
            raise AuthError(AuthErrorKind.ACCOUNT_DEACTIVATED, "Account has been deactivated")

        return CrewClaims.from_identity(
            identity, issued_at=verified.issued_at, expires_at=verified.expires_at
        )

    def get_identity(self, employee_id: str) -> Identity:
        """
        Raises:
            AuthError: NOT_FOUND
        """
        identity = self.identities.get(employee_id)
        if identity is None:
            raise AuthError(AuthErrorKind.NOT_FOUND, "User not found")
        return identity

    def request_password_reset(self, employee_id: str, ip_address: Optional[str] = None):
        """Record a reset request; callers answer generically whether or not the id exists"""
        known = self.identities.exists(employee_id)
        log_audit_event(
            self.audit_store, employee_id if known else None, AuditAction.PASSWORD_RESET_REQUESTED,
            'success', ip_address
        )
