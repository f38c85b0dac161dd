"""
utils/audit.py
Audit logging utilities for security events tracking

Audit records live in a bounded, process-local AuditLogStore owned by
the service registry; once full, the oldest records are evicted.
Details are scrubbed of credential and key material before they are
stored or logged.
"""

import os
import threading
import logging
from collections import deque
from typing import Optional, Dict, Any, List, Callable
from datetime import datetime, timedelta

from database.models import utc_now

logger = logging.getLogger(__name__)

VALID_STATUSES = ('success', 'failed')
DEFAULT_MAX_RECORDS = 10000

# Detail keys that must never reach the audit trail
SENSITIVE_KEYS = {
    'password', 'current_password', 'new_password', 'secret', 'token',
    'access_token', 'refresh_token', 'key', 'encryption_key', 'wrapped_key',
    'master_key', 'credential_hash', 'ciphertext', 'nonce', 'tag',
}


class AuditLogStore:
    """Append-only audit record store keeping the newest max_records records"""

    def __init__(self, clock: Callable[[], datetime] = utc_now, max_records: int = DEFAULT_MAX_RECORDS):
        if max_records < 1:
            raise ValueError("max_records must be positive")
        self._records = deque(maxlen=max_records)
        self._next_id = 1
        self._lock = threading.Lock()
        self._clock = clock

    @property
    def max_records(self) -> int:
        return self._records.maxlen

    def append(self, record: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            record = dict(record, id=self._next_id, created_at=self._clock())
            self._next_id += 1
            self._records.append(record)
            return dict(record)

    def all(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._records]

    def __len__(self):
        with self._lock:
            return len(self._records)


def scrub_details(details: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Drop sensitive keys from audit details (recursively)

    Args:
        details: Raw details

    Returns:
        Copy with sensitive values replaced by "[REDACTED]"
    """
    if details is None:
        return None

    scrubbed = {}
    for key, value in details.items():
        if key.lower() in SENSITIVE_KEYS:
            scrubbed[key] = "[REDACTED]"
        elif isinstance(value, dict):
            scrubbed[key] = scrub_details(value)
        else:
            scrubbed[key] = value
    return scrubbed


def should_anonymize_ip() -> bool:
    """
    Check if IP addresses should be anonymized
    Based on privacy configuration

    Returns:
        True if IPs should be anonymized
    """
    return os.getenv('ANONYMIZE_IPS', 'true').lower() == 'true'


def log_audit_event(
    store: AuditLogStore,
    employee_id: Optional[str],
    action: str,
    status: str,
    ip_address: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Record a security audit event

    Args:
        store: Audit log store
        employee_id: Crew member performing the action (None for anonymous)
        action: Action being performed (see AuditAction)
        status: 'success' or 'failed'
        ip_address: IP address of client (anonymized if privacy mode enabled)
        details: Additional context; sensitive keys are redacted

    Returns:
        True if logged, False if the status was invalid
    """
    if status not in VALID_STATUSES:
        logger.error(f"Invalid audit status: {status}")
        return False

    # Anonymize IP if needed (zero the last octet for IPv4)
    if ip_address and should_anonymize_ip():
        parts = ip_address.rsplit('.', 1)
        if len(parts) == 2:
            ip_address = f"{parts[0]}.0"

    store.append({
        'employee_id': employee_id,
        'action': action,
        'status': status,
        'ip_address': ip_address,
        'details': scrub_details(details),
    })

    log_message = f"Audit: {action} - Status: {status}"
    if employee_id:
        log_message += f" - Employee: {employee_id}"

    if status == 'success':
        logger.info(log_message)
    else:
        logger.warning(log_message)

    return True


def get_audit_logs(
    store: AuditLogStore,
    employee_id: Optional[str] = None,
    action: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
    offset: int = 0
) -> List[Dict[str, Any]]:
    """
    Retrieve audit logs with filters, newest first

    Args:
        store: Audit log store
        employee_id: Filter by crew member
        action: Filter by action type
        status: Filter by status
        limit: Maximum number of records to return
        offset: Number of records to skip

    Returns:
        List of audit log dictionaries
    """
    logs = [
        record for record in store.all()
        if (employee_id is None or record['employee_id'] == employee_id)
        and (action is None or record['action'] == action)
        and (status is None or record['status'] == status)
    ]
    logs.sort(key=lambda r: (r['created_at'], r['id']), reverse=True)
    return logs[offset:offset + limit]


def get_failed_login_attempts(store: AuditLogStore, employee_id: str, since: datetime) -> int:
    """
    Count failed logins for a crew member since a point in time

    Args:
        store: Audit log store
        employee_id: Crew member
        since: Lower bound (inclusive)

    Returns:
        Count of failed login attempts
    """
    return sum(
        1 for record in store.all()
        if record['employee_id'] == employee_id
        and record['action'] == AuditAction.LOGIN_FAILED
        and record['created_at'] >= since
    )


def get_recent_activity(store: AuditLogStore, employee_id: str, now: datetime, days: int = 30) -> Dict[str, Any]:
    """
    Summarize a crew member's audit trail over a period

    Returns:
        Dictionary with totals and last activity
    """
    cutoff = now - timedelta(days=days)
    records = [r for r in store.all() if r['employee_id'] == employee_id and r['created_at'] >= cutoff]

    return {
        'total_actions': len(records),
        'successful_actions': sum(1 for r in records if r['status'] == 'success'),
        'failed_actions': sum(1 for r in records if r['status'] == 'failed'),
        'last_activity': max((r['created_at'] for r in records), default=None),
        'period_days': days,
    }


# Action types constants for consistency
class AuditAction:
    """Audit action type constants"""
    # Authentication
    LOGIN_SUCCESS = 'login_success'
    LOGIN_FAILED = 'login_failed'
    LOGOUT = 'logout'
    TOKEN_REFRESHED = 'token_refreshed'

    # Account management
    USER_REGISTERED = 'user_registered'
    PASSWORD_CHANGED = 'password_changed'
    PASSWORD_RESET_REQUESTED = 'password_reset_requested'
    PROFILE_UPDATED = 'profile_updated'
    ACCOUNT_LOCKED = 'account_locked'
    ACCOUNT_DEACTIVATED = 'account_deactivated'
    ACCOUNT_REACTIVATED = 'account_reactivated'

    # Security events
    INVALID_TOKEN = 'invalid_token'
    REVOKED_TOKEN_USED = 'revoked_token_used'
    ACCESS_DENIED = 'access_denied'
    DECRYPTION_FAILED = 'decryption_failed'
    SUSPICIOUS_ACTIVITY = 'suspicious_activity'
    RATE_LIMIT_EXCEEDED = 'rate_limit_exceeded'

    # Messaging
    MESSAGE_SENT = 'message_sent'
    MESSAGE_READ = 'message_read'
    MESSAGE_DELETED = 'message_deleted'
    MESSAGES_EXPORTED = 'messages_exported'

    # Documents
    DOCUMENT_UPLOADED = 'document_uploaded'
    DOCUMENT_VIEWED = 'document_viewed'
    DOCUMENT_DOWNLOADED = 'document_downloaded'
    DOCUMENT_UPDATED = 'document_updated'
    DOCUMENT_DELETED = 'document_deleted'
