"""
utils/security_monitor.py
Security Monitoring and Alerting

Tracks and alerts on:
- Account lockouts
- Access denials on messages and documents (IDOR probing)
- Decryption failures (tampered or corrupted payloads)
- Use of revoked tokens

Every tracked event is also written to the audit log. Records carry the
identity, action and resource, never key or ciphertext material.
"""

import logging
from typing import Optional, Dict, List, Callable, Any
from datetime import datetime, timedelta
from collections import defaultdict, deque
import threading

from database.models import utc_now
from utils.audit import AuditLogStore, AuditAction, log_audit_event

logger = logging.getLogger(__name__)

# Alert thresholds
ACCESS_DENIED_THRESHOLD = 5      # denied resource accesses in window
DECRYPTION_FAILURE_THRESHOLD = 3  # failed decryptions in window
LOCKOUT_THRESHOLD = 1            # every lockout is alert-worthy
REVOKED_TOKEN_THRESHOLD = 3      # revoked token presentations in window
ALERT_WINDOW_MINUTES = 15        # Time window for counting events
ALERT_COOLDOWN_MINUTES = 60      # Don't re-alert for same identity for 60 mins
MAX_STORED_ALERTS = 500          # oldest alerts are dropped past this
ALERT_VIEW_CLEARANCE = 5         # clearance needed to read alerts


class SecurityAlert:
    """Security alert data model"""

    def __init__(
        self,
        alert_type: str,
        severity: str,
        employee_id: Optional[str],
        ip_address: Optional[str],
        description: str,
        event_count: int,
        timestamp: datetime,
        metadata: Optional[Dict] = None
    ):
        self.alert_type = alert_type
        self.severity = severity
        self.employee_id = employee_id
        self.ip_address = ip_address
        self.description = description
        self.event_count = event_count
        self.metadata = metadata or {}
        self.timestamp = timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_type": self.alert_type,
            "severity": self.severity,
            "employee_id": self.employee_id,
            "ip_address": self.ip_address,
            "description": self.description,
            "event_count": self.event_count,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }


class SecurityMonitor:
    """
    Windowed counters of security events per identity

    Counters reset once ALERT_WINDOW_MINUTES pass without a new event.
    Alerts for the same identity and type are suppressed for
    ALERT_COOLDOWN_MINUTES.
    """

    def __init__(self, audit_store: AuditLogStore, clock: Callable[[], datetime] = utc_now):
        self.audit_store = audit_store
        self._clock = clock
        self._event_tracker = defaultdict(lambda: defaultdict(int))
        self._event_tracker_lock = threading.Lock()
        self._alert_cooldown: Dict[str, datetime] = {}
        self._alerts = deque(maxlen=MAX_STORED_ALERTS)

    def _track(self, key: str, resource: Optional[str] = None) -> int:
        now = self._clock()
        window = timedelta(minutes=ALERT_WINDOW_MINUTES)

        with self._event_tracker_lock:
            entry = self._event_tracker[key]
            last_seen = entry.get('last_seen')
            if last_seen and now - last_seen > window:
                entry.clear()

            entry['count'] += 1
            entry['last_seen'] = now
            if resource:
                entry['resources'] = entry.get('resources', set())
                entry['resources'].add(resource)

            return entry['count']

    def _should_alert(self, key: str, alert_type: str) -> bool:
        cooldown_key = f"{key}:{alert_type}"
        last_alert = self._alert_cooldown.get(cooldown_key)
        if last_alert and self._clock() - last_alert < timedelta(minutes=ALERT_COOLDOWN_MINUTES):
            return False
        return True

    def _raise_alert(self, key: str, alert: SecurityAlert) -> Optional[SecurityAlert]:
        with self._event_tracker_lock:
            if not self._should_alert(key, alert.alert_type):
                return None
            self._alert_cooldown[f"{key}:{alert.alert_type}"] = self._clock()
            self._alerts.append(alert)

        log_audit_event(
            self.audit_store, alert.employee_id, AuditAction.SUSPICIOUS_ACTIVITY, 'failed',
            alert.ip_address,
            {"alert_type": alert.alert_type, "severity": alert.severity, "event_count": alert.event_count}
        )
        logger.warning(
            f"SECURITY ALERT {alert.alert_type}: employee={alert.employee_id}, "
            f"count={alert.event_count}, severity={alert.severity}"
        )
        return alert

    def track_access_denied(
        self,
        employee_id: Optional[str],
        resource_type: str,
        resource_id: str,
        ip_address: Optional[str] = None,
        reason: Optional[str] = None
    ) -> Optional[SecurityAlert]:
        """
        Track a denied resource access

        Args:
            employee_id: Crew member attempting access
            resource_type: "message" or "document"
            resource_id: Id of the resource attempted
            ip_address: Client IP address
            reason: Short machine-readable reason

        Returns:
            SecurityAlert if threshold exceeded, None otherwise
        """
        key = f"access_denied:{employee_id or 'anon'}"
        count = self._track(key, f"{resource_type}:{resource_id}")

        log_audit_event(
            self.audit_store, employee_id, AuditAction.ACCESS_DENIED, 'failed', ip_address,
            {"resource_type": resource_type, "resource_id": resource_id, "reason": reason}
        )

        if count >= ACCESS_DENIED_THRESHOLD:
            with self._event_tracker_lock:
                unique = len(self._event_tracker[key].get('resources', ()))
            return self._raise_alert(key, SecurityAlert(
                alert_type="idor_probing",
                severity="high",
                employee_id=employee_id,
                ip_address=ip_address,
                description=f"Potential IDOR probing: {count} denied resource accesses",
                event_count=count,
                timestamp=self._clock(),
                metadata={"resource_type": resource_type, "unique_resources": unique}
            ))
        return None

    def track_decryption_failure(
        self,
        employee_id: Optional[str],
        resource_type: str,
        resource_id: str,
        ip_address: Optional[str] = None
    ) -> Optional[SecurityAlert]:
        """
        Track a payload that failed authentication on decrypt

        Returns:
            SecurityAlert if threshold exceeded, None otherwise
        """
        key = f"decryption_failure:{employee_id or 'anon'}"
        count = self._track(key, f"{resource_type}:{resource_id}")

        log_audit_event(
            self.audit_store, employee_id, AuditAction.DECRYPTION_FAILED, 'failed', ip_address,
            {"resource_type": resource_type, "resource_id": resource_id}
        )

        if count >= DECRYPTION_FAILURE_THRESHOLD:
            return self._raise_alert(key, SecurityAlert(
                alert_type="repeated_decryption_failure",
                severity="critical",
                employee_id=employee_id,
                ip_address=ip_address,
                description=f"{count} payloads failed authentication; possible tampering",
                event_count=count,
                timestamp=self._clock(),
                metadata={"resource_type": resource_type}
            ))
        return None

    def track_account_lockout(
        self,
        employee_id: str,
        locked_until: datetime,
        ip_address: Optional[str] = None
    ) -> Optional[SecurityAlert]:
        """
        Track an account lockout

        Returns:
            SecurityAlert (subject to cooldown)
        """
        key = f"lockout:{employee_id}"
        count = self._track(key)

        log_audit_event(
            self.audit_store, employee_id, AuditAction.ACCOUNT_LOCKED, 'failed', ip_address,
            {"locked_until": locked_until.isoformat()}
        )

        if count >= LOCKOUT_THRESHOLD:
            return self._raise_alert(key, SecurityAlert(
                alert_type="account_lockout",
                severity="medium",
                employee_id=employee_id,
                ip_address=ip_address,
                description="Account locked after repeated failed logins",
                event_count=count,
                timestamp=self._clock(),
                metadata={"locked_until": locked_until.isoformat()}
            ))
        return None

    def track_revoked_token(
        self,
        employee_id: Optional[str],
        ip_address: Optional[str] = None
    ) -> Optional[SecurityAlert]:
        """
        Track presentation of a blacklisted token

        Returns:
            SecurityAlert if threshold exceeded, None otherwise
        """
        key = f"revoked_token:{employee_id or 'anon'}"
        count = self._track(key)

        log_audit_event(self.audit_store, employee_id, AuditAction.REVOKED_TOKEN_USED, 'failed', ip_address)

        if count >= REVOKED_TOKEN_THRESHOLD:
            return self._raise_alert(key, SecurityAlert(
                alert_type="revoked_token_reuse",
                severity="high",
                employee_id=employee_id,
                ip_address=ip_address,
                description=f"Revoked token presented {count} times",
                event_count=count,
                timestamp=self._clock(),
            ))
        return None

    def cleanup_old_trackers(self) -> int:
        """
        Remove trackers that haven't been updated in ALERT_WINDOW_MINUTES
        and alert cooldowns older than ALERT_COOLDOWN_MINUTES

        Returns:
            Number of trackers removed
        """
        now = self._clock()
        cutoff = now - timedelta(minutes=ALERT_WINDOW_MINUTES)
        cooldown_cutoff = now - timedelta(minutes=ALERT_COOLDOWN_MINUTES)

        with self._event_tracker_lock:
            keys_to_delete = [
                key for key, data in self._event_tracker.items()
                if data.get('last_seen') and data['last_seen'] < cutoff
            ]
            for key in keys_to_delete:
                del self._event_tracker[key]

            expired_cooldowns = [
                key for key, raised_at in self._alert_cooldown.items()
                if raised_at <= cooldown_cutoff
            ]
            for key in expired_cooldowns:
                del self._alert_cooldown[key]

        if keys_to_delete:
            logger.info(f"Cleaned up {len(keys_to_delete)} old security trackers")
        return len(keys_to_delete)

    def get_active_alerts(self) -> List[Dict]:
        """
        Get currently tracked security events (for monitoring)

        Returns:
            List of active security events being tracked
        """
        with self._event_tracker_lock:
            active = []
            for key, data in self._event_tracker.items():
                event_type, _, employee_id = key.partition(':')
                active.append({
                    "event_type": event_type,
                    "employee_id": None if employee_id == 'anon' else employee_id,
                    "count": data['count'],
                    "last_seen": data['last_seen'],
                    "unique_resources": len(data.get('resources', ())),
                })
            return active

    def get_alerts(self) -> List[SecurityAlert]:
        """Alerts raised so far, oldest first"""
        with self._event_tracker_lock:
            return list(self._alerts)
