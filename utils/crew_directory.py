"""
utils/crew_directory.py
Crew member directory: listing, profiles, statistics and activation
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, Field, validator

from database.models import Identity, Page, paginate, utc_now
from database.repositories import IdentityRepository
from utils.audit import AuditAction, AuditLogStore, log_audit_event
from utils.errors import AuthzError, AuthzErrorKind, ResourceError, ResourceErrorKind
from utils.input_sanitizer import validate_person_name
from utils.rbac import AccessRequirement, CrewRole, Department, MAX_CLEARANCE, authorize
from utils.tokens import CrewClaims

logger = logging.getLogger(__name__)

# Clearance needed to see another crew member's full profile
FULL_PROFILE_CLEARANCE = 3
PROFILE_UPDATE_CLEARANCE = 4
STATS_CLEARANCE = 3

LIMITED_PROFILE_FIELDS = ('employee_id', 'name', 'role', 'department', 'airline')


class CrewFilters(BaseModel):
    role: Optional[CrewRole] = None
    department: Optional[Department] = None
    airline: Optional[str] = None
    clearance_level: Optional[int] = Field(None, ge=1, le=5)
    q: Optional[str] = Field(None, min_length=1, max_length=100)
    sort_by: str = Field('name', pattern=r'^(name|employee_id|role|department|clearance_level|airline|created_at)$')
    sort_order: str = Field('asc', pattern=r'^(asc|desc)$')
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    department: Optional[Department] = None

    @validator('name')
    def check_name(cls, v):
        if v is None:
            return v
        return validate_person_name(v)


class CrewDirectory:
    """Read and administer crew identities without touching credentials"""

    def __init__(
        self,
        identities: IdentityRepository,
        audit_store: AuditLogStore,
        clock: Callable[[], datetime] = utc_now
    ):
        self.identities = identities
        self.audit_store = audit_store
        self._clock = clock

    def _get_active(self, employee_id: str) -> Identity:
        identity = self.identities.get(employee_id)
        if identity is None:
            raise ResourceError(ResourceErrorKind.NOT_FOUND, "Crew member not found", code="CREW_MEMBER_NOT_FOUND")
        if not identity.is_active:
            raise ResourceError(
                ResourceErrorKind.NOT_FOUND, "Crew member account is inactive", code="CREW_MEMBER_INACTIVE"
            )
        return identity

    def list(self, requester: CrewClaims, filters: Optional[CrewFilters] = None) -> Page:
        """Active crew members matching the filters"""
        filters = filters or CrewFilters()
        query = filters.q.lower() if filters.q else None

        def matches(i: Identity) -> bool:
            if not i.is_active:
                return False
            if filters.role is not None and i.role is not filters.role:
                return False
            if filters.department is not None and i.department is not filters.department:
                return False
            if filters.airline and i.airline != filters.airline:
                return False
            if filters.clearance_level is not None and i.clearance_level < filters.clearance_level:
                return False
            if query and not (query in i.name.lower() or query in i.employee_id.lower()):
                return False
            return True

        found = self.identities.query(matches)

        def sort_key(i: Identity):
            value = getattr(i, filters.sort_by)
            if isinstance(value, (CrewRole, Department)):
                return value.value
            return value.lower() if isinstance(value, str) else value

        found.sort(key=sort_key, reverse=filters.sort_order == 'desc')

        page = paginate(found, filters.page, filters.limit)
        page.items = [i.public_view() for i in page.items]
        return page

    def get(self, requester: CrewClaims, employee_id: str) -> Dict[str, Any]:
        """
        Crew member profile

        Other crew members below clearance 3 see only the limited fields.

        Raises:
            ResourceError: NOT_FOUND (missing or inactive)
        """
        profile = self._get_active(employee_id).public_view()

        if requester.employee_id != employee_id and requester.clearance_level < FULL_PROFILE_CLEARANCE:
            return {field: profile[field] for field in LIMITED_PROFILE_FIELDS}
        return profile

    def stats(self, requester: CrewClaims) -> Dict[str, Any]:
        """
        Headcount of active crew by role, department, airline and clearance

        Raises:
            AuthzError: INSUFFICIENT_CLEARANCE below clearance 3
        """
        authorize(requester, AccessRequirement(min_clearance=STATS_CLEARANCE))

        active = self.identities.query(lambda i: i.is_active)
        return {
            "total": len(active),
            "by_role": dict(Counter(i.role.value for i in active)),
            "by_department": dict(Counter(i.department.value for i in active)),
            "by_airline": dict(Counter(i.airline for i in active)),
            "by_clearance_level": dict(Counter(str(i.clearance_level) for i in active)),
            "generated_at": self._clock().isoformat(),
        }

    def update_profile(self, requester: CrewClaims, employee_id: str, changes: ProfileUpdate,
                       ip_address: Optional[str] = None) -> Dict[str, Any]:
        """
        Update name and department (own profile, or clearance >= 4)

        Raises:
            AuthzError: caller may not edit this profile
            ResourceError: NOT_FOUND, or INVALID_STATE for inactive crew
        """
        if requester.employee_id != employee_id and requester.clearance_level < PROFILE_UPDATE_CLEARANCE:
            raise AuthzError(
                AuthzErrorKind.INSUFFICIENT_CLEARANCE,
                "Insufficient permissions to update this profile",
                code="UPDATE_PERMISSION_DENIED",
            )

        identity = self.identities.get(employee_id)
        if identity is None:
            raise ResourceError(ResourceErrorKind.NOT_FOUND, "Crew member not found", code="CREW_MEMBER_NOT_FOUND")
        if not identity.is_active:
            raise ResourceError(
                ResourceErrorKind.INVALID_STATE, "Cannot update inactive crew member", code="CREW_MEMBER_INACTIVE"
            )

        updates = {k: v for k, v in changes.model_dump(exclude_unset=True).items() if v is not None}
        now = self._clock()

        def apply(record: Identity):
            for field, value in updates.items():
                setattr(record, field, value)
            record.updated_at = now

        identity = self.identities.update(employee_id, apply)

        log_audit_event(
            self.audit_store, requester.employee_id, AuditAction.PROFILE_UPDATED, 'success', ip_address,
            {"target": employee_id, "fields": sorted(updates)}
        )
        logger.info(f"Profile updated for {employee_id} by {requester.employee_id}")
        return identity.public_view()

    def set_active(self, requester: CrewClaims, employee_id: str, active: bool,
                   ip_address: Optional[str] = None) -> Dict[str, Any]:
        """
        Deactivate or reactivate a crew account (clearance 5)

        Deactivated crew cannot log in, and their outstanding tokens stop
        authenticating on the next request.

        Raises:
            AuthzError: INSUFFICIENT_CLEARANCE
            ResourceError: NOT_FOUND, or INVALID_STATE when deactivating oneself
        """
        authorize(requester, AccessRequirement(min_clearance=MAX_CLEARANCE))

        if not active and requester.employee_id == employee_id:
            raise ResourceError(
                ResourceErrorKind.INVALID_STATE, "Cannot deactivate your own account", code="CANNOT_DEACTIVATE_SELF"
            )
        if not self.identities.exists(employee_id):
            raise ResourceError(ResourceErrorKind.NOT_FOUND, "Crew member not found", code="CREW_MEMBER_NOT_FOUND")

        now = self._clock()

        def toggle(record: Identity):
            record.is_active = active
            if active:
                record.failed_attempts = 0
                record.locked_until = None
            record.updated_at = now

        identity = self.identities.update(employee_id, toggle)

        action = AuditAction.ACCOUNT_REACTIVATED if active else AuditAction.ACCOUNT_DEACTIVATED
        log_audit_event(
            self.audit_store, requester.employee_id, action, 'success', ip_address, {"target": employee_id}
        )
        logger.info(f"Account {'reactivated' if active else 'deactivated'}: {employee_id} by {requester.employee_id}")
        return identity.public_view()
