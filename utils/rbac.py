"""
utils/rbac.py
Role, clearance and department access control for crew members

The role and department enums below are the single source of truth:
request validation, token claims and authorization checks all go
through them. The has_* predicates are pure; authorize() turns a failed
predicate into an AuthzError carrying the required and actual values.
"""

import logging
from enum import Enum
from typing import Iterable, Optional, Set, Union, Any

from utils.errors import AuthzError, AuthzErrorKind

logger = logging.getLogger(__name__)

MIN_CLEARANCE = 1
MAX_CLEARANCE = 5

# ============================================================================
# ROLE AND DEPARTMENT ENUMS
# ============================================================================

class CrewRole(str, Enum):
    """Crew roles"""
    PILOT = "pilot"
    CO_PILOT = "co-pilot"
    FLIGHT_ATTENDANT = "flight-attendant"
    GATE_AGENT = "gate-agent"
    GROUND_CREW = "ground-crew"
    DISPATCHER = "dispatcher"


class Department(str, Enum):
    """Operational departments"""
    FLIGHT_OPERATIONS = "flight-operations"
    CABIN_CREW = "cabin-crew"
    GROUND_OPERATIONS = "ground-operations"
    DISPATCH = "dispatch"
    MAINTENANCE = "maintenance"


ROLE_CATALOG = {
    CrewRole.PILOT: {
        "label": "Pilot",
        "department": Department.FLIGHT_OPERATIONS,
        "description": "Aircraft captain responsible for flight operations",
        "min_clearance": 4,
        "max_clearance": 5,
    },
    CrewRole.CO_PILOT: {
        "label": "Co-Pilot / First Officer",
        "department": Department.FLIGHT_OPERATIONS,
        "description": "First officer assisting the captain",
        "min_clearance": 3,
        "max_clearance": 4,
    },
    CrewRole.FLIGHT_ATTENDANT: {
        "label": "Flight Attendant",
        "department": Department.CABIN_CREW,
        "description": "Cabin crew responsible for passenger safety and service",
        "min_clearance": 1,
        "max_clearance": 3,
    },
    CrewRole.GATE_AGENT: {
        "label": "Gate Agent",
        "department": Department.GROUND_OPERATIONS,
        "description": "Ground staff handling passenger check-in and boarding",
        "min_clearance": 1,
        "max_clearance": 3,
    },
    CrewRole.GROUND_CREW: {
        "label": "Ground Crew",
        "department": Department.GROUND_OPERATIONS,
        "description": "Ground support and baggage handling staff",
        "min_clearance": 1,
        "max_clearance": 3,
    },
    CrewRole.DISPATCHER: {
        "label": "Flight Dispatcher",
        "department": Department.DISPATCH,
        "description": "Flight planning and coordination specialist",
        "min_clearance": 3,
        "max_clearance": 5,
    },
}

DEPARTMENT_CATALOG = {
    Department.FLIGHT_OPERATIONS: {"label": "Flight Operations", "description": "Pilots and flight crew operations"},
    Department.CABIN_CREW: {"label": "Cabin Crew", "description": "Flight attendants and cabin service"},
    Department.GROUND_OPERATIONS: {"label": "Ground Operations", "description": "Ground support and passenger services"},
    Department.DISPATCH: {"label": "Flight Dispatch", "description": "Flight planning and coordination"},
    Department.MAINTENANCE: {"label": "Maintenance", "description": "Aircraft maintenance and technical support"},
}

# Roles that may pull flight documents by flight number
FLIGHT_DOCUMENT_ROLES = frozenset({
    CrewRole.PILOT, CrewRole.CO_PILOT, CrewRole.FLIGHT_ATTENDANT, CrewRole.DISPATCHER
})


# ============================================================================
# VALIDATION
# ============================================================================

def parse_role(value: Union[str, CrewRole]) -> CrewRole:
    """
    Validate and convert a role string

    Raises:
        ValueError: If the role is unknown
    """
    try:
        return CrewRole(value)
    except ValueError:
        allowed = ", ".join(r.value for r in CrewRole)
        raise ValueError(f"Role must be one of: {allowed}")


def parse_department(value: Union[str, Department]) -> Department:
    """
    Validate and convert a department string

    Raises:
        ValueError: If the department is unknown
    """
    try:
        return Department(value)
    except ValueError:
        allowed = ", ".join(d.value for d in Department)
        raise ValueError(f"Department must be one of: {allowed}")


def validate_clearance_level(level: int) -> int:
    """
    Validate a clearance level

    Raises:
        ValueError: If the level is outside 1-5
    """
    if isinstance(level, bool) or not isinstance(level, int) or not MIN_CLEARANCE <= level <= MAX_CLEARANCE:
        raise ValueError(f"Clearance level must be an integer between {MIN_CLEARANCE} and {MAX_CLEARANCE}")
    return level


# ============================================================================
# ACCESS PREDICATES
# ============================================================================

def has_role(claims: Any, allowed_roles: Iterable[Union[str, CrewRole]]) -> bool:
    """True if the claims' role is in allowed_roles"""
    allowed = {CrewRole(r) for r in allowed_roles}
    return CrewRole(claims.role) in allowed


def has_clearance(claims: Any, minimum_level: int) -> bool:
    """True iff the claims' clearance level is at least minimum_level"""
    return claims.clearance_level >= minimum_level


def has_department(claims: Any, allowed_departments: Iterable[Union[str, Department]]) -> bool:
    """True if the claims' department is in allowed_departments"""
    allowed = {Department(d) for d in allowed_departments}
    return Department(claims.department) in allowed


class AccessRequirement:
    """Requirement for a protected operation; unset parts are not checked"""

    def __init__(
        self,
        roles: Optional[Iterable[Union[str, CrewRole]]] = None,
        min_clearance: Optional[int] = None,
        departments: Optional[Iterable[Union[str, Department]]] = None
    ):
        self.roles: Optional[Set[CrewRole]] = {CrewRole(r) for r in roles} if roles else None
        self.min_clearance = min_clearance
        self.departments: Optional[Set[Department]] = {Department(d) for d in departments} if departments else None


def authorize(claims: Any, requirement: AccessRequirement) -> None:
    """
    Check claims against a requirement

    Checks run in order: role, clearance, department. The first failing
    check decides the error.

    Args:
        claims: Verified identity claims
        requirement: What the operation needs

    Raises:
        AuthzError: INSUFFICIENT_ROLE, INSUFFICIENT_CLEARANCE or DEPARTMENT_RESTRICTED
    """
    if requirement.roles is not None and not has_role(claims, requirement.roles):
        raise AuthzError(
            AuthzErrorKind.INSUFFICIENT_ROLE,
            "Access denied. Insufficient role permissions",
            details={
                "required_roles": sorted(r.value for r in requirement.roles),
                "user_role": CrewRole(claims.role).value,
            },
        )

    if requirement.min_clearance is not None and not has_clearance(claims, requirement.min_clearance):
        raise AuthzError(
            AuthzErrorKind.INSUFFICIENT_CLEARANCE,
            f"Insufficient security clearance. Required level: {requirement.min_clearance}",
            details={
                "required_clearance": requirement.min_clearance,
                "user_clearance": claims.clearance_level,
            },
        )

    if requirement.departments is not None and not has_department(claims, requirement.departments):
        raise AuthzError(
            AuthzErrorKind.DEPARTMENT_RESTRICTED,
            "Access denied. Department restriction",
            details={
                "allowed_departments": sorted(d.value for d in requirement.departments),
                "user_department": Department(claims.department).value,
            },
        )


def get_role_catalog() -> list:
    """Roles with their departments and clearance bands, for display"""
    return [
        {
            "value": role.value,
            "label": info["label"],
            "department": info["department"].value,
            "description": info["description"],
            "min_clearance": info["min_clearance"],
            "max_clearance": info["max_clearance"],
        }
        for role, info in ROLE_CATALOG.items()
    ]


def get_department_catalog() -> list:
    """Departments with labels, for display"""
    return [
        {"value": dept.value, "label": info["label"], "description": info["description"]}
        for dept, info in DEPARTMENT_CATALOG.items()
    ]
