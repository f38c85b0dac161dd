"""
database/seed.py
Demo crew for local development

Enabled with SEED_DEMO_DATA=true; never in production. Every demo
account shares DEMO_CREW_PASSWORD (default "SecurePass123!").
"""

import os
import logging
from typing import Optional

from argon2 import PasswordHasher

from database.models import Identity
from database.repositories import IdentityRepository
from utils.rbac import CrewRole, Department
from utils.security import hash_password, password_policy_violation

logger = logging.getLogger(__name__)

DEFAULT_DEMO_PASSWORD = "SecurePass123!"

DEMO_CREW = [
    ("AA12345", "Captain Sarah Johnson", CrewRole.PILOT, Department.FLIGHT_OPERATIONS, 5, "American Airlines"),
    ("AA12346", "First Officer Mike Chen", CrewRole.CO_PILOT, Department.FLIGHT_OPERATIONS, 4, "American Airlines"),
    ("AA12347", "Lisa Martinez", CrewRole.FLIGHT_ATTENDANT, Department.CABIN_CREW, 2, "American Airlines"),
    ("AA12348", "Robert Davis", CrewRole.GATE_AGENT, Department.GROUND_OPERATIONS, 2, "American Airlines"),
    ("AA12349", "Jennifer Wilson", CrewRole.DISPATCHER, Department.DISPATCH, 4, "American Airlines"),
    ("DL54321", "Captain James Thompson", CrewRole.PILOT, Department.FLIGHT_OPERATIONS, 5, "Delta Air Lines"),
]


def seed_demo_crew(identities: IdentityRepository, hasher: Optional[PasswordHasher] = None) -> int:
    """
    Insert the demo crew, skipping ids that already exist

    Returns:
        Number of crew members created
    """
    password = os.getenv("DEMO_CREW_PASSWORD", DEFAULT_DEMO_PASSWORD)
    violation = password_policy_violation(password)
    if violation:
        raise ValueError(f"DEMO_CREW_PASSWORD rejected: {violation}")

    created = 0

    for employee_id, name, role, department, clearance, airline in DEMO_CREW:
        if identities.exists(employee_id):
            continue
        identities.add(Identity(
            employee_id=employee_id,
            name=name,
            role=role,
            department=department,
            clearance_level=clearance,
            airline=airline,
            credential_hash=hash_password(password, hasher),
        ))
        created += 1

    logger.info(f"Seeded {created} demo crew members")
    return created
