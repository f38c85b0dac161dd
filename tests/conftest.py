"""
Shared fixtures: fake clock, cheap hasher, settings, services and an API client
"""
import os

# Must be set before main is imported anywhere
os.environ.setdefault("ENV", "development")
os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from datetime import datetime, timedelta, timezone
from argon2 import PasswordHasher
from fastapi.testclient import TestClient

from utils.authenticator import CrewRegistration
from utils.encryption import generate_master_key
from utils.env_init import Settings
from utils.rbac import CrewRole, Department
from utils.service_registry import build_services
from utils.tokens import CrewClaims

PASSWORD = "Secure1!"


class FakeClock:
    """Manually advanced UTC clock"""

    def __init__(self, start=None):
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hasher():
    """Argon2 with minimal cost so tests stay fast"""
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, hash_len=32, salt_len=16)


@pytest.fixture
def settings():
    return Settings(
        env="testing",
        log_file=None,
        jwt_secret_key="test-access-secret-0123456789abcdef0123456789",
        jwt_refresh_secret_key="test-refresh-secret-fedcba9876543210fedcba98",
        master_encryption_key=generate_master_key(),
        kdf_iterations=1000,
        rate_limit_enabled=False,
        cors_origins=["http://testserver"],
    )


@pytest.fixture
def services(settings, clock, hasher):
    return build_services(settings, clock=clock, hasher=hasher)


@pytest.fixture
def make_crew(services):
    """Register a crew member and return their claims"""

    def _make(employee_id, role=CrewRole.PILOT, department=Department.FLIGHT_OPERATIONS,
              clearance_level=3, name="Test Crew", airline="American Airlines", password=PASSWORD):
        registration = CrewRegistration(
            employee_id=employee_id,
            name=name,
            role=role,
            department=department,
            clearance_level=clearance_level,
            airline=airline,
        )
        services.authenticator.register(registration, password)
        return CrewClaims.from_identity(services.identities.get(employee_id))

    return _make


@pytest.fixture
def client(settings, services):
    from main import create_app

    app = create_app(settings, services)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(client):
    """Register through the API and return bearer headers"""

    def _headers(employee_id, clearance_level=3, role="pilot", department="flight-operations",
                 name="Test Crew", password=PASSWORD):
        response = client.post("/api/v1/auth/register", json={
            "employee_id": employee_id,
            "name": name,
            "role": role,
            "department": department,
            "clearance_level": clearance_level,
            "airline": "American Airlines",
            "password": password,
        })
        assert response.status_code == 201, response.text
        token = response.json()["tokens"]["access_token"]
        return {"Authorization": f"Bearer {token}"}

    return _headers
