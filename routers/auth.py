"""
routers/auth.py
Crew authentication router: registration, login, token refresh and logout
"""

from fastapi import APIRouter, Depends, status, Request
from pydantic import BaseModel, Field, validator
from datetime import timedelta
from typing import Optional
import logging
from slowapi import Limiter

from utils.audit import get_failed_login_attempts, get_recent_activity
from utils.auth_dependencies import (
    get_client_ip, get_services, login_rate_limit_key, rate_limit_key, require_auth
)
from utils.authenticator import CrewRegistration
from utils.input_sanitizer import validate_airline, validate_employee_id, validate_person_name
from utils.rbac import CrewRole, Department
from utils.service_registry import CrewServices
from utils.tokens import CrewClaims

router = APIRouter()
limiter = Limiter(key_func=rate_limit_key)
logger = logging.getLogger(__name__)

# Pydantic Models with Input Validation

class RegisterRequest(BaseModel):
    """Crew registration; identity fields are validated by CrewRegistration"""
    employee_id: str = Field(..., max_length=10)
    name: str = Field(..., min_length=2, max_length=50)
    role: CrewRole
    department: Department
    clearance_level: int = Field(..., ge=1, le=5)
    airline: str = Field(..., min_length=2, max_length=50)
    password: str = Field(..., min_length=1, max_length=128)

    @validator('employee_id')
    def check_employee_id(cls, v):
        return validate_employee_id(v)

    @validator('name')
    def check_name(cls, v):
        return validate_person_name(v)

    @validator('airline')
    def check_airline(cls, v):
        return validate_airline(v)


class LoginRequest(BaseModel):
    employee_id: str = Field(..., min_length=1, max_length=10)
    password: str = Field(..., min_length=1, max_length=128)


async def login_body(request: Request, body: LoginRequest) -> LoginRequest:
    """Login body; records the submitted employee id for login_rate_limit_key"""
    request.state.login_employee_id = body.employee_id
    return body


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(None, max_length=4096)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=1, max_length=128)


class ForgotPasswordRequest(BaseModel):
    employee_id: str = Field(..., min_length=1, max_length=10)


# Endpoints

@router.post("/register", status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
async def register(
    request: Request,
    body: RegisterRequest,
    services: CrewServices = Depends(get_services)
):
    """Register a crew member and return their first token pair"""
    registration = CrewRegistration(**body.model_dump(exclude={"password"}))
    tokens = services.authenticator.register(registration, body.password, get_client_ip(request))
    identity = services.authenticator.get_identity(registration.employee_id)

    return {
        "message": "Crew member registered successfully",
        "user": identity.public_view(),
        "tokens": tokens.model_dump(),
    }


@router.post("/login")
@limiter.limit("10/minute")
@limiter.limit("5/minute", key_func=login_rate_limit_key)
async def login(
    request: Request,
    body: LoginRequest = Depends(login_body),
    services: CrewServices = Depends(get_services)
):
    """Authenticate with employee id and password"""
    tokens = services.authenticator.login(body.employee_id, body.password, get_client_ip(request))
    identity = services.authenticator.get_identity(body.employee_id)

    return {
        "message": "Login successful",
        "user": identity.public_view(),
        "tokens": tokens.model_dump(),
    }


@router.post("/refresh")
@limiter.limit("20/minute")
async def refresh(
    request: Request,
    body: RefreshRequest,
    services: CrewServices = Depends(get_services)
):
    """Exchange a refresh token for a new token pair"""
    tokens = services.authenticator.refresh(body.refresh_token, get_client_ip(request))
    return {"message": "Token refreshed successfully", "tokens": tokens.model_dump()}


@router.post("/logout")
@limiter.limit("20/minute")
async def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Revoke the current access token (and the caller's refresh token, if supplied)"""
    services.authenticator.logout(
        request.state.access_token,
        body.refresh_token if body else None,
        get_client_ip(request),
    )
    logger.info(f"Logout: {claims.employee_id}")
    return {"message": "Logout successful"}


@router.get("/profile")
@limiter.limit("60/minute")
async def profile(
    request: Request,
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Current crew member's profile with a summary of their own audit trail"""
    identity = services.authenticator.get_identity(claims.employee_id)
    now = services.clock()
    return {
        "user": identity.public_view(),
        "security": {
            "recent_activity": get_recent_activity(services.audit_store, claims.employee_id, now),
            "failed_logins_last_24h": get_failed_login_attempts(
                services.audit_store, claims.employee_id, now - timedelta(hours=24)
            ),
        },
    }


@router.put("/password")
@limiter.limit("5/minute")
async def change_password(
    request: Request,
    body: PasswordChangeRequest,
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Change the current crew member's password"""
    services.authenticator.change_password(
        claims.employee_id, body.current_password, body.new_password, get_client_ip(request)
    )
    return {"message": "Password changed successfully"}


@router.get("/verify")
@limiter.limit("60/minute")
async def verify(
    request: Request,
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Check that the presented access token is valid"""
    return {
        "valid": True,
        "user": claims.model_dump(mode="json", exclude={"issued_at", "expires_at"}),
        "expires_in": services.tokens.get_token_time_remaining(request.state.access_token),
    }


@router.post("/forgot-password")
@limiter.limit("3/minute")
async def forgot_password(
    request: Request,
    body: ForgotPasswordRequest,
    services: CrewServices = Depends(get_services)
):
    """
    Request a password reset

    The response is the same whether or not the employee id exists.
    """
    services.authenticator.request_password_reset(body.employee_id, get_client_ip(request))
    return {"message": "If the employee ID exists, a password reset link has been sent"}
