"""
utils/auth_dependencies.py
Authentication dependencies for route protection

Bearer tokens are verified by the Authenticator on every request; the
resulting CrewClaims are rebuilt from the stored identity, so role,
clearance and deactivation changes take effect immediately.
"""

from fastapi import Request, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi.util import get_remote_address
from typing import Optional, Iterable, Union
import logging

from utils.errors import AuthzError, TokenError, TokenErrorKind
from utils.rbac import AccessRequirement, CrewRole, authorize
from utils.service_registry import CrewServices
from utils.tokens import CrewClaims

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def get_services(request: Request) -> CrewServices:
    """The CrewServices registry of the running app"""
    return request.app.state.services


def get_client_ip(request: Request) -> Optional[str]:
    """Client IP as seen by the server (proxy headers are not trusted)"""
    return request.client.host if request.client else None


def rate_limit_key(request: Request) -> str:
    """
    slowapi key function

    Authenticated requests are limited per employee id; anonymous ones
    per remote address.
    """
    crew = getattr(request.state, "crew", None)
    if crew is not None:
        return f"crew:{crew.employee_id}"
    return get_remote_address(request)


def login_rate_limit_key(request: Request) -> str:
    """
    slowapi key function for login attempts

    Keyed by the submitted employee id, the same attribute account lockout
    counts against, so attempts on one account are limited whichever
    address they come from. The id is placed on request.state by the
    login body dependency, which FastAPI resolves before the limit check.
    """
    employee_id = getattr(request.state, "login_employee_id", None)
    if employee_id:
        return f"login:{employee_id}"
    return get_remote_address(request)


async def require_auth(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: CrewServices = Depends(get_services)
) -> CrewClaims:
    """
    Dependency that requires a valid access token
    Raises TokenError (401) if not authenticated

    The verified claims and raw token are kept on request.state for the
    rate limiter and for logout.
    """
    if credentials is None:
        raise TokenError(TokenErrorKind.INVALID, "Access token required", code="TOKEN_REQUIRED")

    claims = services.authenticator.authenticate_token(credentials.credentials, get_client_ip(request))

    request.state.crew = claims
    request.state.access_token = credentials.credentials
    return claims


def _enforce(request: Request, services: CrewServices, claims: CrewClaims, requirement: AccessRequirement):
    try:
        authorize(claims, requirement)
    except AuthzError as e:
        services.monitor.track_access_denied(
            claims.employee_id, "endpoint", request.url.path, get_client_ip(request), e.kind.value
        )
        raise


def require_clearance(level: int):
    """
    Dependency factory: authenticated and clearance >= level

    Usage:
        @router.get("/meta/stats")
        async def stats(claims: CrewClaims = Depends(require_clearance(3))): ...
    """
    async def dependency(
        request: Request,
        claims: CrewClaims = Depends(require_auth),
        services: CrewServices = Depends(get_services)
    ) -> CrewClaims:
        _enforce(request, services, claims, AccessRequirement(min_clearance=level))
        return claims

    return dependency


def require_roles(*roles: Union[str, CrewRole]):
    """Dependency factory: authenticated and role in roles"""
    allowed: Iterable[Union[str, CrewRole]] = roles

    async def dependency(
        request: Request,
        claims: CrewClaims = Depends(require_auth),
        services: CrewServices = Depends(get_services)
    ) -> CrewClaims:
        _enforce(request, services, claims, AccessRequirement(roles=allowed))
        return claims

    return dependency
