"""
routers/crew.py
Crew directory router
"""

from fastapi import APIRouter, Depends, Request, Query
from typing import Optional
import logging
from slowapi import Limiter

from utils.auth_dependencies import (
    get_client_ip, get_services, rate_limit_key, require_auth, require_clearance
)
from utils.crew_directory import CrewFilters, ProfileUpdate, STATS_CLEARANCE
from utils.rbac import CrewRole, Department, get_department_catalog, get_role_catalog
from utils.security_monitor import ALERT_VIEW_CLEARANCE
from utils.service_registry import CrewServices
from utils.tokens import CrewClaims

router = APIRouter()
limiter = Limiter(key_func=rate_limit_key)
logger = logging.getLogger(__name__)


@router.get("/")
@limiter.limit("60/minute")
async def list_crew(
    request: Request,
    role: Optional[CrewRole] = None,
    department: Optional[Department] = None,
    airline: Optional[str] = Query(None, max_length=50),
    clearance_level: Optional[int] = Query(None, ge=1, le=5),
    q: Optional[str] = Query(None, min_length=1, max_length=100),
    sort_by: str = Query('name', pattern=r'^(name|employee_id|role|department|clearance_level|airline|created_at)$'),
    sort_order: str = Query('asc', pattern=r'^(asc|desc)$'),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Active crew members, filtered and sorted"""
    filters = CrewFilters(
        role=role, department=department, airline=airline, clearance_level=clearance_level, q=q,
        sort_by=sort_by, sort_order=sort_order, page=page, limit=limit,
    )
    result = services.crew.list(claims, filters)
    return {"crew": result.items, "pagination": result.pagination()}


@router.get("/meta/roles")
@limiter.limit("60/minute")
async def available_roles(
    request: Request,
    claims: CrewClaims = Depends(require_auth)
):
    """Roles, departments and their clearance bands"""
    return {"roles": get_role_catalog(), "departments": get_department_catalog()}


@router.get("/meta/stats")
@limiter.limit("30/minute")
async def crew_stats(
    request: Request,
    claims: CrewClaims = Depends(require_clearance(STATS_CLEARANCE)),
    services: CrewServices = Depends(get_services)
):
    """Crew headcount statistics (clearance 3+)"""
    return {"statistics": services.crew.stats(claims)}


@router.get("/meta/security-alerts")
@limiter.limit("30/minute")
async def security_alerts(
    request: Request,
    claims: CrewClaims = Depends(require_clearance(ALERT_VIEW_CLEARANCE)),
    services: CrewServices = Depends(get_services)
):
    """Raised security alerts and the event counters behind them (clearance 5)"""
    return {
        "alerts": [alert.to_dict() for alert in services.monitor.get_alerts()],
        "active_trackers": services.monitor.get_active_alerts(),
    }


@router.get("/{employee_id}")
@limiter.limit("60/minute")
async def get_crew_member(
    request: Request,
    employee_id: str,
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Crew member profile (limited for other crew below clearance 3)"""
    return {"crew_member": services.crew.get(claims, employee_id)}


@router.put("/{employee_id}")
@limiter.limit("20/minute")
async def update_crew_member(
    request: Request,
    employee_id: str,
    body: ProfileUpdate,
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Update a profile (own profile or clearance 4+)"""
    profile = services.crew.update_profile(claims, employee_id, body, get_client_ip(request))
    return {"message": "Profile updated successfully", "crew_member": profile}


@router.post("/{employee_id}/deactivate")
@limiter.limit("10/minute")
async def deactivate_crew_member(
    request: Request,
    employee_id: str,
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Deactivate a crew account (clearance 5)"""
    profile = services.crew.set_active(claims, employee_id, False, get_client_ip(request))
    return {"message": "Crew member deactivated", "crew_member": profile}


@router.post("/{employee_id}/reactivate")
@limiter.limit("10/minute")
async def reactivate_crew_member(
    request: Request,
    employee_id: str,
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Reactivate a crew account (clearance 5)"""
    profile = services.crew.set_active(claims, employee_id, True, get_client_ip(request))
    return {"message": "Crew member reactivated", "crew_member": profile}
