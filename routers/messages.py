"""
routers/messages.py
Encrypted crew messaging router
"""

from fastapi import APIRouter, Depends, status, Request, Query
from pydantic import BaseModel, Field, validator
from typing import Optional
from datetime import datetime
import json
import logging
from slowapi import Limiter

from database.models import MessagePriority
from utils.auth_dependencies import get_client_ip, get_services, rate_limit_key, require_auth, require_roles
from utils.backup import encrypt_backup
from utils.errors import AuthError, AuthErrorKind
from utils.input_sanitizer import validate_employee_id, validate_flight_number
from utils.rbac import CrewRole
from utils.resource_gateway import MESSAGE_MAX_LENGTH, MessageFilters
from utils.security import password_policy_violation
from utils.service_registry import CrewServices
from utils.tokens import CrewClaims

router = APIRouter()
limiter = Limiter(key_func=rate_limit_key)
logger = logging.getLogger(__name__)


class SendMessageRequest(BaseModel):
    """Message send model with validation"""
    recipient_id: str = Field(..., max_length=10)
    content: str = Field(..., min_length=1, max_length=MESSAGE_MAX_LENGTH)
    is_encrypted: bool = True
    priority: MessagePriority = MessagePriority.NORMAL
    category: str = Field('general', min_length=1, max_length=50, pattern=r'^[a-z][a-z0-9_-]*$')
    flight_number: Optional[str] = Field(None, max_length=8)

    @validator('recipient_id')
    def check_recipient_id(cls, v):
        return validate_employee_id(v)

    @validator('flight_number')
    def check_flight_number(cls, v):
        return validate_flight_number(v)

    @validator('content')
    def check_content(cls, v):
        if not v.strip():
            raise ValueError('Message content cannot be empty')
        return v


class ExportRequest(BaseModel):
    """Password protecting a personal message backup"""
    password: str = Field(..., min_length=1, max_length=128)


@router.post("/", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def send_message(
    request: Request,
    body: SendMessageRequest,
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Send a message to another crew member"""
    sent = services.message_gateway.send(
        claims,
        body.recipient_id,
        body.content,
        is_encrypted=body.is_encrypted,
        priority=body.priority,
        category=body.category,
        flight_number=body.flight_number,
        ip_address=get_client_ip(request),
    )

    response = {"message": "Message sent successfully", "data": sent.message}
    if sent.encryption_key is not None:
        response["encryption_key"] = sent.encryption_key
    return response


@router.get("/")
@limiter.limit("120/minute")
async def list_messages(
    request: Request,
    type: str = Query('all', pattern=r'^(sent|received|all)$'),
    priority: Optional[MessagePriority] = None,
    flight_number: Optional[str] = Query(None, max_length=8),
    category: Optional[str] = Query(None, max_length=50),
    unread_only: bool = False,
    q: Optional[str] = Query(None, min_length=1, max_length=100),
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """List the caller's sent and/or received messages, newest first"""
    filters = MessageFilters(
        type=type, priority=priority, flight_number=flight_number, category=category,
        unread_only=unread_only, q=q, since=since, until=until, page=page, limit=limit,
    )
    result = services.message_gateway.list(claims, filters)
    return {"messages": result.items, "pagination": result.pagination()}


@router.get("/unread/count")
@limiter.limit("300/minute")
async def unread_count(
    request: Request,
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Unread message count for notifications"""
    return services.message_gateway.unread_count(claims)


@router.post("/export")
@limiter.limit("5/hour")
async def export_messages(
    request: Request,
    body: ExportRequest,
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """
    Password-protected backup of the caller's messages

    The bundle is decrypted client-side or with utils.backup.restore_backup;
    the server keeps no copy.
    """
    violation = password_policy_violation(body.password)
    if violation:
        raise AuthError(AuthErrorKind.WEAK_PASSWORD, violation)

    messages = services.message_gateway.export(claims, get_client_ip(request))
    bundle = encrypt_backup(
        {"employee_id": claims.employee_id, "messages": messages},
        body.password,
        iterations=services.settings.kdf_iterations,
    )

    return {"message": f"{len(messages)} message(s) exported", "backup": json.loads(bundle)}


@router.get("/flight/{flight_number}")
@limiter.limit("60/minute")
async def flight_messages(
    request: Request,
    flight_number: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    claims: CrewClaims = Depends(require_roles(CrewRole.PILOT, CrewRole.CO_PILOT, CrewRole.DISPATCHER)),
    services: CrewServices = Depends(get_services)
):
    """Messages tagged with a flight (flight deck and dispatch only)"""
    result = services.message_gateway.list_flight_messages(claims, flight_number, page, limit)
    return {"flight_number": flight_number, "messages": result.items, "pagination": result.pagination()}


@router.get("/{message_id}")
@limiter.limit("120/minute")
async def get_message(
    request: Request,
    message_id: str,
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Read a message (sender or recipient only)"""
    return {"data": services.message_gateway.read(message_id, claims, get_client_ip(request))}


@router.put("/{message_id}/read")
@limiter.limit("120/minute")
async def mark_read(
    request: Request,
    message_id: str,
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Mark a received message as read"""
    view = services.message_gateway.mark_read(message_id, claims, get_client_ip(request))
    return {"message": "Message marked as read", "data": view}


@router.delete("/{message_id}")
@limiter.limit("30/minute")
async def delete_message(
    request: Request,
    message_id: str,
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Delete a sent message"""
    services.message_gateway.delete(message_id, claims, get_client_ip(request))
    return {"message": "Message deleted successfully"}
