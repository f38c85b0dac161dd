"""
database/models.py
Record models for crew identities, messages and documents

Records are pydantic models held by the repositories in
database/repositories.py. Timestamps are timezone-aware UTC.
"""

from datetime import datetime, timezone
from enum import Enum
from math import ceil
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, validator

from utils.crypto_aes import EncryptedPayload
from utils.rbac import CrewRole, Department


def utc_now() -> datetime:
    """Default clock"""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timezone-aware UTC copy of value; offset-less values are taken as UTC"""
    if value is None:
        return None
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Enums
class MessagePriority(str, Enum):
    LOW = 'low'
    NORMAL = 'normal'
    HIGH = 'high'
    URGENT = 'urgent'


class MessageStatus(str, Enum):
    SENT = 'sent'
    READ = 'read'
    DELETED = 'deleted'


class DocumentStatus(str, Enum):
    ACTIVE = 'active'
    DELETED = 'deleted'


class DocumentCategory(str, Enum):
    FLIGHT_PLAN = 'flight-plan'
    WEATHER = 'weather'
    MAINTENANCE = 'maintenance'
    CREW_MANIFEST = 'crew-manifest'
    SAFETY = 'safety'
    OPERATIONAL = 'operational'


class AccessLogEntry(BaseModel):
    """One append-only audit entry on a resource"""
    action: str
    employee_id: str
    name: str
    timestamp: datetime
    details: Dict[str, Any] = Field(default_factory=dict)


class Identity(BaseModel):
    """Crew member record"""
    employee_id: str
    name: str
    role: CrewRole
    department: Department
    clearance_level: int = Field(..., ge=1, le=5)
    airline: str
    credential_hash: str
    is_active: bool = True
    failed_attempts: int = Field(0, ge=0)
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def public_view(self) -> Dict[str, Any]:
        """Profile fields safe to return to clients"""
        return self.model_dump(
            mode='json',
            exclude={'credential_hash', 'failed_attempts', 'locked_until', 'password_changed_at'}
        )


class Message(BaseModel):
    """Crew message; the body is either plaintext content or an encrypted payload"""
    id: str
    sender_id: str
    sender_name: str
    sender_role: CrewRole
    recipient_id: str
    recipient_name: str
    recipient_role: CrewRole
    content: Optional[str] = None
    payload: Optional[EncryptedPayload] = None
    wrapped_key: Optional[str] = None
    is_encrypted: bool = True
    priority: MessagePriority = MessagePriority.NORMAL
    category: str = 'general'
    flight_number: Optional[str] = None
    status: MessageStatus = MessageStatus.SENT
    read_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    access_log: List[AccessLogEntry] = Field(default_factory=list)


class Document(BaseModel):
    """Encrypted document with a clearance-based access level"""
    model_config = ConfigDict(validate_assignment=True)

    id: str
    title: str
    description: Optional[str] = None
    category: DocumentCategory
    access_level: int = Field(..., ge=1, le=5)
    flight_number: Optional[str] = None
    file_name: str
    mime_type: str
    size: int
    payload: EncryptedPayload
    wrapped_key: str
    uploaded_by_id: str
    uploaded_by_name: str
    download_count: int = 0
    expires_at: Optional[datetime] = None
    status: DocumentStatus = DocumentStatus.ACTIVE
    deleted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    access_log: List[AccessLogEntry] = Field(default_factory=list)

    @validator('expires_at')
    def expiry_is_utc(cls, v):
        return as_utc(v)


class Page(BaseModel):
    """One page of a listing"""
    items: List[Any]
    total: int
    page: int
    limit: int
    total_pages: int
    has_next: bool
    has_prev: bool

    def pagination(self) -> Dict[str, Any]:
        return self.model_dump(exclude={'items'})


def paginate(items: List[Any], page: int = 1, limit: int = 20) -> Page:
    """
    Slice a fully filtered and sorted list into a page

    Args:
        items: Filtered, sorted items
        page: 1-based page number
        limit: Page size

    Returns:
        Page
    """
    page = max(page, 1)
    limit = max(limit, 1)
    total = len(items)
    total_pages = ceil(total / limit) if total else 0
    start = (page - 1) * limit

    return Page(
        items=items[start:start + limit],
        total=total,
        page=page,
        limit=limit,
        total_pages=total_pages,
        has_next=page < total_pages,
        has_prev=page > 1,
    )
