"""
utils/resource_gateway.py
Access-controlled, encrypted-at-rest crew messages and documents

Every operation follows the same order:
1. Look the resource up (soft-deleted resources do not exist for callers)
2. Apply the access decision (ownership for messages, clearance for documents)
3. Only then touch ciphertext or metadata

Listing applies the same access filter before any query filter, so no
combination of query parameters can widen what a requester sees.

Key custody: each resource gets its own random key, stored only in
wrapped form (see utils/encryption.py). Views returned to callers never
carry key material; the raw message key is only released when
return_resource_keys is enabled.
"""

import uuid
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, validator

from database.models import (
    AccessLogEntry, Document, DocumentCategory, DocumentStatus, Message,
    MessagePriority, MessageStatus, Page, as_utc, paginate, utc_now
)
from database.repositories import DocumentRepository, IdentityRepository, MessageRepository
from utils.audit import AuditAction, AuditLogStore, log_audit_event
from utils.crypto_aes import (
    EncryptedPayload, Purpose, decrypt_from_storage, encrypt_for_storage, key_to_base64
)
from utils.encryption import KeyCustodian
from utils.errors import CryptoError, ResourceError, ResourceErrorKind
from utils.input_sanitizer import sanitize_text, validate_flight_number
from utils.rbac import (
    AccessRequirement, CrewRole, FLIGHT_DOCUMENT_ROLES, MAX_CLEARANCE, authorize, has_clearance
)
from utils.security_monitor import SecurityMonitor
from utils.tokens import CrewClaims

logger = logging.getLogger(__name__)

UNDECRYPTABLE_MESSAGE = "[Encrypted message - decryption failed]"
MASKED_MESSAGE = "[Encrypted Message]"
RESTRICTED_MESSAGE = "[Restricted message]"

MESSAGE_MAX_LENGTH = 2000
MESSAGE_DELETE_WINDOW = timedelta(minutes=5)
FLIGHT_MESSAGE_ROLES = frozenset({CrewRole.PILOT, CrewRole.CO_PILOT, CrewRole.DISPATCHER})

DOCUMENT_UPDATE_CLEARANCE = 4
DOCUMENT_DELETE_CLEARANCE = MAX_CLEARANCE
MAX_DOCUMENT_SIZE = 10 * 1024 * 1024  # 10MB
ALLOWED_MIME_TYPES = frozenset({
    'application/pdf',
    'application/msword',
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
    'application/vnd.ms-excel',
    'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
    'text/plain',
    'image/jpeg',
    'image/png',
    'image/gif',
})

CATEGORY_CATALOG = {
    DocumentCategory.FLIGHT_PLAN: {
        "label": "Flight Plan",
        "description": "Flight planning documents and route information",
        "min_clearance": 2,
    },
    DocumentCategory.WEATHER: {
        "label": "Weather",
        "description": "Weather reports and forecasts",
        "min_clearance": 1,
    },
    DocumentCategory.MAINTENANCE: {
        "label": "Maintenance",
        "description": "Aircraft maintenance logs and reports",
        "min_clearance": 3,
    },
    DocumentCategory.CREW_MANIFEST: {
        "label": "Crew Manifest",
        "description": "Crew assignments and schedules",
        "min_clearance": 2,
    },
    DocumentCategory.SAFETY: {
        "label": "Safety",
        "description": "Safety reports and procedures",
        "min_clearance": 2,
    },
    DocumentCategory.OPERATIONAL: {
        "label": "Operational",
        "description": "General operational documents",
        "min_clearance": 1,
    },
}


# ============================================================================
# VIEWS AND FILTERS
# ============================================================================

class MessageView(BaseModel):
    """Message as returned to its sender or recipient"""
    id: str
    sender_id: str
    sender_name: str
    sender_role: CrewRole
    recipient_id: str
    recipient_name: str
    recipient_role: CrewRole
    content: Optional[str]
    is_encrypted: bool
    decryption_failed: bool = False
    priority: MessagePriority
    category: str
    flight_number: Optional[str]
    status: MessageStatus
    read_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class SentMessage(BaseModel):
    """Result of send(); encryption_key is only set when keys are released to clients"""
    message: MessageView
    encryption_key: Optional[str] = None


class MessageFilters(BaseModel):
    type: str = Field('all', pattern=r'^(sent|received|all)$')
    priority: Optional[MessagePriority] = None
    flight_number: Optional[str] = None
    category: Optional[str] = None
    unread_only: bool = False
    q: Optional[str] = Field(None, min_length=1, max_length=100)
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)

    @validator('since', 'until')
    def range_is_utc(cls, v):
        return as_utc(v)


class DocumentView(BaseModel):
    """Document metadata; never includes ciphertext or keys"""
    id: str
    title: str
    description: Optional[str]
    category: DocumentCategory
    access_level: int
    flight_number: Optional[str]
    file_name: str
    mime_type: str
    size: int
    uploaded_by_id: str
    uploaded_by_name: str
    download_count: int
    expires_at: Optional[datetime]
    status: DocumentStatus
    created_at: datetime
    updated_at: datetime
    access_log: List[AccessLogEntry]


class DocumentMetadata(BaseModel):
    """Caller-supplied attributes of an upload"""
    title: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    category: DocumentCategory
    access_level: int = Field(..., ge=1, le=5)
    flight_number: Optional[str] = None
    expires_at: Optional[datetime] = None

    @validator('expires_at')
    def expiry_is_utc(cls, v):
        return as_utc(v)


class DocumentUpdate(BaseModel):
    """Partial metadata update; only fields explicitly set are applied"""
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    category: Optional[DocumentCategory] = None
    access_level: Optional[int] = Field(None, ge=1, le=5)
    flight_number: Optional[str] = None
    expires_at: Optional[datetime] = None

    @validator('title', 'category', 'access_level')
    def not_null(cls, v):
        if v is None:
            raise ValueError("Field cannot be null")
        return v

    @validator('expires_at')
    def expiry_is_utc(cls, v):
        return as_utc(v)


class DocumentFilters(BaseModel):
    category: Optional[DocumentCategory] = None
    flight_number: Optional[str] = None
    q: Optional[str] = Field(None, min_length=1, max_length=100)
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    sort_by: str = Field('created_at', pattern=r'^(created_at|updated_at|title|access_level|size|download_count)$')
    sort_order: str = Field('desc', pattern=r'^(asc|desc)$')
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)

    @validator('since', 'until')
    def range_is_utc(cls, v):
        return as_utc(v)


class DownloadedDocument(BaseModel):
    file_name: str
    mime_type: str
    content: bytes


def _in_date_range(created_at: datetime, since: Optional[datetime], until: Optional[datetime]) -> bool:
    if since is not None and created_at < since:
        return False
    if until is not None and created_at > until:
        return False
    return True


class _EncryptedResourceGateway:
    """Shared key custody and audit plumbing"""

    resource_type = "resource"

    def __init__(
        self,
        custodian: KeyCustodian,
        audit_store: AuditLogStore,
        monitor: SecurityMonitor,
        clock: Callable[[], datetime] = utc_now
    ):
        self.custodian = custodian
        self.audit_store = audit_store
        self.monitor = monitor
        self._clock = clock

    def _audit(self, actor: CrewClaims, action: str, resource_id: str, ip_address: Optional[str] = None):
        log_audit_event(
            self.audit_store, actor.employee_id, action, 'success', ip_address,
            {"resource_type": self.resource_type, "resource_id": resource_id}
        )

    def _seal(self, resource_id: str, data: bytes, purpose: Purpose) -> Tuple[EncryptedPayload, str, bytes]:
        payload, key = encrypt_for_storage(data, purpose)
        return payload, self.custodian.wrap_key(key, resource_id), key

    def _open(self, resource_id: str, payload: EncryptedPayload, wrapped_key: str, purpose: Purpose) -> bytes:
        key = self.custodian.unwrap_key(wrapped_key, resource_id)
        return decrypt_from_storage(payload, key, purpose)

    def _log_entry(self, action: str, actor: CrewClaims, **details) -> AccessLogEntry:
        return AccessLogEntry(
            action=action,
            employee_id=actor.employee_id,
            name=actor.name,
            timestamp=self._clock(),
            details=details,
        )

    def _deny(self, requester: CrewClaims, resource_id: str, message: str, code: str,
              reason: str, ip_address: Optional[str] = None, **details) -> ResourceError:
        self.monitor.track_access_denied(
            requester.employee_id, self.resource_type, resource_id, ip_address, reason
        )
        return ResourceError(ResourceErrorKind.ACCESS_DENIED, message, details=details or None, code=code)


# ============================================================================
# MESSAGES
# ============================================================================

class MessageGateway(_EncryptedResourceGateway):
    """
    Crew-to-crew messages readable only by their sender and recipient

    Lifecycle: sent -> read (once, by the recipient) -> optionally deleted
    """

    resource_type = "message"

    def __init__(
        self,
        messages: MessageRepository,
        identities: IdentityRepository,
        custodian: KeyCustodian,
        audit_store: AuditLogStore,
        monitor: SecurityMonitor,
        clock: Callable[[], datetime] = utc_now,
        delete_window: timedelta = MESSAGE_DELETE_WINDOW,
        return_resource_keys: bool = False
    ):
        super().__init__(custodian, audit_store, monitor, clock)
        self.messages = messages
        self.identities = identities
        self.delete_window = delete_window
        self.return_resource_keys = return_resource_keys

    def _get_live(self, message_id: str) -> Message:
        message = self.messages.get(message_id)
        if message is None or message.status is MessageStatus.DELETED:
            raise ResourceError(ResourceErrorKind.NOT_FOUND, "Message not found", code="MESSAGE_NOT_FOUND")
        return message

    def _to_view(self, message: Message, requester: CrewClaims, ip_address: Optional[str] = None) -> MessageView:
        content = message.content
        failed = False

        if message.is_encrypted:
            try:
                content = self._open(message.id, message.payload, message.wrapped_key, Purpose.MESSAGE).decode('utf-8')
            except (CryptoError, UnicodeDecodeError) as e:
                logger.error(f"Failed to decrypt message {message.id}: {type(e).__name__}")
                self.monitor.track_decryption_failure(requester.employee_id, "message", message.id, ip_address)
                content = UNDECRYPTABLE_MESSAGE
                failed = True

        return MessageView(
            **message.model_dump(include=set(MessageView.model_fields) - {"content", "decryption_failed"}),
            content=content,
            decryption_failed=failed,
        )

    def send(
        self,
        sender: CrewClaims,
        recipient_id: str,
        content: str,
        is_encrypted: bool = True,
        priority: MessagePriority = MessagePriority.NORMAL,
        category: str = 'general',
        flight_number: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> SentMessage:
        """
        Send a message to another crew member

        Raises:
            ResourceError: RECIPIENT_NOT_FOUND, RECIPIENT_INACTIVE or VALIDATION
        """
        content = sanitize_text(content, max_length=MESSAGE_MAX_LENGTH + 1)
        if not content:
            raise ResourceError(ResourceErrorKind.VALIDATION, "Message content cannot be empty")
        if len(content) > MESSAGE_MAX_LENGTH:
            raise ResourceError(
                ResourceErrorKind.VALIDATION, f"Message content must not exceed {MESSAGE_MAX_LENGTH} characters"
            )
        try:
            flight_number = validate_flight_number(flight_number)
        except ValueError as e:
            raise ResourceError(ResourceErrorKind.VALIDATION, str(e))

        recipient = self.identities.get(recipient_id)
        if recipient is None:
            raise ResourceError(ResourceErrorKind.RECIPIENT_NOT_FOUND, "Recipient not found")
        if not recipient.is_active:
            raise ResourceError(ResourceErrorKind.RECIPIENT_INACTIVE, "Recipient account is inactive")

        now = self._clock()
        message_id = str(uuid.uuid4())
        payload = wrapped_key = raw_key = None
        if is_encrypted:
            payload, wrapped_key, raw_key = self._seal(message_id, content.encode('utf-8'), Purpose.MESSAGE)

        message = Message(
            id=message_id,
            sender_id=sender.employee_id,
            sender_name=sender.name,
            sender_role=sender.role,
            recipient_id=recipient.employee_id,
            recipient_name=recipient.name,
            recipient_role=recipient.role,
            content=None if is_encrypted else content,
            payload=payload,
            wrapped_key=wrapped_key,
            is_encrypted=is_encrypted,
            priority=MessagePriority(priority),
            category=sanitize_text(category, max_length=50) or 'general',
            flight_number=flight_number,
            status=MessageStatus.SENT,
            created_at=now,
            updated_at=now,
            access_log=[self._log_entry("sent", sender, recipient_id=recipient.employee_id)],
        )
        self.messages.add(message)
        self._audit(sender, AuditAction.MESSAGE_SENT, message_id, ip_address)

        logger.info(
            f"Message sent from {sender.employee_id} to {recipient.employee_id} "
            f"(id={message_id}, priority={message.priority.value}, encrypted={is_encrypted})"
        )

        return SentMessage(
            message=self._to_view(message, sender, ip_address),
            encryption_key=key_to_base64(raw_key) if raw_key and self.return_resource_keys else None,
        )

    def read(self, message_id: str, requester: CrewClaims, ip_address: Optional[str] = None) -> MessageView:
        """
        Read a message as its sender or recipient

        The first read by the recipient stamps read_at; later reads leave it.

        Raises:
            ResourceError: NOT_FOUND or ACCESS_DENIED
        """
        message = self._get_live(message_id)

        if requester.employee_id not in (message.sender_id, message.recipient_id):
            raise self._deny(
                requester, message_id, "Access denied", "MESSAGE_ACCESS_DENIED", "not_participant", ip_address
            )

        now = self._clock()
        is_recipient = requester.employee_id == message.recipient_id

        def touch(record: Message):
            if is_recipient and record.read_at is None:
                record.read_at = now
                record.status = MessageStatus.READ
                record.updated_at = now
            record.access_log.append(self._log_entry("read", requester))

        message = self.messages.update(message_id, touch)
        self._audit(requester, AuditAction.MESSAGE_READ, message_id, ip_address)
        return self._to_view(message, requester, ip_address)

    def mark_read(self, message_id: str, requester: CrewClaims, ip_address: Optional[str] = None) -> MessageView:
        """
        Explicitly mark a message read (recipient only)

        Raises:
            ResourceError: NOT_FOUND, ACCESS_DENIED or INVALID_STATE if already read
        """
        message = self._get_live(message_id)

        if requester.employee_id != message.recipient_id:
            raise self._deny(
                requester, message_id, "Access denied", "MESSAGE_ACCESS_DENIED", "not_recipient", ip_address
            )
        if message.read_at is not None:
            raise ResourceError(
                ResourceErrorKind.INVALID_STATE, "Message already marked as read", code="MESSAGE_ALREADY_READ"
            )

        now = self._clock()

        def stamp(record: Message):
            if record.read_at is not None:
                raise ResourceError(
                    ResourceErrorKind.INVALID_STATE, "Message already marked as read", code="MESSAGE_ALREADY_READ"
                )
            record.read_at = now
            record.status = MessageStatus.READ
            record.updated_at = now
            record.access_log.append(self._log_entry("marked_read", requester))

        message = self.messages.update(message_id, stamp)
        return self._to_view(message, requester, ip_address)

    def delete(self, message_id: str, requester: CrewClaims, ip_address: Optional[str] = None):
        """
        Soft-delete a message (sender only)

        Unread messages can be deleted at any time; once read, only while
        the message is younger than the delete window.

        Raises:
            ResourceError: NOT_FOUND, ACCESS_DENIED or DELETE_TIME_EXPIRED
        """
        message = self._get_live(message_id)

        if requester.employee_id != message.sender_id:
            raise self._deny(
                requester, message_id, "Access denied. Only message sender can delete.",
                "DELETE_ACCESS_DENIED", "not_sender", ip_address
            )

        now = self._clock()

        def soft_delete(record: Message):
            if record.read_at is not None and now - record.created_at > self.delete_window:
                minutes = int(self.delete_window.total_seconds() // 60)
                raise ResourceError(
                    ResourceErrorKind.DELETE_TIME_EXPIRED,
                    f"Cannot delete read message after {minutes} minutes",
                )
            record.status = MessageStatus.DELETED
            record.deleted_at = now
            record.updated_at = now
            record.access_log.append(self._log_entry("deleted", requester))

        self.messages.update(message_id, soft_delete)
        self._audit(requester, AuditAction.MESSAGE_DELETED, message_id, ip_address)
        logger.info(f"Message deleted: {message_id} by {requester.employee_id}")

    def list(self, requester: CrewClaims, filters: Optional[MessageFilters] = None) -> Page:
        """
        List the requester's messages, newest first

        Only messages the requester sent or received are considered;
        filters narrow that set further.
        """
        filters = filters or MessageFilters()
        me = requester.employee_id
        query = filters.q.lower() if filters.q else None

        def visible(m: Message) -> bool:
            if m.status is MessageStatus.DELETED:
                return False
            if filters.type == 'sent':
                return m.sender_id == me
            if filters.type == 'received':
                return m.recipient_id == me
            return me in (m.sender_id, m.recipient_id)

        def matches(m: Message) -> bool:
            if filters.priority is not None and m.priority is not filters.priority:
                return False
            if filters.flight_number and m.flight_number != filters.flight_number:
                return False
            if filters.category and m.category != filters.category:
                return False
            if filters.unread_only and not (m.recipient_id == me and m.read_at is None):
                return False
            # Encrypted bodies are not searched; only names, flight and plaintext content
            if query and not (
                query in m.sender_name.lower()
                or query in m.recipient_name.lower()
                or query in (m.flight_number or '').lower()
                or query in (m.content or '').lower()
            ):
                return False
            return _in_date_range(m.created_at, filters.since, filters.until)

        found = [m for m in self.messages.query(visible) if matches(m)]
        found.sort(key=lambda m: m.created_at, reverse=True)

        page = paginate(found, filters.page, filters.limit)
        page.items = [self._to_view(m, requester) for m in page.items]
        return page

    def export(self, requester: CrewClaims, ip_address: Optional[str] = None) -> List[Dict[str, object]]:
        """
        Every live message the requester sent or received, decrypted, newest first

        Used to build password-protected personal backups.
        """
        me = requester.employee_id
        found = self.messages.query(
            lambda m: m.status is not MessageStatus.DELETED and me in (m.sender_id, m.recipient_id)
        )
        found.sort(key=lambda m: m.created_at, reverse=True)

        exported = [self._to_view(m, requester, ip_address).model_dump(mode='json') for m in found]
        log_audit_event(
            self.audit_store, me, AuditAction.MESSAGES_EXPORTED, 'success', ip_address,
            {"message_count": len(exported)}
        )
        logger.info(f"Messages exported by {me}: {len(exported)}")
        return exported

    def list_flight_messages(self, requester: CrewClaims, flight_number: str,
                             page: int = 1, limit: int = 20) -> Page:
        """
        Flight-scoped message overview for flight deck and dispatch roles

        Content is only revealed to the message's own sender or recipient.

        Raises:
            AuthzError: INSUFFICIENT_ROLE
        """
        authorize(requester, AccessRequirement(roles=FLIGHT_MESSAGE_ROLES))

        found = self.messages.query(
            lambda m: m.flight_number == flight_number and m.status is not MessageStatus.DELETED
        )
        found.sort(key=lambda m: m.created_at, reverse=True)

        result = paginate(found, page, limit)
        views = []
        for m in result.items:
            if requester.employee_id in (m.sender_id, m.recipient_id):
                views.append(self._to_view(m, requester))
            else:
                views.append(MessageView(
                    **m.model_dump(include=set(MessageView.model_fields) - {"content", "decryption_failed"}),
                    content=MASKED_MESSAGE if m.is_encrypted else RESTRICTED_MESSAGE,
                ))
        result.items = views
        return result

    def unread_count(self, requester: CrewClaims) -> Dict[str, object]:
        """Unread messages for the requester, by priority"""
        unread = self.messages.query(
            lambda m: m.recipient_id == requester.employee_id
            and m.read_at is None
            and m.status is not MessageStatus.DELETED
        )

        by_priority = {p.value: 0 for p in (
            MessagePriority.URGENT, MessagePriority.HIGH, MessagePriority.NORMAL, MessagePriority.LOW
        )}
        for m in unread:
            by_priority[m.priority.value] += 1

        return {"total": len(unread), "by_priority": by_priority}


# ============================================================================
# DOCUMENTS
# ============================================================================

class DocumentGateway(_EncryptedResourceGateway):
    """
    Encrypted documents readable by clearance >= access_level

    Lifecycle: active -> optionally deleted; expired documents stay
    stored but are no longer served.
    """

    resource_type = "document"

    def __init__(
        self,
        documents: DocumentRepository,
        custodian: KeyCustodian,
        audit_store: AuditLogStore,
        monitor: SecurityMonitor,
        clock: Callable[[], datetime] = utc_now,
        max_document_size: int = MAX_DOCUMENT_SIZE
    ):
        super().__init__(custodian, audit_store, monitor, clock)
        self.documents = documents
        self.max_document_size = max_document_size

    def _is_expired(self, document: Document) -> bool:
        return document.expires_at is not None and self._clock() >= document.expires_at

    def _get_live(self, document_id: str) -> Document:
        document = self.documents.get(document_id)
        if document is None or document.status is DocumentStatus.DELETED:
            raise ResourceError(ResourceErrorKind.NOT_FOUND, "Document not found", code="DOCUMENT_NOT_FOUND")
        return document

    def _check_read_access(self, document: Document, requester: CrewClaims, ip_address: Optional[str]):
        if not has_clearance(requester, document.access_level):
            raise self._deny(
                requester, document.id, "Insufficient clearance to access this document",
                "ACCESS_DENIED", "insufficient_clearance", ip_address,
                required_clearance=document.access_level,
                user_clearance=requester.clearance_level,
            )
        if self._is_expired(document):
            raise ResourceError(ResourceErrorKind.EXPIRED, "Document has expired", code="DOCUMENT_EXPIRED")

    @staticmethod
    def _to_view(document: Document) -> DocumentView:
        return DocumentView(**document.model_dump(include=set(DocumentView.model_fields)))

    def check_file(self, mime_type: str, size: int):
        """
        Reject disallowed, empty or oversized files before anything is stored

        Raises:
            ResourceError: VALIDATION
        """
        if mime_type not in ALLOWED_MIME_TYPES:
            raise ResourceError(ResourceErrorKind.VALIDATION, "File type not allowed", code="INVALID_FILE_TYPE")
        if size == 0:
            raise ResourceError(ResourceErrorKind.VALIDATION, "Uploaded file is empty", code="EMPTY_FILE")
        if size > self.max_document_size:
            raise ResourceError(
                ResourceErrorKind.VALIDATION, "File too large",
                details={"max_size": self.max_document_size}, code="FILE_TOO_LARGE"
            )

    def upload(
        self,
        uploader: CrewClaims,
        metadata: DocumentMetadata,
        file_name: str,
        mime_type: str,
        content: bytes,
        ip_address: Optional[str] = None
    ) -> DocumentView:
        """
        Encrypt and store a document

        Raises:
            ResourceError: INSUFFICIENT_CLEARANCE if access_level exceeds the
                uploader's clearance, VALIDATION for bad files or metadata
        """
        if metadata.access_level > uploader.clearance_level:
            self.monitor.track_access_denied(
                uploader.employee_id, "document", "new", ip_address, "access_level_above_clearance"
            )
            raise ResourceError(
                ResourceErrorKind.INSUFFICIENT_CLEARANCE,
                "Insufficient clearance to set this access level",
                details={"requested_level": metadata.access_level, "user_clearance": uploader.clearance_level},
            )
        self.check_file(mime_type, len(content))
        try:
            flight_number = validate_flight_number(metadata.flight_number)
        except ValueError as e:
            raise ResourceError(ResourceErrorKind.VALIDATION, str(e))

        now = self._clock()
        document_id = str(uuid.uuid4())
        payload, wrapped_key, _ = self._seal(document_id, content, Purpose.DOCUMENT)

        document = Document(
            id=document_id,
            title=sanitize_text(metadata.title, max_length=100) or file_name,
            description=sanitize_text(metadata.description, max_length=500),
            category=metadata.category,
            access_level=metadata.access_level,
            flight_number=flight_number,
            file_name=file_name,
            mime_type=mime_type,
            size=len(content),
            payload=payload,
            wrapped_key=wrapped_key,
            uploaded_by_id=uploader.employee_id,
            uploaded_by_name=uploader.name,
            expires_at=metadata.expires_at,
            created_at=now,
            updated_at=now,
            access_log=[self._log_entry("uploaded", uploader)],
        )
        self.documents.add(document)
        self._audit(uploader, AuditAction.DOCUMENT_UPLOADED, document_id, ip_address)

        logger.info(
            f"Document uploaded: {document_id} by {uploader.employee_id} "
            f"(category={document.category.value}, access_level={document.access_level}, size={document.size})"
        )
        return self._to_view(document)

    def read(self, document_id: str, requester: CrewClaims, ip_address: Optional[str] = None) -> DocumentView:
        """
        Document metadata for a cleared requester; records a 'viewed' entry

        Raises:
            ResourceError: NOT_FOUND, ACCESS_DENIED or EXPIRED
        """
        document = self._get_live(document_id)
        self._check_read_access(document, requester, ip_address)

        document = self.documents.update(
            document_id, lambda d: d.access_log.append(self._log_entry("viewed", requester))
        )
        self._audit(requester, AuditAction.DOCUMENT_VIEWED, document_id, ip_address)
        return self._to_view(document)

    def download(self, document_id: str, requester: CrewClaims,
                 ip_address: Optional[str] = None) -> DownloadedDocument:
        """
        Decrypt a document for a cleared requester

        Raises:
            ResourceError: NOT_FOUND, ACCESS_DENIED or EXPIRED
            CryptoError: DECRYPTION_FAILED if the stored payload does not authenticate
        """
        document = self._get_live(document_id)
        self._check_read_access(document, requester, ip_address)

        try:
            content = self._open(document.id, document.payload, document.wrapped_key, Purpose.DOCUMENT)
        except CryptoError:
            logger.error(f"Failed to decrypt document {document_id}")
            self.monitor.track_decryption_failure(requester.employee_id, "document", document_id, ip_address)
            raise

        now = self._clock()

        def record_download(d: Document):
            d.download_count += 1
            d.updated_at = now
            d.access_log.append(self._log_entry("downloaded", requester))

        self.documents.update(document_id, record_download)
        self._audit(requester, AuditAction.DOCUMENT_DOWNLOADED, document_id, ip_address)
        logger.info(f"Document downloaded: {document_id} by {requester.employee_id}")

        return DownloadedDocument(file_name=document.file_name, mime_type=document.mime_type, content=content)

    def update(self, document_id: str, requester: CrewClaims, changes: DocumentUpdate,
               ip_address: Optional[str] = None) -> DocumentView:
        """
        Update document metadata (uploader, or clearance >= 4)

        Raises:
            ResourceError: NOT_FOUND, ACCESS_DENIED, EXPIRED, INSUFFICIENT_CLEARANCE or VALIDATION
        """
        document = self._get_live(document_id)
        self._check_read_access(document, requester, ip_address)

        if document.uploaded_by_id != requester.employee_id and requester.clearance_level < DOCUMENT_UPDATE_CLEARANCE:
            raise self._deny(
                requester, document_id, "Insufficient permissions to update this document",
                "UPDATE_ACCESS_DENIED", "not_uploader", ip_address
            )

        if changes.access_level is not None and changes.access_level > requester.clearance_level:
            raise ResourceError(
                ResourceErrorKind.INSUFFICIENT_CLEARANCE,
                "Insufficient clearance to set this access level",
                details={"requested_level": changes.access_level, "user_clearance": requester.clearance_level},
            )

        updates = changes.model_dump(exclude_unset=True)
        if "flight_number" in updates:
            try:
                validate_flight_number(updates["flight_number"])
            except ValueError as e:
                raise ResourceError(ResourceErrorKind.VALIDATION, str(e))
        if "title" in updates and not updates["title"]:
            raise ResourceError(ResourceErrorKind.VALIDATION, "Title cannot be empty")

        now = self._clock()

        def apply(d: Document):
            for field, value in updates.items():
                setattr(d, field, value)
            d.updated_at = now
            d.access_log.append(self._log_entry("updated", requester, fields=sorted(updates)))

        document = self.documents.update(document_id, apply)
        self._audit(requester, AuditAction.DOCUMENT_UPDATED, document_id, ip_address)
        logger.info(f"Document updated: {document_id} by {requester.employee_id}")
        return self._to_view(document)

    def delete(self, document_id: str, requester: CrewClaims, ip_address: Optional[str] = None):
        """
        Soft-delete a document (uploader, or clearance 5)

        Raises:
            ResourceError: NOT_FOUND or ACCESS_DENIED
        """
        document = self._get_live(document_id)

        if document.uploaded_by_id != requester.employee_id and requester.clearance_level < DOCUMENT_DELETE_CLEARANCE:
            raise self._deny(
                requester, document_id, "Insufficient permissions to delete this document",
                "DELETE_ACCESS_DENIED", "not_uploader", ip_address
            )

        now = self._clock()

        def soft_delete(d: Document):
            d.status = DocumentStatus.DELETED
            d.deleted_at = now
            d.updated_at = now
            d.access_log.append(self._log_entry("deleted", requester))

        self.documents.update(document_id, soft_delete)
        self._audit(requester, AuditAction.DOCUMENT_DELETED, document_id, ip_address)
        logger.info(f"Document deleted: {document_id} by {requester.employee_id}")

    def list(self, requester: CrewClaims, filters: Optional[DocumentFilters] = None) -> Page:
        """
        List active, unexpired documents the requester is cleared for

        The clearance filter is applied before category, flight, date and
        free-text filters.
        """
        filters = filters or DocumentFilters()

        def visible(d: Document) -> bool:
            return (
                d.status is DocumentStatus.ACTIVE
                and has_clearance(requester, d.access_level)
                and not self._is_expired(d)
            )

        query = filters.q.lower() if filters.q else None

        def matches(d: Document) -> bool:
            if filters.category is not None and d.category is not filters.category:
                return False
            if filters.flight_number and d.flight_number != filters.flight_number:
                return False
            if query and not (
                query in d.title.lower()
                or query in (d.description or '').lower()
                or query in d.file_name.lower()
            ):
                return False
            return _in_date_range(d.created_at, filters.since, filters.until)

        found = [d for d in self.documents.query(visible) if matches(d)]

        def sort_key(d: Document):
            value = getattr(d, filters.sort_by)
            return value.lower() if isinstance(value, str) else value

        found.sort(key=sort_key, reverse=filters.sort_order == 'desc')

        page = paginate(found, filters.page, filters.limit)
        page.items = [self._to_view(d) for d in page.items]
        return page

    def list_flight_documents(self, requester: CrewClaims, flight_number: str,
                              page: int = 1, limit: int = 20) -> Page:
        """
        Documents for one flight (pilot, co-pilot, flight attendant, dispatcher)

        Raises:
            AuthzError: INSUFFICIENT_ROLE
        """
        authorize(requester, AccessRequirement(roles=FLIGHT_DOCUMENT_ROLES))
        return self.list(requester, DocumentFilters(flight_number=flight_number, page=page, limit=limit))

    @staticmethod
    def categories(requester: CrewClaims) -> List[Dict[str, object]]:
        """Document categories the requester's clearance reaches"""
        return [
            {"value": category.value, **info}
            for category, info in CATEGORY_CATALOG.items()
            if info["min_clearance"] <= requester.clearance_level
        ]
