"""
utils/service_registry.py
Per-application container of the crew API services

One CrewServices instance is built per FastAPI app and stored on
app.state.services; routers reach it through
utils.auth_dependencies.get_services. Nothing here is module-global, so
tests can build isolated instances with their own clock and hasher.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from argon2 import PasswordHasher

from database.models import utc_now
from database.repositories import DocumentRepository, IdentityRepository, MessageRepository
from utils.audit import AuditLogStore
from utils.authenticator import Authenticator
from utils.crew_directory import CrewDirectory
from utils.encryption import KeyCustodian, load_master_key
from utils.env_init import Settings
from utils.resource_gateway import DocumentGateway, MessageGateway
from utils.security_monitor import SecurityMonitor
from utils.tokens import TokenBlacklist, TokenService

logger = logging.getLogger(__name__)


@dataclass
class CrewServices:
    settings: Settings
    clock: Callable[[], datetime]
    identities: IdentityRepository
    messages: MessageRepository
    documents: DocumentRepository
    audit_store: AuditLogStore
    monitor: SecurityMonitor
    tokens: TokenService
    authenticator: Authenticator
    message_gateway: MessageGateway
    document_gateway: DocumentGateway
    crew: CrewDirectory

    def run_maintenance(self) -> Dict[str, int]:
        """Prune expired revocations, idle security trackers and alert cooldowns"""
        return {
            "blacklist_entries": self.tokens.blacklist.cleanup(),
            "security_trackers": self.monitor.cleanup_old_trackers(),
        }


def build_services(
    settings: Settings,
    clock: Optional[Callable[[], datetime]] = None,
    hasher: Optional[PasswordHasher] = None
) -> CrewServices:
    """
    Wire repositories, token service, authenticator and gateways

    Args:
        settings: Resolved settings (secrets already initialized)
        clock: Time source shared by every component (UTC now by default)
        hasher: Argon2 hasher override (tests use cheaper parameters)

    Returns:
        CrewServices

    Raises:
        ValueError: If the master key or JWT secret is unusable
    """
    clock = clock or utc_now

    identities = IdentityRepository()
    messages = MessageRepository()
    documents = DocumentRepository()
    audit_store = AuditLogStore(clock, max_records=settings.audit_max_records)
    monitor = SecurityMonitor(audit_store, clock)
    custodian = KeyCustodian(load_master_key(settings.master_encryption_key))

    tokens = TokenService(
        access_secret=settings.jwt_secret_key,
        refresh_secret=settings.jwt_refresh_secret_key,
        blacklist=TokenBlacklist(clock),
        clock=clock,
        access_ttl=settings.access_token_ttl,
        refresh_ttl=settings.refresh_token_ttl,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        algorithm=settings.jwt_algorithm,
    )

    authenticator = Authenticator(
        identities, tokens, audit_store, monitor,
        clock=clock,
        hasher=hasher,
        max_failed_attempts=settings.max_failed_login_attempts,
        lockout_duration=settings.lockout_duration,
    )

    message_gateway = MessageGateway(
        messages, identities, custodian, audit_store, monitor,
        clock=clock,
        delete_window=settings.message_delete_window,
        return_resource_keys=settings.return_resource_keys,
    )
    if settings.return_resource_keys:
        logger.warning("RETURN_RESOURCE_KEYS is enabled - message keys are returned to clients")

    document_gateway = DocumentGateway(
        documents, custodian, audit_store, monitor,
        clock=clock,
        max_document_size=settings.max_upload_size,
    )

    return CrewServices(
        settings=settings,
        clock=clock,
        identities=identities,
        messages=messages,
        documents=documents,
        audit_store=audit_store,
        monitor=monitor,
        tokens=tokens,
        authenticator=authenticator,
        message_gateway=message_gateway,
        document_gateway=document_gateway,
        crew=CrewDirectory(identities, audit_store, clock),
    )
