"""
routers/documents.py
Encrypted document storage router with clearance-based access
"""

from fastapi import APIRouter, Depends, status, Request, Query, UploadFile, File, Form
from fastapi.responses import Response
from typing import List, Optional
from datetime import datetime
import logging
import os
import urllib.parse
from slowapi import Limiter

from database.models import DocumentCategory
from utils.auth_dependencies import get_client_ip, get_services, rate_limit_key, require_auth
from utils.errors import ResourceError, ResourceErrorKind
from utils.input_sanitizer import sanitize_text
from utils.resource_gateway import DocumentFilters, DocumentMetadata, DocumentUpdate
from utils.service_registry import CrewServices
from utils.tokens import CrewClaims

router = APIRouter()
limiter = Limiter(key_func=rate_limit_key)
logger = logging.getLogger(__name__)


def _clean_filename(raw: Optional[str]) -> str:
    """Base name of an uploaded file without control characters or quotes"""
    name = os.path.basename((raw or '').replace('\\', '/'))
    name = sanitize_text(name, max_length=255) or 'document'
    return name.replace('"', '').replace('\r', '').replace('\n', '')


@router.post("/upload", status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def upload_documents(
    request: Request,
    files: List[UploadFile] = File(...),
    title: str = Form(..., min_length=1, max_length=100),
    category: DocumentCategory = Form(...),
    access_level: int = Form(..., ge=1, le=5),
    description: Optional[str] = Form(None, max_length=500),
    flight_number: Optional[str] = Form(None, max_length=8),
    expires_at: Optional[datetime] = Form(None),
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """
    Upload one or more documents

    Every file is checked before any is stored. With several files each
    document is titled "<title> - <file name>".
    """
    gateway = services.document_gateway
    max_files = services.settings.max_upload_files

    if not files:
        raise ResourceError(ResourceErrorKind.VALIDATION, "No files uploaded", code="NO_FILES")
    if len(files) > max_files:
        raise ResourceError(
            ResourceErrorKind.VALIDATION, f"Too many files. Maximum {max_files} files allowed",
            code="TOO_MANY_FILES"
        )

    staged = []
    for upload in files:
        content = await upload.read()
        mime_type = upload.content_type or 'application/octet-stream'
        gateway.check_file(mime_type, len(content))
        staged.append((_clean_filename(upload.filename), mime_type, content))

    documents = []
    for file_name, mime_type, content in staged:
        metadata = DocumentMetadata(
            title=f"{title} - {file_name}"[:100] if len(staged) > 1 else title,
            description=description,
            category=category,
            access_level=access_level,
            flight_number=flight_number or None,
            expires_at=expires_at,
        )
        documents.append(
            gateway.upload(claims, metadata, file_name, mime_type, content, get_client_ip(request))
        )

    return {"message": f"{len(documents)} document(s) uploaded successfully", "documents": documents}


@router.get("/")
@limiter.limit("120/minute")
async def list_documents(
    request: Request,
    category: Optional[DocumentCategory] = None,
    flight_number: Optional[str] = Query(None, max_length=8),
    q: Optional[str] = Query(None, min_length=1, max_length=100),
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    sort_by: str = Query('created_at', pattern=r'^(created_at|updated_at|title|access_level|size|download_count)$'),
    sort_order: str = Query('desc', pattern=r'^(asc|desc)$'),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Documents the caller is cleared for"""
    filters = DocumentFilters(
        category=category, flight_number=flight_number, q=q, since=since, until=until,
        sort_by=sort_by, sort_order=sort_order, page=page, limit=limit,
    )
    result = services.document_gateway.list(claims, filters)
    return {"documents": result.items, "pagination": result.pagination()}


@router.get("/meta/categories")
@limiter.limit("60/minute")
async def document_categories(
    request: Request,
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Document categories available at the caller's clearance"""
    return {"categories": services.document_gateway.categories(claims)}


@router.get("/flight/{flight_number}")
@limiter.limit("60/minute")
async def flight_documents(
    request: Request,
    flight_number: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Documents for one flight (flight crew and dispatch)"""
    result = services.document_gateway.list_flight_documents(claims, flight_number, page, limit)
    return {"flight_number": flight_number, "documents": result.items, "pagination": result.pagination()}


@router.get("/{document_id}")
@limiter.limit("120/minute")
async def get_document(
    request: Request,
    document_id: str,
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Document metadata"""
    return {"document": services.document_gateway.read(document_id, claims, get_client_ip(request))}


@router.get("/{document_id}/download")
@limiter.limit("30/minute")
async def download_document(
    request: Request,
    document_id: str,
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Decrypted document content"""
    downloaded = services.document_gateway.download(document_id, claims, get_client_ip(request))
    quoted = urllib.parse.quote(downloaded.file_name)
    ascii_name = downloaded.file_name.encode('ascii', 'ignore').decode('ascii') or 'document'

    return Response(
        content=downloaded.content,
        media_type=downloaded.mime_type,
        headers={
            "Content-Disposition": f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quoted}",
            "Content-Length": str(len(downloaded.content)),
        },
    )


@router.put("/{document_id}")
@limiter.limit("30/minute")
async def update_document(
    request: Request,
    document_id: str,
    body: DocumentUpdate,
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Update document metadata (uploader or clearance 4+)"""
    document = services.document_gateway.update(document_id, claims, body, get_client_ip(request))
    return {"message": "Document updated successfully", "document": document}


@router.delete("/{document_id}")
@limiter.limit("30/minute")
async def delete_document(
    request: Request,
    document_id: str,
    claims: CrewClaims = Depends(require_auth),
    services: CrewServices = Depends(get_services)
):
    """Delete a document (uploader or clearance 5)"""
    services.document_gateway.delete(document_id, claims, get_client_ip(request))
    return {"message": "Document deleted successfully"}
