"""
Medical Documents API Router
/api/medical-documents

Endpoints:
  POST   /upload               single file   (multipart field "file")
  POST   /upload-multiple      up to 10      (multipart field "files")
  GET    /                     list, newest first, no extracted payload
  GET    /findings             labs + summaries from recent SUCCESS documents
  GET    /{id}                 full detail with parsed extractedData
  POST   /{id}/reprocess       PENDING again, pipeline re-triggered
  GET    /{id}/file            original bytes, inline
  DELETE /{id}                 soft delete

Request lifecycle (upload):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. Count / MIME / size validation (before any row)      │
  │ 2. userId required                                      │
  │ 3. Files stored under random names                      │
  │ 4. One PENDING row per file, committed                  │
  │ 5. Pipeline dispatched per document → respond 200       │
  └─────────────────────────────────────────────────────────┘

Every document read is scoped to (id, userId, not deleted); anything else
is a 404.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import APIRouter, File, Form, Query, UploadFile
from fastapi.responses import FileResponse

from meddocs.api.dependencies import DB, RequestID, Service
from meddocs.models.documents import MedicalDocument
from meddocs.schemas.documents import (
    DeleteRequest,
    DocumentDetail,
    DocumentDetailResponse,
    DocumentListItem,
    DocumentListResponse,
    ErrorResponse,
    MultiUploadResponse,
    RecentFindings,
    ReprocessRequest,
    ReprocessResponse,
    SuccessResponse,
    UploadedDocument,
    UploadResponse,
)
from meddocs.services.findings import collect_recent_findings

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/medical-documents",
    tags=["Medical Documents"],
)

_UPLOAD_ERRORS = {
    400: {"model": ErrorResponse, "description": "No file, too many files, or missing userId"},
    413: {"model": ErrorResponse, "description": "File exceeds the size limit"},
    415: {"model": ErrorResponse, "description": "Only PDF, JPG and PNG are accepted"},
    500: {"model": ErrorResponse, "description": "Storage or database failure"},
}
_LOOKUP_ERRORS = {
    400: {"model": ErrorResponse, "description": "Missing userId"},
    404: {"model": ErrorResponse, "description": "Not found, deleted, or owned by another user"},
}


def _uploaded(doc: MedicalDocument) -> UploadedDocument:
    return UploadedDocument(
        id=doc.id,
        filename=doc.filename,
        doc_type=doc.doc_type,
        extraction_status=doc.extraction_status,
        uploaded_at=doc.uploaded_at,
    )


def _detail(doc: MedicalDocument) -> DocumentDetail:
    extracted = None
    if doc.extracted_json:
        try:
            extracted = json.loads(doc.extracted_json)
        except json.JSONDecodeError:
            logger.warning("Unreadable extracted_json | doc=%s", doc.id)
    return DocumentDetail(
        id=doc.id,
        filename=doc.filename,
        doc_type=doc.doc_type,
        mime_type=doc.mime_type,
        size_bytes=doc.size_bytes,
        uploaded_at=doc.uploaded_at,
        extraction_status=doc.extraction_status,
        extracted_data=extracted,
        summary_text=doc.summary_text,
    )


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=UploadResponse,
    summary="Upload one medical document",
    responses=_UPLOAD_ERRORS,
)
async def upload_document(
    service:    Service,
    request_id: RequestID,
    file:     Optional[UploadFile] = File(None, description="PDF, JPG or PNG, max 10 MB"),
    user_id:  Optional[str] = Form(None, alias="userId"),
    doc_type: Optional[str] = Form(None, alias="docType"),
    language: Optional[str] = Form(None),
) -> UploadResponse:
    """Returns as soon as the row exists; extraction continues in the background."""
    documents = await service.upload(
        [file] if file is not None else [],
        user_id=user_id,
        doc_type=doc_type,
        language=language,
        request_id=request_id,
    )
    return UploadResponse(document=_uploaded(documents[0]), request_id=request_id)


@router.post(
    "/upload-multiple",
    response_model=MultiUploadResponse,
    summary="Upload up to 10 medical documents",
    responses=_UPLOAD_ERRORS,
)
async def upload_documents(
    service:    Service,
    request_id: RequestID,
    files:    Optional[list[UploadFile]] = File(None, description="Up to 10 files, each max 10 MB"),
    user_id:  Optional[str] = Form(None, alias="userId"),
    doc_type: Optional[str] = Form(None, alias="docType"),
    language: Optional[str] = Form(None),
) -> MultiUploadResponse:
    documents = await service.upload(
        files or [],
        user_id=user_id,
        doc_type=doc_type,
        language=language,
        request_id=request_id,
        multiple=True,
    )
    return MultiUploadResponse(
        documents=[_uploaded(d) for d in documents],
        count=len(documents),
        request_id=request_id,
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

@router.get(
    "",
    response_model=DocumentListResponse,
    summary="List a user's documents",
    responses={400: _LOOKUP_ERRORS[400]},
)
async def list_documents(
    service: Service,
    user_id: Optional[str] = Query(None, alias="userId"),
) -> DocumentListResponse:
    documents = await service.list_documents(user_id)
    return DocumentListResponse(
        documents=[
            DocumentListItem(
                id=d.id,
                filename=d.filename,
                doc_type=d.doc_type,
                size_bytes=d.size_bytes,
                uploaded_at=d.uploaded_at,
                extraction_status=d.extraction_status,
                summary_text=d.summary_text,
            )
            for d in documents
        ]
    )


@router.get(
    "/findings",
    response_model=RecentFindings,
    summary="Labs and summaries from the user's most recent processed documents",
    responses={400: _LOOKUP_ERRORS[400]},
)
async def recent_findings(
    db:      DB,
    service: Service,
    user_id: Optional[str] = Query(None, alias="userId"),
    limit:   int = Query(5, ge=1, le=50),
) -> RecentFindings:
    service.require_user(user_id)
    return await collect_recent_findings(db, user_id, limit=limit)


@router.get(
    "/{document_id}",
    response_model=DocumentDetailResponse,
    summary="Get one document with its extracted data",
    responses=_LOOKUP_ERRORS,
)
async def get_document(
    document_id: str,
    service:     Service,
    user_id: Optional[str] = Query(None, alias="userId"),
) -> DocumentDetailResponse:
    doc = await service.get_document(document_id, user_id)
    return DocumentDetailResponse(document=_detail(doc))


@router.get(
    "/{document_id}/file",
    response_class=FileResponse,
    summary="Stream the original file",
    responses=_LOOKUP_ERRORS,
)
async def get_document_file(
    document_id: str,
    service:     Service,
    user_id: Optional[str] = Query(None, alias="userId"),
) -> FileResponse:
    doc = await service.get_file(document_id, user_id)
    return FileResponse(
        doc.storage_path,
        media_type=doc.mime_type,
        filename=doc.filename,
        content_disposition_type="inline",
    )


# ---------------------------------------------------------------------------
# Reprocess / delete
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/reprocess",
    response_model=ReprocessResponse,
    summary="Run extraction again",
    responses={**_LOOKUP_ERRORS, 400: {"model": ErrorResponse, "description": "Missing userId or already processing"}},
)
async def reprocess_document(
    document_id: str,
    service:     Service,
    body:        Optional[ReprocessRequest] = None,
) -> ReprocessResponse:
    body = body or ReprocessRequest()
    await service.reprocess(document_id, body.user_id, body.language)
    return ReprocessResponse(document_id=document_id)


@router.delete(
    "/{document_id}",
    response_model=SuccessResponse,
    summary="Soft-delete a document",
    responses=_LOOKUP_ERRORS,
)
async def delete_document(
    document_id: str,
    service:     Service,
    body:        Optional[DeleteRequest] = None,
) -> SuccessResponse:
    body = body or DeleteRequest()
    await service.delete(document_id, body.user_id)
    return SuccessResponse()
