"""
Medical Document Service

Upload pipeline:
  1. Validate the batch: at least one file, at most max_files_per_request
  2. Validate each file: MIME type allowlist, size ceiling
  3. Require userId (nothing has touched the disk yet, so nothing to clean up)
  4. Store each file under a random name (LocalFileStore)
  5. Insert one PENDING row per file and commit
  6. Hand each document to the dispatcher (non-blocking)
  7. Return the created rows

Any unexpected failure in steps 4–5 removes the files written by this request
and surfaces as 500 UPLOAD_ERROR. A dispatch failure in step 6 is logged but
not fatal: the document is stored and can be reprocessed.

Queries are always scoped to (document id, user id, deleted_at IS NULL); a
document owned by someone else is indistinguishable from a missing one.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import NoReturn

from fastapi import HTTPException, UploadFile, status
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from meddocs.core.config import settings
from meddocs.models.documents import MedicalDocument
from meddocs.schemas.documents import (
    ALLOWED_MIME_TYPES,
    DocType,
    ErrorResponse,
    ExtractionStatus,
    UploadErrors,
)
from meddocs.services.dispatcher import PipelineDispatcher
from meddocs.storage.local import LocalFileStore, StoredFile

logger = logging.getLogger(__name__)


def _raise(status_code: int, error: ErrorResponse) -> NoReturn:
    raise HTTPException(status_code=status_code, detail=error.body())


class DocumentService:
    """
    One instance per request; all dependencies injected.
    """

    def __init__(
        self,
        db:         AsyncSession,
        store:      LocalFileStore,
        dispatcher: PipelineDispatcher,
    ) -> None:
        self._db         = db
        self._store      = store
        self._dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def upload(
        self,
        files:      list[UploadFile],
        user_id:    str | None,
        doc_type:   str | None,
        language:   str | None,
        request_id: str,
        multiple:   bool = False,
    ) -> list[MedicalDocument]:
        """
        Validate, store and register uploaded files.
        Raises HTTPException with the {error, code, requestId} body on every rejection.
        """
        files = [f for f in files or [] if f is not None and f.filename]

        # ---- Step 1: batch shape -----------------------------------------
        if not files:
            err = UploadErrors.no_files(request_id) if multiple else UploadErrors.no_file(request_id)
            _raise(status.HTTP_400_BAD_REQUEST, err)
        if len(files) > settings.max_files_per_request:
            _raise(
                status.HTTP_400_BAD_REQUEST,
                UploadErrors.too_many_files(settings.max_files_per_request, request_id),
            )

        # ---- Step 2: per-file type and size -------------------------------
        contents: list[tuple[UploadFile, bytes]] = []
        for upload in files:
            if (upload.content_type or "").lower() not in ALLOWED_MIME_TYPES:
                logger.info(
                    "Upload rejected | request=%s file=%s mime=%s reason=type",
                    request_id, upload.filename, upload.content_type,
                )
                _raise(status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, UploadErrors.invalid_file_type(request_id))

            data = await upload.read(settings.max_file_size_bytes + 1)
            if len(data) > settings.max_file_size_bytes:
                logger.info(
                    "Upload rejected | request=%s file=%s reason=size",
                    request_id, upload.filename,
                )
                _raise(
                    status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    UploadErrors.file_too_large(settings.max_file_size_bytes, request_id),
                )
            contents.append((upload, data))

        # ---- Step 3: owner ----------------------------------------------
        if not user_id:
            _raise(status.HTTP_400_BAD_REQUEST, UploadErrors.missing_user_id(request_id))

        selected_type = DocType.parse(doc_type)
        language      = language or "en"

        logger.info(
            "Upload start | request=%s user=%s files=%d doc_type=%s",
            request_id, user_id, len(contents), selected_type.value,
        )

        # ---- Steps 4–5: store + insert -------------------------------------
        written:   list[StoredFile] = []
        documents: list[MedicalDocument] = []
        try:
            for upload, data in contents:
                stored = await self._store.save(data, upload.filename)
                written.append(stored)
                doc = MedicalDocument(
                    user_id=user_id,
                    filename=upload.filename,
                    storage_path=stored.path,
                    mime_type=upload.content_type.lower(),
                    size_bytes=stored.size_bytes,
                    doc_type=selected_type,
                    extraction_status=ExtractionStatus.PENDING,
                )
                self._db.add(doc)
                documents.append(doc)
            await self._db.commit()
        except Exception as exc:
            logger.exception("Upload failed | request=%s error=%s", request_id, exc)
            await self._db.rollback()
            for stored in written:
                self._store.remove(stored.path)
            _raise(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                UploadErrors.upload_error(str(exc) or None, request_id),
            )

        # ---- Step 6: dispatch ---------------------------------------------
        for doc in documents:
            await self._dispatch(doc.id, language)

        logger.info("Upload complete | request=%s documents=%d", request_id, len(documents))
        return documents

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_documents(self, user_id: str | None) -> list[MedicalDocument]:
        self.require_user(user_id)
        result = await self._db.execute(
            select(MedicalDocument)
            .where(
                MedicalDocument.user_id == user_id,
                MedicalDocument.deleted_at.is_(None),
            )
            .order_by(MedicalDocument.uploaded_at.desc())
        )
        return list(result.scalars().all())

    async def get_document(self, document_id: str, user_id: str | None) -> MedicalDocument:
        self.require_user(user_id)
        result = await self._db.execute(
            select(MedicalDocument).where(
                MedicalDocument.id == document_id,
                MedicalDocument.user_id == user_id,
                MedicalDocument.deleted_at.is_(None),
            )
        )
        doc = result.scalars().first()
        if doc is None:
            _raise(status.HTTP_404_NOT_FOUND, UploadErrors.document_not_found())
        return doc

    async def get_file(self, document_id: str, user_id: str | None) -> MedicalDocument:
        doc = await self.get_document(document_id, user_id)
        if not self._store.exists(doc.storage_path):
            logger.warning("Stored file missing | doc=%s path=%s", doc.id, doc.storage_path)
            _raise(status.HTTP_404_NOT_FOUND, UploadErrors.stored_file_missing())
        return doc

    # ------------------------------------------------------------------
    # Reprocess
    # ------------------------------------------------------------------

    async def reprocess(self, document_id: str, user_id: str | None, language: str | None) -> None:
        """
        SUCCESS | FAILED | PENDING → PENDING, payload cleared, pipeline re-triggered.
        A document in PROCESSING is rejected, never queued.
        """
        doc = await self.get_document(document_id, user_id)

        if doc.extraction_status is ExtractionStatus.PROCESSING:
            _raise(status.HTTP_400_BAD_REQUEST, UploadErrors.already_processing())
        if not self._store.exists(doc.storage_path):
            _raise(status.HTTP_404_NOT_FOUND, UploadErrors.file_not_found())

        # Conditional write guards against a run that claimed the row since the read
        result = await self._db.execute(
            update(MedicalDocument)
            .where(
                MedicalDocument.id == doc.id,
                MedicalDocument.extraction_status != ExtractionStatus.PROCESSING,
            )
            .values(
                extraction_status=ExtractionStatus.PENDING,
                extracted_json=None,
                summary_text=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            _raise(status.HTTP_400_BAD_REQUEST, UploadErrors.already_processing())
        await self._db.commit()

        logger.info("Reprocess requested | doc=%s user=%s", doc.id, user_id)
        await self._dispatch(doc.id, language or "en")

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete(self, document_id: str, user_id: str | None) -> None:
        """Soft delete; the stored file is removed best-effort."""
        doc = await self.get_document(document_id, user_id)
        doc.deleted_at = datetime.now(timezone.utc)
        await self._db.commit()

        if not self._store.remove(doc.storage_path):
            logger.warning("Stored file not removed on delete | doc=%s path=%s", doc.id, doc.storage_path)
        logger.info("Document deleted | doc=%s user=%s", doc.id, user_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _dispatch(self, document_id: str, language: str) -> None:
        try:
            await self._dispatcher.submit(document_id, language)
        except Exception as exc:
            # Document stays PENDING; a reprocess request will pick it up
            logger.error("Dispatch failed | doc=%s error=%s", document_id, exc)

    @staticmethod
    def require_user(user_id: str | None) -> None:
        if not user_id:
            _raise(status.HTTP_400_BAD_REQUEST, UploadErrors.missing_user_id())
