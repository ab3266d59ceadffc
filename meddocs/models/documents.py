"""
SQLAlchemy ORM Models - Medical Documents & System Prompts

SQLAlchemy 2.x mapped classes with full async support. Column types are kept
portable so the same models run on PostgreSQL (production) and SQLite
(tests, local dev): ids are uuid4 strings and the extracted payload is stored
as serialized JSON text.

Closed sets (doc type, extraction status, prompt type/language) are stored as
their string values with a CHECK constraint; attributes load as the enums in
meddocs.schemas.documents.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from meddocs.schemas.documents import (
    DocType,
    ExtractionStatus,
    PromptLanguage,
    PromptType,
)


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls, name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


# ---------------------------------------------------------------------------
# Declarative base - shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# MedicalDocument - medical_documents
# ---------------------------------------------------------------------------

class MedicalDocument(Base):
    """
    One uploaded medical file and the result of its extraction pipeline.

    State machine (extraction_status column):
        PENDING    - stored on disk, pipeline not yet started
        PROCESSING - text extraction / structured extraction in progress
        SUCCESS    - extracted_json and summary_text populated
        FAILED     - extracted_json NULL; summary_text carries the reason

    Soft delete: deleted_at set → invisible to every query, file removed
    best-effort. The row itself is never physically deleted.
    """

    __tablename__ = "medical_documents"
    __table_args__ = (
        Index("idx_medical_documents_user_deleted", "user_id", "deleted_at"),
        Index("idx_medical_documents_status_updated", "extraction_status", "updated_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)

    # Owner - opaque identifier supplied by the authenticated client
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)

    filename: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Original filename provided by the client",
    )
    storage_path: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Location of the stored bytes: <uploads_dir>/<32 hex chars><ext>",
    )
    mime_type:  Mapped[str] = mapped_column(String(100), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)

    doc_type: Mapped[DocType] = mapped_column(
        _enum_column(DocType, "medical_documents_doc_type_check"),
        nullable=False,
        default=DocType.OTHER,
    )

    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Extraction state machine
    extraction_status: Mapped[ExtractionStatus] = mapped_column(
        _enum_column(ExtractionStatus, "medical_documents_status_check"),
        nullable=False,
        default=ExtractionStatus.PENDING,
    )
    extracted_json: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Serialized ExtractedDocumentData + extractionMethod; non-NULL only when SUCCESS",
    )
    summary_text: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="shortSummary on SUCCESS, failure reason on FAILED",
    )

    # Touched by every status write; the stale-run sweeper keys off it
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<MedicalDocument id={self.id} user={self.user_id} "
            f"status={self.extraction_status} file={self.filename!r}>"
        )


# ---------------------------------------------------------------------------
# SystemPrompt - system_prompts
# ---------------------------------------------------------------------------

class SystemPrompt(Base):
    """
    Editable model instructions, one active row per (prompt_type, language).
    Missing rows fall back to the hardcoded defaults in meddocs.llm.prompts.
    """

    __tablename__ = "system_prompts"
    __table_args__ = (
        UniqueConstraint("prompt_type", "language", name="uq_system_prompts_type_language"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)

    prompt_type: Mapped[PromptType] = mapped_column(
        _enum_column(PromptType, "system_prompts_type_check"),
        nullable=False,
    )
    language: Mapped[PromptLanguage] = mapped_column(
        _enum_column(PromptLanguage, "system_prompts_language_check"),
        nullable=False,
    )
    prompt_text: Mapped[str]           = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    version:   Mapped[int]  = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<SystemPrompt type={self.prompt_type} lang={self.language} "
            f"version={self.version} active={self.is_active}>"
        )
