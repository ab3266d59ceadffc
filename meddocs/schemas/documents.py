"""
Medical Documents - Pydantic Schemas and Closed Enums

Covers:
  - The closed sets stored on a document row (type, extraction status,
    extraction method) and for configurable prompts
  - ExtractedDocumentData, the structured payload produced by the model
  - Request/response bodies of /api/medical-documents
  - The {error, code} error envelope and its factories

Wire format is camelCase (mobile client contract); Python attributes are
snake_case. Every model accepts either form on input and dumps camelCase via
model_dump(by_alias=True).
"""

from __future__ import annotations

import math
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Upload limits - enforced before any row is created
# ---------------------------------------------------------------------------

ALLOWED_MIME_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "image/jpeg",
        "image/jpg",
        "image/png",
    }
)


# ---------------------------------------------------------------------------
# Closed sets
# ---------------------------------------------------------------------------

class DocType(str, Enum):
    BLOOD_TEST  = "BLOOD_TEST"
    IMAGING     = "IMAGING"
    DOCTOR_NOTE = "DOCTOR_NOTE"
    OTHER       = "OTHER"

    @classmethod
    def parse(cls, value: str | None) -> "DocType":
        """Unrecognized or missing values fall back to OTHER."""
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


class ExtractionStatus(str, Enum):
    """
    Maps to medical_documents.extraction_status.
    Transitions: PENDING → PROCESSING → SUCCESS | FAILED
    Reprocess:   SUCCESS | FAILED → PENDING
    """
    PENDING    = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS    = "SUCCESS"
    FAILED     = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ExtractionStatus.SUCCESS, ExtractionStatus.FAILED)


class ExtractionMethod(str, Enum):
    EMBEDDED_TEXT = "embedded_text"
    OCR           = "ocr"
    NONE          = "none"


class PromptType(str, Enum):
    DOCUMENT_EXTRACTION = "document_extraction"


class PromptLanguage(str, Enum):
    EN = "en"
    HE = "he"

    @classmethod
    def from_request(cls, language: str | None) -> "PromptLanguage":
        """'he' selects Hebrew; anything else is English."""
        return cls.HE if language == "he" else cls.EN


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ---------------------------------------------------------------------------
# Structured extraction payload
# ---------------------------------------------------------------------------

class LabResult(_CamelModel):
    """One lab line as read by the model; order is the model's order."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    test_name:   str = ""
    value:       str = ""
    unit:        str = ""
    ref_range:   str | None = None
    flag:        str | None = None
    result_date: str | None = None

    @field_validator("test_name", "value", "unit", mode="before")
    @classmethod
    def _required_text(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("ref_range", "flag", "result_date", mode="before")
    @classmethod
    def _optional_text(cls, v: Any) -> str | None:
        return None if v is None else str(v)


class ExtractedDocumentData(_CamelModel):
    """
    Structured payload parsed from the model response.

    Missing arrays become [], a missing summary becomes "", and a missing,
    non-numeric or NaN/infinite confidence becomes 0.5. Duplicates in the
    string lists are kept. extraction_method is set by the pipeline, not read
    from the model (see parse_payload).
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    doc_type_guess:      str | None = None
    doc_date_guess:      str | None = None
    labs:                list[LabResult] = Field(default_factory=list)
    meds_mentioned:      list[str] = Field(default_factory=list)
    diagnoses_mentioned: list[str] = Field(default_factory=list)
    followup_statements: list[str] = Field(default_factory=list)
    short_summary:       str = ""
    confidence:          float = 0.5
    extraction_method:   ExtractionMethod | None = None

    @field_validator("labs", mode="before")
    @classmethod
    def _labs(cls, v: Any) -> list:
        if not isinstance(v, list):
            return []
        return [item for item in v if isinstance(item, dict)]

    @field_validator("meds_mentioned", "diagnoses_mentioned", "followup_statements", mode="before")
    @classmethod
    def _string_list(cls, v: Any) -> list[str]:
        if not isinstance(v, list):
            return []
        return [str(item) for item in v if item is not None]

    @field_validator("short_summary", mode="before")
    @classmethod
    def _summary(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("doc_type_guess", "doc_date_guess", mode="before")
    @classmethod
    def _guess(cls, v: Any) -> str | None:
        return None if v is None else str(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v: Any) -> float:
        if isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v):
            return 0.5
        return min(max(float(v), 0.0), 1.0)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# ---------------------------------------------------------------------------
# Responses - /api/medical-documents
# ---------------------------------------------------------------------------

class UploadedDocument(_CamelModel):
    id:                str
    filename:          str
    doc_type:          DocType
    extraction_status: ExtractionStatus
    uploaded_at:       datetime


class UploadResponse(_CamelModel):
    success:    bool = True
    document:   UploadedDocument
    request_id: str


class MultiUploadResponse(_CamelModel):
    success:    bool = True
    documents:  list[UploadedDocument]
    count:      int
    request_id: str


class DocumentListItem(_CamelModel):
    """List rows omit the heavy extracted payload."""
    id:                str
    filename:          str
    doc_type:          DocType
    size_bytes:        int
    uploaded_at:       datetime
    extraction_status: ExtractionStatus
    summary_text:      str | None = None


class DocumentListResponse(_CamelModel):
    documents: list[DocumentListItem]


class DocumentDetail(_CamelModel):
    id:                str
    filename:          str
    doc_type:          DocType
    mime_type:         str
    size_bytes:        int
    uploaded_at:       datetime
    extraction_status: ExtractionStatus
    extracted_data:    dict[str, Any] | None = None
    summary_text:      str | None = None


class DocumentDetailResponse(_CamelModel):
    document: DocumentDetail


class ReprocessRequest(_CamelModel):
    user_id:  str | None = None
    language: str | None = "en"


class ReprocessResponse(_CamelModel):
    success:     bool = True
    message:     str = "Document reprocessing started"
    document_id: str


class DeleteRequest(_CamelModel):
    user_id: str | None = None


class SuccessResponse(_CamelModel):
    success: bool = True


class RecentFindings(_CamelModel):
    labs:                  list[LabResult] = Field(default_factory=list)
    summaries:             list[str] = Field(default_factory=list)
    has_critical_findings: bool = False
    document_count:        int = 0


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------

class ErrorResponse(_CamelModel):
    """
    Uniform error body for every 4xx/5xx response.
    Clients switch on `code`; `error` is human-readable.
    """
    error:      str
    code:       str
    request_id: str | None = None

    def body(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class UploadErrors:
    """Factories for every documented error case (keeps route handlers thin)."""

    @staticmethod
    def no_file(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error="No file uploaded. Please select a file to upload.",
            code="NO_FILE",
            request_id=request_id,
        )

    @staticmethod
    def no_files(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error="No files uploaded. Please select files to upload.",
            code="NO_FILES",
            request_id=request_id,
        )

    @staticmethod
    def missing_user_id(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(error="User ID is required", code="MISSING_USER_ID", request_id=request_id)

    @staticmethod
    def file_too_large(max_bytes: int, request_id: str | None = None) -> ErrorResponse:
        max_mb = max_bytes // (1024 * 1024)
        return ErrorResponse(
            error=f"File too large. Maximum size is {max_mb}MB",
            code="FILE_TOO_LARGE",
            request_id=request_id,
        )

    @staticmethod
    def too_many_files(max_files: int, request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error=f"Too many files. Maximum is {max_files} files per upload.",
            code="TOO_MANY_FILES",
            request_id=request_id,
        )

    @staticmethod
    def invalid_file_type(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error="Invalid file type. Only PDF, JPG, and PNG files are allowed.",
            code="INVALID_FILE_TYPE",
            request_id=request_id,
        )

    @staticmethod
    def upload_error(message: str | None, request_id: str) -> ErrorResponse:
        return ErrorResponse(
            error=message or "Upload failed. Please try again.",
            code="UPLOAD_ERROR",
            request_id=request_id,
        )

    @staticmethod
    def document_not_found() -> ErrorResponse:
        return ErrorResponse(error="Document not found", code="DOCUMENT_NOT_FOUND")

    @staticmethod
    def file_not_found() -> ErrorResponse:
        """Reprocess: the stored original is gone."""
        return ErrorResponse(error="Original file not found on server", code="FILE_NOT_FOUND")

    @staticmethod
    def stored_file_missing() -> ErrorResponse:
        """File retrieval: the row exists but the bytes do not."""
        return ErrorResponse(error="File not found on server", code="FILE_NOT_FOUND")

    @staticmethod
    def already_processing() -> ErrorResponse:
        return ErrorResponse(error="Document is already being processed", code="ALREADY_PROCESSING")

    @staticmethod
    def internal_error(request_id: str | None) -> ErrorResponse:
        return ErrorResponse(
            error="An unexpected error occurred.",
            code="INTERNAL_ERROR",
            request_id=request_id,
        )
