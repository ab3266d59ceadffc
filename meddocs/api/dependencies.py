"""
Composed FastAPI Dependencies

Combines the DB session with the process-wide singletons built in the app
lifespan (file store, dispatcher, prompt store) into injectable objects.
Route handlers import from here, never from db/session or app.state directly.
"""

from __future__ import annotations

import uuid
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from meddocs.db.session import get_db
from meddocs.llm.prompts import PromptStore
from meddocs.services.dispatcher import PipelineDispatcher
from meddocs.services.ingestion import DocumentService
from meddocs.storage.local import LocalFileStore


def get_request_id(request: Request) -> str:
    """Set by the request middleware; generated here for direct ASGI calls."""
    request_id = getattr(request.state, "request_id", None)
    if request_id is None:
        request_id = uuid.uuid4().hex[:16]
        request.state.request_id = request_id
    return request_id


def get_file_store(request: Request) -> LocalFileStore:
    return request.app.state.file_store


def get_dispatcher(request: Request) -> PipelineDispatcher:
    return request.app.state.dispatcher


def get_prompt_store(request: Request) -> PromptStore:
    return request.app.state.prompt_store


def get_document_service(
    db:         Annotated[AsyncSession, Depends(get_db)],
    store:      Annotated[LocalFileStore, Depends(get_file_store)],
    dispatcher: Annotated[PipelineDispatcher, Depends(get_dispatcher)],
) -> DocumentService:
    return DocumentService(db=db, store=store, dispatcher=dispatcher)


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

DB        = Annotated[AsyncSession, Depends(get_db)]
RequestID = Annotated[str, Depends(get_request_id)]
Prompts   = Annotated[PromptStore, Depends(get_prompt_store)]
Service   = Annotated[DocumentService, Depends(get_document_service)]
