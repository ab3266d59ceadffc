"""
System Prompt Admin API
/api/admin/system-prompts

  GET  /                        every stored prompt row
  GET  /{type}/{language}       active prompt text (falls back to the default)
  PUT  /{type}/{language}       replace text, bump version (insert if missing)
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, status

from meddocs.api.dependencies import DB, Prompts
from meddocs.schemas.documents import ErrorResponse, PromptLanguage, PromptType
from meddocs.schemas.prompts import (
    PromptErrors,
    SystemPromptListResponse,
    SystemPromptOut,
    SystemPromptResponse,
    SystemPromptUpdate,
    SystemPromptUpdateResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin/system-prompts",
    tags=["System Prompts"],
)


def _resolve(prompt_type: str, language: str) -> tuple[PromptType, PromptLanguage]:
    try:
        return PromptType(prompt_type), PromptLanguage(language)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=PromptErrors.unknown_prompt(prompt_type, language).body(),
        )


@router.get("", response_model=SystemPromptListResponse, summary="List stored system prompts")
async def list_prompts(db: DB, prompts: Prompts) -> SystemPromptListResponse:
    rows = await prompts.list_prompts(db)
    return SystemPromptListResponse(prompts=[SystemPromptOut.model_validate(r) for r in rows])


@router.get(
    "/{prompt_type}/{language}",
    response_model=SystemPromptResponse,
    summary="Get the prompt text in effect",
    responses={404: {"model": ErrorResponse}},
)
async def get_prompt(prompt_type: str, language: str, db: DB, prompts: Prompts) -> SystemPromptResponse:
    ptype, lang = _resolve(prompt_type, language)
    return SystemPromptResponse(prompt=await prompts.get_prompt(ptype, lang, db=db))


@router.put(
    "/{prompt_type}/{language}",
    response_model=SystemPromptUpdateResponse,
    summary="Replace a system prompt",
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def update_prompt(
    prompt_type: str,
    language:    str,
    body:        SystemPromptUpdate,
    db:          DB,
    prompts:     Prompts,
) -> SystemPromptUpdateResponse:
    ptype, lang = _resolve(prompt_type, language)
    if not body.prompt_text or not body.prompt_text.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=PromptErrors.missing_prompt_text().body(),
        )
    await prompts.update_prompt(db, ptype, lang, body.prompt_text, body.description)
    return SystemPromptUpdateResponse()
