"""
System Prompt Admin - Pydantic Schemas
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from meddocs.schemas.documents import ErrorResponse, PromptLanguage, PromptType


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class SystemPromptOut(_CamelModel):
    id:          str
    prompt_type: PromptType
    language:    PromptLanguage
    prompt_text: str
    description: str | None = None
    is_active:   bool
    version:     int
    created_at:  datetime
    updated_at:  datetime


class SystemPromptListResponse(_CamelModel):
    success: bool = True
    prompts: list[SystemPromptOut]


class SystemPromptResponse(_CamelModel):
    success: bool = True
    prompt:  str


class SystemPromptUpdate(_CamelModel):
    prompt_text: str | None = None
    description: str | None = None


class SystemPromptUpdateResponse(_CamelModel):
    success: bool = True
    message: str = "System prompt updated"


class PromptErrors:
    @staticmethod
    def missing_prompt_text() -> ErrorResponse:
        return ErrorResponse(error="promptText is required", code="MISSING_PROMPT_TEXT")

    @staticmethod
    def unknown_prompt(prompt_type: str, language: str) -> ErrorResponse:
        return ErrorResponse(
            error=f"Unknown system prompt: {prompt_type}/{language}",
            code="PROMPT_NOT_FOUND",
        )
