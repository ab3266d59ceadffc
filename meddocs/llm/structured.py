"""
Structured-Data Extractor - medical text → ExtractedDocumentData

Flow:
  1. Short-circuit to None when the text is too short (< 10 trimmed chars)
     or no AI credential is configured; the model is never called.
  2. Resolve the system prompt for (document_extraction, language).
  3. Frame the user message: doc type hint, locale, text truncated to
     extraction_input_chars.
  4. Call the chat model with JSON-object output and a bounded token budget,
     under a per-attempt deadline.
  5. Parse + backfill via ExtractedDocumentData. A malformed response is a
     retryable failure like any other.
  6. RetryPolicy: 3 attempts, rate limits back off 5 s then 10 s.

Never raises: every failure path returns None, and the pipeline maps None
to a single FAILED reason.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

from pydantic import ValidationError

from meddocs.core.config import settings
from meddocs.llm.prompts import PromptStore
from meddocs.llm.retry import RetryPolicy, exponential_backoff
from meddocs.schemas.documents import (
    DocType,
    ExtractedDocumentData,
    PromptLanguage,
    PromptType,
)

logger = logging.getLogger(__name__)

MIN_INPUT_CHARS = 10


class StructuredOutputError(ValueError):
    """The model response was not a JSON object matching the payload shape."""


def build_user_message(text: str, doc_type: DocType, language: PromptLanguage, max_chars: int) -> str:
    locale = "Israel/Hebrew" if language is PromptLanguage.HE else "English"
    return (
        f"Document type hint: {doc_type.value}\n"
        f"Locale: {locale}\n\n"
        f"Extracted text:\n{text[:max_chars]}\n\n"
        "Respond with valid JSON only."
    )


def parse_payload(content: str | None) -> ExtractedDocumentData:
    """Parse a raw model response; raises StructuredOutputError on anything unusable."""
    if not content or not content.strip():
        raise StructuredOutputError("Empty model response")

    raw = content.strip()
    # Some OpenAI-compatible gateways wrap JSON mode output in a code fence
    if raw.startswith("```"):
        raw = raw.strip("`")
        if raw.lower().startswith("json"):
            raw = raw[4:]

    try:
        parsed: Any = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StructuredOutputError(f"Invalid JSON from model: {exc}") from exc
    if not isinstance(parsed, dict):
        raise StructuredOutputError(f"Expected a JSON object, got {type(parsed).__name__}")

    # The pipeline records how the text was obtained; ignore any model echo
    parsed.pop("extractionMethod", None)
    parsed.pop("extraction_method", None)

    try:
        return ExtractedDocumentData.model_validate(parsed)
    except ValidationError as exc:
        raise StructuredOutputError(f"Payload failed validation: {exc.error_count()} errors") from exc


class StructuredDataExtractor:
    """
    Usage::

        extractor = build_structured_extractor()
        data = await extractor.extract_structured(text, DocType.BLOOD_TEST, "he")

    `client` is an openai.AsyncOpenAI (or any object exposing
    `chat.completions.create`); None disables structured extraction.
    """

    def __init__(
        self,
        client,
        prompts:         PromptStore | None = None,
        model:           str | None = None,
        max_tokens:      int | None = None,
        temperature:     float | None = None,
        timeout_seconds: float | None = None,
        max_input_chars: int | None = None,
        retry_policy:    RetryPolicy | None = None,
    ) -> None:
        self._client          = client
        self._prompts         = prompts or PromptStore()
        self._model           = model or settings.llm_model
        self._max_tokens      = max_tokens or settings.llm_max_tokens
        self._temperature     = settings.llm_temperature if temperature is None else temperature
        self._timeout         = timeout_seconds or settings.llm_timeout_seconds
        self._max_input_chars = max_input_chars or settings.extraction_input_chars
        self._retry           = retry_policy or RetryPolicy(
            max_attempts=settings.llm_max_attempts,
            backoff=exponential_backoff(settings.llm_backoff_base_seconds),
        )

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def extract_structured(
        self,
        raw_text: str,
        doc_type: DocType | str,
        language: PromptLanguage | str | None = PromptLanguage.EN,
    ) -> ExtractedDocumentData | None:
        text = (raw_text or "").strip()
        if len(text) < MIN_INPUT_CHARS:
            logger.info("Structured extraction skipped | reason=short_text chars=%d", len(text))
            return None
        if not self.enabled:
            logger.warning("Structured extraction skipped | reason=no_ai_credential")
            return None

        doc_type = doc_type if isinstance(doc_type, DocType) else DocType.parse(doc_type)
        if not isinstance(language, PromptLanguage):
            language = PromptLanguage.from_request(language)

        t0 = time.monotonic()
        try:
            system_prompt = await self._prompts.get_prompt(PromptType.DOCUMENT_EXTRACTION, language)
            user_message  = build_user_message(text, doc_type, language, self._max_input_chars)

            async def _attempt(attempt: int) -> ExtractedDocumentData:
                return await self._call_model(system_prompt, user_message, attempt)

            data = await self._retry.run(_attempt, label="Structured extraction")
        except Exception as exc:
            logger.error(
                "Structured extraction failed | doc_type=%s lang=%s elapsed_ms=%.0f error=%s: %s",
                doc_type.value, language.value, (time.monotonic() - t0) * 1000,
                type(exc).__name__, exc,
            )
            return None

        logger.info(
            "Structured extraction ok | doc_type=%s lang=%s labs=%d confidence=%.2f elapsed_ms=%.0f",
            doc_type.value, language.value, len(data.labs), data.confidence,
            (time.monotonic() - t0) * 1000,
        )
        return data

    async def _call_model(self, system_prompt: str, user_message: str, attempt: int) -> ExtractedDocumentData:
        t_api = time.monotonic()
        response = await asyncio.wait_for(
            self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
                response_format={"type": "json_object"},
                max_tokens=self._max_tokens,
                temperature=self._temperature,
            ),
            timeout=self._timeout,
        )
        content = response.choices[0].message.content if response.choices else None
        logger.debug(
            "Structured extraction call | attempt=%d api_ms=%.0f chars=%d",
            attempt, (time.monotonic() - t_api) * 1000, len(content or ""),
        )
        return parse_payload(content)


def build_structured_extractor(prompts: PromptStore | None = None) -> StructuredDataExtractor:
    """Construct the extractor with a real AsyncOpenAI client, or none when no key is set."""
    client = None
    if settings.ai_enabled:
        from openai import AsyncOpenAI

        client = AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url or None,
            timeout=settings.llm_timeout_seconds,
            max_retries=0,   # RetryPolicy owns retries
        )
    return StructuredDataExtractor(client=client, prompts=prompts)
