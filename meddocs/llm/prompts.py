"""
System Prompts - DB-backed with hardcoded defaults

Resolution order for (prompt_type, language):
  1. Active row in system_prompts
  2. Hardcoded DEFAULT_PROMPTS entry (no row, inactive row, or DB error)

Updating a prompt bumps its version; the first update for a key inserts
version 1. Defaults are seeded at startup for keys that have no row yet, so
admins can edit them in place.
"""

from __future__ import annotations

import logging
from contextlib import AbstractAsyncContextManager
from typing import Callable, Final

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from meddocs.models.documents import SystemPrompt
from meddocs.schemas.documents import PromptLanguage, PromptType

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Hardcoded defaults
# ---------------------------------------------------------------------------

_EXTRACTION_EN: Final[str] = """\
You extract structured info from medical documents.
Rules:
- Do not invent values; if unsure, omit or set null
- Output JSON only per schema
- Preserve units as written
- For flags, use only what's explicitly stated (High/Low/Normal/H/L) or null

Output schema:
{
  "docTypeGuess": "BLOOD_TEST|IMAGING|DOCTOR_NOTE|OTHER",
  "docDateGuess": "YYYY-MM-DD or null",
  "labs": [{"testName": "", "value": "", "unit": "", "refRange": null, "flag": null, "resultDate": null}],
  "medsMentioned": ["medication names"],
  "diagnosesMentioned": ["diagnoses"],
  "followupStatements": ["follow-up statements"],
  "shortSummary": "up to 700 chars",
  "confidence": 0.0-1.0
}"""

_EXTRACTION_HE: Final[str] = """\
אתה מחלץ מידע מובנה ממסמכים רפואיים.
כללים:
- אל תמציא ערכים; אם לא בטוח, השמט או השתמש ב-null
- החזר JSON בלבד לפי הסכמה
- שמור על יחידות כפי שנכתבו
- לדגלים (flags), השתמש רק במה שכתוב במפורש (High/Low/Normal/H/L) או null

סכמת הפלט:
{
  "docTypeGuess": "BLOOD_TEST|IMAGING|DOCTOR_NOTE|OTHER",
  "docDateGuess": "YYYY-MM-DD או null",
  "labs": [{"testName": "", "value": "", "unit": "", "refRange": null, "flag": null, "resultDate": null}],
  "medsMentioned": ["שמות תרופות"],
  "diagnosesMentioned": ["אבחנות"],
  "followupStatements": ["הצהרות מעקב"],
  "shortSummary": "עד 700 תווים",
  "confidence": 0.0-1.0
}"""

DEFAULT_PROMPTS: Final[dict[tuple[PromptType, PromptLanguage], str]] = {
    (PromptType.DOCUMENT_EXTRACTION, PromptLanguage.EN): _EXTRACTION_EN,
    (PromptType.DOCUMENT_EXTRACTION, PromptLanguage.HE): _EXTRACTION_HE,
}


def default_prompt(prompt_type: PromptType, language: PromptLanguage) -> str:
    return DEFAULT_PROMPTS[(prompt_type, language)]


# ---------------------------------------------------------------------------
# PromptStore
# ---------------------------------------------------------------------------

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class PromptStore:
    """
    Read and edit system prompts.

    Every method accepts an explicit `db` session (request handlers pass the
    request session). When omitted, a short-lived session is opened from
    `session_factory` - this is how the pipeline loads prompts outside a
    request.
    """

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self._session_factory = session_factory

    def _session(self) -> AbstractAsyncContextManager[AsyncSession]:
        if self._session_factory is None:
            from meddocs.db.session import get_pipeline_db
            return get_pipeline_db()
        return self._session_factory()

    async def get_prompt(
        self,
        prompt_type: PromptType,
        language:    PromptLanguage,
        db:          AsyncSession | None = None,
    ) -> str:
        """Active prompt text; falls back to the default on a miss or any DB error."""
        try:
            if db is not None:
                row = await self._fetch(db, prompt_type, language, active_only=True)
            else:
                async with self._session() as session:
                    row = await self._fetch(session, prompt_type, language, active_only=True)
        except SQLAlchemyError as exc:
            logger.error(
                "PromptStore | lookup failed, using default | type=%s lang=%s error=%s",
                prompt_type.value, language.value, exc,
            )
            return default_prompt(prompt_type, language)

        if row is None:
            logger.debug(
                "PromptStore | no active row, using default | type=%s lang=%s",
                prompt_type.value, language.value,
            )
            return default_prompt(prompt_type, language)
        return row.prompt_text

    async def get_row(
        self,
        db:          AsyncSession,
        prompt_type: PromptType,
        language:    PromptLanguage,
    ) -> SystemPrompt | None:
        return await self._fetch(db, prompt_type, language, active_only=False)

    async def list_prompts(self, db: AsyncSession) -> list[SystemPrompt]:
        result = await db.execute(
            select(SystemPrompt).order_by(SystemPrompt.prompt_type, SystemPrompt.language)
        )
        return list(result.scalars().all())

    async def update_prompt(
        self,
        db:          AsyncSession,
        prompt_type: PromptType,
        language:    PromptLanguage,
        prompt_text: str,
        description: str | None = None,
    ) -> SystemPrompt:
        row = await self._fetch(db, prompt_type, language, active_only=False)
        if row is None:
            row = SystemPrompt(
                prompt_type=prompt_type,
                language=language,
                prompt_text=prompt_text,
                description=description,
                is_active=True,
                version=1,
            )
            db.add(row)
        else:
            row.prompt_text = prompt_text
            row.description = description
            row.version     = row.version + 1
        await db.flush()

        logger.info(
            "PromptStore | prompt updated | type=%s lang=%s version=%d",
            prompt_type.value, language.value, row.version,
        )
        return row

    async def seed_defaults(self, db: AsyncSession) -> int:
        """Insert defaults for keys with no row. Returns the number inserted."""
        inserted = 0
        for (prompt_type, language), text in DEFAULT_PROMPTS.items():
            if await self._fetch(db, prompt_type, language, active_only=False) is not None:
                continue
            db.add(SystemPrompt(
                prompt_type=prompt_type,
                language=language,
                prompt_text=text,
                description=f"Default {prompt_type.value} prompt for {language.value}",
                is_active=True,
                version=1,
            ))
            inserted += 1
            logger.info("PromptStore | seeded default | type=%s lang=%s", prompt_type.value, language.value)
        await db.flush()
        return inserted

    @staticmethod
    async def _fetch(
        db:          AsyncSession,
        prompt_type: PromptType,
        language:    PromptLanguage,
        active_only: bool,
    ) -> SystemPrompt | None:
        stmt = select(SystemPrompt).where(
            SystemPrompt.prompt_type == prompt_type,
            SystemPrompt.language == language,
        )
        if active_only:
            stmt = stmt.where(SystemPrompt.is_active.is_(True))
        result = await db.execute(stmt.limit(1))
        return result.scalar_one_or_none()
