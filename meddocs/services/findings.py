"""
Recent findings - lab results and summaries from a user's latest documents.

Reads the newest non-deleted SUCCESS documents and flattens their labs and
summaries. A lab flag mentioning critical/urgent/panic, or a summary
mentioning critical/urgent/emergency/immediate, raises hasCriticalFindings.
"""

from __future__ import annotations

import json
import logging
import re

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from meddocs.models.documents import MedicalDocument
from meddocs.schemas.documents import ExtractedDocumentData, ExtractionStatus, RecentFindings

logger = logging.getLogger(__name__)

_CRITICAL_FLAG    = re.compile(r"critical|urgent|panic", re.IGNORECASE)
_CRITICAL_SUMMARY = re.compile(r"critical|urgent|emergency|immediate", re.IGNORECASE)


async def collect_recent_findings(db: AsyncSession, user_id: str, limit: int = 5) -> RecentFindings:
    result = await db.execute(
        select(MedicalDocument)
        .where(
            MedicalDocument.user_id == user_id,
            MedicalDocument.deleted_at.is_(None),
            MedicalDocument.extraction_status == ExtractionStatus.SUCCESS,
        )
        .order_by(MedicalDocument.uploaded_at.desc())
        .limit(limit)
    )
    documents = result.scalars().all()

    findings = RecentFindings(document_count=len(documents))
    for doc in documents:
        if doc.extracted_json:
            try:
                data = ExtractedDocumentData.model_validate(json.loads(doc.extracted_json))
            except (json.JSONDecodeError, ValidationError) as exc:
                logger.warning("Findings | unreadable payload | doc=%s error=%s", doc.id, exc)
            else:
                findings.labs.extend(data.labs)
                if any(lab.flag and _CRITICAL_FLAG.search(lab.flag) for lab in data.labs):
                    findings.has_critical_findings = True

        if doc.summary_text:
            findings.summaries.append(doc.summary_text)
            if _CRITICAL_SUMMARY.search(doc.summary_text):
                findings.has_critical_findings = True

    return findings
