"""
Unit Tests - collect_recent_findings
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from meddocs.schemas.documents import ExtractionStatus
from meddocs.services.findings import collect_recent_findings
from tests.conftest import OTHER_USER_ID, TEST_USER_ID

pytestmark = pytest.mark.unit


def _lab(name: str, flag: str | None = None) -> dict:
    return {"testName": name, "value": "1", "unit": "x", "flag": flag}


async def test_collects_labs_and_summaries_from_success_documents(make_document, db_session):
    await make_document(
        status=ExtractionStatus.SUCCESS,
        extracted={"labs": [_lab("Hemoglobin", "normal")], "shortSummary": "Normal CBC"},
        summary_text="Normal CBC",
    )
    await make_document(status=ExtractionStatus.FAILED, summary_text="Could not extract text")
    await make_document(
        user_id=OTHER_USER_ID,
        status=ExtractionStatus.SUCCESS,
        extracted={"labs": [_lab("Glucose")]},
        summary_text="Someone else",
    )

    findings = await collect_recent_findings(db_session, TEST_USER_ID)

    assert findings.document_count == 1
    assert [lab.test_name for lab in findings.labs] == ["Hemoglobin"]
    assert findings.summaries == ["Normal CBC"]
    assert findings.has_critical_findings is False


@pytest.mark.parametrize(
    "flag, summary",
    [
        ("CRITICAL high", "Routine"),
        ("panic value", "Routine"),
        ("normal", "Requires immediate follow-up"),
        ("normal", "Emergency referral"),
    ],
)
async def test_critical_markers(make_document, db_session, flag, summary):
    await make_document(
        status=ExtractionStatus.SUCCESS,
        extracted={"labs": [_lab("Potassium", flag)]},
        summary_text=summary,
    )

    findings = await collect_recent_findings(db_session, TEST_USER_ID)

    assert findings.has_critical_findings is True


async def test_limit_and_deleted_documents(make_document, db_session):
    now = datetime.now(timezone.utc)
    for i in range(4):
        await make_document(
            status=ExtractionStatus.SUCCESS,
            extracted={"labs": [_lab(f"Test {i}")]},
            summary_text=f"Summary {i}",
            uploaded_at=now - timedelta(days=i),
        )
    await make_document(
        status=ExtractionStatus.SUCCESS,
        extracted={"labs": [_lab("Deleted")]},
        summary_text="Deleted",
        deleted_at=now,
    )

    findings = await collect_recent_findings(db_session, TEST_USER_ID, limit=2)

    assert findings.document_count == 2
    assert findings.summaries == ["Summary 0", "Summary 1"]
