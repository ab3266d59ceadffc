"""
Unit Tests - LocalFileStore
"""

from __future__ import annotations

import re

import pytest

from meddocs.storage.local import LocalFileStore

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    "original, suffix",
    [
        ("report.PDF", ".pdf"),
        ("scan.jpeg", ".jpeg"),
        ("../../etc/passwd", ""),
        ("no_extension", ""),
        (None, ""),
        ("weird.p$f", ""),
    ],
)
def test_storage_name(original, suffix):
    name = LocalFileStore.storage_name(original)
    assert re.fullmatch(r"[0-9a-f]{32}" + re.escape(suffix), name)


async def test_save_exists_remove(tmp_path):
    store = LocalFileStore(tmp_path / "uploads")

    first  = await store.save(b"same bytes", "report.pdf")
    second = await store.save(b"same bytes", "report.pdf")

    assert first.path != second.path
    assert first.size_bytes == 10
    assert store.exists(first.path)
    assert (tmp_path / "uploads").is_dir()

    assert store.remove(first.path) is True
    assert not store.exists(first.path)
    assert store.remove(first.path) is False
