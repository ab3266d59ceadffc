"""
Local File Store - uploads on disk

Layout:
    <uploads_dir>/<32 random hex chars><original extension>

The stored name is generated server-side and never derived from client
input other than the extension, so two uploads with the same original
filename never collide and no path component of the client's name reaches
the filesystem. The original name lives only in the database row.
"""

from __future__ import annotations

import asyncio
import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path

from meddocs.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredFile:
    """Returned by LocalFileStore.save()."""
    path:       str
    size_bytes: int


class LocalFileStore:
    def __init__(self, root: str | os.PathLike | None = None) -> None:
        self._root = Path(root if root is not None else settings.uploads_dir)

    @property
    def root(self) -> Path:
        return self._root

    @staticmethod
    def storage_name(original_filename: str | None) -> str:
        ext = Path(original_filename or "").suffix.lower()
        # Extensions longer than this are not real extensions
        if len(ext) > 10 or not ext[1:].isalnum():
            ext = ""
        return f"{secrets.token_hex(16)}{ext}"

    async def save(self, content: bytes, original_filename: str | None) -> StoredFile:
        path = self._root / self.storage_name(original_filename)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write, path, content)
        logger.info("File stored | path=%s size=%d", path, len(content))
        return StoredFile(path=str(path), size_bytes=len(content))

    def _write(self, path: Path, content: bytes) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)

    def exists(self, path: str) -> bool:
        return Path(path).is_file()

    def remove(self, path: str) -> bool:
        """Best-effort unlink. Returns False (and logs) when nothing was removed."""
        try:
            Path(path).unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("File removal failed | path=%s error=%s", path, exc)
            return False
