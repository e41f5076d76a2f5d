"""File-system attachment storage with SHA-256 based deduplication."""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import uuid
from pathlib import Path
from typing import BinaryIO

from ..core.models import StoredBlob

LOGGER = logging.getLogger(__name__)


class AttachmentStore:
    """Content-addressed blob store sharded by digest prefix.

    Files live at ``root/<d[0:2]>/<d[2:4]>/<digest><ext>``. Identical content
    always maps to the same path; a digest collision with a different size is
    written next to the original with a random suffix instead of replacing it.
    """

    def __init__(self, root: Path | str) -> None:
        """Create the store rooted at ``root``."""
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        """Directory holding the shard tree."""
        return self._root

    def store(
        self, name: str | None, content_type: str | None, data: bytes
    ) -> StoredBlob:
        """Persist ``data`` and return where it lives."""
        if not data:
            raise ValueError("Attachment payload cannot be empty")

        digest = compute_digest(data)
        target = self._build_path(digest, name)

        if target.exists():
            if target.stat().st_size == len(data):
                LOGGER.debug("Reused attachment %s from %s", name, target)
                return StoredBlob(path=str(target), digest=digest, is_new=False)
            LOGGER.warning(
                "Digest collision for %s at %s; writing to a suffixed path",
                name,
                target,
            )
            target = self._build_path(digest, name, suffix=uuid.uuid4().hex)

        _write_atomically(target, data)
        LOGGER.debug(
            "Stored attachment %s (%s, %d bytes) -> %s",
            name,
            content_type,
            len(data),
            target,
        )
        return StoredBlob(path=str(target), digest=digest, is_new=True)

    def open_read(self, path: Path | str) -> BinaryIO:
        """Open a stored attachment for reading."""
        candidate = Path(path)
        if not candidate.is_file():
            raise FileNotFoundError(f"Attachment not found: {candidate}")
        return candidate.open("rb")

    def delete(self, path: Path | str) -> None:
        """Remove a stored attachment; missing files are ignored."""
        candidate = Path(path)
        try:
            candidate.unlink()
        except FileNotFoundError:
            return
        LOGGER.debug("Deleted attachment %s", candidate)

    def total_size(self) -> int:
        """Return the number of bytes held by the store."""
        return sum(
            item.stat().st_size for item in self._root.rglob("*") if item.is_file()
        )

    def _build_path(
        self, digest: str, name: str | None, suffix: str | None = None
    ) -> Path:
        safe_name = name.strip() if name and name.strip() else "attachment"
        extension = Path(safe_name).suffix
        stem = digest if suffix is None else f"{digest}_{suffix}"
        return self._root / digest[:2] / digest[2:4] / f"{stem}{extension}"


def compute_digest(data: bytes) -> str:
    """Return the uppercase hex SHA-256 digest of ``data``."""
    return hashlib.sha256(data).hexdigest().upper()


def _write_atomically(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=target.parent, prefix=".incoming-")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(temp_name, target)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


__all__ = ["AttachmentStore", "compute_digest"]
