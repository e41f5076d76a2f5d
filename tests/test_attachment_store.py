"""Tests for the content-addressed attachment store."""

from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from mailsync.storage import AttachmentStore, compute_digest


def test_store_shards_by_digest_and_keeps_extension(tmp_path: Path) -> None:
    store = AttachmentStore(tmp_path)
    payload = b"quarterly report"

    blob = store.store("report.PDF", "application/pdf", payload)

    digest = hashlib.sha256(payload).hexdigest().upper()
    assert blob.digest == digest
    assert blob.is_new is True
    assert Path(blob.path) == tmp_path / digest[:2] / digest[2:4] / f"{digest}.PDF"
    assert Path(blob.path).read_bytes() == payload


def test_identical_content_is_written_once(tmp_path: Path) -> None:
    store = AttachmentStore(tmp_path)

    first = store.store("a.txt", "text/plain", b"same bytes")
    second = store.store("a.txt", "text/plain", b"same bytes")

    assert first.path == second.path
    assert second.is_new is False
    assert store.total_size() == len(b"same bytes")


def test_collision_with_different_size_gets_suffixed_path(tmp_path: Path) -> None:
    store = AttachmentStore(tmp_path)
    payload = b"genuine"
    digest = compute_digest(payload)
    squatter = tmp_path / digest[:2] / digest[2:4] / f"{digest}.bin"
    squatter.parent.mkdir(parents=True)
    squatter.write_bytes(b"different length content")

    blob = store.store("x.bin", None, payload)

    assert blob.path != str(squatter)
    assert Path(blob.path).read_bytes() == payload
    assert squatter.read_bytes() == b"different length content"


def test_empty_payload_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        AttachmentStore(tmp_path).store("empty.txt", "text/plain", b"")


def test_open_read_and_delete(tmp_path: Path) -> None:
    store = AttachmentStore(tmp_path)
    blob = store.store(None, None, b"content")

    with store.open_read(blob.path) as handle:
        assert handle.read() == b"content"
    store.delete(blob.path)
    store.delete(blob.path)

    with pytest.raises(FileNotFoundError):
        store.open_read(blob.path)
