from __future__ import annotations

import pytest

from hybridchat.services.blob_store import BlobStoreError, LocalBlobStore, validate_segment


@pytest.mark.anyio
async def test_local_store_writes_and_links(tmp_path):
    store = LocalBlobStore(tmp_path, "https://chat.example.com/")

    await store.upload("thread-1", "cat.png", b"png-bytes")

    assert (tmp_path / "thread-1" / "cat.png").read_bytes() == b"png-bytes"
    assert await store.get_url("thread-1", "cat.png") == (
        "https://chat.example.com/api/images/thread-1/cat.png"
    )


@pytest.mark.parametrize("segment", ["", "../etc", ".env", "a/b", "a..b", "x" * 201])
def test_rejects_unsafe_segments(segment: str) -> None:
    with pytest.raises(BlobStoreError):
        validate_segment(segment)


@pytest.mark.anyio
async def test_upload_rejects_traversal(tmp_path):
    store = LocalBlobStore(tmp_path / "images", "http://localhost:8000")

    with pytest.raises(BlobStoreError):
        await store.upload("..", "cat.png", b"data")
    assert not (tmp_path / "cat.png").exists()
