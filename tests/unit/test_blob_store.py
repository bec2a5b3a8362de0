"""
Unit tests for the local blob store.

Tests cover:
- Atomic upload, overwrite and temp file cleanup
- Extension resolution (per content type, extensionless fallback)
- Delete, rename and existence checks
- Key-ordered pagination
"""

import asyncio
import io
import os
import tempfile
from pathlib import Path

import pytest

from invoice_store.blob import LocalBlobStore
from invoice_store.blob.local import TEMP_PREFIX, TEMP_SUFFIX
from invoice_store.errors import (
    InvalidArgumentError,
    NotFoundError,
    UnsupportedContentTypeError,
)


def all_files(root):
    return sorted(p.relative_to(root).as_posix() for p in Path(root).rglob("*") if p.is_file())


class FailingStream(io.RawIOBase):
    """Binary stream that fails after producing some data."""

    def __init__(self):
        self.calls = 0

    def readable(self):
        return True

    def read(self, size=-1):
        self.calls += 1
        if self.calls == 1:
            return b"partial"
        raise OSError("disk on fire")


class TestLocalBlobStore:
    """Tests for LocalBlobStore."""

    @pytest.fixture
    def bucket_dir(self):
        """Create temporary bucket directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def blobs(self, bucket_dir):
        store = LocalBlobStore()
        store.define_bucket("invoices", bucket_dir)
        return store

    async def read(self, blobs, key):
        with await blobs.open_read("invoices", key) as f:
            return f.read()

    @pytest.mark.asyncio
    async def test_upload_and_read(self, blobs, bucket_dir):
        locator = await blobs.upload("invoices", "2026-02/invoice-1", b"%PDF-1", "application/pdf")

        assert locator == os.path.join(bucket_dir, "2026-02", "invoice-1.pdf")
        assert await self.read(blobs, "2026-02/invoice-1") == b"%PDF-1"

    @pytest.mark.asyncio
    async def test_upload_file_object(self, blobs):
        stream = io.BytesIO(b"<html></html>")
        stream.seek(5)
        await blobs.upload("invoices", "preview", stream, "text/html")
        assert await self.read(blobs, "preview") == b"<html></html>"

    @pytest.mark.asyncio
    async def test_overwrite_leaves_no_temp_files(self, blobs, bucket_dir):
        """The second upload wins and no temporary file remains."""
        await blobs.upload("invoices", "doc", b"first", "application/pdf")
        await blobs.upload("invoices", "doc", b"second", "application/pdf")

        assert await self.read(blobs, "doc") == b"second"
        assert all_files(bucket_dir) == ["doc.pdf"]

    @pytest.mark.asyncio
    async def test_failed_upload_cleans_up(self, blobs, bucket_dir):
        """A failing upload removes its temp file and keeps the old artifact."""
        await blobs.upload("invoices", "doc", b"original", "application/pdf")

        with pytest.raises(OSError):
            await blobs.upload("invoices", "doc", FailingStream(), "application/pdf")

        assert all_files(bucket_dir) == ["doc.pdf"]
        assert await self.read(blobs, "doc") == b"original"

    @pytest.mark.asyncio
    async def test_unsupported_content_type(self, blobs, bucket_dir):
        with pytest.raises(UnsupportedContentTypeError):
            await blobs.upload("invoices", "doc", b"data", "application/x-unknown")
        assert all_files(bucket_dir) == []

    @pytest.mark.asyncio
    async def test_dotted_key_leaves_other_key_alone(self, blobs, bucket_dir):
        """A key ending in an extension never touches the key without it."""
        await blobs.upload("invoices", "report", b"pdf", "application/pdf")
        await blobs.upload("invoices", "report.pdf", b"html", "text/html")

        assert all_files(bucket_dir) == ["report.pdf", "report.pdf.html"]
        assert await self.read(blobs, "report") == b"pdf"
        assert await self.read(blobs, "report.pdf") == b"html"
        assert (await blobs.list("invoices")).keys == ["report", "report.pdf"]

    @pytest.mark.asyncio
    async def test_rename_onto_dotted_key(self, blobs):
        await blobs.upload("invoices", "report", b"pdf", "application/pdf")
        await blobs.upload("invoices", "draft", b"html", "text/html")

        await blobs.rename("invoices", "draft", "report.pdf")

        assert await self.read(blobs, "report") == b"pdf"
        assert await self.read(blobs, "report.pdf") == b"html"

    @pytest.mark.asyncio
    async def test_reupload_with_other_type_keeps_both_files(self, blobs, bucket_dir):
        """Uploads only write their own file; reads prefer the first configured type."""
        await blobs.upload("invoices", "doc", b"html", "text/html")
        await blobs.upload("invoices", "doc", b"pdf", "application/pdf")

        assert all_files(bucket_dir) == ["doc.html", "doc.pdf"]
        assert await self.read(blobs, "doc") == b"pdf"
        assert (await blobs.list("invoices")).keys == ["doc"]

    @pytest.mark.asyncio
    async def test_concurrent_uploads_one_key(self, blobs, bucket_dir):
        """Racing uploads leave exactly one complete artifact and no temp files."""
        payloads = [f"version {i}".encode() * 1000 for i in range(10)]
        await asyncio.gather(
            *(blobs.upload("invoices", "doc", p, "application/pdf") for p in payloads)
        )

        assert all_files(bucket_dir) == ["doc.pdf"]
        assert await self.read(blobs, "doc") in payloads

    @pytest.mark.asyncio
    async def test_concurrent_uploads_mixed_types(self, blobs, bucket_dir):
        """Racing uploads under different content types never leave the key empty."""
        await asyncio.gather(
            blobs.upload("invoices", "doc", b"pdf", "application/pdf"),
            blobs.upload("invoices", "doc", b"html", "text/html"),
            blobs.upload("invoices", "doc", b"png", "image/png"),
        )

        assert all_files(bucket_dir) == ["doc.html", "doc.pdf", "doc.png"]
        assert await self.read(blobs, "doc") == b"pdf"

    @pytest.mark.asyncio
    async def test_extensionless_fallback(self, blobs, bucket_dir):
        """Files stored without an extension still resolve."""
        Path(bucket_dir, "old-invoice").write_bytes(b"legacy")

        assert await blobs.exists("invoices", "old-invoice")
        assert await self.read(blobs, "old-invoice") == b"legacy"

    @pytest.mark.asyncio
    async def test_exists(self, blobs):
        assert await blobs.exists("invoices", "doc") is False
        await blobs.upload("invoices", "doc", b"x", "image/png")
        assert await blobs.exists("invoices", "doc") is True
        assert await blobs.exists("unknown-bucket", "doc") is False

    @pytest.mark.asyncio
    async def test_open_read_missing(self, blobs):
        with pytest.raises(NotFoundError):
            await blobs.open_read("invoices", "nothing")

    @pytest.mark.asyncio
    async def test_delete(self, blobs):
        await blobs.upload("invoices", "doc", b"x", "application/pdf")
        await blobs.delete("invoices", "doc")

        assert await blobs.exists("invoices", "doc") is False
        with pytest.raises(NotFoundError):
            await blobs.delete("invoices", "doc")

    @pytest.mark.asyncio
    async def test_rename_keeps_content_type(self, blobs, bucket_dir):
        await blobs.upload("invoices", "draft", b"img", "image/jpeg")
        await blobs.rename("invoices", "draft", "2026-02/final")

        assert all_files(bucket_dir) == ["2026-02/final.jpg"]
        assert await self.read(blobs, "2026-02/final") == b"img"

    @pytest.mark.asyncio
    async def test_rename_errors(self, blobs):
        await blobs.upload("invoices", "doc", b"x", "application/pdf")

        with pytest.raises(InvalidArgumentError):
            await blobs.rename("invoices", "doc", "doc")
        with pytest.raises(NotFoundError):
            await blobs.rename("invoices", "missing", "other")

    @pytest.mark.asyncio
    async def test_list_pagination(self, blobs, bucket_dir):
        """Chaining pages lists every key once, in order, without extensions."""
        keys = ["2026-01/b", "2026-01/a", "2026-02/c", "legacy/d", "2026-02/e"]
        for key in keys:
            await blobs.upload("invoices", key, b"x", "application/pdf")
        Path(bucket_dir, "2026-01", f"{TEMP_PREFIX}abc{TEMP_SUFFIX}").write_bytes(b"tmp")

        listed = []
        cursor = None
        while True:
            page = await blobs.list("invoices", limit=2, cursor=cursor)
            listed.extend(page.keys)
            cursor = page.next_cursor
            if cursor is None:
                break

        assert listed == sorted(keys)

    @pytest.mark.asyncio
    async def test_list_prefix(self, blobs):
        for key in ["2026-01/a", "2026-02/b", "2026-02/c"]:
            await blobs.upload("invoices", key, b"x", "application/pdf")

        page = await blobs.list("invoices", prefix="2026-02/")
        assert page.keys == ["2026-02/b", "2026-02/c"]
        assert page.next_cursor is None

    @pytest.mark.asyncio
    async def test_list_invalid_limit(self, blobs):
        with pytest.raises(InvalidArgumentError):
            await blobs.list("invoices", limit=0)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["", "/abs", "../escape", "a/../b", "a//b", "dir/"])
    async def test_invalid_keys(self, blobs, key):
        with pytest.raises(InvalidArgumentError):
            await blobs.upload("invoices", key, b"x", "application/pdf")

    @pytest.mark.asyncio
    async def test_undefined_bucket(self, blobs):
        with pytest.raises(InvalidArgumentError):
            await blobs.upload("nope", "doc", b"x", "application/pdf")

    @pytest.mark.asyncio
    async def test_uri_for(self, blobs, bucket_dir):
        await blobs.upload("invoices", "doc", b"x", "application/pdf")

        uri = blobs.uri_for("invoices", "doc")
        assert uri.startswith("file://")
        assert uri.endswith("/doc.pdf")
        with pytest.raises(NotFoundError):
            blobs.uri_for("invoices", "missing")

    def test_define_bucket_creates_directory(self, bucket_dir):
        store = LocalBlobStore()
        target = os.path.join(bucket_dir, "new", "bucket")
        store.define_bucket("other", target)
        assert os.path.isdir(target)
