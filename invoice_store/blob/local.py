"""
File-backed blob store for exported invoice artifacts.

Buckets map to directories; an object key maps to a file path under the
bucket directory plus an extension chosen from the content type:

    <bucket dir>/<object key><extension>
    e.g. /data/blobs/invoices/2026-02/invoice-0000000042-date-2026-02-20.pdf

Keys may contain "/" to form sub-directories. Reads resolve a key by
trying every known extension, then the bare key (artifacts written before
extensions were introduced).

Invariants:
    - An artifact appears under its key only when fully written
      (temporary sibling file + os.replace)
    - Temporary files are removed on every failure path
    - Temporary files are never listed or resolved as artifacts
    - Uploads never touch files other than their own target; a key stored
      under several content types resolves to the first configured extension

How to change safely:
    - Adding a content type is safe; removing one hides existing artifacts
      from list() (their extension is no longer stripped)
    - Keep the temporary file prefix/suffix distinct from real keys
"""

from __future__ import annotations

import asyncio
import bisect
import logging
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import BinaryIO, NamedTuple

from ..errors import InvalidArgumentError, NotFoundError, UnsupportedContentTypeError

logger = logging.getLogger(__name__)

TEMP_PREFIX = ".upload-"
TEMP_SUFFIX = ".tmp"

DEFAULT_CONTENT_TYPES = {
    "application/pdf": ".pdf",
    "text/html": ".html",
    "image/png": ".png",
    "image/jpeg": ".jpg",
}


class BlobList(NamedTuple):
    """One page of object keys; next_cursor is None on the last page."""

    keys: list[str]
    next_cursor: str | None


def _is_temp_file(name: str) -> bool:
    return name.startswith(TEMP_PREFIX) and name.endswith(TEMP_SUFFIX)


class LocalBlobStore:
    """Blob storage on the local filesystem.

    Several processes may share the same bucket directories. Writers do
    not lock: each upload is published with an atomic rename, and when
    two uploads race on one key the last rename wins.

    Example:
        >>> blobs = LocalBlobStore()
        >>> blobs.define_bucket("invoices", "/data/blobs/invoices")
        >>> await blobs.upload("invoices", "2026-02/invoice-1", pdf_bytes, "application/pdf")
        '/data/blobs/invoices/2026-02/invoice-1.pdf'
    """

    def __init__(self, content_type_to_extension: Mapping[str, str] | None = None) -> None:
        """Initialize the blob store.

        Args:
            content_type_to_extension: Content type -> file extension (with
                leading dot). Order matters: it is the resolution order on reads.
        """
        self.content_types = dict(content_type_to_extension or DEFAULT_CONTENT_TYPES)
        self._buckets: dict[str, Path] = {}

    # -- configuration ------------------------------------------------------

    def define_bucket(self, name: str, directory: str | os.PathLike[str]) -> None:
        """Map a bucket name to a directory, creating the directory if needed.

        Calling it again for the same bucket re-points the bucket.
        """
        if not name:
            raise InvalidArgumentError("Bucket name cannot be empty", argument="bucket")
        if not directory:
            raise InvalidArgumentError("Directory path cannot be empty", argument="directory")

        path = Path(directory)
        path.mkdir(parents=True, exist_ok=True)
        self._buckets[name] = path
        logger.debug("Defined bucket", extra={"bucket": name, "directory": str(path)})

    # -- path resolution ----------------------------------------------------

    def _bucket_dir(self, bucket: str) -> Path:
        try:
            return self._buckets[bucket]
        except KeyError:
            raise InvalidArgumentError(f"Bucket not defined: {bucket}", argument="bucket") from None

    def _validate_key(self, key: str, argument: str = "key") -> None:
        if not key:
            raise InvalidArgumentError("Object key cannot be empty", argument=argument)
        parts = key.split("/")
        if key.startswith("/") or "\\" in key or any(p in ("", ".", "..") for p in parts):
            raise InvalidArgumentError(f"Invalid object key: {key!r}", argument=argument)
        if _is_temp_file(parts[-1]):
            raise InvalidArgumentError(f"Reserved object key: {key!r}", argument=argument)

    def _extension_for(self, content_type: str) -> str:
        try:
            return self.content_types[content_type]
        except KeyError:
            raise UnsupportedContentTypeError(
                f"Unsupported content type: {content_type}", content_type=content_type
            ) from None

    def _content_type_for(self, path: Path) -> str | None:
        """Content type of an existing artifact, None for extensionless files."""
        name = path.name.lower()
        for content_type, extension in self.content_types.items():
            if name.endswith(extension.lower()):
                return content_type
        return None

    def _resolve(self, directory: Path, key: str) -> Path | None:
        """Find the artifact file for a key, or None."""
        for extension in self.content_types.values():
            candidate = directory / f"{key}{extension}"
            if candidate.is_file():
                return candidate
        bare = directory / key
        if bare.is_file():
            return bare
        return None

    def _strip_extension(self, relative: str) -> str:
        lowered = relative.lower()
        for extension in self.content_types.values():
            if lowered.endswith(extension.lower()):
                return relative[: -len(extension)]
        return relative

    # -- blocking implementations (run on pool threads) ----------------------

    def _upload_sync(self, bucket: str, key: str, content: bytes | BinaryIO, content_type: str) -> str:
        directory = self._bucket_dir(bucket)
        self._validate_key(key)
        target = directory / f"{key}{self._extension_for(content_type)}"
        target.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX, dir=target.parent)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                if isinstance(content, (bytes, bytearray, memoryview)):
                    f.write(content)
                else:
                    if content.seekable():
                        content.seek(0)
                    while chunk := content.read(1024 * 1024):
                        f.write(chunk)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, target)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        return str(target)

    def _open_read_sync(self, bucket: str, key: str) -> BinaryIO:
        directory = self._bucket_dir(bucket)
        self._validate_key(key)
        path = self._resolve(directory, key)
        if path is None:
            raise NotFoundError(f"Object not found: {key}", kind="blob", key=key)
        try:
            return open(path, "rb")
        except FileNotFoundError:
            # Deleted or renamed between resolve and open.
            raise NotFoundError(f"Object not found: {key}", kind="blob", key=key) from None

    def _exists_sync(self, bucket: str, key: str) -> bool:
        self._validate_key(key)
        directory = self._buckets.get(bucket)
        if directory is None:
            return False
        return self._resolve(directory, key) is not None

    def _delete_sync(self, bucket: str, key: str) -> None:
        directory = self._bucket_dir(bucket)
        self._validate_key(key)
        path = self._resolve(directory, key)
        if path is None:
            raise NotFoundError(f"Object not found: {key}", kind="blob", key=key)
        try:
            path.unlink()
        except FileNotFoundError:
            raise NotFoundError(f"Object not found: {key}", kind="blob", key=key) from None

    def _rename_sync(self, bucket: str, source_key: str, destination_key: str) -> None:
        directory = self._bucket_dir(bucket)
        self._validate_key(source_key, "source_key")
        self._validate_key(destination_key, "destination_key")
        if source_key == destination_key:
            raise InvalidArgumentError(
                "Source and destination object keys must be different",
                argument="destination_key",
            )

        source = self._resolve(directory, source_key)
        if source is None:
            raise NotFoundError(
                f"Source object not found: {source_key}", kind="blob", key=source_key
            )

        content_type = self._content_type_for(source)
        extension = self._extension_for(content_type) if content_type else ""
        destination = directory / f"{destination_key}{extension}"
        destination.parent.mkdir(parents=True, exist_ok=True)

        try:
            os.replace(source, destination)
        except FileNotFoundError:
            raise NotFoundError(
                f"Source object not found: {source_key}", kind="blob", key=source_key
            ) from None

    def _list_sync(self, bucket: str, prefix: str, limit: int, cursor: str | None) -> BlobList:
        directory = self._bucket_dir(bucket)
        if limit < 1:
            raise InvalidArgumentError("limit must be >= 1", argument="limit")

        keys: set[str] = set()
        for root, _dirs, files in os.walk(directory):
            for name in files:
                if _is_temp_file(name):
                    continue
                relative = Path(root, name).relative_to(directory).as_posix()
                key = self._strip_extension(relative)
                if key.startswith(prefix or ""):
                    keys.add(key)

        ordered = sorted(keys)
        start = bisect.bisect_right(ordered, cursor) if cursor else 0
        page = ordered[start : start + limit]
        next_cursor = page[-1] if start + limit < len(ordered) else None
        return BlobList(page, next_cursor)

    # -- async API ----------------------------------------------------------

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def upload(
        self,
        bucket: str,
        key: str,
        content: bytes | BinaryIO,
        content_type: str,
    ) -> str:
        """Atomically publish an artifact under a key.

        An existing artifact under the same key is replaced.

        Args:
            bucket: Bucket name
            key: Object key (may contain "/")
            content: Bytes or a binary file object (read from the start)
            content_type: MIME type; selects the file extension

        Returns:
            Locator (file path) of the stored artifact

        Raises:
            UnsupportedContentTypeError: If the content type has no extension
            InvalidArgumentError: If the bucket is undefined or the key invalid
        """
        locator = await self._run(self._upload_sync, bucket, key, content, content_type)
        logger.info(
            "Uploaded blob",
            extra={"bucket": bucket, "key": key, "content_type": content_type},
        )
        return locator

    async def open_read(self, bucket: str, key: str) -> BinaryIO:
        """Open an artifact for reading. The caller closes the stream.

        Raises:
            NotFoundError: If no artifact resolves for the key
        """
        logger.debug("Opening blob", extra={"bucket": bucket, "key": key})
        return await self._run(self._open_read_sync, bucket, key)

    async def exists(self, bucket: str, key: str) -> bool:
        """Check whether an artifact exists; False for an undefined bucket."""
        return await self._run(self._exists_sync, bucket, key)

    async def delete(self, bucket: str, key: str) -> None:
        """Delete an artifact.

        Raises:
            NotFoundError: If no artifact resolves for the key
        """
        await self._run(self._delete_sync, bucket, key)
        logger.info("Deleted blob", extra={"bucket": bucket, "key": key})

    async def rename(self, bucket: str, source_key: str, destination_key: str) -> None:
        """Move an artifact to another key, keeping its content type.

        Raises:
            InvalidArgumentError: If the keys are equal
            NotFoundError: If the source does not exist
        """
        await self._run(self._rename_sync, bucket, source_key, destination_key)
        logger.info(
            "Renamed blob",
            extra={"bucket": bucket, "key": source_key, "new_key": destination_key},
        )

    async def list(
        self,
        bucket: str,
        prefix: str = "",
        limit: int = 1000,
        cursor: str | None = None,
    ) -> BlobList:
        """List object keys in lexicographic order.

        Args:
            bucket: Bucket name
            prefix: Only keys starting with this prefix
            limit: Maximum keys to return
            cursor: next_cursor of the previous page

        Returns:
            BlobList of keys (extensions stripped) and the next cursor
        """
        return await self._run(self._list_sync, bucket, prefix, limit, cursor)

    def uri_for(self, bucket: str, key: str) -> str:
        """Return a file:// URI for an existing artifact.

        Raises:
            NotFoundError: If no artifact resolves for the key
        """
        directory = self._bucket_dir(bucket)
        self._validate_key(key)
        path = self._resolve(directory, key)
        if path is None:
            raise NotFoundError(f"Object not found: {key}", kind="blob", key=key)
        return path.resolve().as_uri()
