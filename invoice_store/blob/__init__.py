"""
Blob module - storage for exported invoice artifacts.

Artifacts (rendered PDFs, imported legacy PDFs) live on the local
filesystem, one directory per bucket. Publication is atomic: readers see
either the previous artifact or the complete new one.
"""

from .local import DEFAULT_CONTENT_TYPES, BlobList, LocalBlobStore

__all__ = [
    "LocalBlobStore",
    "BlobList",
    "DEFAULT_CONTENT_TYPES",
]
