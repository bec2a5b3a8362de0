"""
Error types for the invoice store.

This module defines all exception types raised by the ledger, the client
directory and the blob store:
- InvoiceStoreError: Base exception
- NotFoundError: Entity or artifact does not exist
- AlreadyExistsError: Unique key already taken
- OrderingViolationError: Invoice date breaks date monotonicity
- ImmutableError: Edit attempted on a legacy invoice
- UnsupportedContentTypeError: Content type has no configured extension
- InvalidArgumentError: Malformed key, cursor, limit or bucket

Invariants:
    - All errors inherit from InvoiceStoreError
    - Errors carry a stable code for programmatic handling
    - Nothing in this package retries on these errors
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class InvoiceStoreError(Exception):
    """Base exception for all invoice store errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "INVOICE_STORE_ERROR"
        self.details = details or {}


class NotFoundError(InvoiceStoreError):
    """Requested entity or artifact does not exist.

    Raised when:
    - No invoice has the given number
    - No client has the given nickname
    - No blob resolves for the given key
    """

    def __init__(self, message: str, kind: str, key: str) -> None:
        super().__init__(message, code="NOT_FOUND", details={"kind": kind, "key": key})
        self.kind = kind
        self.key = key


class AlreadyExistsError(InvoiceStoreError):
    """Unique key is already taken.

    Raised when:
    - Adding a client under a used nickname
    - Renaming a client onto another client's nickname
    - Importing a legacy invoice under a used number
    """

    def __init__(self, message: str, kind: str, key: str) -> None:
        super().__init__(message, code="ALREADY_EXISTS", details={"kind": kind, "key": key})
        self.kind = kind
        self.key = key


class OrderingViolationError(InvoiceStoreError):
    """Invoice date would break date monotonicity across invoice numbers."""

    def __init__(self, message: str, number: str | None = None) -> None:
        super().__init__(message, code="ORDERING_VIOLATION", details={"number": number})
        self.number = number


class ImmutableError(InvoiceStoreError):
    """Edit attempted on a legacy (imported) invoice."""

    def __init__(self, message: str, number: str) -> None:
        super().__init__(message, code="IMMUTABLE", details={"number": number})
        self.number = number


class UnsupportedContentTypeError(InvoiceStoreError):
    """Content type (or file extension) has no entry in the extension table."""

    def __init__(self, message: str, content_type: str) -> None:
        super().__init__(
            message,
            code="UNSUPPORTED_CONTENT_TYPE",
            details={"content_type": content_type},
        )
        self.content_type = content_type


class InvalidArgumentError(InvoiceStoreError):
    """Caller supplied an argument that can never succeed."""

    def __init__(self, message: str, argument: str | None = None) -> None:
        super().__init__(message, code="INVALID_ARGUMENT", details={"argument": argument})
        self.argument = argument
