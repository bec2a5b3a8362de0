"""
Store module - SQLite-backed invoice ledger and client directory.

This module handles:
- The shared SQLite database file and its schema
- Serialized read-then-write transactions across processes (BEGIN IMMEDIATE)
- Invoice numbering and date ordering
- Client records keyed by nickname

Invariants:
    - Every read-then-write operation runs in Database.execute_immediate()
    - Uniqueness is enforced by table constraints, not by prior lookups
    - Paginated reads use keyset cursors

How to change safely:
    - Keep schema changes additive
    - Test new write paths with the cross-process integration tests
"""

from .database import Database
from .directory import ClientDirectory, decode_activity_cursor, encode_activity_cursor
from .ledger import InvoiceLedger, parse_invoice_number

__all__ = [
    "Database",
    "InvoiceLedger",
    "parse_invoice_number",
    "ClientDirectory",
    "encode_activity_cursor",
    "decode_activity_cursor",
]
