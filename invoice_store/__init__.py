"""
Invoice Store - persistence and consistency core for a small invoicing business.

This package implements the storage layer shared by the CLI, web and desktop
front-ends:
- Invoice ledger with gap-tolerant, strictly increasing numbering
- Client directory keyed by a mutable nickname
- File-backed blob store for exported invoice artifacts
- Invoice management that ties the three together with an exporter

Architecture:
    ┌─────────────┐     ┌──────────────────────┐
    │  Front-end  │────▶│  InvoiceManagement   │
    │ (CLI / Web) │     └──────────┬───────────┘
    └─────────────┘                │
              ┌────────────────────┼────────────────────┐
              ▼                    ▼                    ▼
        ┌───────────┐       ┌────────────┐       ┌─────────────┐
        │  Invoice  │       │   Client   │       │    Local    │
        │  Ledger   │       │ Directory  │       │  BlobStore  │
        └─────┬─────┘       └─────┬──────┘       └──────┬──────┘
              │                   │                     │
              ▼                   ▼                     ▼
        ┌──────────────────────────────┐         ┌─────────────┐
        │ SQLite file (BEGIN IMMEDIATE)│         │ Directories │
        └──────────────────────────────┘         └─────────────┘

Invariants:
    - Several OS processes may share one database file and one blob root
    - Every mutation that reads-then-writes runs in an immediate transaction
    - Blob artifacts only ever appear under their key fully written

How to change safely:
    - Schema changes must be additive; existing databases are opened in place
    - Keep cursor formats stable, front-ends persist them in URLs

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
