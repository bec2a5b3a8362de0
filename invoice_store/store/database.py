"""
Shared SQLite database for the invoice store.

This module owns the single SQLite file shared by every process of the
deployment (CLI invocations, web server, desktop app). It provides:
- Per-operation connections configured with the store's pragmas
- Schema creation that is safe when several processes start at once
- The serialized transaction executor used by every read-then-write operation

Invariants:
    - One connection per operation, opened and closed on the worker thread
    - execute_immediate() takes the write lock at BEGIN, never lazily
    - At most one immediate transaction writes at a time, host-wide
    - A failing unit of work is rolled back before the error propagates

How to change safely:
    - Schema changes must be additive (CREATE ... IF NOT EXISTS)
    - Never hold a connection across an await
    - Keep synchronous = FULL unless losing the last commit on power loss is acceptable

Table schema:
    clients:
        - nickname TEXT PRIMARY KEY
        - name, representative_name, company_identifier TEXT
        - vat_identifier TEXT NULL
        - address, city, postal_code, country TEXT

    invoices:
        - id INTEGER PRIMARY KEY
        - number TEXT UNIQUE (decimal digits)
        - number_numeric INTEGER UNIQUE
        - date TEXT (ISO yyyy-mm-dd)
        - seller_* / buyer_* address columns
        - bank_iban, bank_name, bank_bic TEXT
        - is_corrected, is_legacy INTEGER (0/1)

    invoice_line_items:
        - invoice_id INTEGER REFERENCES invoices(id) ON DELETE CASCADE
        - position INTEGER
        - description TEXT, amount_cents INTEGER, currency TEXT

    invoice_sequence:
        - id INTEGER PRIMARY KEY CHECK (id = 1)
        - last_number INTEGER
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SYNCHRONOUS_MODES = ("OFF", "NORMAL", "FULL", "EXTRA")


def _casefold(value: str | None) -> str | None:
    return value.casefold() if value is not None else None


class Database:
    """SQLite database file shared across processes.

    Thread safety:
        Each unit of work gets its own connection on a pool thread.
        SQLite serializes writers through its file locks; WAL mode
        lets readers proceed while a writer holds the lock.

    Example:
        >>> db = Database("/data/app.db")
        >>> await db.initialize()
        >>> await db.execute_immediate(
        ...     lambda conn: conn.execute("DELETE FROM clients WHERE nickname = ?", ("acme",))
        ... )
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
        synchronous: str = "FULL",
    ) -> None:
        """Initialize the database handle.

        Args:
            db_path: Path of the SQLite database file
            wal_mode: Enable SQLite WAL journal mode
            busy_timeout_ms: How long SQLite waits on a lock before reporting busy
            cache_size_pages: SQLite cache size (negative = KB)
            synchronous: SQLite synchronous mode (OFF, NORMAL, FULL, EXTRA)
        """
        if synchronous.upper() not in _SYNCHRONOUS_MODES:
            raise ValueError(f"Invalid synchronous mode: {synchronous}")

        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self.synchronous = synchronous.upper()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection in autocommit mode.

        Yields:
            SQLite connection, closed on exit
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute(f"PRAGMA synchronous = {self.synchronous}")
            conn.execute("PRAGMA foreign_keys = ON")
            conn.create_function("casefold", 1, _casefold, deterministic=True)

            yield conn
        finally:
            conn.close()

    def _begin_immediate(self, conn: sqlite3.Connection) -> None:
        # The busy handler waits busy_timeout_ms per attempt; keep waiting until
        # the current writer releases the lock.
        while True:
            try:
                conn.execute("BEGIN IMMEDIATE")
                return
            except sqlite3.OperationalError as e:
                if "locked" not in str(e) and "busy" not in str(e):
                    raise
                logger.debug(
                    "Write lock busy, still waiting",
                    extra={"db_path": str(self.db_path)},
                )

    @contextmanager
    def immediate(self, conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        """Run the enclosed block inside a BEGIN IMMEDIATE transaction.

        Commits on normal exit, rolls back and re-raises on any exception.
        """
        self._begin_immediate(conn)
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def run_immediate(self, work: Callable[[sqlite3.Connection], T]) -> T:
        """Blocking form of execute_immediate()."""
        with self.connect() as conn:
            with self.immediate(conn):
                return work(conn)

    def run(self, work: Callable[[sqlite3.Connection], T]) -> T:
        """Blocking form of execute()."""
        with self.connect() as conn:
            return work(conn)

    async def execute_immediate(self, work: Callable[[sqlite3.Connection], T]) -> T:
        """Run a unit of work inside an exclusive write transaction.

        The write lock is acquired at transaction start and held until
        commit, so the work sees a stable database and no other writer
        (in this or any other process) interleaves with it.

        Args:
            work: Callable receiving the connection; runs on a pool thread

        Returns:
            Whatever work returns, after the commit succeeded
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.run_immediate, work)

    async def execute(self, work: Callable[[sqlite3.Connection], T]) -> T:
        """Run a read without the write lock. Writes go through execute_immediate()."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.run, work)

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        statements = [
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS clients (
                nickname TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                representative_name TEXT NOT NULL,
                company_identifier TEXT NOT NULL,
                vat_identifier TEXT,
                address TEXT NOT NULL,
                city TEXT NOT NULL,
                postal_code TEXT NOT NULL,
                country TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_clients_company ON clients(company_identifier)",
            """
            CREATE TABLE IF NOT EXISTS invoices (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                number TEXT NOT NULL UNIQUE,
                number_numeric INTEGER NOT NULL UNIQUE,
                date TEXT NOT NULL,
                seller_name TEXT NOT NULL,
                seller_representative_name TEXT NOT NULL,
                seller_company_identifier TEXT NOT NULL,
                seller_vat_identifier TEXT,
                seller_address TEXT NOT NULL,
                seller_city TEXT NOT NULL,
                seller_postal_code TEXT NOT NULL,
                seller_country TEXT NOT NULL,
                buyer_name TEXT NOT NULL,
                buyer_representative_name TEXT NOT NULL,
                buyer_company_identifier TEXT NOT NULL,
                buyer_vat_identifier TEXT,
                buyer_address TEXT NOT NULL,
                buyer_city TEXT NOT NULL,
                buyer_postal_code TEXT NOT NULL,
                buyer_country TEXT NOT NULL,
                bank_iban TEXT NOT NULL,
                bank_name TEXT NOT NULL,
                bank_bic TEXT NOT NULL,
                is_corrected INTEGER NOT NULL DEFAULT 0,
                is_legacy INTEGER NOT NULL DEFAULT 0
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_invoices_buyer_name ON invoices(buyer_name)",
            """
            CREATE TABLE IF NOT EXISTS invoice_line_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                invoice_id INTEGER NOT NULL REFERENCES invoices(id) ON DELETE CASCADE,
                position INTEGER NOT NULL,
                description TEXT NOT NULL,
                amount_cents INTEGER NOT NULL,
                currency TEXT NOT NULL
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_line_items_invoice
                ON invoice_line_items(invoice_id, position)
            """,
            """
            CREATE TABLE IF NOT EXISTS invoice_sequence (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                last_number INTEGER NOT NULL
            )
            """,
            """
            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000)
            """,
        ]
        # executescript() would COMMIT the surrounding immediate transaction.
        for statement in statements:
            conn.execute(statement)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist.

        Safe to call concurrently from several processes: the schema is
        created inside an immediate transaction, so only one process runs
        the DDL at a time and the others find it already in place.
        """
        await self.execute_immediate(self._create_schema)
        logger.info("Initialized database", extra={"db_path": str(self.db_path)})
