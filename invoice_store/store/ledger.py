"""
Invoice ledger backed by the shared SQLite database.

The ledger allocates invoice numbers and stores invoices under two rules:
- Numbers come from a singleton counter row, so they strictly increase
  in commit order and are never reused (a rolled-back allocation leaves a gap)
- Dates never decrease as numbers increase; creates are checked against
  the newest invoice, updates against both numeric neighbours

Legacy invoices are imported under an explicit historical number. They
skip the date check, push the counter past themselves, and can never be
updated afterwards.

Invariants:
    - create(), update() and import_legacy() run in an immediate transaction
    - number_numeric mirrors number and carries the ordering
    - The counter row is the only source of the next number; MAX(number) is never used

How to change safely:
    - Any new read-then-write path must go through Database.execute_immediate()
    - Keep number strings free of leading zeros for auto-numbered invoices
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date
from typing import Any

from ..errors import (
    AlreadyExistsError,
    ImmutableError,
    InvalidArgumentError,
    NotFoundError,
    OrderingViolationError,
)
from ..models import (
    Amount,
    BankTransferInfo,
    BillingAddress,
    Currency,
    Invoice,
    InvoiceContent,
    LineItem,
    Page,
)
from .database import Database

logger = logging.getLogger(__name__)

_SEQUENCE_ID = 1

_ADDRESS_FIELDS = (
    "name",
    "representative_name",
    "company_identifier",
    "vat_identifier",
    "address",
    "city",
    "postal_code",
    "country",
)

_CONTENT_COLUMNS = (
    ["date"]
    + [f"seller_{f}" for f in _ADDRESS_FIELDS]
    + [f"buyer_{f}" for f in _ADDRESS_FIELDS]
    + ["bank_iban", "bank_name", "bank_bic"]
)


def parse_invoice_number(number: str, argument: str = "number") -> int:
    """Return the numeric value of a decimal-digit invoice number.

    Raises:
        InvalidArgumentError: If number is empty or not all ASCII digits
    """
    if not number or not (number.isascii() and number.isdigit()):
        raise InvalidArgumentError(f"Invalid invoice number: {number!r}", argument=argument)
    return int(number)


def _content_values(content: InvoiceContent) -> list[Any]:
    seller = content.seller_address
    buyer = content.buyer_address
    bank = content.bank_transfer_info
    return (
        [content.date.isoformat()]
        + [getattr(seller, f) for f in _ADDRESS_FIELDS]
        + [getattr(buyer, f) for f in _ADDRESS_FIELDS]
        + [bank.iban, bank.bank_name, bank.bic]
    )


def _address_from_row(row: sqlite3.Row, prefix: str) -> BillingAddress:
    return BillingAddress(**{f: row[f"{prefix}_{f}"] for f in _ADDRESS_FIELDS})


def _row_to_invoice(row: sqlite3.Row, line_items: list[LineItem]) -> Invoice:
    content = InvoiceContent(
        date=date.fromisoformat(row["date"]),
        seller_address=_address_from_row(row, "seller"),
        buyer_address=_address_from_row(row, "buyer"),
        line_items=tuple(line_items),
        bank_transfer_info=BankTransferInfo(
            iban=row["bank_iban"],
            bank_name=row["bank_name"],
            bic=row["bank_bic"],
        ),
    )
    return Invoice(
        number=row["number"],
        content=content,
        is_corrected=bool(row["is_corrected"]),
        is_legacy=bool(row["is_legacy"]),
    )


class InvoiceLedger:
    """Numbered invoice storage with ordering guarantees.

    Example:
        >>> ledger = InvoiceLedger(db, start_invoice_number=1000)
        >>> invoice = await ledger.create(content)
        >>> invoice.number
        '1000'
    """

    def __init__(self, db: Database, start_invoice_number: int = 1) -> None:
        """Initialize the ledger.

        Args:
            db: Shared database
            start_invoice_number: First number handed out on an empty database.
                Only used to seed the counter; once seeded the counter wins.
        """
        if start_invoice_number < 1:
            raise ValueError("start_invoice_number must be >= 1")
        self.db = db
        self.start_invoice_number = start_invoice_number

    # -- helpers (run on the connection's thread) ---------------------------

    def _ensure_sequence(self, conn: sqlite3.Connection) -> int:
        conn.execute(
            "INSERT OR IGNORE INTO invoice_sequence (id, last_number) VALUES (?, ?)",
            (_SEQUENCE_ID, self.start_invoice_number - 1),
        )
        row = conn.execute(
            "SELECT last_number FROM invoice_sequence WHERE id = ?", (_SEQUENCE_ID,)
        ).fetchone()
        return row["last_number"]

    def _set_sequence(self, conn: sqlite3.Connection, last_number: int) -> None:
        conn.execute(
            "UPDATE invoice_sequence SET last_number = ? WHERE id = ?",
            (last_number, _SEQUENCE_ID),
        )

    def _line_items(self, conn: sqlite3.Connection, invoice_id: int) -> list[LineItem]:
        cursor = conn.execute(
            """
            SELECT description, amount_cents, currency FROM invoice_line_items
            WHERE invoice_id = ?
            ORDER BY position
            """,
            (invoice_id,),
        )
        return [
            LineItem(
                description=row["description"],
                amount=Amount(row["amount_cents"], Currency(row["currency"])),
            )
            for row in cursor.fetchall()
        ]

    def _insert_line_items(
        self, conn: sqlite3.Connection, invoice_id: int, line_items: tuple[LineItem, ...]
    ) -> None:
        conn.executemany(
            """
            INSERT INTO invoice_line_items
            (invoice_id, position, description, amount_cents, currency)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                (invoice_id, i, item.description, item.amount.cents, item.amount.currency.value)
                for i, item in enumerate(line_items)
            ],
        )

    def _insert_invoice(
        self,
        conn: sqlite3.Connection,
        number: str,
        numeric: int,
        content: InvoiceContent,
        is_legacy: bool,
    ) -> Invoice:
        columns = ["number", "number_numeric", *_CONTENT_COLUMNS, "is_corrected", "is_legacy"]
        values = [number, numeric, *_content_values(content), 0, int(is_legacy)]
        placeholders = ", ".join("?" for _ in columns)
        cursor = conn.execute(
            f"INSERT INTO invoices ({', '.join(columns)}) VALUES ({placeholders})",
            values,
        )
        self._insert_line_items(conn, cursor.lastrowid, content.line_items)
        return Invoice(number=number, content=content, is_corrected=False, is_legacy=is_legacy)

    def _find_row(self, conn: sqlite3.Connection, number: str) -> sqlite3.Row | None:
        return conn.execute("SELECT * FROM invoices WHERE number = ?", (number,)).fetchone()

    def _neighbour_date(
        self, conn: sqlite3.Connection, numeric: int, before: bool
    ) -> date | None:
        if before:
            sql = """
                SELECT date FROM invoices WHERE number_numeric < ?
                ORDER BY number_numeric DESC LIMIT 1
            """
        else:
            sql = """
                SELECT date FROM invoices WHERE number_numeric > ?
                ORDER BY number_numeric ASC LIMIT 1
            """
        row = conn.execute(sql, (numeric,)).fetchone()
        return date.fromisoformat(row["date"]) if row else None

    # -- operations ---------------------------------------------------------

    async def create(self, content: InvoiceContent) -> Invoice:
        """Issue a new invoice under the next number.

        Args:
            content: Invoice content

        Returns:
            The stored invoice with its allocated number

        Raises:
            OrderingViolationError: If content.date is before the newest invoice's date
        """

        def work(conn: sqlite3.Connection) -> Invoice:
            last_number = self._ensure_sequence(conn)

            last = conn.execute(
                "SELECT number, date FROM invoices ORDER BY number_numeric DESC LIMIT 1"
            ).fetchone()
            if last is not None:
                last_date = date.fromisoformat(last["date"])
                if content.date < last_date:
                    raise OrderingViolationError(
                        f"Invoice date {content.date.isoformat()} cannot be before "
                        f"the last invoice date {last_date.isoformat()}.",
                        number=last["number"],
                    )

            next_number = last_number + 1
            self._set_sequence(conn, next_number)
            return self._insert_invoice(conn, str(next_number), next_number, content, False)

        invoice = await self.db.execute_immediate(work)
        logger.info(
            "Created invoice",
            extra={"number": invoice.number, "date": content.date.isoformat()},
        )
        return invoice

    async def import_legacy(self, content: InvoiceContent, number: str) -> Invoice:
        """Import a historical invoice under an explicit number.

        The date ordering check is skipped. The counter is advanced to
        max(current, number + 1), so every later create is numbered after this one.

        Raises:
            InvalidArgumentError: If number is not a decimal-digit string
            AlreadyExistsError: If the number is already used
        """
        numeric = parse_invoice_number(number)

        def work(conn: sqlite3.Connection) -> Invoice:
            last_number = self._ensure_sequence(conn)
            try:
                invoice = self._insert_invoice(conn, number, numeric, content, True)
            except sqlite3.IntegrityError as e:
                raise AlreadyExistsError(
                    f"Invoice with number {number} already exists.",
                    kind="invoice",
                    key=number,
                ) from e
            self._set_sequence(conn, max(last_number, numeric + 1))
            return invoice

        invoice = await self.db.execute_immediate(work)
        logger.info(
            "Imported legacy invoice",
            extra={"number": number, "date": content.date.isoformat()},
        )
        return invoice

    async def get(self, number: str) -> Invoice:
        """Get an invoice by number.

        Raises:
            NotFoundError: If no invoice has this number
        """

        def work(conn: sqlite3.Connection) -> Invoice:
            row = self._find_row(conn, number)
            if row is None:
                raise NotFoundError(
                    f"Invoice with number {number} not found.", kind="invoice", key=number
                )
            return _row_to_invoice(row, self._line_items(conn, row["id"]))

        return await self.db.execute(work)

    async def update(self, number: str, content: InvoiceContent) -> None:
        """Replace the content of an existing invoice and mark it corrected.

        Raises:
            NotFoundError: If no invoice has this number
            ImmutableError: If the invoice is a legacy import
            OrderingViolationError: If the new date falls outside the dates of
                the numerically previous and next invoices
        """

        def work(conn: sqlite3.Connection) -> None:
            row = self._find_row(conn, number)
            if row is None:
                raise NotFoundError(
                    f"Invoice with number {number} not found.", kind="invoice", key=number
                )
            if row["is_legacy"]:
                raise ImmutableError(
                    f"Invoice {number} was imported as a legacy invoice and cannot be edited.",
                    number=number,
                )

            numeric = row["number_numeric"]
            prev_date = self._neighbour_date(conn, numeric, before=True)
            next_date = self._neighbour_date(conn, numeric, before=False)

            if prev_date is not None and content.date < prev_date:
                raise OrderingViolationError(
                    f"Invoice date {content.date.isoformat()} cannot be before "
                    f"the previous invoice date {prev_date.isoformat()}.",
                    number=number,
                )
            if next_date is not None and content.date > next_date:
                raise OrderingViolationError(
                    f"Invoice date {content.date.isoformat()} cannot be after "
                    f"the next invoice date {next_date.isoformat()}.",
                    number=number,
                )

            assignments = ", ".join(f"{c} = ?" for c in _CONTENT_COLUMNS)
            conn.execute(
                f"UPDATE invoices SET {assignments}, is_corrected = 1 WHERE id = ?",
                [*_content_values(content), row["id"]],
            )
            conn.execute("DELETE FROM invoice_line_items WHERE invoice_id = ?", (row["id"],))
            self._insert_line_items(conn, row["id"], content.line_items)

        await self.db.execute_immediate(work)
        logger.info(
            "Updated invoice",
            extra={"number": number, "date": content.date.isoformat()},
        )

    async def latest(self, limit: int, cursor: str | None = None) -> Page:
        """List invoices newest first (highest number first).

        Args:
            limit: Maximum invoices to return
            cursor: next_cursor of the previous page

        Returns:
            Page of invoices; next_cursor is None on the last page
        """
        if limit < 1:
            raise InvalidArgumentError("limit must be >= 1", argument="limit")
        cursor_numeric = parse_invoice_number(cursor, "cursor") if cursor else None

        def work(conn: sqlite3.Connection) -> Page:
            query = "SELECT * FROM invoices"
            params: list[Any] = []
            if cursor_numeric is not None:
                query += " WHERE number_numeric < ?"
                params.append(cursor_numeric)
            query += " ORDER BY number_numeric DESC LIMIT ?"
            params.append(limit + 1)

            rows = conn.execute(query, params).fetchall()
            has_more = len(rows) > limit
            items = [_row_to_invoice(row, self._line_items(conn, row["id"])) for row in rows[:limit]]
            next_cursor = items[-1].number if has_more else None
            return Page(items, next_cursor)

        return await self.db.execute(work)

    async def peek_next_number(self) -> str:
        """Return the number the next create() would allocate right now.

        Only a preview: another process may take the number first.
        """

        def work(conn: sqlite3.Connection) -> str:
            row = conn.execute(
                "SELECT last_number FROM invoice_sequence WHERE id = ?", (_SEQUENCE_ID,)
            ).fetchone()
            last_number = row["last_number"] if row else self.start_invoice_number - 1
            return str(last_number + 1)

        return await self.db.execute(work)
